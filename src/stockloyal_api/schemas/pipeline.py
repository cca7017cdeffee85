from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# meta: schema: order-pipeline


class StagingScopeRequest(BaseModel):
    merchant_id: str | None = Field(None, description="Limit staging to one merchant")
    member_id: str | None = Field(None, description="Limit staging to one member")


class BatchActionRequest(BaseModel):
    batch_id: str = Field(..., min_length=1, description="Prepare batch identifier")
    confirm: bool = Field(False, description="Apply the action instead of returning its summary")


class RepriceRequest(BaseModel):
    batch_id: str | None = Field(None, description="Only reprice orders approved from this batch")


class SweepRequest(BaseModel):
    merchant_id: str | None = Field(None, description="Sweep one merchant regardless of its sweep day")
    broker: str | None = Field(None, description="Only dispatch feeds for this broker")


class BrokerExecuteRequest(BaseModel):
    action: Literal["preview", "execute", "execute_merchant", "execute_basket", "history", "exec_orders"]
    merchant_id: str | None = None
    basket_id: str | None = None
    exec_id: str | None = None
    broker: str | None = None
    limit: int = Field(25, ge=1, le=100)


class PaymentsPendingRequest(BaseModel):
    merchant_id: str | None = None


class PaymentsExportRequest(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    broker: str = Field(..., min_length=1)


class PaymentsMerchantRequest(BaseModel):
    merchant_id: str = Field(..., min_length=1)


class PaymentsCancelRequest(BaseModel):
    batch_id: str = Field(..., min_length=1, description="Payment batch identifier (ACH_...)")
    remove_ledger: bool = Field(True, description="Delete the ledger entries written by the batch")
    confirm: bool = Field(False, description="Apply the reversal instead of returning its summary")


class SettledBatchesRequest(BaseModel):
    merchant_id: str | None = None
    limit: int = Field(25, ge=1, le=100)
    offset: int = Field(0, ge=0)


class LineageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identifier: str = Field(..., min_length=1, alias="id", description="Any pipeline identifier")
    id_type: str | None = Field(None, alias="type", description="Override identifier type detection")
