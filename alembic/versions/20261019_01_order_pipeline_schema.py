"""Order pipeline schema: merchants, wallets, staging, orders, sweeps and settlement.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE TYPE broker_type_enum AS ENUM ('webhook', 'alpaca')")
    op.execute("CREATE TYPE prepare_status_enum AS ENUM ('staged', 'approved', 'discarded')")
    op.execute(
        "CREATE TYPE order_status_enum AS ENUM "
        "('pending', 'placed', 'confirmed', 'executed', 'settled', 'failed', 'cancelled')"
    )
    op.execute("CREATE TYPE execution_event_enum AS ENUM ('sweep.dispatch', 'order.confirmed')")
    op.execute("CREATE TYPE payment_batch_status_enum AS ENUM ('settled', 'cancelled')")

    op.create_table(
        "merchants",
        sa.Column("merchant_id", sa.String(), primary_key=True),
        sa.Column("merchant_name", sa.String(), nullable=True),
        sa.Column("conversion_rate", sa.Numeric(12, 6), nullable=False, server_default="0"),
        *[
            column
            for tier in range(1, 7)
            for column in (
                sa.Column(f"tier{tier}_name", sa.String(), nullable=True),
                sa.Column(f"tier{tier}_conversion_rate", sa.Numeric(12, 6), nullable=True),
            )
        ],
        sa.Column("sweep_day", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "brokers",
        sa.Column("broker_id", sa.String(), primary_key=True),
        sa.Column("broker_name", sa.String(), nullable=False, unique=True),
        sa.Column(
            "broker_type",
            sa.Enum(name="broker_type_enum", create_type=False),
            nullable=False,
            server_default="webhook",
        ),
        sa.Column("webhook_url", sa.String(), nullable=True),
        sa.Column("api_key", sa.String(), nullable=True),
        sa.Column("ach_bank_name", sa.String(), nullable=True),
        sa.Column("ach_routing_num", sa.String(), nullable=True),
        sa.Column("ach_account_num", sa.String(), nullable=True),
        sa.Column("ach_account_type", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "wallets",
        sa.Column("member_id", sa.String(), primary_key=True),
        sa.Column("merchant_id", sa.String(), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("member_tier", sa.String(), nullable=True),
        sa.Column("sweep_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("broker", sa.String(), nullable=True),
        sa.Column("broker_account_id", sa.String(), nullable=True),
        sa.Column("member_timezone", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.merchant_id"], ondelete="SET NULL"),
    )
    op.create_index("ix_wallets_merchant_id", "wallets", ["merchant_id"])

    op.create_table(
        "member_stock_picks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("symbol", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["wallets.member_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_member_stock_picks_member_id", "member_stock_picks", ["member_id"])

    op.create_table(
        "prepare_batches",
        sa.Column("batch_id", sa.String(), primary_key=True),
        sa.Column(
            "status",
            sa.Enum(name="prepare_status_enum", create_type=False),
            nullable=False,
            server_default="staged",
        ),
        sa.Column("scope_key", sa.String(), nullable=False),
        sa.Column("staged_scope_key", sa.String(), nullable=True, unique=True),
        sa.Column("filter_merchant", sa.String(), nullable=True),
        sa.Column("filter_member", sa.String(), nullable=True),
        sa.Column("total_members", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_shares", sa.Numeric(20, 6), nullable=False, server_default="0"),
        sa.Column("members_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bypassed_below_min", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("capped_at_max", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("missing_prices", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_created", sa.Integer(), nullable=True),
        sa.Column("refresh_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("discarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_prepare_batches_scope_key", "prepare_batches", ["scope_key"])

    op.create_table(
        "prepared_orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("basket_id", sa.String(), nullable=False),
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("merchant_id", sa.String(), nullable=True),
        sa.Column("broker", sa.String(), nullable=True),
        sa.Column("symbol", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("price", sa.Numeric(14, 4), nullable=True),
        sa.Column("shares", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("member_tier", sa.String(), nullable=True),
        sa.Column("conversion_rate", sa.Numeric(12, 6), nullable=False),
        sa.Column("sweep_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum(name="prepare_status_enum", create_type=False),
            nullable=False,
            server_default="staged",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["prepare_batches.batch_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_prepared_orders_batch_id", "prepared_orders", ["batch_id"])
    op.create_index("ix_prepared_orders_basket_id", "prepared_orders", ["basket_id"])

    op.create_table(
        "orders",
        sa.Column("order_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=True),
        sa.Column("prepared_order_id", sa.Integer(), nullable=True, unique=True),
        sa.Column("basket_id", sa.String(), nullable=False),
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("merchant_id", sa.String(), nullable=True),
        sa.Column("broker", sa.String(), nullable=True),
        sa.Column("symbol", sa.String(), nullable=False),
        sa.Column("order_type", sa.String(), nullable=False, server_default="sweep"),
        sa.Column("price", sa.Numeric(14, 4), nullable=True),
        sa.Column("price_missing", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("shares", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("points_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(name="order_status_enum", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sweep_batch_id", sa.String(), nullable=True),
        sa.Column("broker_ref", sa.String(), nullable=True),
        sa.Column("exec_id", sa.String(), nullable=True),
        sa.Column("executed_price", sa.Numeric(14, 4), nullable=True),
        sa.Column("executed_shares", sa.Numeric(18, 6), nullable=True),
        sa.Column("executed_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_flag", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("paid_batch_id", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["prepare_batches.batch_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["prepared_order_id"], ["prepared_orders.id"], ondelete="SET NULL"),
    )
    for column in ("batch_id", "basket_id", "member_id", "merchant_id", "status", "sweep_batch_id", "exec_id", "paid_batch_id"):
        op.create_index(f"ix_orders_{column}", "orders", [column])

    op.create_table(
        "sweep_log",
        sa.Column("batch_id", sa.String(), primary_key=True),
        sa.Column("merchant_filter", sa.String(), nullable=True),
        sa.Column("broker_filter", sa.String(), nullable=True),
        sa.Column("orders_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_placed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("merchants_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("baskets_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("brokers_notified", sa.JSON(), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
    )

    op.create_table(
        "execution_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("exec_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.Enum(name="execution_event_enum", create_type=False), nullable=False),
        sa.Column("sweep_batch_id", sa.String(), nullable=True),
        sa.Column("merchant_id", sa.String(), nullable=True),
        sa.Column("broker", sa.String(), nullable=True),
        sa.Column("basket_id", sa.String(), nullable=True),
        sa.Column("member_id", sa.String(), nullable=True),
        sa.Column("request_payload", sa.JSON(), nullable=True),
        sa.Column("response_payload", sa.JSON(), nullable=True),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_execution_records_exec_id", "execution_records", ["exec_id"])
    op.create_index("ix_execution_records_sweep_batch_id", "execution_records", ["sweep_batch_id"])
    op.create_index("ix_execution_records_basket_id", "execution_records", ["basket_id"])

    op.create_table(
        "payment_batches",
        sa.Column("batch_id", sa.String(), primary_key=True),
        sa.Column("merchant_id", sa.String(), nullable=False),
        sa.Column("broker", sa.String(), nullable=False),
        sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(name="payment_batch_status_enum", create_type=False),
            nullable=False,
            server_default="settled",
        ),
        sa.Column("detail_csv", sa.Text(), nullable=True),
        sa.Column("ach_csv", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_payment_batches_merchant_id", "payment_batches", ["merchant_id"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("merchant_id", sa.String(), nullable=True),
        sa.Column("broker", sa.String(), nullable=True),
        sa.Column("client_tx_id", sa.String(), nullable=False, unique=True),
        sa.Column("external_ref", sa.String(), nullable=False),
        sa.Column("tx_type", sa.String(), nullable=False, server_default="cash_out"),
        sa.Column("direction", sa.String(), nullable=False, server_default="outbound"),
        sa.Column("channel", sa.String(), nullable=False, server_default="ACH"),
        sa.Column("status", sa.String(), nullable=False, server_default="confirmed"),
        sa.Column("amount_cash", sa.Numeric(12, 2), nullable=False),
        sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_ledger_entries_member_id", "ledger_entries", ["member_id"])
    op.create_index("ix_ledger_entries_external_ref", "ledger_entries", ["external_ref"])


def downgrade() -> None:
    op.drop_table("ledger_entries")
    op.drop_table("payment_batches")
    op.drop_table("execution_records")
    op.drop_table("sweep_log")
    op.drop_table("orders")
    op.drop_table("prepared_orders")
    op.drop_table("prepare_batches")
    op.drop_table("member_stock_picks")
    op.drop_table("wallets")
    op.drop_table("brokers")
    op.drop_table("merchants")

    op.execute("DROP TYPE IF EXISTS payment_batch_status_enum")
    op.execute("DROP TYPE IF EXISTS execution_event_enum")
    op.execute("DROP TYPE IF EXISTS order_status_enum")
    op.execute("DROP TYPE IF EXISTS prepare_status_enum")
    op.execute("DROP TYPE IF EXISTS broker_type_enum")
