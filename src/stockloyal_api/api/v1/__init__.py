from fastapi import APIRouter

from .endpoints import (
    broker_execute,
    health,
    lineage,
    observability,
    payments,
    staging,
    sweep,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(staging.router)
router.include_router(sweep.router)
router.include_router(broker_execute.router)
router.include_router(payments.router)
router.include_router(lineage.router)
router.include_router(observability.router)
