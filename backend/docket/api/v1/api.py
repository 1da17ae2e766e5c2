"""
Main API router aggregator
"""
from fastapi import APIRouter

from docket.api.v1.endpoints import (
    applications,
    cases,
    health,
    reschedule_requests,
    slot_blocks,
    trial,
)

api_router = APIRouter()

# Include routers
api_router.include_router(cases.router, prefix="/cases", tags=["Cases"])
api_router.include_router(applications.router, prefix="/cases/{case_id}/applications", tags=["Juror Applications"])
api_router.include_router(reschedule_requests.router, prefix="/reschedule-requests", tags=["Reschedule Requests"])
api_router.include_router(slot_blocks.router, prefix="/slot-blocks", tags=["Slot Blocks"])
api_router.include_router(trial.router, prefix="/trial", tags=["Trial"])
api_router.include_router(health.router, prefix="/health", tags=["Health"])
