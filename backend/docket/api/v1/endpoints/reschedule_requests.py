"""
Admin queue for attorney-initiated reschedule requests
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from docket.api.v1.deps import require_admin
from docket.db.database import get_db
from docket.db.models import RescheduleInitiator, User
from docket.db.schemas import (
    CaseResponse,
    RescheduleDecisionRequest,
    RescheduleRequestResponse,
    RescheduleResultResponse,
)
from docket.services import reschedule_service

router = APIRouter()


@router.get("", response_model=List[RescheduleRequestResponse])
def list_pending_requests(
    initiator: Optional[RescheduleInitiator] = Query(None),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return reschedule_service.list_pending_requests(db, initiator)


@router.post("/{request_id}/approve", response_model=RescheduleResultResponse)
def approve_request(
    request_id: int,
    payload: Optional[RescheduleDecisionRequest] = None,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    outcome = reschedule_service.approve_request(
        db, request_id, current_user, payload.admin_comments if payload else None,
    )
    return RescheduleResultResponse(
        message="Reschedule request approved",
        case=CaseResponse.model_validate(outcome.case),
        request=RescheduleRequestResponse.model_validate(outcome.request),
        affected_jurors=len(outcome.affected_jurors),
    )


@router.post("/{request_id}/reject", response_model=RescheduleRequestResponse)
def reject_request(
    request_id: int,
    payload: RescheduleDecisionRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return reschedule_service.reject_request(db, request_id, current_user, payload.admin_comments)
