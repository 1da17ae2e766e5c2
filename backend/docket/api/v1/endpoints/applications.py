"""
Juror application endpoints (mounted under /cases/{case_id}/applications)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from docket.api.v1.deps import get_case, get_current_user, require_juror
from docket.db.database import get_db
from docket.db.models import ApplicationStatus, Case, User
from docket.db.schemas import (
    ApplicationCreate,
    ApplicationResponse,
    ApplicationReview,
    BatchApproveRequest,
    BatchApproveResponse,
)
from docket.services import application_service
from docket.services.case_access import ensure_owner_or_admin

router = APIRouter()


@router.post("", response_model=ApplicationResponse, status_code=status.HTTP_201_CREATED)
def apply_to_case(
    payload: Optional[ApplicationCreate] = None,
    case: Case = Depends(get_case),
    current_user: User = Depends(require_juror),
    db: Session = Depends(get_db)
):
    return application_service.apply_to_case(db, case, current_user, payload.comments if payload else None)


@router.get("", response_model=List[ApplicationResponse])
def list_applications(
    status_filter: Optional[ApplicationStatus] = Query(None, alias="status"),
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ensure_owner_or_admin(case, current_user)
    return application_service.list_applications(db, case, status_filter)


@router.post("/batch-approve", response_model=BatchApproveResponse)
def batch_approve(
    payload: BatchApproveRequest,
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Approve several applications at once; refused in full when the batch
    does not fit in the remaining juror slots
    """
    approved = application_service.batch_approve(db, case, current_user, payload.application_ids)
    return BatchApproveResponse(
        approved_count=len(approved),
        applications=[ApplicationResponse.model_validate(a) for a in approved],
    )


@router.post("/{application_id}/approve", response_model=ApplicationResponse)
def approve_application(
    application_id: int,
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return application_service.approve_application(db, case, application_id, current_user)


@router.post("/{application_id}/reject", response_model=ApplicationResponse)
def reject_application(
    application_id: int,
    payload: Optional[ApplicationReview] = None,
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return application_service.reject_application(
        db, case, application_id, current_user, payload.comments if payload else None,
    )


@router.post("/{application_id}/withdraw", response_model=ApplicationResponse)
def withdraw_application(
    application_id: int,
    case: Case = Depends(get_case),
    current_user: User = Depends(require_juror),
    db: Session = Depends(get_db)
):
    return application_service.withdraw_application(db, case, application_id, current_user)
