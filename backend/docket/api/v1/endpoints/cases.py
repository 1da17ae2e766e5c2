"""
Case management endpoints: intake, review, lifecycle and slot negotiation
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from docket.api.v1.deps import get_case, get_current_user, require_admin, require_attorney
from docket.db.database import get_db
from docket.db.models import AttorneyStatus, Case, User, UserRole
from docket.db.schemas import (
    AdminRescheduleRequest,
    CaseCreate,
    CaseResponse,
    CaseReviewRequest,
    CaseStatusUpdate,
    ConfirmRescheduleRequest,
    DifferentSlotsRequest,
    MeetingResponse,
    MessageResponse,
    RescheduleRequestBody,
    RescheduleRequestResponse,
    RescheduleResultResponse,
    RescheduleStatusResponse,
    ReviewResponse,
    SlotAvailabilityResponse,
    SlotIn,
    TransitionResponse,
)
from docket.services import case_service, reschedule_service, trial_session_service
from docket.services.case_access import ensure_owner_or_admin
from docket.services.case_state_machine import raise_for_refusal, request_status
from docket.services.communication_service import CommunicationService, get_communication_service
from docket.utils.exceptions import UnauthorizedError, ValidationError
from docket.utils.validators import normalize_time, parse_date, parse_slot

router = APIRouter()

_REVIEW_MESSAGES = {
    "approved": "Case approved and opened in the war room",
    "rejected": "Case rejected",
    "reschedule_requested": "Requested slot is taken; the attorney has been asked to reschedule",
}


def _outcome_response(outcome: reschedule_service.RescheduleOutcome, message: str) -> RescheduleResultResponse:
    return RescheduleResultResponse(
        message=message,
        case=CaseResponse.model_validate(outcome.case),
        request=RescheduleRequestResponse.model_validate(outcome.request) if outcome.request else None,
        affected_jurors=len(outcome.affected_jurors),
    )


# ============================================================================
# Intake & Reads
# ============================================================================

@router.post("", response_model=CaseResponse, status_code=status.HTTP_201_CREATED)
def create_case(
    payload: CaseCreate,
    current_user: User = Depends(require_attorney),
    db: Session = Depends(get_db)
):
    """
    Submit a new case for admin review
    """
    return case_service.create_case(
        db,
        current_user,
        case_title=payload.case_title,
        case_type=payload.case_type,
        case_jurisdiction=payload.case_jurisdiction,
        case_tier=payload.case_tier,
        state=payload.state,
        county=payload.county,
        scheduled_date=payload.scheduled_date,
        scheduled_time=payload.scheduled_time,
        case_description=payload.case_description,
        required_jurors=payload.required_jurors,
        timezone_offset=payload.timezone_offset,
    )


@router.get("", response_model=List[CaseResponse])
def list_cases(
    status_filter: Optional[AttorneyStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return case_service.list_cases_for_user(db, current_user, status_filter)


@router.get("/{case_id}", response_model=CaseResponse)
def get_case_detail(
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return case_service.get_case_for_user(db, case, current_user)


@router.delete("/{case_id}", response_model=MessageResponse)
def delete_case(
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case_service.cancel_case(db, case, current_user)
    return MessageResponse(message="Case cancelled")


@router.put("/{case_id}/status", response_model=TransitionResponse)
def update_case_status(
    payload: CaseStatusUpdate,
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Generic status change; only transitions marked manual are reachable here
    """
    ensure_owner_or_admin(case, current_user)
    try:
        target = AttorneyStatus(payload.status)
    except ValueError:
        raise ValidationError(f"Unknown status: {payload.status}", code="INVALID_CHOICE", field="status")

    result = request_status(db, case, target, actor=current_user)
    raise_for_refusal(result)
    db.commit()
    db.refresh(case)
    return TransitionResponse(valid=True, message=f"Case moved to {target.value}", case=CaseResponse.model_validate(case))


# ============================================================================
# Admin Review
# ============================================================================

@router.post("/{case_id}/review", response_model=ReviewResponse)
def review_case(
    payload: CaseReviewRequest,
    case: Case = Depends(get_case),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    outcome = case_service.review_case(
        db,
        case,
        current_user,
        decision=payload.decision,
        comments=payload.comments,
        rejection_reason=payload.rejection_reason,
        alternate_slots=payload.alternate_slots,
    )
    return ReviewResponse(
        decision=outcome.decision,
        message=_REVIEW_MESSAGES[outcome.decision],
        case=CaseResponse.model_validate(outcome.case),
        reschedule_request_id=outcome.request.id if outcome.request else None,
    )


@router.post("/{case_id}/check-slot-availability", response_model=SlotAvailabilityResponse)
def check_slot_availability(
    payload: Optional[SlotIn] = None,
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ensure_owner_or_admin(case, current_user)
    slot_date = parse_date(payload.date) if payload and payload.date else None
    slot_time = normalize_time(payload.time) if payload and payload.time else None
    availability = case_service.check_slot(db, case, slot_date, slot_time)
    return SlotAvailabilityResponse(**availability.as_dict())


# ============================================================================
# Reschedule Negotiation
# ============================================================================

@router.post("/{case_id}/request-reschedule")
def request_reschedule(
    payload: RescheduleRequestBody,
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Admin: offer three alternate slots.
    Attorney: propose one new slot for admin approval.
    """
    if current_user.role == UserRole.admin:
        request = reschedule_service.offer_alternate_slots(db, case, current_user, payload.alternate_slots)
        return {
            "success": True,
            "message": "Alternate slots sent to the attorney",
            "request": RescheduleRequestResponse.model_validate(request),
        }

    if current_user.role != UserRole.attorney:
        raise UnauthorizedError("Only the case attorney or an administrator can request a reschedule")
    new_date = parse_date(payload.new_scheduled_date, "newScheduledDate")
    new_time = normalize_time(payload.new_scheduled_time, "newScheduledTime")
    request = reschedule_service.request_attorney_reschedule(
        db, case, current_user, new_date, new_time,
        reason=payload.reason,
        comments=payload.attorney_comments,
    )
    return {
        "success": True,
        "message": "Reschedule request submitted for admin review",
        "request": RescheduleRequestResponse.model_validate(request),
    }


@router.post("/{case_id}/confirm-reschedule", response_model=RescheduleResultResponse)
def confirm_reschedule(
    payload: ConfirmRescheduleRequest,
    case: Case = Depends(get_case),
    current_user: User = Depends(require_attorney),
    db: Session = Depends(get_db)
):
    selected_date, selected_time = parse_slot(payload.selected_slot, "selectedSlot")
    outcome = reschedule_service.confirm_reschedule(db, case, current_user, selected_date, selected_time)
    return _outcome_response(outcome, "Reschedule confirmed")


@router.post("/{case_id}/request-different-slots", response_model=RescheduleRequestResponse)
def request_different_slots(
    payload: DifferentSlotsRequest,
    case: Case = Depends(get_case),
    current_user: User = Depends(require_attorney),
    db: Session = Depends(get_db)
):
    return reschedule_service.request_different_slots(db, case, current_user, payload.message)


@router.get("/{case_id}/reschedule-status", response_model=RescheduleStatusResponse)
def get_reschedule_status(
    case: Case = Depends(get_case),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ensure_owner_or_admin(case, current_user)
    result = reschedule_service.get_reschedule_status(db, case)
    request = result["request"]
    return RescheduleStatusResponse(
        case_id=result["caseId"],
        reschedule_required=result["rescheduleRequired"],
        current_slot=SlotIn(**result["currentSlot"]),
        request=RescheduleRequestResponse.model_validate(request) if request else None,
    )


@router.post("/{case_id}/reschedule", response_model=RescheduleResultResponse)
def reschedule_case(
    payload: AdminRescheduleRequest,
    case: Case = Depends(get_case),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    new_date = parse_date(payload.new_scheduled_date, "newScheduledDate")
    new_time = normalize_time(payload.new_scheduled_time, "newScheduledTime")
    outcome = reschedule_service.reschedule_by_admin(db, case, current_user, new_date, new_time, payload.reason)
    return _outcome_response(outcome, "Case rescheduled")


# ============================================================================
# War Room
# ============================================================================

@router.post("/{case_id}/submit-war-room", response_model=MeetingResponse)
def submit_war_room(
    case: Case = Depends(get_case),
    current_user: User = Depends(require_attorney),
    comms: CommunicationService = Depends(get_communication_service),
    db: Session = Depends(get_db)
):
    """
    Lock the juror roster and provision the trial room
    """
    return trial_session_service.submit_war_room(db, case, current_user, comms)
