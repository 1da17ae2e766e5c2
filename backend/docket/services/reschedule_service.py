"""
services/reschedule_service.py

Slot negotiation between admins and attorneys.

Admin-initiated (conflict resolution)
  approval hits an occupied slot -> pending request, attorney notified
  admin offers exactly three alternates (re-offers update the same request)
  attorney confirms one (slot re-checked at confirmation) or asks for others

Attorney-initiated
  attorney proposes one new slot for a scheduled case
  admin approves (slot re-checked) or rejects with a reason

Every approved reschedule moves the case to war_room and deletes all of its
juror applications; the affected jurors and the attorney are notified.
At most one pending request exists per case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docket.db.models import (
    AttorneyStatus,
    Case,
    RescheduleInitiator,
    RescheduleRequest,
    RescheduleStatus,
    User,
)
from docket.services import application_service, scheduling_clock, slot_registry, trial_session_service
from docket.services import notification_service as notices
from docket.services.case_access import ensure_owner
from docket.services.case_state_machine import CaseTrigger, apply_transition, record_event
from docket.services.notification_service import notification_service
from docket.services.user_directory import UserDirectory, user_directory
from docket.utils.exceptions import (
    ConflictError,
    NotFoundError,
    PolicyViolation,
    ValidationError,
)
from docket.utils.helpers import format_date, format_time, slot_dict, utcnow
from docket.utils.validators import parse_alternate_slots, require_text

logger = logging.getLogger(__name__)

ATTORNEY_RESCHEDULABLE = (
    AttorneyStatus.war_room,
    AttorneyStatus.awaiting_trial,
    AttorneyStatus.join_trial,
)
ADMIN_OFFERABLE = (
    AttorneyStatus.pending,
    AttorneyStatus.war_room,
    AttorneyStatus.awaiting_trial,
)


@dataclass
class RescheduleOutcome:
    case: Case
    request: Optional[RescheduleRequest]
    affected_jurors: List[int] = field(default_factory=list)


# ============================================================================
# Lookups
# ============================================================================

def get_pending_request(db: Session, case_id: int) -> Optional[RescheduleRequest]:
    return (
        db.query(RescheduleRequest)
        .filter(
            RescheduleRequest.case_id == case_id,
            RescheduleRequest.status == RescheduleStatus.pending,
        )
        .order_by(RescheduleRequest.id.desc())
        .first()
    )


def get_request_or_404(db: Session, request_id: int) -> RescheduleRequest:
    request = db.query(RescheduleRequest).filter(RescheduleRequest.id == request_id).first()
    if request is None:
        raise NotFoundError(f"Reschedule request {request_id} not found", code="REQUEST_NOT_FOUND")
    return request


def list_pending_requests(db: Session, initiator: Optional[RescheduleInitiator] = None) -> List[RescheduleRequest]:
    query = db.query(RescheduleRequest).filter(RescheduleRequest.status == RescheduleStatus.pending)
    if initiator is not None:
        query = query.filter(RescheduleRequest.initiator == initiator)
    return query.order_by(RescheduleRequest.created_at.asc()).all()


def get_reschedule_status(db: Session, case: Case) -> dict:
    request = get_pending_request(db, case.id)
    return {
        "caseId": case.id,
        "rescheduleRequired": bool(case.reschedule_required),
        "currentSlot": slot_dict(case.scheduled_date, case.scheduled_time),
        "request": request,
    }


def _slot_key(slot_date: date, slot_time: time) -> dict:
    return {"date": format_date(slot_date), "time": format_time(slot_time)}


def _commit(db: Session, case: Case) -> None:
    """Commit; the approved-slot unique index backstops a lost race."""
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Slot uniqueness violated while rescheduling case %s", case.id)
        raise ConflictError(
            "The selected time slot is no longer available",
            code="SLOT_UNAVAILABLE",
        )


# ============================================================================
# Shared apply
# ============================================================================

def apply_reschedule(
    db:            Session,
    case:          Case,
    new_date:      date,
    new_time:      time,
    actor:         User,
    juror_notice:  str = notices.CASE_RESCHEDULED,
    description:   Optional[str] = None,
) -> List[int]:
    """
    Moves the case to (new_date, new_time), forces war_room, cancels any
    trial meeting and purges the applicant pool. Returns the ids of jurors
    whose applications were removed. Raises ConflictError SLOT_UNAVAILABLE
    when the slot is taken. The caller commits.
    """
    previous_date, previous_time = case.scheduled_date, case.scheduled_time
    apply_transition(
        db,
        case,
        CaseTrigger.reschedule,
        actor=actor,
        slot_date=new_date,
        slot_time=new_time,
        description=description or (
            f"Rescheduled from {format_date(previous_date)} {format_time(previous_time)} "
            f"to {format_date(new_date)} {format_time(new_time)}"
        ),
    )
    case.original_scheduled_date = previous_date
    case.original_scheduled_time = previous_time
    case.scheduled_date = new_date
    case.scheduled_time = new_time
    case.reschedule_required = False
    trial_session_service.retire_meeting(db, case)

    purged = application_service.purge_for_case(db, case)
    when = f"{format_date(new_date)} at {format_time(new_time)}"
    for item in purged:
        notification_service.send(
            db, item.juror_id, "juror", case.id, juror_notice,
            "Case Rescheduled",
            f'"{case.case_title}" has moved to {when}. Your previous application '
            f"({item.status.value}) was cleared; please re-apply from the job board if you are available.",
        )
    return [item.juror_id for item in purged]


# ============================================================================
# Admin-initiated flow
# ============================================================================

def _open_admin_request(db: Session, case: Case, admin: User) -> RescheduleRequest:
    request = get_pending_request(db, case.id)
    if request is not None:
        if request.initiator != RescheduleInitiator.admin:
            raise ConflictError(
                "An attorney reschedule request is already pending for this case",
                code="RESCHEDULE_PENDING",
                requestId=request.id,
            )
        return request
    request = RescheduleRequest(
        case_id=case.id,
        initiator=RescheduleInitiator.admin,
        requested_by=admin.id,
        original_date=case.scheduled_date,
        original_time=case.scheduled_time,
        alternate_slots=[],
        rounds=0,
    )
    db.add(request)
    return request


def _set_alternates(request: RescheduleRequest, slots: Sequence[Tuple[date, time]]) -> None:
    request.alternate_slots = [_slot_key(d, t) for d, t in slots]
    request.rounds = (request.rounds or 0) + 1


def engage_conflict(
    db:                  Session,
    case:                Case,
    admin:               User,
    conflicting_case_id: Optional[int],
    alternate_slots:     Optional[Sequence[Tuple[date, time]]] = None,
) -> RescheduleRequest:
    """
    Approval found the slot occupied: keep the case pending and open the
    negotiation. The caller commits.
    """
    request = _open_admin_request(db, case, admin)
    request.conflicting_case_id = conflicting_case_id
    if alternate_slots:
        _set_alternates(request, alternate_slots)
    case.reschedule_required = True

    record_event(db, case, "reschedule_requested", f"Slot conflict with case {conflicting_case_id}", admin)
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.CASE_RESCHEDULE_NEEDED,
        "Reschedule Needed",
        f'The requested slot for "{case.case_title}" is no longer available. '
        + ("Please pick one of the alternate slots offered." if alternate_slots
           else "An administrator will offer alternate slots shortly."),
    )
    logger.info("Case %s conflict with case %s; reschedule request opened", case.id, conflicting_case_id)
    return request


def offer_alternate_slots(db: Session, case: Case, admin: User, slots: Optional[list]) -> RescheduleRequest:
    parsed = parse_alternate_slots(slots)
    if case.attorney_status not in ADMIN_OFFERABLE:
        raise PolicyViolation(
            f"Cannot offer alternate slots for a case in status {case.attorney_status.value}",
            code="INVALID_TRANSITION",
        )
    for index, (slot_date, slot_time) in enumerate(parsed):
        availability = slot_registry.is_slot_available(db, slot_date, slot_time, exclude_case_id=case.id)
        if not availability.available:
            raise ConflictError(
                f"Alternate slot {index + 1} is not available",
                code="SLOT_UNAVAILABLE",
                slotIndex=index,
                conflictingCaseId=availability.conflicting_case_id,
            )

    request = _open_admin_request(db, case, admin)
    _set_alternates(request, parsed)
    case.reschedule_required = True

    record_event(db, case, "alternate_slots_offered", f"Round {request.rounds}", admin)
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.CASE_RESCHEDULE_NEEDED,
        "Reschedule Needed",
        f'Please choose one of three alternate slots for "{case.case_title}".',
    )
    db.commit()
    db.refresh(request)
    logger.info("Admin %s offered alternates for case %s (round %s)", admin.id, case.id, request.rounds)
    return request


def confirm_reschedule(
    db:            Session,
    case:          Case,
    attorney:      User,
    selected_date: date,
    selected_time: time,
    directory:     UserDirectory = user_directory,
) -> RescheduleOutcome:
    ensure_owner(case, attorney)
    request = get_pending_request(db, case.id)
    if request is None or request.initiator != RescheduleInitiator.admin or not case.reschedule_required:
        raise PolicyViolation("This case does not require rescheduling", code="NO_RESCHEDULE_PENDING")

    offered = request.alternate_slots or []
    if _slot_key(selected_date, selected_time) not in offered:
        raise ValidationError("Selected slot was not one of the offered alternates", code="SLOT_NOT_OFFERED")

    # Re-check right before committing; the slot may have been taken since the offer
    availability = slot_registry.is_slot_available(db, selected_date, selected_time, exclude_case_id=case.id)
    if not availability.available:
        logger.info(
            "Case %s confirmation lost slot %s %s to case %s",
            case.id, selected_date, selected_time, availability.conflicting_case_id,
        )
        raise ConflictError(
            "The selected time slot is no longer available. Please choose another slot.",
            code="SLOT_UNAVAILABLE",
            conflictingCaseId=availability.conflicting_case_id,
            conflictingCaseTitle=availability.conflicting_case_title,
        )

    affected = apply_reschedule(db, case, selected_date, selected_time, attorney)
    request.status = RescheduleStatus.approved
    request.selected_date = selected_date
    request.selected_time = selected_time
    request.resolved_by = attorney.id
    request.resolved_at = utcnow()

    when = f"{format_date(selected_date)} at {format_time(selected_time)}"
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.RESCHEDULE_CONFIRMED,
        "Reschedule Confirmed",
        f'"{case.case_title}" is confirmed for {when}.',
    )
    notification_service.send_to_user(
        db, directory.first_active_admin(db), case.id, notices.RESCHEDULE_CONFIRMED,
        "Reschedule Confirmed",
        f'The attorney confirmed {when} for "{case.case_title}".',
    )
    _commit(db, case)
    db.refresh(case)
    return RescheduleOutcome(case=case, request=request, affected_jurors=affected)


def request_different_slots(
    db:        Session,
    case:      Case,
    attorney:  User,
    message:   Optional[str],
    directory: UserDirectory = user_directory,
) -> RescheduleRequest:
    ensure_owner(case, attorney)
    text = require_text(message, "message")
    request = get_pending_request(db, case.id)
    if request is None or request.initiator != RescheduleInitiator.admin:
        raise PolicyViolation("This case does not require rescheduling", code="NO_RESCHEDULE_PENDING")

    request.attorney_feedback = text
    record_event(db, case, "different_slots_requested", text, attorney)
    notification_service.send_to_user(
        db, directory.first_active_admin(db), case.id, notices.RESCHEDULE_FEEDBACK,
        "Attorney Requested Different Slots",
        f'Attorney feedback for "{case.case_title}": {text}',
    )
    db.commit()
    db.refresh(request)
    return request


# ============================================================================
# Attorney-initiated flow
# ============================================================================

def request_attorney_reschedule(
    db:        Session,
    case:      Case,
    attorney:  User,
    new_date:  date,
    new_time:  time,
    reason:    Optional[str] = None,
    comments:  Optional[str] = None,
    now:       Optional[datetime] = None,
    directory: UserDirectory = user_directory,
) -> RescheduleRequest:
    ensure_owner(case, attorney)
    if case.attorney_status not in ATTORNEY_RESCHEDULABLE:
        raise PolicyViolation(
            f"Cannot request a reschedule for a case in status {case.attorney_status.value}",
            code="INVALID_TRANSITION",
        )
    if case.scheduled_date is None or case.scheduled_time is None:
        raise PolicyViolation("Case has no scheduled date and time", code="NO_SCHEDULE")

    pending = get_pending_request(db, case.id)
    if pending is not None:
        raise ConflictError(
            "A reschedule request is already pending for this case",
            code="RESCHEDULE_PENDING",
            requestId=pending.id,
        )
    if (new_date, new_time) == (case.scheduled_date, case.scheduled_time):
        raise ValidationError("New slot is the same as the current slot", code="SAME_SLOT")
    now = now or utcnow()
    if scheduling_clock.to_utc(new_date, new_time, case.timezone_offset) <= now:
        raise ValidationError("New slot must be in the future", code="SCHEDULE_IN_PAST")

    request = RescheduleRequest(
        case_id=case.id,
        initiator=RescheduleInitiator.attorney,
        requested_by=attorney.id,
        original_date=case.scheduled_date,
        original_time=case.scheduled_time,
        proposed_date=new_date,
        proposed_time=new_time,
        reason=(reason or "").strip() or None,
        attorney_comments=(comments or "").strip() or None,
        alternate_slots=[],
        rounds=1,
    )
    db.add(request)
    record_event(db, case, "attorney_reschedule_requested", request.reason, attorney)
    notification_service.send_to_users(
        db, directory.active_admins(db), case.id, notices.ATTORNEY_RESCHEDULE_REQUEST,
        "Reschedule Request",
        f'{attorney.full_name} asked to move "{case.case_title}" to '
        f"{format_date(new_date)} at {format_time(new_time)}.",
    )
    db.commit()
    db.refresh(request)
    logger.info("Attorney %s requested reschedule of case %s", attorney.id, case.id)
    return request


def _pending_attorney_request(db: Session, request_id: int) -> RescheduleRequest:
    request = get_request_or_404(db, request_id)
    if request.status != RescheduleStatus.pending:
        raise PolicyViolation(f"Request is already {request.status.value}", code="REQUEST_NOT_PENDING")
    if request.initiator != RescheduleInitiator.attorney:
        raise PolicyViolation(
            "Admin-offered slots are resolved by the attorney",
            code="INVALID_TRANSITION",
        )
    return request


def approve_request(db: Session, request_id: int, admin: User, comments: Optional[str] = None) -> RescheduleOutcome:
    request = _pending_attorney_request(db, request_id)
    case = request.case

    availability = slot_registry.is_slot_available(db, request.proposed_date, request.proposed_time, exclude_case_id=case.id)
    if not availability.available:
        raise ConflictError(
            "The requested time slot is no longer available",
            code="SLOT_UNAVAILABLE",
            conflictingCaseId=availability.conflicting_case_id,
            conflictingCaseTitle=availability.conflicting_case_title,
        )

    affected = apply_reschedule(db, case, request.proposed_date, request.proposed_time, admin)
    request.status = RescheduleStatus.approved
    request.selected_date = request.proposed_date
    request.selected_time = request.proposed_time
    request.admin_comments = (comments or "").strip() or None
    request.resolved_by = admin.id
    request.resolved_at = utcnow()

    notification_service.send_to_user(
        db, case.attorney, case.id, notices.RESCHEDULE_APPROVED,
        "Reschedule Approved",
        f'Your reschedule request for "{case.case_title}" was approved. '
        f"New slot: {format_date(case.scheduled_date)} at {format_time(case.scheduled_time)}.",
    )
    _commit(db, case)
    db.refresh(case)
    logger.info("Admin %s approved reschedule request %s (%s jurors cleared)", admin.id, request.id, len(affected))
    return RescheduleOutcome(case=case, request=request, affected_jurors=affected)


def reject_request(db: Session, request_id: int, admin: User, comments: Optional[str]) -> RescheduleRequest:
    text = require_text(comments, "adminComments")
    request = _pending_attorney_request(db, request_id)
    case = request.case

    request.status = RescheduleStatus.rejected
    request.admin_comments = text
    request.resolved_by = admin.id
    request.resolved_at = utcnow()
    record_event(db, case, "attorney_reschedule_rejected", text, admin)
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.RESCHEDULE_REJECTED,
        "Reschedule Request Declined",
        f'Your reschedule request for "{case.case_title}" was declined: {text}',
    )
    db.commit()
    db.refresh(request)
    return request


# ============================================================================
# Admin-direct
# ============================================================================

def reschedule_by_admin(
    db:       Session,
    case:     Case,
    admin:    User,
    new_date: date,
    new_time: time,
    reason:   Optional[str],
) -> RescheduleOutcome:
    text = require_text(reason, "reason")
    pending = get_pending_request(db, case.id)
    if pending is not None:
        raise ConflictError(
            "Resolve the pending reschedule request first",
            code="RESCHEDULE_PENDING",
            requestId=pending.id,
        )

    affected = apply_reschedule(
        db, case, new_date, new_time, admin,
        juror_notice=notices.ADMIN_CASE_RESCHEDULED,
        description=f"Rescheduled by administrator: {text}",
    )
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.ADMIN_CASE_RESCHEDULED,
        "Case Rescheduled by Administrator",
        f'"{case.case_title}" was moved to {format_date(new_date)} at {format_time(new_time)}. Reason: {text}',
    )
    _commit(db, case)
    db.refresh(case)
    return RescheduleOutcome(case=case, request=None, affected_jurors=affected)
