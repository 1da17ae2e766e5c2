"""
services/case_service.py

Case intake, reads, cancellation and the admin review decision.

Review is three-way:
    approved              slot free -> case approved and moved to war_room
    rejected              final rejection with a reason
    reschedule_requested  slot taken (or a scheduling-conflict rejection with
                          suggested slots) -> negotiation opened, case pending
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docket.core.config import settings
from docket.db.models import (
    ApplicationStatus,
    AttorneyStatus,
    Case,
    JurorApplication,
    RescheduleRequest,
    User,
    UserRole,
)
from docket.services import reschedule_service, scheduling_clock, slot_registry
from docket.services import notification_service as notices
from docket.services.case_access import ensure_owner_or_admin, is_owner
from docket.services.case_state_machine import (
    CaseTrigger,
    apply_transition,
    open_trial_if_due,
    raise_for_refusal,
    record_event,
    validate_transition,
)
from docket.services.notification_service import notification_service
from docket.services.scheduling_clock import TimezoneTable, default_timezone_table
from docket.utils.exceptions import UnauthorizedError, ValidationError
from docket.utils.helpers import format_date, format_time, utcnow
from docket.utils.validators import (
    CASE_JURISDICTIONS,
    CASE_TIERS,
    CASE_TYPES,
    normalize_time,
    parse_alternate_slots,
    parse_date,
    require_choice,
    require_text,
)

logger = logging.getLogger(__name__)

SCHEDULING_CONFLICT = "scheduling_conflict"


@dataclass
class ReviewOutcome:
    decision: str
    case: Case
    request: Optional[RescheduleRequest] = None


# ============================================================================
# Create
# ============================================================================

def create_case(
    db:               Session,
    attorney:         User,
    case_title:       Optional[str],
    case_type:        Optional[str],
    case_jurisdiction: Optional[str],
    case_tier:        Optional[str],
    state:            Optional[str],
    county:           Optional[str],
    scheduled_date:   Optional[str],
    scheduled_time:   Optional[str],
    case_description: Optional[str] = None,
    required_jurors:  Optional[int] = None,
    timezone_offset:  Optional[int] = None,
    now:              Optional[datetime] = None,
    timezones:        Optional[TimezoneTable] = None,
) -> Case:
    title = require_text(case_title, "caseTitle", min_length=5)
    case_type = require_choice(case_type, "caseType", CASE_TYPES)
    case_jurisdiction = require_choice(case_jurisdiction, "caseJurisdiction", CASE_JURISDICTIONS)
    case_tier = require_choice(case_tier, "caseTier", CASE_TIERS)
    state = require_text(state, "state")
    county = require_text(county, "county")
    slot_date = parse_date(scheduled_date, "scheduledDate")
    slot_time = normalize_time(scheduled_time, "scheduledTime")

    if required_jurors is None:
        required_jurors = settings.DEFAULT_REQUIRED_JURORS
    if not settings.JUROR_FLOOR <= required_jurors <= settings.JUROR_CEILING:
        raise ValidationError(
            f"requiredJurors must be between {settings.JUROR_FLOOR} and {settings.JUROR_CEILING}",
            code="INVALID_REQUIRED_JURORS",
            field="requiredJurors",
        )

    if timezone_offset is None:
        table = timezones or default_timezone_table()
        timezone_offset = table.offset_for(attorney.state or state)
    elif not -720 <= timezone_offset <= 840:
        raise ValidationError("timezoneOffset out of range", code="INVALID_TIMEZONE", field="timezoneOffset")

    now = now or utcnow()
    starts_at = scheduling_clock.to_utc(slot_date, slot_time, timezone_offset)
    if (starts_at - now).total_seconds() < settings.CASE_SCHEDULE_BUFFER_MINUTES * 60:
        raise ValidationError(
            f"Scheduled time must be at least {settings.CASE_SCHEDULE_BUFFER_MINUTES} minutes in the future",
            code="SCHEDULE_IN_PAST",
        )

    case = Case(
        attorney_id=attorney.id,
        case_title=title,
        case_type=case_type,
        case_jurisdiction=case_jurisdiction,
        case_tier=case_tier,
        state=state,
        county=county,
        case_description=(case_description or "").strip() or None,
        scheduled_date=slot_date,
        scheduled_time=slot_time,
        timezone_offset=timezone_offset,
        required_jurors=required_jurors,
    )
    db.add(case)
    db.flush()
    record_event(db, case, "case_created", f"Scheduled {format_date(slot_date)} {format_time(slot_time)}", attorney)
    db.commit()
    db.refresh(case)
    logger.info("Case %s created by attorney %s (offset=%s)", case.id, attorney.id, timezone_offset)
    return case


# ============================================================================
# Read
# ============================================================================

def can_view(db: Session, case: Case, user: User) -> bool:
    if user.role == UserRole.admin or is_owner(case, user):
        return True
    if user.role == UserRole.juror:
        if case.attorney_status == AttorneyStatus.war_room:
            return True
        applied = (
            db.query(JurorApplication.id)
            .filter(JurorApplication.case_id == case.id, JurorApplication.juror_id == user.id)
            .first()
        )
        return applied is not None
    return False


def get_case_for_user(db: Session, case: Case, user: User, now: Optional[datetime] = None) -> Case:
    if not can_view(db, case, user):
        raise UnauthorizedError("Not authorized to access this case")
    if open_trial_if_due(db, case, now):
        db.commit()
        db.refresh(case)
    return case


def list_cases_for_user(
    db:     Session,
    user:   User,
    status: Optional[AttorneyStatus] = None,
) -> List[Case]:
    query = db.query(Case).filter(Case.is_deleted == False)  # noqa: E712
    if user.role == UserRole.attorney:
        query = query.filter(Case.attorney_id == user.id)
    elif user.role == UserRole.juror:
        applied = db.query(JurorApplication.case_id).filter(JurorApplication.juror_id == user.id)
        query = query.filter(or_(Case.attorney_status == AttorneyStatus.war_room, Case.id.in_(applied)))
    if status is not None:
        query = query.filter(Case.attorney_status == status)
    return query.order_by(Case.scheduled_date.asc(), Case.scheduled_time.asc(), Case.id.asc()).all()


def approved_juror_ids(db: Session, case: Case) -> List[int]:
    rows = (
        db.query(JurorApplication.juror_id)
        .filter(JurorApplication.case_id == case.id, JurorApplication.status == ApplicationStatus.approved)
        .all()
    )
    return [r[0] for r in rows]


# ============================================================================
# Cancel / delete
# ============================================================================

def cancel_case(db: Session, case: Case, actor: User) -> Case:
    """Soft delete: state machine cancel, then hide the row."""
    ensure_owner_or_admin(case, actor)
    apply_transition(db, case, CaseTrigger.cancel, actor=actor, description="Case cancelled")
    case.is_deleted = True
    case.deleted_at = utcnow()
    db.commit()
    db.refresh(case)
    logger.info("Case %s cancelled by %s", case.id, actor.id)
    return case


# ============================================================================
# Slot check
# ============================================================================

def check_slot(
    db:        Session,
    case:      Case,
    slot_date: Optional[date] = None,
    slot_time: Optional[time] = None,
) -> slot_registry.SlotAvailability:
    slot_date = slot_date or case.scheduled_date
    slot_time = slot_time or case.scheduled_time
    if slot_date is None or slot_time is None:
        raise ValidationError("Case has no scheduled date and time", code="NO_SCHEDULE")
    return slot_registry.is_slot_available(db, slot_date, slot_time, exclude_case_id=case.id)


# ============================================================================
# Admin review
# ============================================================================

def review_case(
    db:               Session,
    case:             Case,
    admin:            User,
    decision:         str,
    comments:         Optional[str] = None,
    rejection_reason: Optional[str] = None,
    alternate_slots:  Optional[Sequence] = None,
) -> ReviewOutcome:
    decision = (decision or "").strip().lower()
    if decision not in ("approve", "reject"):
        raise ValidationError("decision must be 'approve' or 'reject'", code="INVALID_CHOICE", field="decision")

    parsed_slots = parse_alternate_slots(list(alternate_slots)) if alternate_slots else None

    if decision == "approve":
        return _approve(db, case, admin, comments, parsed_slots)

    reason = require_text(rejection_reason, "rejectionReason")
    if reason == SCHEDULING_CONFLICT and parsed_slots:
        result = validate_transition(db, case, CaseTrigger.reject)
        raise_for_refusal(result)
        availability = check_slot(db, case)
        request = reschedule_service.engage_conflict(
            db, case, admin, availability.conflicting_case_id, parsed_slots,
        )
        case.admin_comments = comments
        db.commit()
        db.refresh(case)
        return ReviewOutcome(decision="reschedule_requested", case=case, request=request)

    apply_transition(db, case, CaseTrigger.reject, actor=admin, description=reason)
    case.rejection_reason = reason
    case.admin_comments = comments
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.CASE_REJECTED,
        "Case Not Approved",
        f'"{case.case_title}" was not approved: {reason}',
    )
    db.commit()
    db.refresh(case)
    logger.info("Case %s rejected by admin %s", case.id, admin.id)
    return ReviewOutcome(decision="rejected", case=case)


def _approve(db: Session, case: Case, admin: User, comments: Optional[str], parsed_slots) -> ReviewOutcome:
    result = validate_transition(db, case, CaseTrigger.approve)
    if not result.valid and result.code == "SLOT_UNAVAILABLE":
        return _branch_to_reschedule(db, case, admin, comments, parsed_slots, result.refusal.context.get("conflictingCaseId"))
    raise_for_refusal(result)

    apply_transition(db, case, CaseTrigger.approve, actor=admin, description=comments or "Approved")
    case.admin_comments = comments
    case.reschedule_required = False
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.CASE_APPROVED,
        "Case Approved",
        f'"{case.case_title}" was approved and is now open in the war room.',
    )
    try:
        db.commit()
    except IntegrityError:
        # Another approval took the slot between the check and the commit
        db.rollback()
        db.refresh(case)
        conflict = slot_registry.find_conflicting_case(db, case.scheduled_date, case.scheduled_time, case.id)
        return _branch_to_reschedule(db, case, admin, comments, parsed_slots, conflict.id if conflict else None)
    db.refresh(case)
    logger.info("Case %s approved by admin %s", case.id, admin.id)
    return ReviewOutcome(decision="approved", case=case)


def _branch_to_reschedule(db, case, admin, comments, parsed_slots, conflicting_case_id) -> ReviewOutcome:
    request = reschedule_service.engage_conflict(db, case, admin, conflicting_case_id, parsed_slots)
    case.admin_comments = comments
    db.commit()
    db.refresh(case)
    return ReviewOutcome(decision="reschedule_requested", case=case, request=request)
