"""
services/case_state_machine.py

Case lifecycle as one explicit transition table.

Every legal move is a ``Transition`` keyed by (source status, trigger) with
its guard functions. Guards return a ``Refusal`` or None; a failed guard
never raises from ``validate_transition``: the caller gets
``TransitionResult(valid=False, message=...)``. ``apply_transition`` is the
only place that writes ``attorney_status`` / ``admin_approval_status``.

    pending --approve--> war_room            (slot free; admin status approved)
    pending --reject---> pending             (admin status rejected, terminal)
    war_room --submit_war_room--> awaiting_trial   (5..7 approved jurors)
    awaiting_trial --open_trial--> join_trial      (scheduled - 15 min reached)
    join_trial --start_trial--> in_trial
    join_trial/in_trial --end_trial--> view_details
    join_trial/in_trial/view_details --complete--> completed
    pending/war_room/awaiting_trial/join_trial --reschedule--> war_room
    pending/war_room/awaiting_trial --cancel--> cancelled
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from docket.db.models import (
    AdminApprovalStatus,
    AttorneyStatus,
    Case,
    CaseEvent,
    User,
)
from docket.services import capacity_gate, scheduling_clock, slot_registry
from docket.utils.exceptions import ConflictError, PolicyViolation
from docket.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class CaseTrigger(str, enum.Enum):
    approve = "approve"
    reject = "reject"
    reschedule = "reschedule"
    submit_war_room = "submit_war_room"
    open_trial = "open_trial"
    start_trial = "start_trial"
    end_trial = "end_trial"
    complete = "complete"
    cancel = "cancel"


UNDELETABLE_STATUSES = frozenset({
    AttorneyStatus.join_trial,
    AttorneyStatus.in_trial,
    AttorneyStatus.view_details,
    AttorneyStatus.completed,
})

# Admin approval status written alongside the attorney status
_ADMIN_STATUS_EFFECT = {
    CaseTrigger.approve: AdminApprovalStatus.approved,
    CaseTrigger.reschedule: AdminApprovalStatus.approved,
    CaseTrigger.reject: AdminApprovalStatus.rejected,
    CaseTrigger.cancel: AdminApprovalStatus.cancelled,
}


# ============================================================================
# Guard plumbing
# ============================================================================

@dataclass
class Refusal:
    message: str
    code: str
    status_code: int = 400
    context: dict = field(default_factory=dict)


@dataclass
class TransitionContext:
    db:        Session
    case:      Case
    now:       datetime
    slot_date: Optional[date] = None
    slot_time: Optional[time] = None

    @property
    def target_slot(self) -> Tuple[Optional[date], Optional[time]]:
        if self.slot_date is not None and self.slot_time is not None:
            return self.slot_date, self.slot_time
        return self.case.scheduled_date, self.case.scheduled_time


Guard = Callable[[TransitionContext], Optional[Refusal]]


def _approval_pending(ctx: TransitionContext) -> Optional[Refusal]:
    status = ctx.case.admin_approval_status
    if status != AdminApprovalStatus.pending:
        return Refusal(f"Case approval is already {status.value}", code="ALREADY_REVIEWED")
    return None


def _not_rejected(ctx: TransitionContext) -> Optional[Refusal]:
    if ctx.case.admin_approval_status == AdminApprovalStatus.rejected:
        return Refusal("Case was rejected by an administrator", code="CASE_REJECTED")
    return None


def _has_schedule(ctx: TransitionContext) -> Optional[Refusal]:
    slot_date, slot_time = ctx.target_slot
    if slot_date is None or slot_time is None:
        return Refusal("Case has no scheduled date and time", code="NO_SCHEDULE")
    return None


def _slot_available(ctx: TransitionContext) -> Optional[Refusal]:
    slot_date, slot_time = ctx.target_slot
    availability = slot_registry.is_slot_available(ctx.db, slot_date, slot_time, exclude_case_id=ctx.case.id)
    if availability.available:
        return None
    if availability.conflicting_case_id is not None:
        return Refusal(
            "The selected time slot is no longer available",
            code="SLOT_UNAVAILABLE",
            status_code=409,
            context={
                "conflictingCaseId": availability.conflicting_case_id,
                "conflictingCaseTitle": availability.conflicting_case_title,
            },
        )
    return Refusal(
        "The selected time slot is blocked by an administrator",
        code="SLOT_UNAVAILABLE",
        status_code=409,
        context={"blockedBy": availability.blocked_by},
    )


def _jurors_within_bounds(ctx: TransitionContext) -> Optional[Refusal]:
    decision = capacity_gate.can_submit_for_trial(ctx.db, ctx.case)
    if decision.allowed:
        return None
    return Refusal(decision.reason, code=decision.code, context={"approvedCount": decision.approved_count})


def _join_window_open(ctx: TransitionContext) -> Optional[Refusal]:
    window = scheduling_clock.join_window(ctx.case, ctx.now)
    if window is None:
        return Refusal("Case has no scheduled date and time", code="NO_SCHEDULE")
    if not window.is_open:
        return Refusal(
            "Trial is not open yet",
            code="TOO_EARLY",
            status_code=403,
            context={
                "scheduledTime": window.scheduled_at.isoformat(),
                "canJoinAt": window.opens_at.isoformat(),
                "minutesUntilJoin": window.minutes_until_open,
            },
        )
    return None


# ============================================================================
# Transition table
# ============================================================================

@dataclass(frozen=True)
class Transition:
    source:  AttorneyStatus
    trigger: CaseTrigger
    target:  AttorneyStatus
    guards:  Tuple[Guard, ...] = ()
    # reachable through the generic PUT /cases/{id}/status
    manual:  bool = False


_S = AttorneyStatus
_T = CaseTrigger

TRANSITIONS: List[Transition] = [
    Transition(_S.pending, _T.approve, _S.war_room, (_approval_pending, _has_schedule, _slot_available)),
    Transition(_S.pending, _T.reject, _S.pending, (_approval_pending,)),
    Transition(_S.pending, _T.reschedule, _S.war_room, (_approval_pending, _has_schedule, _slot_available)),
    Transition(_S.war_room, _T.submit_war_room, _S.awaiting_trial, (_jurors_within_bounds,)),
    Transition(_S.awaiting_trial, _T.open_trial, _S.join_trial, (_join_window_open,), manual=True),
    Transition(_S.join_trial, _T.start_trial, _S.in_trial),
    Transition(_S.join_trial, _T.end_trial, _S.view_details, manual=True),
    Transition(_S.in_trial, _T.end_trial, _S.view_details, manual=True),
    Transition(_S.join_trial, _T.complete, _S.completed, manual=True),
    Transition(_S.in_trial, _T.complete, _S.completed, manual=True),
    Transition(_S.view_details, _T.complete, _S.completed, manual=True),
    Transition(_S.war_room, _T.reschedule, _S.war_room, (_has_schedule, _slot_available)),
    Transition(_S.awaiting_trial, _T.reschedule, _S.war_room, (_has_schedule, _slot_available)),
    Transition(_S.join_trial, _T.reschedule, _S.war_room, (_has_schedule, _slot_available)),
    Transition(_S.pending, _T.cancel, _S.cancelled, (_not_rejected,), manual=True),
    Transition(_S.war_room, _T.cancel, _S.cancelled, manual=True),
    Transition(_S.awaiting_trial, _T.cancel, _S.cancelled, manual=True),
]

TABLE: Dict[Tuple[AttorneyStatus, CaseTrigger], Transition] = {
    (t.source, t.trigger): t for t in TRANSITIONS
}


@dataclass
class TransitionResult:
    valid:      bool
    message:    str = ""
    code:       Optional[str] = None
    transition: Optional[Transition] = None
    refusal:    Optional[Refusal] = None

    @property
    def target(self) -> Optional[AttorneyStatus]:
        return self.transition.target if self.transition else None

    def as_dict(self) -> dict:
        body = {"valid": self.valid, "message": self.message}
        if self.code:
            body["code"] = self.code
        if self.refusal is not None:
            body.update(self.refusal.context)
        return body


def _refuse(refusal: Refusal, transition: Optional[Transition] = None) -> TransitionResult:
    return TransitionResult(
        valid=False,
        message=refusal.message,
        code=refusal.code,
        transition=transition,
        refusal=refusal,
    )


# ============================================================================
# Validate / apply
# ============================================================================

def validate_transition(
    db:        Session,
    case:      Case,
    trigger:   CaseTrigger,
    now:       Optional[datetime] = None,
    slot_date: Optional[date] = None,
    slot_time: Optional[time] = None,
) -> TransitionResult:
    source = case.attorney_status
    if case.is_deleted:
        return _refuse(Refusal("Case has been deleted", code="CASE_DELETED"))

    transition = TABLE.get((source, trigger))
    if transition is None:
        if trigger == CaseTrigger.cancel and source in UNDELETABLE_STATUSES:
            return _refuse(Refusal(
                "Cannot delete case in current state. Please contact support.",
                code="CASE_UNDELETABLE",
            ))
        return _refuse(Refusal(
            f"Cannot {trigger.value.replace('_', ' ')} a case in status {source.value}",
            code="INVALID_TRANSITION",
        ))

    ctx = TransitionContext(db=db, case=case, now=now or utcnow(), slot_date=slot_date, slot_time=slot_time)
    for guard in transition.guards:
        refusal = guard(ctx)
        if refusal is not None:
            return _refuse(refusal, transition)

    return TransitionResult(valid=True, transition=transition)


def raise_for_refusal(result: TransitionResult) -> None:
    if result.valid:
        return
    refusal = result.refusal or Refusal(result.message, code=result.code or "INVALID_TRANSITION")
    if refusal.status_code == 409:
        raise ConflictError(refusal.message, code=refusal.code, **refusal.context)
    raise PolicyViolation(refusal.message, code=refusal.code, status_code=refusal.status_code, **refusal.context)


def apply_transition(
    db:          Session,
    case:        Case,
    trigger:     CaseTrigger,
    actor:       Optional[User] = None,
    now:         Optional[datetime] = None,
    slot_date:   Optional[date] = None,
    slot_time:   Optional[time] = None,
    description: Optional[str] = None,
) -> Transition:
    """
    Validates and executes a transition. Raises PolicyViolation (or
    ConflictError for slot guards) with the refusal when it is not legal.
    The caller commits.
    """
    now = now or utcnow()
    result = validate_transition(db, case, trigger, now=now, slot_date=slot_date, slot_time=slot_time)
    raise_for_refusal(result)

    transition = result.transition
    previous = case.attorney_status
    case.attorney_status = transition.target

    admin_status = _ADMIN_STATUS_EFFECT.get(trigger)
    if admin_status is not None and case.admin_approval_status != admin_status:
        case.admin_approval_status = admin_status
        if admin_status == AdminApprovalStatus.approved:
            case.approved_at = now
            case.approved_by = actor.id if actor is not None else None

    record_event(
        db,
        case,
        event_type=f"case_{trigger.value}",
        description=description or f"{previous.value} -> {transition.target.value}",
        actor=actor,
    )
    logger.info(
        "Case %s transition %s: %s -> %s (actor=%s)",
        case.id, trigger.value, previous.value, transition.target.value,
        actor.id if actor is not None else None,
    )
    return transition


def request_status(
    db:     Session,
    case:   Case,
    target: AttorneyStatus,
    actor:  Optional[User] = None,
    now:    Optional[datetime] = None,
) -> TransitionResult:
    """
    Generic status change: picks the manual transition from the current
    status to ``target``. Returns the (possibly refused) result; applies it
    when valid.
    """
    if target != AttorneyStatus.join_trial:
        open_trial_if_due(db, case, now)
    source = case.attorney_status
    candidates = [t for t in TRANSITIONS if t.source == source and t.target == target and t.manual]
    if not candidates:
        if target == AttorneyStatus.cancelled and source in UNDELETABLE_STATUSES:
            return _refuse(Refusal(
                "Cannot delete case in current state. Please contact support.",
                code="CASE_UNDELETABLE",
            ))
        return _refuse(Refusal(
            f"Cannot transition from {source.value} to {target.value}",
            code="INVALID_TRANSITION",
        ))

    result = validate_transition(db, case, candidates[0].trigger, now=now)
    if result.valid:
        apply_transition(db, case, candidates[0].trigger, actor=actor, now=now)
    return result


def open_trial_if_due(db: Session, case: Case, now: Optional[datetime] = None) -> bool:
    """
    Lazy time gate: moves awaiting_trial -> join_trial once the join window
    has opened. Returns True when the status changed.
    """
    if case.attorney_status != AttorneyStatus.awaiting_trial:
        return False
    result = validate_transition(db, case, CaseTrigger.open_trial, now=now)
    if not result.valid:
        return False
    apply_transition(db, case, CaseTrigger.open_trial, now=now, description="Join window opened")
    return True


def allowed_triggers(case: Case) -> List[str]:
    return [t.trigger.value for t in TRANSITIONS if t.source == case.attorney_status]


def record_event(
    db:          Session,
    case:        Case,
    event_type:  str,
    description: Optional[str] = None,
    actor:       Optional[User] = None,
) -> CaseEvent:
    event = CaseEvent(
        case_id=case.id,
        event_type=event_type,
        description=description,
        actor_id=actor.id if actor is not None else None,
        actor_role=actor.role.value if actor is not None else None,
    )
    db.add(event)
    return event
