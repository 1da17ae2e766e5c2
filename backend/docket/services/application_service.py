"""
services/application_service.py

Juror applications: apply, withdraw, attorney/admin review, batch approval
and the purge that runs whenever a case is rescheduled.

Approvals go through the capacity gate first; a batch that does not fit is
refused in full.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docket.db.models import (
    AdminApprovalStatus,
    ApplicationStatus,
    AttorneyStatus,
    Case,
    JurorApplication,
    User,
)
from docket.services import capacity_gate
from docket.services.case_access import ensure_owner_or_admin
from docket.services.case_state_machine import record_event
from docket.services.notification_service import (
    APPLICATION_APPROVED,
    APPLICATION_REJECTED,
    notification_service,
)
from docket.utils.exceptions import (
    ConflictError,
    NotFoundError,
    PolicyViolation,
    UnauthorizedError,
    ValidationError,
)
from docket.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PurgedApplication:
    application_id: int
    juror_id: int
    status: ApplicationStatus


def _accepting_applications(case: Case) -> bool:
    return (
        case.admin_approval_status == AdminApprovalStatus.approved
        and case.attorney_status == AttorneyStatus.war_room
        and not case.is_deleted
    )


def get_application_or_404(db: Session, case: Case, application_id: int) -> JurorApplication:
    application = (
        db.query(JurorApplication)
        .filter(JurorApplication.id == application_id, JurorApplication.case_id == case.id)
        .first()
    )
    if application is None:
        raise NotFoundError(f"Application {application_id} not found", code="APPLICATION_NOT_FOUND")
    return application


def list_applications(
    db:     Session,
    case:   Case,
    status: Optional[ApplicationStatus] = None,
) -> List[JurorApplication]:
    query = db.query(JurorApplication).filter(JurorApplication.case_id == case.id)
    if status is not None:
        query = query.filter(JurorApplication.status == status)
    return query.order_by(JurorApplication.applied_at.asc(), JurorApplication.id.asc()).all()


# ============================================================================
# Juror actions
# ============================================================================

def apply_to_case(db: Session, case: Case, juror: User, comments: Optional[str] = None) -> JurorApplication:
    if not _accepting_applications(case):
        raise PolicyViolation("This case is not accepting juror applications", code="CASE_NOT_ACCEPTING")

    existing = (
        db.query(JurorApplication)
        .filter(JurorApplication.case_id == case.id, JurorApplication.juror_id == juror.id)
        .first()
    )
    if existing is not None:
        raise ConflictError(
            "You have already applied to this case",
            code="ALREADY_APPLIED",
            applicationId=existing.id,
        )

    application = JurorApplication(case_id=case.id, juror_id=juror.id, comments=comments)
    db.add(application)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("You have already applied to this case", code="ALREADY_APPLIED")
    db.refresh(application)
    logger.info("Juror %s applied to case %s", juror.id, case.id)
    return application


def withdraw_application(db: Session, case: Case, application_id: int, juror: User) -> JurorApplication:
    application = get_application_or_404(db, case, application_id)
    if application.juror_id != juror.id:
        raise UnauthorizedError("Not your application")
    if application.status not in (ApplicationStatus.pending, ApplicationStatus.approved):
        raise PolicyViolation(
            f"Cannot withdraw an application that is {application.status.value}",
            code="APPLICATION_NOT_ACTIVE",
        )
    application.status = ApplicationStatus.withdrawn
    application.reviewed_at = utcnow()
    db.commit()
    db.refresh(application)
    return application


# ============================================================================
# Review
# ============================================================================

def _require_pending(application: JurorApplication) -> None:
    if application.status != ApplicationStatus.pending:
        raise PolicyViolation(
            f"Application is already {application.status.value}",
            code="APPLICATION_NOT_PENDING",
        )


def _require_reviewable_case(case: Case) -> None:
    if not _accepting_applications(case):
        raise PolicyViolation(
            "Juror roster can only change while the case is in the war room",
            code="CASE_NOT_ACCEPTING",
        )


def _mark(application: JurorApplication, status: ApplicationStatus, actor: User) -> None:
    application.status = status
    application.reviewed_at = utcnow()
    application.reviewed_by = actor.id


def approve_application(db: Session, case: Case, application_id: int, actor: User) -> JurorApplication:
    ensure_owner_or_admin(case, actor)
    _require_reviewable_case(case)
    application = get_application_or_404(db, case, application_id)
    _require_pending(application)

    decision = capacity_gate.can_approve(db, case)
    if not decision.allowed:
        raise PolicyViolation(
            f"This case already has {decision.approved_count} approved jurors",
            code="JURORS_FULL",
            slotsRemaining=0,
            approvedCount=decision.approved_count,
        )

    _mark(application, ApplicationStatus.approved, actor)
    notification_service.send_to_user(
        db, application.juror, case.id, APPLICATION_APPROVED,
        "Application Approved",
        f'You have been selected as a juror for "{case.case_title}".',
    )
    db.commit()
    db.refresh(application)
    logger.info("Application %s approved for case %s (%s slots left)", application.id, case.id, decision.slots_remaining - 1)
    return application


def reject_application(db: Session, case: Case, application_id: int, actor: User, comments: Optional[str] = None) -> JurorApplication:
    ensure_owner_or_admin(case, actor)
    application = get_application_or_404(db, case, application_id)
    _require_pending(application)

    _mark(application, ApplicationStatus.rejected, actor)
    if comments:
        application.comments = comments
    notification_service.send_to_user(
        db, application.juror, case.id, APPLICATION_REJECTED,
        "Application Update",
        f'Your application for "{case.case_title}" was not selected.',
    )
    db.commit()
    db.refresh(application)
    return application


def batch_approve(db: Session, case: Case, actor: User, application_ids: Iterable[int]) -> List[JurorApplication]:
    """All-or-nothing: nothing is approved when the batch exceeds the remaining slots."""
    ensure_owner_or_admin(case, actor)
    ids = list(dict.fromkeys(application_ids or []))
    if not ids:
        raise ValidationError("applicationIds must be a non-empty list", code="MISSING_FIELD", field="applicationIds")
    _require_reviewable_case(case)

    applications = (
        db.query(JurorApplication)
        .filter(JurorApplication.case_id == case.id, JurorApplication.id.in_(ids))
        .all()
    )
    found = {a.id: a for a in applications}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError("Some applications were not found for this case", code="APPLICATION_NOT_FOUND", applicationIds=missing)
    not_pending = [a.id for a in applications if a.status != ApplicationStatus.pending]
    if not_pending:
        raise PolicyViolation("Only pending applications can be approved", code="APPLICATION_NOT_PENDING", applicationIds=not_pending)

    capacity_gate.check_batch(db, case, len(ids))

    approved = []
    for application_id in ids:
        application = found[application_id]
        _mark(application, ApplicationStatus.approved, actor)
        notification_service.send_to_user(
            db, application.juror, case.id, APPLICATION_APPROVED,
            "Application Approved",
            f'You have been selected as a juror for "{case.case_title}".',
        )
        approved.append(application)

    record_event(db, case, "jurors_batch_approved", f"{len(approved)} juror(s) approved", actor)
    db.commit()
    logger.info("Batch approved %s applications for case %s", len(approved), case.id)
    return approved


# ============================================================================
# Reschedule purge
# ============================================================================

def purge_for_case(db: Session, case: Case) -> List[PurgedApplication]:
    """
    Deletes every application of the case (all statuses). Returns what was
    removed so the jurors can be notified. The caller commits.
    """
    rows = db.query(JurorApplication).filter(JurorApplication.case_id == case.id).all()
    purged = [PurgedApplication(application_id=r.id, juror_id=r.juror_id, status=r.status) for r in rows]
    for row in rows:
        db.delete(row)
    if purged:
        logger.info("Purged %s juror applications for case %s", len(purged), case.id)
    return purged
