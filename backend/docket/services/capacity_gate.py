"""
services/capacity_gate.py

Juror headcount rules for a case.

  * approving one more juror needs approved < min(required_jurors, ceiling)
  * submitting the war room needs floor <= approved <= ceiling
  * a batch that does not fit in the remaining slots is refused in full

The gate only reads; call sites mutate application rows after it allows.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from docket.core.config import settings
from docket.db.models import ApplicationStatus, Case, JurorApplication
from docket.utils.exceptions import PolicyViolation


@dataclass
class CapacityDecision:
    allowed: bool
    slots_remaining: int
    approved_count: int
    ceiling: int


@dataclass
class SubmitDecision:
    allowed: bool
    approved_count: int
    reason: Optional[str] = None
    code: Optional[str] = None


def approved_count(db: Session, case_id: int) -> int:
    return (
        db.query(JurorApplication)
        .filter(
            JurorApplication.case_id == case_id,
            JurorApplication.status == ApplicationStatus.approved,
        )
        .count()
    )


def juror_ceiling(case: Case) -> int:
    required = case.required_jurors or settings.DEFAULT_REQUIRED_JURORS
    return min(required, settings.JUROR_CEILING)


def can_approve(db: Session, case: Case) -> CapacityDecision:
    count = approved_count(db, case.id)
    ceiling = juror_ceiling(case)
    remaining = max(ceiling - count, 0)
    return CapacityDecision(
        allowed=count < ceiling,
        slots_remaining=remaining,
        approved_count=count,
        ceiling=ceiling,
    )


def can_submit_for_trial(db: Session, case: Case) -> SubmitDecision:
    count = approved_count(db, case.id)
    floor, ceiling = settings.JUROR_FLOOR, settings.JUROR_CEILING
    if count < floor:
        return SubmitDecision(
            allowed=False,
            approved_count=count,
            reason=f"At least {floor} approved jurors are required to submit (currently {count})",
            code="INSUFFICIENT_JURORS",
        )
    if count > ceiling:
        return SubmitDecision(
            allowed=False,
            approved_count=count,
            reason=f"At most {ceiling} approved jurors are allowed (currently {count})",
            code="TOO_MANY_JURORS",
        )
    return SubmitDecision(allowed=True, approved_count=count)


def check_batch(db: Session, case: Case, batch_size: int) -> CapacityDecision:
    """Raises PolicyViolation unless the whole batch fits."""
    decision = can_approve(db, case)
    if decision.slots_remaining <= 0:
        raise PolicyViolation(
            f"This case already has {decision.approved_count} approved jurors",
            code="JURORS_FULL",
            slotsRemaining=0,
            approvedCount=decision.approved_count,
        )
    if batch_size > decision.slots_remaining:
        raise PolicyViolation(
            f"Can only approve {decision.slots_remaining} more juror(s)",
            code="EXCEEDS_REQUIRED_JURORS",
            slotsRemaining=decision.slots_remaining,
            approvedCount=decision.approved_count,
        )
    return decision
