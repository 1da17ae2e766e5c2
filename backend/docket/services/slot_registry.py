"""
services/slot_registry.py

Answers "is this (date, time) slot free?" and manages admin slot blocks.

A slot is taken when another approved, non-deleted case holds exactly the same
stored date and wall-clock time, or when an admin block covers it. There is no
timezone normalization or duration overlap here; callers pass normalized
values.

Block/unblock broadcasts are the caller's job (see notification_service).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docket.db.models import AdminApprovalStatus, Case, SlotBlock, User
from docket.utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class SlotAvailability:
    available: bool
    conflicting_case_id: Optional[int] = None
    conflicting_case_title: Optional[str] = None
    blocked_by: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "available": self.available,
            "conflictingCaseId": self.conflicting_case_id,
            "conflictingCaseTitle": self.conflicting_case_title,
            "blockedBy": self.blocked_by,
        }


# ============================================================================
# Availability
# ============================================================================

def find_conflicting_case(
    db:              Session,
    slot_date:       date,
    slot_time:       time,
    exclude_case_id: Optional[int] = None,
) -> Optional[Case]:
    query = db.query(Case).filter(
        Case.scheduled_date == slot_date,
        Case.scheduled_time == slot_time,
        Case.admin_approval_status == AdminApprovalStatus.approved,
        Case.is_deleted == False,  # noqa: E712
    )
    if exclude_case_id is not None:
        query = query.filter(Case.id != exclude_case_id)
    return query.order_by(Case.id.asc()).first()


def find_covering_block(db: Session, slot_date: date, slot_time: time) -> Optional[SlotBlock]:
    blocks = (
        db.query(SlotBlock)
        .filter(SlotBlock.block_date == slot_date)
        .order_by(SlotBlock.id.asc())
        .all()
    )
    for block in blocks:
        if block.start_time is None:
            return block
        if block.end_time is None:
            if block.start_time == slot_time:
                return block
        elif block.start_time <= slot_time < block.end_time:
            return block
    return None


def is_slot_available(
    db:              Session,
    slot_date:       date,
    slot_time:       time,
    exclude_case_id: Optional[int] = None,
) -> SlotAvailability:
    conflict = find_conflicting_case(db, slot_date, slot_time, exclude_case_id)
    if conflict is not None:
        logger.info(
            "Slot %s %s taken by case %s (excluding %s)",
            slot_date, slot_time, conflict.id, exclude_case_id,
        )
        return SlotAvailability(
            available=False,
            conflicting_case_id=conflict.id,
            conflicting_case_title=conflict.case_title,
        )

    block = find_covering_block(db, slot_date, slot_time)
    if block is not None:
        logger.info("Slot %s %s blocked by block %s", slot_date, slot_time, block.id)
        return SlotAvailability(available=False, blocked_by=block.id)

    return SlotAvailability(available=True)


# ============================================================================
# Blocks
# ============================================================================

def block_slot(
    db:         Session,
    block_date: date,
    start_time: Optional[time] = None,
    end_time:   Optional[time] = None,
    reason:     Optional[str]  = None,
    admin:      Optional[User] = None,
) -> tuple[SlotBlock, bool]:
    """
    Blocks a whole day (no start_time) or a time range.

    Idempotent per (date, start_time): an existing block is returned with
    created=False and left untouched.
    """
    if end_time is not None and start_time is None:
        raise ValidationError("end_time requires start_time", code="INVALID_TIME")
    if start_time is not None and end_time is not None and end_time <= start_time:
        raise ValidationError("end_time must be after start_time", code="INVALID_TIME")

    existing = _find_block(db, block_date, start_time)
    if existing is not None:
        return existing, False

    block = SlotBlock(
        block_date=block_date,
        start_time=start_time,
        end_time=end_time,
        reason=(reason or "").strip() or None,
        created_by=admin.id if admin else None,
    )
    db.add(block)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent block for the same key won the insert
        db.rollback()
        existing = _find_block(db, block_date, start_time)
        if existing is None:
            raise
        return existing, False
    db.refresh(block)

    logger.info(
        "Slot blocked: date=%s start=%s end=%s by=%s",
        block_date, start_time, end_time, admin.id if admin else None,
    )
    return block, True


def unblock_slot(db: Session, block_id: int) -> Optional[dict]:
    """
    Removes a block. Returns a snapshot of the removed block, or None when it
    did not exist (unblocking twice is not an error).
    """
    block = db.query(SlotBlock).filter(SlotBlock.id == block_id).first()
    if block is None:
        return None
    snapshot = {
        "id": block.id,
        "block_date": block.block_date,
        "start_time": block.start_time,
        "end_time": block.end_time,
        "reason": block.reason,
    }
    db.delete(block)
    db.commit()
    logger.info("Slot unblocked: id=%s date=%s start=%s", block_id, snapshot["block_date"], snapshot["start_time"])
    return snapshot


def list_blocks(
    db:        Session,
    date_from: Optional[date] = None,
    date_to:   Optional[date] = None,
) -> list[SlotBlock]:
    query = db.query(SlotBlock)
    if date_from is not None:
        query = query.filter(SlotBlock.block_date >= date_from)
    if date_to is not None:
        query = query.filter(SlotBlock.block_date <= date_to)
    return query.order_by(SlotBlock.block_date.asc(), SlotBlock.start_time.asc()).all()


def _find_block(db: Session, block_date: date, start_time: Optional[time]) -> Optional[SlotBlock]:
    query = db.query(SlotBlock).filter(SlotBlock.block_date == block_date)
    if start_time is None:
        query = query.filter(SlotBlock.start_time.is_(None))
    else:
        query = query.filter(SlotBlock.start_time == start_time)
    return query.first()
