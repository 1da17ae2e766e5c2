"""
Administrator slot blocks (whole days or time ranges)
"""
from datetime import date, time
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from docket.api.v1.deps import require_admin
from docket.db.database import get_db
from docket.db.models import User, UserRole
from docket.db.schemas import MessageResponse, SlotBlockCreate, SlotBlockResponse
from docket.services import notification_service as notices
from docket.services import slot_registry
from docket.services.notification_service import notification_service
from docket.utils.helpers import format_date, format_time
from docket.utils.validators import normalize_time, parse_date

router = APIRouter()

BROADCAST_ROLES = (UserRole.attorney, UserRole.juror)


def _describe(block_date: date, start_time: Optional[time], end_time: Optional[time]) -> str:
    if start_time is None:
        return f"{format_date(block_date)} (all day)"
    if end_time is None:
        return f"{format_date(block_date)} at {format_time(start_time)}"
    return f"{format_date(block_date)} {format_time(start_time)}-{format_time(end_time)}"


@router.get("", response_model=List[SlotBlockResponse])
def list_blocks(
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return slot_registry.list_blocks(
        db,
        parse_date(date_from, "from") if date_from else None,
        parse_date(date_to, "to") if date_to else None,
    )


@router.post("", response_model=SlotBlockResponse)
def block_slot(
    payload: SlotBlockCreate,
    response: Response,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Idempotent: blocking the same (date, startTime) twice returns the
    existing block with 200 instead of 201
    """
    block, created = slot_registry.block_slot(
        db,
        parse_date(payload.date),
        normalize_time(payload.start_time, "startTime") if payload.start_time else None,
        normalize_time(payload.end_time, "endTime") if payload.end_time else None,
        payload.reason,
        current_user,
    )
    if created:
        notification_service.broadcast(
            db, BROADCAST_ROLES, notices.SLOT_BLOCKED,
            "Time Slot Blocked",
            f"{_describe(block.block_date, block.start_time, block.end_time)} is no longer available for trials."
            + (f" Reason: {block.reason}" if block.reason else ""),
        )
        db.commit()
        db.refresh(block)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return block


@router.delete("/{block_id}", response_model=MessageResponse)
def unblock_slot(
    block_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    removed = slot_registry.unblock_slot(db, block_id)
    if removed is None:
        return MessageResponse(message="Block already removed")

    notification_service.broadcast(
        db, BROADCAST_ROLES, notices.SLOT_UNBLOCKED,
        "Time Slot Available",
        f"{_describe(removed['block_date'], removed['start_time'], removed['end_time'])} is open for scheduling again.",
    )
    db.commit()
    return MessageResponse(message=f"Unblocked {removed['block_date'].isoformat()}")
