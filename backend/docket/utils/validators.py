"""
Custom validators
"""
import re
from datetime import date, datetime, time
from typing import Any, List, Optional, Tuple

from docket.utils.exceptions import ValidationError

TIME_PATTERN = re.compile(r"^([0-1][0-9]|2[0-3]):([0-5][0-9])(:[0-5][0-9])?$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

CASE_TYPES = ("Civil", "Criminal")
CASE_JURISDICTIONS = ("State", "Federal")
CASE_TIERS = ("Tier 1", "Tier 2", "Tier 3")

ALTERNATE_SLOT_COUNT = 3


def normalize_time(value: Any, field: str = "time") -> time:
    """
    Parse a wall-clock time.
    Accepts: 09:30, 09:30:00 (seconds default to 00)
    """
    if isinstance(value, time):
        return value.replace(microsecond=0)
    raw = (value or "").strip() if isinstance(value, str) else ""
    if not TIME_PATTERN.match(raw):
        raise ValidationError(
            f"Invalid {field} format. Use HH:MM or HH:MM:SS (24-hour)",
            code="INVALID_TIME",
            field=field,
        )
    if len(raw) == 5:
        raw = f"{raw}:00"
    return datetime.strptime(raw, "%H:%M:%S").time()


def parse_date(value: Any, field: str = "date") -> date:
    """Parse a calendar date in YYYY-MM-DD format"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = (value or "").strip() if isinstance(value, str) else ""
    try:
        if not DATE_PATTERN.match(raw):
            raise ValueError(raw)
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(
            f"Invalid {field} format. Use YYYY-MM-DD",
            code="INVALID_DATE",
            field=field,
        )


def parse_slot(slot: Any, field: str = "slot") -> Tuple[date, time]:
    """Parse a {"date", "time"} mapping (or pydantic model) into a slot."""
    if slot is None:
        raise ValidationError(f"{field} is required", code="MISSING_FIELD", field=field)
    if hasattr(slot, "model_dump"):
        slot = slot.model_dump()
    if not isinstance(slot, dict) or not slot.get("date") or not slot.get("time"):
        raise ValidationError(
            f"{field} must include both date and time",
            code="INVALID_SLOTS",
            field=field,
        )
    return parse_date(slot["date"], f"{field}.date"), normalize_time(slot["time"], f"{field}.time")


def parse_alternate_slots(slots: Optional[List[Any]]) -> List[Tuple[date, time]]:
    """Exactly three distinct alternate slots"""
    if not isinstance(slots, list) or len(slots) != ALTERNATE_SLOT_COUNT:
        raise ValidationError(
            f"Exactly {ALTERNATE_SLOT_COUNT} alternate slots are required",
            code="INVALID_SLOTS",
        )
    parsed = [parse_slot(slot, f"alternateSlots[{i}]") for i, slot in enumerate(slots)]
    if len(set(parsed)) != len(parsed):
        raise ValidationError("Alternate slots must be distinct", code="INVALID_SLOTS")
    return parsed


def require_text(value: Optional[str], field: str, min_length: int = 1) -> str:
    text = (value or "").strip()
    if len(text) < min_length:
        if min_length > 1:
            message = f"{field} must be at least {min_length} characters"
        else:
            message = f"{field} is required"
        raise ValidationError(message, code="MISSING_FIELD", field=field)
    return text


def require_choice(value: Optional[str], field: str, choices: Tuple[str, ...]) -> str:
    text = (value or "").strip()
    if text not in choices:
        raise ValidationError(
            f"{field} must be one of: {', '.join(choices)}",
            code="INVALID_CHOICE",
            field=field,
        )
    return text
