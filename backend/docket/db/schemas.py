"""
Pydantic validation schemas

Field names are snake_case in Python and camelCase on the wire.
"""
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from docket.db.models import (
    AdminApprovalStatus,
    ApplicationStatus,
    AttorneyStatus,
    MeetingStatus,
    RescheduleInitiator,
    RescheduleStatus,
    UserRole,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ============================================================================
# Shared
# ============================================================================

class SlotIn(CamelModel):
    date: Optional[str] = None
    time: Optional[str] = None


class MessageResponse(CamelModel):
    success: bool = True
    message: str


# ============================================================================
# Case Schemas
# ============================================================================

class CaseCreate(CamelModel):
    case_title: Optional[str] = None
    case_type: Optional[str] = None
    case_jurisdiction: Optional[str] = None
    case_tier: Optional[str] = None
    state: Optional[str] = None
    county: Optional[str] = None
    case_description: Optional[str] = None
    scheduled_date: Optional[str] = None
    scheduled_time: Optional[str] = None
    required_jurors: Optional[int] = None
    timezone_offset: Optional[int] = None


class CaseStatusUpdate(CamelModel):
    status: str


class CaseReviewRequest(CamelModel):
    decision: str
    comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    alternate_slots: Optional[List[SlotIn]] = None


class CaseResponse(CamelModel):
    id: int
    attorney_id: int
    case_title: str
    case_type: str
    case_jurisdiction: str
    case_tier: str
    state: str
    county: str
    case_description: Optional[str] = None
    admin_approval_status: AdminApprovalStatus
    attorney_status: AttorneyStatus
    admin_comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    timezone_offset: int
    required_jurors: int
    reschedule_required: bool
    original_scheduled_date: Optional[date] = None
    original_scheduled_time: Optional[time] = None
    approved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReviewResponse(CamelModel):
    success: bool = True
    decision: str
    message: str
    case: CaseResponse
    reschedule_request_id: Optional[int] = None


class SlotAvailabilityResponse(CamelModel):
    available: bool
    conflicting_case_id: Optional[int] = None
    conflicting_case_title: Optional[str] = None
    blocked_by: Optional[int] = None


class TransitionResponse(CamelModel):
    valid: bool
    message: str = ""
    code: Optional[str] = None
    case: Optional[CaseResponse] = None


# ============================================================================
# Reschedule Schemas
# ============================================================================

class RescheduleRequestResponse(CamelModel):
    id: int
    case_id: int
    initiator: RescheduleInitiator
    status: RescheduleStatus
    original_date: Optional[date] = None
    original_time: Optional[time] = None
    conflicting_case_id: Optional[int] = None
    alternate_slots: List[Dict[str, Any]] = Field(default_factory=list)
    proposed_date: Optional[date] = None
    proposed_time: Optional[time] = None
    selected_date: Optional[date] = None
    selected_time: Optional[time] = None
    reason: Optional[str] = None
    attorney_comments: Optional[str] = None
    attorney_feedback: Optional[str] = None
    admin_comments: Optional[str] = None
    rounds: int = 0
    resolved_at: Optional[datetime] = None
    created_at: datetime


class RescheduleRequestBody(CamelModel):
    """Admin sends alternateSlots; attorney sends a proposed new slot."""
    alternate_slots: Optional[List[SlotIn]] = None
    new_scheduled_date: Optional[str] = None
    new_scheduled_time: Optional[str] = None
    reason: Optional[str] = None
    attorney_comments: Optional[str] = None


class ConfirmRescheduleRequest(CamelModel):
    selected_slot: Optional[SlotIn] = None


class DifferentSlotsRequest(CamelModel):
    message: Optional[str] = None


class AdminRescheduleRequest(CamelModel):
    new_scheduled_date: Optional[str] = None
    new_scheduled_time: Optional[str] = None
    reason: Optional[str] = None


class RescheduleDecisionRequest(CamelModel):
    admin_comments: Optional[str] = None


class RescheduleStatusResponse(CamelModel):
    case_id: int
    reschedule_required: bool
    current_slot: SlotIn
    request: Optional[RescheduleRequestResponse] = None


class RescheduleResultResponse(CamelModel):
    success: bool = True
    message: str
    case: CaseResponse
    request: Optional[RescheduleRequestResponse] = None
    affected_jurors: int = 0


# ============================================================================
# Application Schemas
# ============================================================================

class ApplicationCreate(CamelModel):
    comments: Optional[str] = None


class ApplicationReview(CamelModel):
    comments: Optional[str] = None


class BatchApproveRequest(CamelModel):
    application_ids: List[int] = Field(default_factory=list)


class ApplicationResponse(CamelModel):
    id: int
    case_id: int
    juror_id: int
    status: ApplicationStatus
    comments: Optional[str] = None
    applied_at: datetime
    reviewed_at: Optional[datetime] = None


class BatchApproveResponse(CamelModel):
    success: bool = True
    approved_count: int
    applications: List[ApplicationResponse]


# ============================================================================
# Slot Block Schemas
# ============================================================================

class SlotBlockCreate(CamelModel):
    date: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: Optional[str] = None


class SlotBlockResponse(CamelModel):
    id: int
    block_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime


# ============================================================================
# Trial Schemas
# ============================================================================

class ParticipantResponse(CamelModel):
    id: int
    user_id: int
    role: UserRole
    display_name: str
    room_role: str
    chat_attached: bool
    joined_at: datetime
    left_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None


class MeetingResponse(CamelModel):
    id: int
    case_id: int
    room_id: str
    chat_thread_id: Optional[str] = None
    status: MeetingStatus
    room_valid_until: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime


class MeetingDetailResponse(CamelModel):
    meeting: MeetingResponse
    participants: List[ParticipantResponse]


class JoinTicketResponse(CamelModel):
    token: str
    expires_on: str
    user_id: str
    display_name: str
    room_id: str
    chat_thread_id: Optional[str] = None
    endpoint_url: str
    chat_attached: bool
    participant_id: int
