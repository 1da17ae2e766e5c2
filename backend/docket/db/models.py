"""
SQLAlchemy ORM Models
"""

from __future__ import annotations

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    TIMESTAMP,
    UniqueConstraint,
    text,
    true,
)
from sqlalchemy.orm import relationship

from docket.db.database import Base
from docket.utils.helpers import utcnow

# ============================================================================
# Enums
# ============================================================================

class UserRole(str, enum.Enum):
    """User roles"""
    attorney = "attorney"
    juror = "juror"
    admin = "admin"

class AdminApprovalStatus(str, enum.Enum):
    """Admin review outcome for a case"""
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"

class AttorneyStatus(str, enum.Enum):
    """Case lifecycle status as seen by the attorney"""
    pending = "pending"
    war_room = "war_room"
    awaiting_trial = "awaiting_trial"
    join_trial = "join_trial"
    in_trial = "in_trial"
    view_details = "view_details"
    completed = "completed"
    cancelled = "cancelled"

class ApplicationStatus(str, enum.Enum):
    """Juror application status"""
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    withdrawn = "withdrawn"

class RescheduleInitiator(str, enum.Enum):
    admin = "admin"
    attorney = "attorney"

class RescheduleStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"

class MeetingStatus(str, enum.Enum):
    """Live trial session status"""
    created = "created"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


# ============================================================================
# Users
# ============================================================================

class User(Base):
    """Attorney, juror or administrator"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, default="")
    role = Column(SQLEnum(UserRole), nullable=False, index=True)
    # US state (or "India"); resolves the default timezone offset for new cases
    state = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    cases = relationship("Case", back_populates="attorney", foreign_keys="Case.attorney_id")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ============================================================================
# Cases
# ============================================================================

class Case(Base):
    """Mock trial case"""
    __tablename__ = "cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attorney_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Case details
    case_title = Column(String(255), nullable=False)
    case_type = Column(String(20), nullable=False)
    case_jurisdiction = Column(String(20), nullable=False)
    case_tier = Column(String(20), nullable=False)
    state = Column(String(100), nullable=False)
    county = Column(String(100), nullable=False)
    case_description = Column(Text, nullable=True)

    # Status
    admin_approval_status = Column(SQLEnum(AdminApprovalStatus), nullable=False, default=AdminApprovalStatus.pending)
    attorney_status = Column(SQLEnum(AttorneyStatus), nullable=False, default=AttorneyStatus.pending)
    admin_comments = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    approved_at = Column(TIMESTAMP, nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Schedule (wall clock in the attorney's zone at submission)
    scheduled_date = Column(Date, nullable=True)
    scheduled_time = Column(Time, nullable=True)
    timezone_offset = Column(Integer, nullable=False, default=0)  # minutes east of UTC
    required_jurors = Column(Integer, nullable=False, default=7)

    # Reschedule bookkeeping
    reschedule_required = Column(Boolean, nullable=False, default=False)
    original_scheduled_date = Column(Date, nullable=True)
    original_scheduled_time = Column(Time, nullable=True)

    # Soft delete
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    attorney = relationship("User", back_populates="cases", foreign_keys=[attorney_id])
    applications = relationship("JurorApplication", back_populates="case", cascade="all, delete-orphan")
    reschedule_requests = relationship("RescheduleRequest", back_populates="case", cascade="all, delete-orphan")
    meeting = relationship("TrialMeeting", back_populates="case", uselist=False, cascade="all, delete-orphan")
    events = relationship("CaseEvent", back_populates="case", cascade="all, delete-orphan")

    __table_args__ = (
        # One approved, live case per slot
        Index(
            "uq_cases_approved_slot",
            "scheduled_date",
            "scheduled_time",
            unique=True,
            postgresql_where=text("admin_approval_status = 'approved' AND NOT is_deleted"),
            sqlite_where=text("admin_approval_status = 'approved' AND is_deleted = 0"),
        ),
        Index("ix_cases_status", "admin_approval_status", "attorney_status"),
    )


class SlotBlock(Base):
    """Administrator-imposed exclusion of a whole day or a time range."""
    __tablename__ = "slot_blocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    block_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=True)   # NULL = whole day
    end_time = Column(Time, nullable=True)     # NULL = exact start time only
    reason = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("block_date", "start_time", name="uq_slot_blocks_date_start"),
    )


class JurorApplication(Base):
    """A juror's request to serve on a case"""
    __tablename__ = "juror_applications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    juror_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(SQLEnum(ApplicationStatus), nullable=False, default=ApplicationStatus.pending)
    comments = Column(Text, nullable=True)
    applied_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    reviewed_at = Column(TIMESTAMP, nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    case = relationship("Case", back_populates="applications")
    juror = relationship("User", foreign_keys=[juror_id])

    __table_args__ = (
        UniqueConstraint("case_id", "juror_id", name="uq_juror_applications_case_juror"),
        Index("ix_juror_applications_case_status", "case_id", "status"),
    )


class RescheduleRequest(Base):
    """
    Slot negotiation record.

    Admin-initiated requests carry three alternate slots; attorney-initiated
    requests carry one proposed slot. At most one pending request per case.
    """
    __tablename__ = "reschedule_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    initiator = Column(SQLEnum(RescheduleInitiator), nullable=False)
    requested_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status = Column(SQLEnum(RescheduleStatus), nullable=False, default=RescheduleStatus.pending)

    original_date = Column(Date, nullable=True)
    original_time = Column(Time, nullable=True)
    conflicting_case_id = Column(Integer, nullable=True)

    # Admin flavour: [{"date": "YYYY-MM-DD", "time": "HH:MM:SS"}, ...]
    alternate_slots = Column(JSON, nullable=False, default=list)
    # Attorney flavour
    proposed_date = Column(Date, nullable=True)
    proposed_time = Column(Time, nullable=True)
    # Slot that was finally applied
    selected_date = Column(Date, nullable=True)
    selected_time = Column(Time, nullable=True)

    reason = Column(Text, nullable=True)
    attorney_comments = Column(Text, nullable=True)
    attorney_feedback = Column(Text, nullable=True)
    admin_comments = Column(Text, nullable=True)
    rounds = Column(Integer, nullable=False, default=0)

    resolved_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    case = relationship("Case", back_populates="reschedule_requests")

    __table_args__ = (
        Index("ix_reschedule_requests_case_status", "case_id", "status"),
    )


# ============================================================================
# Live trial
# ============================================================================

class TrialMeeting(Base):
    """Room + chat thread for a case's live trial"""
    __tablename__ = "trial_meetings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, unique=True)
    thread_key = Column(String(100), nullable=False)
    room_id = Column(String(255), nullable=False)
    chat_thread_id = Column(String(255), nullable=True)
    chat_service_user_id = Column(String(255), nullable=True)
    status = Column(SQLEnum(MeetingStatus), nullable=False, default=MeetingStatus.created)
    room_valid_until = Column(TIMESTAMP, nullable=True)
    started_at = Column(TIMESTAMP, nullable=True)
    ended_at = Column(TIMESTAMP, nullable=True)
    ended_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    case = relationship("Case", back_populates="meeting")
    participants = relationship("Participant", back_populates="meeting", cascade="all, delete-orphan")
    seats = relationship("MeetingSeat", back_populates="meeting", cascade="all, delete-orphan")


class Participant(Base):
    """One attachment of a user to a meeting (one row per join)."""
    __tablename__ = "trial_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    meeting_id = Column(Integer, ForeignKey("trial_meetings.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(UserRole), nullable=False)
    display_name = Column(String(255), nullable=False)
    external_user_id = Column(String(255), nullable=False)
    room_role = Column(String(20), nullable=False)
    chat_attached = Column(Boolean, nullable=False, default=False)
    joined_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    left_at = Column(TIMESTAMP, nullable=True)
    removed_at = Column(TIMESTAMP, nullable=True)

    meeting = relationship("TrialMeeting", back_populates="participants")

    @property
    def is_active(self) -> bool:
        return self.left_at is None and self.removed_at is None


class MeetingSeat(Base):
    """
    Current-identity slot keyed by (meeting, user).

    ``current_participant_id`` points at the single live Participant row for
    the pair, or is NULL when the user is not attached.
    """
    __tablename__ = "trial_meeting_seats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    meeting_id = Column(Integer, ForeignKey("trial_meetings.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    current_participant_id = Column(Integer, ForeignKey("trial_participants.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    meeting = relationship("TrialMeeting", back_populates="seats")
    current_participant = relationship("Participant", foreign_keys=[current_participant_id])

    __table_args__ = (
        UniqueConstraint("meeting_id", "user_id", name="uq_trial_meeting_seats_meeting_user"),
    )


# ============================================================================
# Notifications & audit
# ============================================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_type = Column(String(20), nullable=False)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="SET NULL"), nullable=True, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)


class CaseEvent(Base):
    """Audit trail of lifecycle transitions and negotiation steps"""
    __tablename__ = "case_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_role = Column(String(20), nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)

    case = relationship("Case", back_populates="events")
