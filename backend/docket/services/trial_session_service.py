"""
services/trial_session_service.py

Live trial session: meeting provisioning at war-room submit, join/leave,
moderation and ending the trial.

Each (meeting, user) pair owns one MeetingSeat. A join first releases the
identity the seat currently points at, then attaches a fresh provider
identity and points the seat at the new Participant, so a user never holds
two live identities in the same meeting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from docket.db.models import (
    ApplicationStatus,
    AttorneyStatus,
    Case,
    JurorApplication,
    MeetingSeat,
    MeetingStatus,
    Participant,
    TrialMeeting,
    User,
    UserRole,
)
from docket.services import notification_service as notices
from docket.services import scheduling_clock
from docket.services.case_access import ensure_owner, ensure_owner_or_admin, is_owner
from docket.services.case_state_machine import (
    CaseTrigger,
    apply_transition,
    open_trial_if_due,
    raise_for_refusal,
    record_event,
    validate_transition,
)
from docket.services.communication_service import (
    ROLE_ATTENDEE,
    ROLE_PRESENTER,
    CommunicationService,
)
from docket.services.notification_service import notification_service
from docket.services.user_directory import user_directory
from docket.utils.exceptions import (
    ExternalServiceError,
    NotFoundError,
    PolicyViolation,
    UnauthorizedError,
)
from docket.utils.helpers import utcnow

logger = logging.getLogger(__name__)

ROOM_ROLE = {
    UserRole.attorney: ROLE_PRESENTER,
    UserRole.admin: ROLE_PRESENTER,
    UserRole.juror: ROLE_ATTENDEE,
}

LIVE_STATUSES = (AttorneyStatus.join_trial, AttorneyStatus.in_trial)

ADMIN_DISPLAY_NAME = "Court Administrator"
CHAT_SERVICE_NAME = "Trial Service"


@dataclass
class JoinTicket:
    token: str
    expires_on: str
    user_id: str
    display_name: str
    room_id: str
    chat_thread_id: Optional[str]
    endpoint_url: str
    chat_attached: bool
    participant_id: int

    def as_dict(self) -> dict:
        return {
            "token": self.token,
            "expiresOn": self.expires_on,
            "userId": self.user_id,
            "displayName": self.display_name,
            "roomId": self.room_id,
            "chatThreadId": self.chat_thread_id,
            "endpointUrl": self.endpoint_url,
            "chatAttached": self.chat_attached,
            "participantId": self.participant_id,
        }


def display_name_for(user: User) -> str:
    if user.role == UserRole.admin:
        return ADMIN_DISPLAY_NAME
    if user.role == UserRole.attorney:
        return f"{user.full_name} (Attorney)"
    return f"{user.full_name} (Juror)"


# ============================================================================
# Access
# ============================================================================

def _is_approved_juror(db: Session, case: Case, user: User) -> bool:
    if user.role != UserRole.juror:
        return False
    row = (
        db.query(JurorApplication.id)
        .filter(
            JurorApplication.case_id == case.id,
            JurorApplication.juror_id == user.id,
            JurorApplication.status == ApplicationStatus.approved,
        )
        .first()
    )
    return row is not None


def ensure_can_attend(db: Session, case: Case, user: User) -> None:
    if user.role == UserRole.admin or is_owner(case, user) or _is_approved_juror(db, case, user):
        return
    raise UnauthorizedError("Not authorized to join this trial")


def _ensure_join_role(db: Session, case: Case, user: User, role: UserRole) -> None:
    if user.role != role:
        raise UnauthorizedError(f"This entrance is for {role.value}s")
    if role == UserRole.attorney:
        ensure_owner(case, user)
    elif role == UserRole.juror and not _is_approved_juror(db, case, user):
        raise UnauthorizedError("You are not an approved juror for this case")


def _enforce_join_window(case: Case, now: datetime) -> None:
    window = scheduling_clock.join_window(case, now)
    if window is None:
        raise PolicyViolation("Case has no scheduled date and time", code="NO_SCHEDULE")
    if not window.is_open:
        raise PolicyViolation(
            "Trial is not open yet",
            code="TOO_EARLY",
            status_code=403,
            scheduledTime=window.scheduled_at.isoformat(),
            canJoinAt=window.opens_at.isoformat(),
            minutesUntilJoin=window.minutes_until_open,
        )


# ============================================================================
# Meeting
# ============================================================================

def get_meeting(db: Session, case: Case) -> TrialMeeting:
    meeting = db.query(TrialMeeting).filter(TrialMeeting.case_id == case.id).first()
    if meeting is None:
        raise NotFoundError("No trial meeting exists for this case", code="MEETING_NOT_FOUND")
    return meeting


def create_meeting(db: Session, case: Case, comms: CommunicationService) -> TrialMeeting:
    """
    Returns the live meeting, or provisions a room and chat thread. A
    meeting cancelled by a reschedule is reprovisioned in place. A failed
    chat thread leaves a video-only meeting. Flushes; the caller commits.
    """
    meeting = db.query(TrialMeeting).filter(TrialMeeting.case_id == case.id).first()
    if meeting is not None and meeting.status != MeetingStatus.cancelled:
        return meeting

    room_id, valid_until = comms.create_room()

    chat_thread_id = None
    service_user_id = None
    try:
        service_user_id = comms.create_user()
        chat_thread_id = comms.create_chat_thread(f"Trial: {case.case_title}", service_user_id, CHAT_SERVICE_NAME)
    except ExternalServiceError as e:
        logger.warning("Chat thread for case %s not created, meeting is video-only: %s", case.id, e.message)

    if meeting is None:
        meeting = TrialMeeting(case_id=case.id)
        db.add(meeting)
    meeting.thread_key = f"trial-case-{case.id}-{int(utcnow().timestamp())}"
    meeting.room_id = room_id
    meeting.chat_thread_id = chat_thread_id
    meeting.chat_service_user_id = service_user_id if chat_thread_id else None
    meeting.status = MeetingStatus.created
    meeting.room_valid_until = valid_until
    meeting.started_at = None
    meeting.ended_at = None
    meeting.ended_by = None
    db.flush()
    logger.info("Meeting %s provisioned for case %s room=%s chat=%s", meeting.id, case.id, room_id, chat_thread_id)
    return meeting


def retire_meeting(db: Session, case: Case, now: Optional[datetime] = None) -> Optional[TrialMeeting]:
    """
    Cancels the case's meeting when a reschedule sends the case back to the
    war room. Open identities are closed and every seat is cleared; the
    provider room lapses at its valid-until time. The caller commits.
    """
    meeting = db.query(TrialMeeting).filter(TrialMeeting.case_id == case.id).first()
    if meeting is None or meeting.status == MeetingStatus.cancelled:
        return None

    now = now or utcnow()
    for seat in meeting.seats:
        seat.current_participant = None
    for participant in meeting.participants:
        if participant.left_at is None:
            participant.left_at = now
    meeting.status = MeetingStatus.cancelled
    meeting.ended_at = now
    logger.info("Meeting %s for case %s cancelled by reschedule", meeting.id, case.id)
    return meeting


def submit_war_room(
    db:       Session,
    case:     Case,
    attorney: User,
    comms:    CommunicationService,
    now:      Optional[datetime] = None,
) -> TrialMeeting:
    ensure_owner(case, attorney)
    if case.attorney_status != AttorneyStatus.war_room:
        raise PolicyViolation(
            f"Case cannot be submitted from status {case.attorney_status.value}",
            code="ALREADY_SUBMITTED",
        )

    apply_transition(db, case, CaseTrigger.submit_war_room, actor=attorney, now=now, description="War room submitted")
    try:
        meeting = create_meeting(db, case, comms)
    except ExternalServiceError:
        db.rollback()
        logger.error("Provisioning the trial room for case %s failed; submission rolled back", case.id)
        raise

    jurors = (
        db.query(User)
        .join(JurorApplication, JurorApplication.juror_id == User.id)
        .filter(JurorApplication.case_id == case.id, JurorApplication.status == ApplicationStatus.approved)
        .all()
    )
    when = scheduling_clock.scheduled_utc(case)
    message = f'"{case.case_title}" is scheduled for trial at {when.isoformat()} UTC.' if when else f'"{case.case_title}" is scheduled for trial.'
    notification_service.send_to_users(db, jurors, case.id, notices.TRIAL_SCHEDULED, "Trial Scheduled", message)
    notification_service.send_to_users(db, user_directory.active_admins(db), case.id, notices.TRIAL_SCHEDULED, "Trial Scheduled", message)

    db.commit()
    db.refresh(meeting)
    logger.info("Case %s submitted for trial with %s jurors", case.id, len(jurors))
    return meeting


# ============================================================================
# Seats
# ============================================================================

def _get_or_create_seat(db: Session, meeting: TrialMeeting, user: User) -> MeetingSeat:
    seat = (
        db.query(MeetingSeat)
        .filter(MeetingSeat.meeting_id == meeting.id, MeetingSeat.user_id == user.id)
        .first()
    )
    if seat is None:
        seat = MeetingSeat(meeting_id=meeting.id, user_id=user.id)
        db.add(seat)
        db.flush()
    return seat


def _detach(meeting: TrialMeeting, participant: Participant, comms: Optional[CommunicationService]) -> None:
    """Best-effort provider cleanup for one identity."""
    if comms is None:
        return
    try:
        comms.remove_participant_from_room(meeting.room_id, participant.external_user_id)
    except ExternalServiceError as e:
        logger.warning("Removing %s from room %s failed: %s", participant.external_user_id, meeting.room_id, e.message)
    if participant.chat_attached and meeting.chat_thread_id:
        try:
            comms.remove_participant_from_chat(
                meeting.chat_thread_id, participant.external_user_id, meeting.chat_service_user_id,
            )
        except ExternalServiceError as e:
            logger.warning("Removing %s from chat %s failed: %s", participant.external_user_id, meeting.chat_thread_id, e.message)


def _release_seat(
    meeting: TrialMeeting,
    seat:    MeetingSeat,
    comms:   Optional[CommunicationService],
    now:     datetime,
) -> Optional[Participant]:
    current = seat.current_participant
    if current is None:
        return None
    if current.is_active:
        _detach(meeting, current, comms)
        current.left_at = now
    seat.current_participant = None
    return current


# ============================================================================
# Join / leave
# ============================================================================

def join_trial(
    db:    Session,
    case:  Case,
    user:  User,
    role:  UserRole,
    comms: CommunicationService,
    now:   Optional[datetime] = None,
) -> JoinTicket:
    now = now or utcnow()
    _ensure_join_role(db, case, user, role)
    if role != UserRole.admin:
        _enforce_join_window(case, now)

    open_trial_if_due(db, case, now)

    meeting = get_meeting(db, case)
    if meeting.status == MeetingStatus.completed:
        raise PolicyViolation("This trial has ended", code="MEETING_ENDED")
    if role != UserRole.admin and case.attorney_status not in LIVE_STATUSES:
        raise PolicyViolation(
            "Trial is not in session for this case",
            code="TRIAL_NOT_ACTIVE",
            status_code=403,
            caseStatus=case.attorney_status.value,
        )
    if meeting.status == MeetingStatus.cancelled:
        raise NotFoundError("The trial meeting was cancelled by a reschedule", code="MEETING_NOT_FOUND")

    seat = _get_or_create_seat(db, meeting, user)
    previous = _release_seat(meeting, seat, comms, now)
    db.commit()
    if previous is not None:
        logger.info("Released previous identity %s for user %s in meeting %s", previous.external_user_id, user.id, meeting.id)

    room_role = ROOM_ROLE[user.role]
    display_name = display_name_for(user)
    external_user_id = comms.create_user()
    comms.add_participant_to_room(meeting.room_id, external_user_id, room_role)
    try:
        issued = comms.issue_token(external_user_id)
    except ExternalServiceError:
        try:
            comms.remove_participant_from_room(meeting.room_id, external_user_id)
        except ExternalServiceError as e:
            logger.warning("Orphaned identity %s left in room %s: %s", external_user_id, meeting.room_id, e.message)
        raise

    chat_attached = False
    if meeting.chat_thread_id:
        try:
            comms.add_participant_to_chat(
                meeting.chat_thread_id, external_user_id, display_name, meeting.chat_service_user_id,
            )
            chat_attached = True
        except ExternalServiceError as e:
            logger.warning("User %s joined meeting %s without chat: %s", user.id, meeting.id, e.message)

    participant = Participant(
        meeting_id=meeting.id,
        user_id=user.id,
        role=user.role,
        display_name=display_name,
        external_user_id=external_user_id,
        room_role=room_role,
        chat_attached=chat_attached,
        joined_at=now,
    )
    db.add(participant)
    db.flush()
    seat.current_participant_id = participant.id

    if meeting.status == MeetingStatus.created:
        meeting.status = MeetingStatus.active
        meeting.started_at = now
    if case.attorney_status == AttorneyStatus.join_trial:
        apply_transition(db, case, CaseTrigger.start_trial, actor=user, now=now, description="Trial started")
    record_event(db, case, "trial_joined", f"{display_name} joined", user)
    db.commit()
    db.refresh(participant)

    logger.info("User %s joined meeting %s as %s (chat=%s)", user.id, meeting.id, room_role, chat_attached)
    return JoinTicket(
        token=issued.token,
        expires_on=issued.expires_on,
        user_id=external_user_id,
        display_name=display_name,
        room_id=meeting.room_id,
        chat_thread_id=meeting.chat_thread_id,
        endpoint_url=comms.endpoint_url,
        chat_attached=chat_attached,
        participant_id=participant.id,
    )


def leave_trial(
    db:    Session,
    case:  Case,
    user:  User,
    comms: Optional[CommunicationService] = None,
    now:   Optional[datetime] = None,
) -> Optional[Participant]:
    meeting = get_meeting(db, case)
    seat = (
        db.query(MeetingSeat)
        .filter(MeetingSeat.meeting_id == meeting.id, MeetingSeat.user_id == user.id)
        .first()
    )
    if seat is None:
        return None
    released = _release_seat(meeting, seat, comms, now or utcnow())
    db.commit()
    return released


def remove_participant(
    db:             Session,
    case:           Case,
    participant_id: int,
    admin:          User,
    comms:          CommunicationService,
    now:            Optional[datetime] = None,
) -> Participant:
    if admin.role != UserRole.admin:
        raise UnauthorizedError("Only administrators can remove participants")
    meeting = get_meeting(db, case)
    participant = (
        db.query(Participant)
        .filter(Participant.id == participant_id, Participant.meeting_id == meeting.id)
        .first()
    )
    if participant is None:
        raise NotFoundError(f"Participant {participant_id} not found", code="PARTICIPANT_NOT_FOUND")

    now = now or utcnow()
    if participant.is_active:
        _detach(meeting, participant, comms)
    if participant.removed_at is None:
        participant.removed_at = now
    if participant.left_at is None:
        participant.left_at = now

    seat = (
        db.query(MeetingSeat)
        .filter(MeetingSeat.meeting_id == meeting.id, MeetingSeat.current_participant_id == participant.id)
        .first()
    )
    if seat is not None:
        seat.current_participant_id = None

    record_event(db, case, "participant_removed", participant.display_name, admin)
    db.commit()
    db.refresh(participant)
    logger.info("Admin %s removed participant %s from meeting %s", admin.id, participant.id, meeting.id)
    return participant


def list_active_participants(db: Session, meeting: TrialMeeting) -> List[Participant]:
    return (
        db.query(Participant)
        .join(MeetingSeat, MeetingSeat.current_participant_id == Participant.id)
        .filter(
            MeetingSeat.meeting_id == meeting.id,
            Participant.left_at.is_(None),
            Participant.removed_at.is_(None),
        )
        .order_by(Participant.joined_at.asc(), Participant.id.asc())
        .all()
    )


# ============================================================================
# End
# ============================================================================

def end_trial(db: Session, case: Case, actor: User, now: Optional[datetime] = None) -> TrialMeeting:
    """Marks the meeting completed; connected clients are left to disconnect."""
    ensure_owner_or_admin(case, actor)
    now = now or utcnow()
    meeting = get_meeting(db, case)
    if meeting.status == MeetingStatus.completed:
        raise PolicyViolation("This trial has already ended", code="MEETING_ENDED")

    # An admin may have run the session before any read opened the window
    open_trial_if_due(db, case, now)
    raise_for_refusal(validate_transition(db, case, CaseTrigger.end_trial, now=now))

    meeting.status = MeetingStatus.completed
    meeting.ended_at = now
    meeting.ended_by = actor.id
    apply_transition(db, case, CaseTrigger.end_trial, actor=actor, now=now, description="Trial ended")
    notification_service.send_to_user(
        db, case.attorney, case.id, notices.TRIAL_ENDED,
        "Trial Ended",
        f'The trial for "{case.case_title}" has ended.',
    )
    db.commit()
    db.refresh(meeting)
    logger.info("Trial for case %s ended by %s", case.id, actor.id)
    return meeting
