"""Unit tests for trial meeting provisioning, joins and ending."""

from datetime import date, datetime, time
from unittest.mock import MagicMock

import pytest

from docket.db.models import (
    AttorneyStatus,
    MeetingStatus,
    Notification,
    Participant,
    TrialMeeting,
    UserRole,
)
from docket.services import reschedule_service
from docket.services import trial_session_service as trials
from docket.services.communication_service import CommunicationService, DevCommunicationBackend
from docket.utils.exceptions import (
    ExternalServiceError,
    NotFoundError,
    PolicyViolation,
    UnauthorizedError,
)

# Default factory slot is 2030-06-10 10:00 UTC; the window opens at 09:45
WINDOW_OPEN = datetime(2030, 6, 10, 9, 45)
IN_SESSION = datetime(2030, 6, 10, 9, 50)


class ChatlessBackend(DevCommunicationBackend):
    """Dev backend whose chat service is down."""

    def create_chat_thread(self, topic, service_user_id, display_name):
        raise ExternalServiceError("chat unavailable", provider_status=503)


class ChatJoinFailsBackend(DevCommunicationBackend):

    def add_participant_to_chat(self, thread_id, user_id, display_name, service_user_id):
        raise ExternalServiceError("chat add failed", provider_status=503)


class RoomlessBackend(DevCommunicationBackend):

    def create_room(self, valid_from, valid_until):
        raise ExternalServiceError("rooms unavailable", provider_status=503)


class TokenlessBackend(DevCommunicationBackend):

    def issue_token(self, user_id, scopes):
        raise ExternalServiceError("token service unavailable", provider_status=503)


@pytest.fixture
def session(db, factory, comms, now):
    """A case submitted for trial with five approved jurors."""
    admin = factory.admin()
    attorney = factory.attorney(first_name="Ada", last_name="Lovelace")
    case = factory.war_room_case(attorney)
    jurors = factory.approved_jurors(case, 5)
    meeting = trials.submit_war_room(db, case, attorney, comms, now=now)
    return admin, attorney, case, jurors, meeting


class TestSubmitWarRoom:

    def test_submit_provisions_one_meeting(self, db, comms, session) -> None:
        admin, _, case, jurors, meeting = session

        assert case.attorney_status == AttorneyStatus.awaiting_trial
        assert meeting.status == MeetingStatus.created
        assert meeting.room_id in comms.backend.rooms
        assert meeting.chat_thread_id in comms.backend.threads
        assert db.query(TrialMeeting).filter(TrialMeeting.case_id == case.id).count() == 1
        notified = db.query(Notification).filter(Notification.type == "trial_scheduled").count()
        assert notified == len(jurors) + 1

    def test_second_submit_refused(self, db, comms, session, now) -> None:
        _, attorney, case, _, _ = session

        with pytest.raises(PolicyViolation) as exc_info:
            trials.submit_war_room(db, case, attorney, comms, now=now)

        assert exc_info.value.code == "ALREADY_SUBMITTED"
        assert db.query(TrialMeeting).filter(TrialMeeting.case_id == case.id).count() == 1

    def test_four_jurors_cannot_submit(self, db, factory, comms, now) -> None:
        attorney = factory.attorney()
        case = factory.war_room_case(attorney)
        factory.approved_jurors(case, 4)

        with pytest.raises(PolicyViolation) as exc_info:
            trials.submit_war_room(db, case, attorney, comms, now=now)

        assert exc_info.value.code == "INSUFFICIENT_JURORS"
        assert db.query(TrialMeeting).count() == 0

    def test_other_attorney_cannot_submit(self, db, factory, comms, now) -> None:
        case = factory.war_room_case(factory.attorney())
        factory.approved_jurors(case, 5)

        with pytest.raises(UnauthorizedError):
            trials.submit_war_room(db, case, factory.attorney(), comms, now=now)

    def test_room_failure_rolls_back(self, db, factory, now) -> None:
        attorney = factory.attorney()
        case = factory.war_room_case(attorney)
        factory.approved_jurors(case, 5)
        comms = CommunicationService(provider="dev", backend=RoomlessBackend())

        with pytest.raises(ExternalServiceError):
            trials.submit_war_room(db, case, attorney, comms, now=now)

        db.refresh(case)
        assert case.attorney_status == AttorneyStatus.war_room
        assert db.query(TrialMeeting).count() == 0

    def test_chat_failure_leaves_video_only_meeting(self, db, factory, now) -> None:
        attorney = factory.attorney()
        case = factory.war_room_case(attorney)
        factory.approved_jurors(case, 5)
        comms = CommunicationService(provider="dev", backend=ChatlessBackend())

        meeting = trials.submit_war_room(db, case, attorney, comms, now=now)

        assert meeting.room_id
        assert meeting.chat_thread_id is None
        assert case.attorney_status == AttorneyStatus.awaiting_trial

    def test_create_meeting_returns_existing_row(self, db, session) -> None:
        _, _, case, _, meeting = session
        provider = MagicMock()

        again = trials.create_meeting(db, case, provider)

        assert again.id == meeting.id
        assert provider.method_calls == []
        assert db.query(TrialMeeting).filter(TrialMeeting.case_id == case.id).count() == 1


class TestJoinWindow:

    def test_attorney_too_early(self, db, comms, session, now) -> None:
        _, attorney, case, _, _ = session

        with pytest.raises(PolicyViolation) as exc_info:
            trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=datetime(2030, 6, 10, 9, 0))

        assert exc_info.value.code == "TOO_EARLY"
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["minutesUntilJoin"] == 45
        assert exc_info.value.detail["canJoinAt"] == "2030-06-10T09:45:00"

    def test_juror_too_early(self, db, comms, session, now) -> None:
        _, _, case, jurors, _ = session

        with pytest.raises(PolicyViolation) as exc_info:
            trials.join_trial(db, case, jurors[0], UserRole.juror, comms, now=now)

        assert exc_info.value.code == "TOO_EARLY"

    def test_admin_may_join_early(self, db, comms, session, now) -> None:
        admin, _, case, _, meeting = session

        ticket = trials.join_trial(db, case, admin, UserRole.admin, comms, now=now)

        assert ticket.display_name == "Court Administrator"
        assert ticket.room_id == meeting.room_id
        assert comms.backend.rooms[meeting.room_id][ticket.user_id] == "Presenter"
        assert case.attorney_status == AttorneyStatus.awaiting_trial
        db.refresh(meeting)
        assert meeting.status == MeetingStatus.active

    def test_attorney_at_exact_boundary(self, db, comms, session) -> None:
        _, attorney, case, _, meeting = session

        ticket = trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=WINDOW_OPEN)

        assert ticket.display_name == "Ada Lovelace (Attorney)"
        assert ticket.chat_attached is True
        assert ticket.endpoint_url == comms.endpoint_url
        assert case.attorney_status == AttorneyStatus.in_trial

    def test_juror_gets_attendee_role(self, db, comms, session) -> None:
        _, _, case, jurors, meeting = session

        ticket = trials.join_trial(db, case, jurors[0], UserRole.juror, comms, now=IN_SESSION)

        assert ticket.display_name.endswith("(Juror)")
        assert comms.backend.rooms[meeting.room_id][ticket.user_id] == "Attendee"


class TestJoinAccess:

    def test_unapproved_juror_refused(self, db, factory, comms, session) -> None:
        _, _, case, _, _ = session

        with pytest.raises(UnauthorizedError):
            trials.join_trial(db, case, factory.juror(), UserRole.juror, comms, now=IN_SESSION)

    def test_wrong_entrance_refused(self, db, comms, session) -> None:
        _, attorney, case, _, _ = session

        with pytest.raises(UnauthorizedError):
            trials.join_trial(db, case, attorney, UserRole.juror, comms, now=IN_SESSION)

    def test_no_meeting_before_submit(self, db, factory, comms) -> None:
        admin = factory.admin()
        case = factory.war_room_case(factory.attorney())

        with pytest.raises(NotFoundError) as exc_info:
            trials.join_trial(db, case, admin, UserRole.admin, comms, now=IN_SESSION)

        assert exc_info.value.code == "MEETING_NOT_FOUND"


class TestSeats:

    def test_rejoin_keeps_one_live_identity(self, db, comms, session) -> None:
        # Given the attorney joined once
        _, attorney, case, _, meeting = session
        first = trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=WINDOW_OPEN)

        # When they join again, e.g. after a page refresh
        second = trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=IN_SESSION)

        # Then only the newest identity is live
        active = trials.list_active_participants(db, meeting)
        assert [p.id for p in active] == [second.participant_id]
        assert first.user_id not in comms.backend.rooms[meeting.room_id]
        old = db.query(Participant).filter(Participant.id == first.participant_id).one()
        assert old.left_at == IN_SESSION

    def test_chat_add_failure_is_not_fatal(self, db, factory, now) -> None:
        attorney = factory.attorney()
        case = factory.war_room_case(attorney)
        factory.approved_jurors(case, 5)
        comms = CommunicationService(provider="dev", backend=ChatJoinFailsBackend())
        trials.submit_war_room(db, case, attorney, comms, now=now)

        ticket = trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=IN_SESSION)

        assert ticket.chat_attached is False
        assert ticket.as_dict()["chatAttached"] is False
        assert ticket.token

    def test_leave_releases_seat(self, db, comms, session) -> None:
        _, _, case, jurors, meeting = session
        ticket = trials.join_trial(db, case, jurors[0], UserRole.juror, comms, now=IN_SESSION)

        released = trials.leave_trial(db, case, jurors[0], comms, now=IN_SESSION)

        assert released.id == ticket.participant_id
        assert released.left_at == IN_SESSION
        assert trials.list_active_participants(db, meeting) == []

    def test_leave_without_joining(self, db, comms, session) -> None:
        _, _, case, jurors, _ = session

        assert trials.leave_trial(db, case, jurors[1], comms) is None


class TestModeration:

    def test_admin_removes_participant(self, db, comms, session) -> None:
        admin, _, case, jurors, meeting = session
        ticket = trials.join_trial(db, case, jurors[0], UserRole.juror, comms, now=IN_SESSION)

        removed = trials.remove_participant(db, case, ticket.participant_id, admin, comms, now=IN_SESSION)

        assert removed.removed_at == IN_SESSION
        assert ticket.user_id not in comms.backend.rooms[meeting.room_id]
        assert trials.list_active_participants(db, meeting) == []

    def test_provider_cleanup_failure_still_removes(self, db, comms, session) -> None:
        # Given a juror attached to room and chat
        admin, _, case, jurors, meeting = session
        ticket = trials.join_trial(db, case, jurors[0], UserRole.juror, comms, now=IN_SESSION)
        failing = MagicMock()
        failing.remove_participant_from_room.side_effect = ExternalServiceError("room gone", provider_status=404)

        # When the provider refuses the room removal
        removed = trials.remove_participant(db, case, ticket.participant_id, admin, failing, now=IN_SESSION)

        # Then the removal is still recorded and chat cleanup was attempted
        assert removed.removed_at == IN_SESSION
        failing.remove_participant_from_chat.assert_called_once_with(
            meeting.chat_thread_id, ticket.user_id, meeting.chat_service_user_id,
        )
        assert trials.list_active_participants(db, meeting) == []

    def test_only_admin_removes(self, db, comms, session) -> None:
        _, attorney, case, jurors, _ = session
        ticket = trials.join_trial(db, case, jurors[0], UserRole.juror, comms, now=IN_SESSION)

        with pytest.raises(UnauthorizedError):
            trials.remove_participant(db, case, ticket.participant_id, attorney, comms)

    def test_unknown_participant(self, db, comms, session) -> None:
        admin, _, case, _, _ = session

        with pytest.raises(NotFoundError) as exc_info:
            trials.remove_participant(db, case, 999, admin, comms)

        assert exc_info.value.code == "PARTICIPANT_NOT_FOUND"


class TestEndTrial:

    def test_attorney_ends_trial(self, db, comms, session) -> None:
        _, attorney, case, _, _ = session
        trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=WINDOW_OPEN)

        meeting = trials.end_trial(db, case, attorney, now=IN_SESSION)

        assert meeting.status == MeetingStatus.completed
        assert meeting.ended_at == IN_SESSION
        assert meeting.ended_by == attorney.id
        assert case.attorney_status == AttorneyStatus.view_details

    def test_join_after_end_refused(self, db, comms, session) -> None:
        admin, attorney, case, jurors, _ = session
        trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=WINDOW_OPEN)
        trials.end_trial(db, case, admin, now=IN_SESSION)

        with pytest.raises(PolicyViolation) as exc_info:
            trials.join_trial(db, case, jurors[0], UserRole.juror, comms, now=IN_SESSION)

        assert exc_info.value.code == "MEETING_ENDED"

    def test_end_twice_refused(self, db, comms, session) -> None:
        _, attorney, case, _, _ = session
        trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=WINDOW_OPEN)
        trials.end_trial(db, case, attorney, now=IN_SESSION)

        with pytest.raises(PolicyViolation) as exc_info:
            trials.end_trial(db, case, attorney, now=IN_SESSION)

        assert exc_info.value.code == "MEETING_ENDED"

    def test_juror_cannot_end(self, db, comms, session) -> None:
        _, _, case, jurors, _ = session

        with pytest.raises(UnauthorizedError):
            trials.end_trial(db, case, jurors[0], now=IN_SESSION)

    def test_admin_ends_trial_after_early_join(self, db, comms, session) -> None:
        # Given the admin opened the session before the join window
        admin, _, case, _, _ = session
        trials.join_trial(db, case, admin, UserRole.admin, comms, now=datetime(2030, 6, 10, 9, 0))
        assert case.attorney_status == AttorneyStatus.awaiting_trial

        # When they end it after the scheduled start with no read in between
        meeting = trials.end_trial(db, case, admin, now=datetime(2030, 6, 10, 11, 0))

        # Then the window is opened on the way and the trial ends
        assert meeting.status == MeetingStatus.completed
        assert case.attorney_status == AttorneyStatus.view_details


class TestTokenFailure:

    def test_token_failure_removes_new_identity_from_room(self, db, factory, now) -> None:
        attorney = factory.attorney()
        case = factory.war_room_case(attorney)
        factory.approved_jurors(case, 5)
        comms = CommunicationService(provider="dev", backend=TokenlessBackend())
        meeting = trials.submit_war_room(db, case, attorney, comms, now=now)

        with pytest.raises(ExternalServiceError):
            trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=IN_SESSION)

        assert comms.backend.rooms[meeting.room_id] == {}
        assert db.query(Participant).count() == 0


class TestRescheduledMeeting:

    def test_attorney_cannot_join_after_reschedule(self, db, comms, session) -> None:
        # Given a submitted case moved to another day
        admin, attorney, case, _, meeting = session
        reschedule_service.reschedule_by_admin(db, case, admin, date(2030, 6, 20), time(10, 0), "Courtroom repairs")

        # When the attorney turns up inside the new slot's window
        with pytest.raises(PolicyViolation) as exc_info:
            trials.join_trial(db, case, attorney, UserRole.attorney, comms, now=datetime(2030, 6, 20, 9, 50))

        # Then the war-room case is refused and the old meeting is retired
        assert exc_info.value.code == "TRIAL_NOT_ACTIVE"
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["caseStatus"] == "war_room"
        db.refresh(meeting)
        assert meeting.status == MeetingStatus.cancelled

    def test_resubmit_reprovisions_meeting(self, db, factory, comms, session, now) -> None:
        # Given the admin joined early and the case was then rescheduled
        admin, attorney, case, _, meeting = session
        trials.join_trial(db, case, admin, UserRole.admin, comms, now=now)
        old_room = meeting.room_id
        reschedule_service.reschedule_by_admin(db, case, admin, date(2030, 6, 20), time(10, 0), "Courtroom repairs")
        assert trials.list_active_participants(db, meeting) == []

        # When a fresh pool is approved and the war room resubmitted
        factory.approved_jurors(case, 5)
        again = trials.submit_war_room(db, case, attorney, comms, now=now)

        # Then the same meeting row carries a new room
        assert again.id == meeting.id
        assert again.room_id != old_room
        assert again.status == MeetingStatus.created
        assert again.started_at is None
        assert again.ended_at is None
