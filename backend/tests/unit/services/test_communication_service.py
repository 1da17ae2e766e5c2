"""Unit tests for the communication provider backends."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.communication.rooms import ParticipantRole
from azure.core.exceptions import HttpResponseError, ServiceRequestError

from docket.services.communication_service import (
    AcsCommunicationBackend,
    CommunicationService,
    DevCommunicationBackend,
    parse_connection_string,
)
from docket.utils.exceptions import ExternalServiceError

CONNECTION_STRING = "endpoint=https://acs.test/;accesskey=c2VjcmV0"


def _http_error(status: int) -> HttpResponseError:
    error = HttpResponseError(message=f"provider answered {status}")
    error.status_code = status
    return error


def _identity(user_id: str) -> SimpleNamespace:
    return SimpleNamespace(properties={"id": user_id})


@pytest.fixture
def sleeps(monkeypatch) -> list:
    waits = []
    monkeypatch.setattr("time.sleep", waits.append)
    return waits


@pytest.fixture
def clients() -> SimpleNamespace:
    return SimpleNamespace(identity=MagicMock(), rooms=MagicMock(), chat=MagicMock(), chat_factory=MagicMock())


def _backend(clients: SimpleNamespace, max_attempts: int = 3) -> AcsCommunicationBackend:
    clients.chat_factory.return_value = clients.chat
    return AcsCommunicationBackend(
        CONNECTION_STRING,
        timeout=1.0,
        max_attempts=max_attempts,
        initial_delay=0.5,
        backoff_base=2.0,
        max_delay=5.0,
        identity_client=clients.identity,
        rooms_client=clients.rooms,
        chat_client_factory=clients.chat_factory,
    )


class TestParseConnectionString:

    def test_endpoint_and_key(self) -> None:
        assert parse_connection_string("endpoint=https://acs.test;accesskey=abc==") == ("https://acs.test/", "abc==")

    def test_keys_are_case_insensitive(self) -> None:
        endpoint, key = parse_connection_string("Endpoint=https://acs.test/;AccessKey=xyz")

        assert endpoint == "https://acs.test/"
        assert key == "xyz"

    @pytest.mark.parametrize("value", ["", "endpoint=https://acs.test/", "accesskey=abc"])
    def test_missing_parts(self, value) -> None:
        with pytest.raises(ValueError):
            parse_connection_string(value)


class TestAcsRetries:

    def test_transient_failure_is_retried_with_backoff(self, clients, sleeps) -> None:
        # Given the rooms service fails twice with 503 and then succeeds
        clients.rooms.create_room.side_effect = [_http_error(503), _http_error(503), SimpleNamespace(id="room-1")]
        backend = _backend(clients)

        # When a room is created
        room_id = backend.create_room(datetime(2030, 6, 1), datetime(2030, 6, 30))

        # Then it succeeded on the third attempt after growing delays
        assert room_id == "room-1"
        assert clients.rooms.create_room.call_count == 3
        assert sleeps == [0.5, 1.0]

    def test_room_window_is_sent_timezone_aware(self, clients, sleeps) -> None:
        clients.rooms.create_room.return_value = SimpleNamespace(id="room-1")

        _backend(clients).create_room(datetime(2030, 6, 1), datetime(2030, 6, 30))

        kwargs = clients.rooms.create_room.call_args.kwargs
        assert kwargs["valid_from"] == datetime(2030, 6, 1, tzinfo=timezone.utc)
        assert kwargs["valid_until"].tzinfo is not None

    def test_throttling_is_retried(self, clients, sleeps) -> None:
        clients.identity.create_user.side_effect = [_http_error(429), _identity("8:acs:user-2")]

        assert _backend(clients).create_user() == "8:acs:user-2"
        assert sleeps == [0.5]

    def test_network_error_is_retried(self, clients, sleeps) -> None:
        clients.identity.create_user.side_effect = [ServiceRequestError("connection reset"), _identity("8:acs:user-3")]

        assert _backend(clients).create_user() == "8:acs:user-3"
        assert sleeps == [0.5]

    def test_client_error_is_not_retried(self, clients, sleeps) -> None:
        clients.identity.create_user.side_effect = _http_error(400)

        with pytest.raises(ExternalServiceError) as exc_info:
            _backend(clients).create_user()

        assert exc_info.value.provider_status == 400
        assert exc_info.value.status_code == 502
        assert clients.identity.create_user.call_count == 1
        assert sleeps == []

    def test_gives_up_after_max_attempts(self, clients, sleeps) -> None:
        clients.identity.create_user.side_effect = _http_error(500)

        with pytest.raises(ExternalServiceError) as exc_info:
            _backend(clients, max_attempts=2).create_user()

        assert exc_info.value.provider_status == 500
        assert clients.identity.create_user.call_count == 2
        assert sleeps == [0.5]

    def test_delay_is_capped(self, clients, sleeps) -> None:
        clients.identity.create_user.side_effect = _http_error(503)

        with pytest.raises(ExternalServiceError):
            _backend(clients, max_attempts=6).create_user()

        assert sleeps == [0.5, 1.0, 2.0, 4.0, 5.0]


class TestAcsCalls:

    def test_token_expiry_is_utc_iso(self, clients, sleeps) -> None:
        clients.identity.get_token.return_value = SimpleNamespace(
            token="user-token", expires_on=datetime(2030, 6, 2, tzinfo=timezone.utc),
        )

        issued = _backend(clients).issue_token("8:acs:user-1", ["voip", "chat"])

        assert issued.token == "user-token"
        assert issued.expires_on == "2030-06-02T00:00:00Z"
        identifier, scopes = clients.identity.get_token.call_args.args
        assert identifier.properties["id"] == "8:acs:user-1"
        assert [str(s.value) for s in scopes] == ["voip", "chat"]

    def test_room_add_conflict_counts_as_success(self, clients, sleeps) -> None:
        clients.rooms.add_or_update_participants.side_effect = _http_error(409)

        _backend(clients).add_participant_to_room("room-1", "8:acs:user-1", "Attendee")

        kwargs = clients.rooms.add_or_update_participants.call_args.kwargs
        assert kwargs["room_id"] == "room-1"
        participant = kwargs["participants"][0]
        assert participant.communication_identifier.properties["id"] == "8:acs:user-1"
        assert participant.role == ParticipantRole.ATTENDEE
        assert sleeps == []

    def test_chat_calls_use_service_token(self, clients, sleeps) -> None:
        clients.identity.get_token.return_value = SimpleNamespace(token="service-token", expires_on=1906502400)
        clients.chat.create_chat_thread.return_value = SimpleNamespace(
            chat_thread=SimpleNamespace(id="19:thread@thread.v2"),
        )

        thread_id = _backend(clients).create_chat_thread("Trial: Smith v. Jones", "8:acs:svc", "Trial Service")

        assert thread_id == "19:thread@thread.v2"
        clients.chat_factory.assert_called_once_with("service-token")
        kwargs = clients.chat.create_chat_thread.call_args.kwargs
        assert kwargs["topic"] == "Trial: Smith v. Jones"
        assert kwargs["thread_participants"][0].display_name == "Trial Service"

    def test_chat_add_reports_per_participant_failure(self, clients, sleeps) -> None:
        clients.identity.get_token.return_value = SimpleNamespace(token="service-token", expires_on=1906502400)
        thread = clients.chat.get_chat_thread_client.return_value
        thread.add_participants.return_value = [(MagicMock(), "participant limit reached")]

        with pytest.raises(ExternalServiceError) as exc_info:
            _backend(clients).add_participant_to_chat("19:thread@thread.v2", "8:acs:user-1", "Ada (Juror)", "8:acs:svc")

        assert "participant limit reached" in exc_info.value.message
        clients.chat.get_chat_thread_client.assert_called_once_with("19:thread@thread.v2")


class TestCommunicationService:

    def test_dev_provider_round_trip(self) -> None:
        comms = CommunicationService(provider="dev")

        room_id, valid_until = comms.create_room()
        user_id = comms.create_user()
        comms.add_participant_to_room(room_id, user_id, "Presenter")
        token = comms.issue_token(user_id)

        assert comms.backend.rooms[room_id] == {user_id: "Presenter"}
        assert token.token.startswith("dev-token-")
        assert valid_until is not None

    def test_room_validity_is_capped(self) -> None:
        comms = CommunicationService(provider="dev")

        _, valid_until = comms.create_room(valid_days=90)
        _, capped = comms.create_room(valid_days=30)

        assert abs((valid_until - capped).total_seconds()) < 5

    def test_dev_token_for_unknown_identity(self) -> None:
        backend = DevCommunicationBackend()

        with pytest.raises(ExternalServiceError):
            backend.issue_token("8:dev:nobody", ["voip"])

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError):
            CommunicationService(provider="carrier-pigeon")
