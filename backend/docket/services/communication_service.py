"""
services/communication_service.py

Video room + chat thread provider with a provider toggle.

  dev  in-memory rooms/threads/identities, logged; no network
  acs  Azure Communication Services through the azure-communication
       identity, rooms and chat SDKs

Every provider call uses a bounded timeout and retries transient failures
(network errors, 429, 5xx) with exponential backoff. Other 4xx responses fail
immediately. Failures surface as ExternalServiceError.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import backoff
from azure.communication.chat import ChatClient, ChatParticipant, CommunicationTokenCredential
from azure.communication.identity import (
    CommunicationIdentityClient,
    CommunicationTokenScope,
    CommunicationUserIdentifier,
)
from azure.communication.rooms import ParticipantRole, RoomParticipant, RoomsClient
from azure.core.exceptions import AzureError

from docket.core.config import settings
from docket.core.logger import logger
from docket.utils.exceptions import ExternalServiceError
from docket.utils.helpers import utcnow

ROLE_PRESENTER = "Presenter"
ROLE_ATTENDEE = "Attendee"
ROLE_CONSUMER = "Consumer"


@dataclass
class IssuedToken:
    token: str
    expires_on: str


# ============================================================================
# Dev backend
# ============================================================================

class DevCommunicationBackend:
    """In-process fake used for local development and tests."""

    endpoint_url = "https://dev.communication.local/"

    def __init__(self) -> None:
        self.users: Set[str] = set()
        self.rooms: Dict[str, Dict[str, str]] = {}
        self.threads: Dict[str, Dict[str, str]] = {}

    def create_user(self) -> str:
        user_id = f"8:dev:{uuid.uuid4().hex}"
        self.users.add(user_id)
        logger.info("[DEV COMMS] created identity %s", user_id)
        return user_id

    def issue_token(self, user_id: str, scopes: List[str]) -> IssuedToken:
        if user_id not in self.users:
            raise ExternalServiceError(f"Unknown identity {user_id}", provider_status=404)
        expires = utcnow() + timedelta(hours=24)
        return IssuedToken(token=f"dev-token-{uuid.uuid4().hex}", expires_on=expires.isoformat() + "Z")

    def create_room(self, valid_from: datetime, valid_until: datetime) -> str:
        room_id = f"dev-room-{uuid.uuid4().hex[:16]}"
        self.rooms[room_id] = {}
        logger.info("[DEV COMMS] created room %s valid until %s", room_id, valid_until.isoformat())
        return room_id

    def add_participant_to_room(self, room_id: str, user_id: str, role: str) -> None:
        if room_id not in self.rooms:
            raise ExternalServiceError(f"Room {room_id} not found", provider_status=404)
        self.rooms[room_id][user_id] = role

    def remove_participant_from_room(self, room_id: str, user_id: str) -> None:
        self.rooms.get(room_id, {}).pop(user_id, None)

    def create_chat_thread(self, topic: str, service_user_id: str, display_name: str) -> str:
        thread_id = f"19:dev-{uuid.uuid4().hex}@thread.v2"
        self.threads[thread_id] = {service_user_id: display_name}
        logger.info("[DEV COMMS] created chat thread %s topic=%s", thread_id, topic)
        return thread_id

    def add_participant_to_chat(self, thread_id: str, user_id: str, display_name: str, service_user_id: str) -> None:
        if thread_id not in self.threads:
            raise ExternalServiceError(f"Chat thread {thread_id} not found", provider_status=404)
        self.threads[thread_id][user_id] = display_name

    def remove_participant_from_chat(self, thread_id: str, user_id: str, service_user_id: str) -> None:
        self.threads.get(thread_id, {}).pop(user_id, None)


# ============================================================================
# ACS backend
# ============================================================================

def parse_connection_string(connection_string: str) -> tuple[str, str]:
    """'endpoint=https://x.communication.azure.com/;accesskey=...' -> (endpoint, key)"""
    parts: Dict[str, str] = {}
    for segment in (connection_string or "").split(";"):
        if "=" not in segment:
            continue
        key, value = segment.split("=", 1)
        parts[key.strip().lower()] = value.strip()
    endpoint = parts.get("endpoint", "")
    access_key = parts.get("accesskey", "")
    if not endpoint or not access_key:
        raise ValueError("ACS connection string missing (endpoint=...;accesskey=...)")
    if not endpoint.endswith("/"):
        endpoint = f"{endpoint}/"
    return endpoint, access_key


def _is_permanent(e: AzureError) -> bool:
    """4xx other than 429 will not get better on retry."""
    status = getattr(e, "status_code", None)
    return status is not None and 400 <= status < 500 and status != 429


def _format_expiry(expires_on: Any) -> str:
    if isinstance(expires_on, datetime):
        if expires_on.tzinfo is not None:
            expires_on = expires_on.astimezone(timezone.utc).replace(tzinfo=None)
        return expires_on.isoformat() + "Z"
    if isinstance(expires_on, (int, float)):
        return datetime.fromtimestamp(expires_on, tz=timezone.utc).replace(tzinfo=None).isoformat() + "Z"
    return str(expires_on or "")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class AcsCommunicationBackend:
    """
    Azure Communication Services through the identity, rooms and chat SDKs.

    The SDK clients run with their own retry policy disabled; each call goes
    through _call, which retries with exponential backoff and converts the
    final AzureError into ExternalServiceError.
    """

    def __init__(
        self,
        connection_string:   str,
        timeout:             float = settings.COMMUNICATION_TIMEOUT_SECONDS,
        max_attempts:        int = settings.COMMUNICATION_MAX_RETRIES,
        initial_delay:       float = settings.COMMUNICATION_RETRY_INITIAL_DELAY_SECONDS,
        backoff_base:        float = settings.COMMUNICATION_RETRY_BACKOFF,
        max_delay:           float = settings.COMMUNICATION_RETRY_MAX_DELAY_SECONDS,
        identity_client:     Optional[CommunicationIdentityClient] = None,
        rooms_client:        Optional[RoomsClient] = None,
        chat_client_factory: Optional[Callable[[str], ChatClient]] = None,
    ) -> None:
        self.endpoint_url, _ = parse_connection_string(connection_string)
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = initial_delay
        self.backoff_base = backoff_base
        self.max_delay = max_delay

        client_options = {"retry_total": 0, "connection_timeout": timeout, "read_timeout": timeout}
        self._identity = identity_client or CommunicationIdentityClient.from_connection_string(
            connection_string, **client_options
        )
        self._rooms = rooms_client or RoomsClient.from_connection_string(connection_string, **client_options)
        self._chat_client_factory = chat_client_factory or (
            lambda token: ChatClient(self.endpoint_url.rstrip("/"), CommunicationTokenCredential(token), **client_options)
        )

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        def log_retry(details: Dict[str, Any]) -> None:
            logger.warning(
                "ACS %s attempt %s/%s failed, retrying in %.1fs: %s",
                operation, details["tries"], self.max_attempts, details["wait"], details.get("exception"),
            )

        @backoff.on_exception(
            backoff.expo,
            AzureError,
            max_tries=self.max_attempts,
            giveup=_is_permanent,
            jitter=None,
            on_backoff=log_retry,
            base=self.backoff_base,
            factor=self.initial_delay,
            max_value=self.max_delay,
        )
        def attempt() -> Any:
            return fn()

        try:
            return attempt()
        except AzureError as e:
            raise ExternalServiceError(
                f"{operation} failed: {e}",
                provider_status=getattr(e, "status_code", None),
            ) from e

    # ── Identity ────────────────────────────────────────────────────────────

    def create_user(self) -> str:
        identifier = self._call("create_user", self._identity.create_user)
        user_id = (getattr(identifier, "properties", None) or {}).get("id")
        if not user_id:
            raise ExternalServiceError("create_user returned no identity")
        return user_id

    def issue_token(self, user_id: str, scopes: List[str]) -> IssuedToken:
        token_scopes = [CommunicationTokenScope(scope) for scope in scopes]
        issued = self._call(
            "issue_token",
            lambda: self._identity.get_token(CommunicationUserIdentifier(user_id), token_scopes),
        )
        if not getattr(issued, "token", None):
            raise ExternalServiceError("issue_token returned no token")
        return IssuedToken(token=issued.token, expires_on=_format_expiry(issued.expires_on))

    # ── Rooms ───────────────────────────────────────────────────────────────

    def create_room(self, valid_from: datetime, valid_until: datetime) -> str:
        room = self._call(
            "create_room",
            lambda: self._rooms.create_room(valid_from=_aware(valid_from), valid_until=_aware(valid_until)),
        )
        if not getattr(room, "id", None):
            raise ExternalServiceError("create_room returned no id")
        return room.id

    def add_participant_to_room(self, room_id: str, user_id: str, role: str) -> None:
        participant = RoomParticipant(
            communication_identifier=CommunicationUserIdentifier(user_id),
            role=ParticipantRole(role),
        )
        try:
            self._call(
                "add_participant_to_room",
                lambda: self._rooms.add_or_update_participants(room_id=room_id, participants=[participant]),
            )
        except ExternalServiceError as e:
            if e.provider_status == 409:
                logger.info("Participant %s already in room %s", user_id, room_id)
                return
            raise

    def remove_participant_from_room(self, room_id: str, user_id: str) -> None:
        self._call(
            "remove_participant_from_room",
            lambda: self._rooms.remove_participants(
                room_id=room_id, participants=[CommunicationUserIdentifier(user_id)],
            ),
        )

    # ── Chat ────────────────────────────────────────────────────────────────

    def _chat(self, service_user_id: str) -> ChatClient:
        token = self.issue_token(service_user_id, ["chat"]).token
        return self._chat_client_factory(token)

    def create_chat_thread(self, topic: str, service_user_id: str, display_name: str) -> str:
        chat = self._chat(service_user_id)
        owner = ChatParticipant(identifier=CommunicationUserIdentifier(service_user_id), display_name=display_name)
        result = self._call(
            "create_chat_thread",
            lambda: chat.create_chat_thread(topic=topic, thread_participants=[owner]),
        )
        thread = getattr(result, "chat_thread", None)
        if thread is None or not thread.id:
            raise ExternalServiceError("create_chat_thread returned no thread id")
        return thread.id

    def add_participant_to_chat(self, thread_id: str, user_id: str, display_name: str, service_user_id: str) -> None:
        thread = self._chat(service_user_id).get_chat_thread_client(thread_id)
        participant = ChatParticipant(
            identifier=CommunicationUserIdentifier(user_id),
            display_name=display_name,
            share_history_time=datetime(1970, 1, 1, tzinfo=timezone.utc),
        )
        failures = self._call(
            "add_participant_to_chat",
            lambda: thread.add_participants(thread_participants=[participant]),
        )
        if failures:
            raise ExternalServiceError(f"add_participant_to_chat failed for {user_id}: {failures[0][1]}")

    def remove_participant_from_chat(self, thread_id: str, user_id: str, service_user_id: str) -> None:
        thread = self._chat(service_user_id).get_chat_thread_client(thread_id)
        self._call(
            "remove_participant_from_chat",
            lambda: thread.remove_participant(identifier=CommunicationUserIdentifier(user_id)),
        )


# ============================================================================
# Facade
# ============================================================================

class CommunicationService:
    """Room/chat/identity operations with a provider toggle."""

    def __init__(self, provider: Optional[str] = None, backend: Optional[Any] = None) -> None:
        self.provider = (provider or settings.COMMUNICATION_PROVIDER or "dev").strip().lower()
        if backend is not None:
            self.backend = backend
        elif self.provider == "dev":
            self.backend = DevCommunicationBackend()
        elif self.provider == "acs":
            self.backend = AcsCommunicationBackend(settings.ACS_CONNECTION_STRING)
        else:
            raise ValueError(f"Unsupported COMMUNICATION_PROVIDER: {self.provider}")

    @property
    def endpoint_url(self) -> str:
        return self.backend.endpoint_url

    def create_user(self) -> str:
        return self.backend.create_user()

    def issue_token(self, user_id: str, scopes: Optional[List[str]] = None) -> IssuedToken:
        return self.backend.issue_token(user_id, scopes or settings.trial_token_scopes_list)

    def create_room(self, valid_days: int = settings.TRIAL_ROOM_VALID_DAYS) -> tuple[str, datetime]:
        valid_from = utcnow()
        valid_until = valid_from + timedelta(days=min(max(valid_days, 1), 30))
        return self.backend.create_room(valid_from, valid_until), valid_until

    def add_participant_to_room(self, room_id: str, user_id: str, role: str) -> None:
        self.backend.add_participant_to_room(room_id, user_id, role)

    def remove_participant_from_room(self, room_id: str, user_id: str) -> None:
        self.backend.remove_participant_from_room(room_id, user_id)

    def create_chat_thread(self, topic: str, service_user_id: str, display_name: str = "Trial Service") -> str:
        return self.backend.create_chat_thread(topic, service_user_id, display_name)

    def add_participant_to_chat(self, thread_id: str, user_id: str, display_name: str, service_user_id: str) -> None:
        self.backend.add_participant_to_chat(thread_id, user_id, display_name, service_user_id)

    def remove_participant_from_chat(self, thread_id: str, user_id: str, service_user_id: str) -> None:
        self.backend.remove_participant_from_chat(thread_id, user_id, service_user_id)


_communication_service: Optional[CommunicationService] = None


def get_communication_service() -> CommunicationService:
    """FastAPI dependency; built lazily so a misconfigured provider fails per request."""
    global _communication_service
    if _communication_service is None:
        _communication_service = CommunicationService()
    return _communication_service
