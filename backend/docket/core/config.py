# docket/core/config.py
"""
Application configuration using Pydantic Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional
import json
from pydantic import field_validator


# Offsets in minutes east of UTC (local = UTC + offset). Overridable through
# STATE_TIMEZONE_OFFSETS without touching the scheduling code.
_EASTERN = [
    "Connecticut", "Delaware", "Florida", "Georgia", "Maine", "Maryland",
    "Massachusetts", "Michigan", "New Hampshire", "New Jersey", "New York",
    "North Carolina", "Ohio", "Pennsylvania", "Rhode Island", "South Carolina",
    "Vermont", "Virginia", "West Virginia",
]
_CENTRAL = [
    "Alabama", "Arkansas", "Illinois", "Iowa", "Kansas", "Kentucky",
    "Louisiana", "Minnesota", "Mississippi", "Missouri", "Nebraska",
    "North Dakota", "Oklahoma", "South Dakota", "Tennessee", "Texas",
    "Wisconsin",
]
_MOUNTAIN = ["Arizona", "Colorado", "Idaho", "Montana", "New Mexico", "Utah", "Wyoming"]
_PACIFIC = ["California", "Nevada", "Oregon", "Washington"]

DEFAULT_STATE_TIMEZONE_OFFSETS: Dict[str, int] = {
    **{name: -300 for name in _EASTERN},
    **{name: -360 for name in _CENTRAL},
    **{name: -420 for name in _MOUNTAIN},
    **{name: -480 for name in _PACIFIC},
    "Alaska": -540,
    "Hawaii": -600,
    "India": 330,
}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    """

    # Application
    APP_NAME: str = "Docket"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # JWT Authentication (tokens are issued by the identity service)
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # CORS
    CORS_ORIGINS: str = '["http://localhost:3000"]'

    # Juror capacity
    JUROR_FLOOR: int = 5
    JUROR_CEILING: int = 7
    DEFAULT_REQUIRED_JURORS: int = 7

    # Scheduling
    JOIN_WINDOW_MINUTES: int = 15
    CASE_SCHEDULE_BUFFER_MINUTES: int = 5
    STATE_TIMEZONE_OFFSETS: str = ""   # JSON object, merged over the defaults
    RESCHEDULE_NOTIFY_ADMIN_ID: Optional[int] = None

    # Live trial communication
    COMMUNICATION_PROVIDER: str = "dev"   # dev | acs
    ACS_CONNECTION_STRING: str = ""
    COMMUNICATION_TIMEOUT_SECONDS: float = 20.0
    COMMUNICATION_MAX_RETRIES: int = 3
    COMMUNICATION_RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    COMMUNICATION_RETRY_BACKOFF: float = 2.0
    COMMUNICATION_RETRY_MAX_DELAY_SECONDS: float = 10.0
    TRIAL_ROOM_VALID_DAYS: int = 30
    TRIAL_TOKEN_SCOPES: str = "voip,chat"

    @field_validator("COMMUNICATION_PROVIDER", mode="before")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip().lower() or "dev"
        return v

    @field_validator("TRIAL_ROOM_VALID_DAYS")
    @classmethod
    def cap_room_validity(cls, v: int) -> int:
        # Rooms cannot be valid for longer than 30 days
        return max(1, min(int(v), 30))

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from string to list"""
        try:
            if isinstance(self.CORS_ORIGINS, str):
                return json.loads(self.CORS_ORIGINS)
            return self.CORS_ORIGINS
        except json.JSONDecodeError:
            return ["http://localhost:3000"]

    @property
    def state_timezone_offsets(self) -> Dict[str, int]:
        """Built-in state offsets with the JSON override applied on top."""
        offsets = dict(DEFAULT_STATE_TIMEZONE_OFFSETS)
        raw = (self.STATE_TIMEZONE_OFFSETS or "").strip()
        if not raw:
            return offsets
        try:
            override = json.loads(raw)
        except json.JSONDecodeError:
            return offsets
        if isinstance(override, dict):
            for name, minutes in override.items():
                try:
                    offsets[str(name)] = int(minutes)
                except (TypeError, ValueError):
                    continue
        return offsets

    @property
    def trial_token_scopes_list(self) -> List[str]:
        return [s.strip() for s in (self.TRIAL_TOKEN_SCOPES or "").split(",") if s.strip()]


# Create settings instance
settings = Settings()
