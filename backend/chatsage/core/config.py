"""ChatSage bot configuration"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# === Path Configuration ===
PACKAGE_DIR = Path(__file__).parent.parent
BACKEND_DIR = PACKAGE_DIR.parent

# === Twitch endpoints ===
OAUTH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
HELIX_BASE = "https://api.twitch.tv/helix"

# Broadcaster scopes the onboarding flow must request for ad notifications
BROADCASTER_SCOPES = [
    "channel:read:ads",  # Ad schedule + ad_break.begin EventSub
    "channel:bot",  # Allow bot to join channel
]

REGISTRY_CHANGES_CHANNEL = "managed_channels_changes"


class BotSettings(BaseSettings):
    """ChatSage core settings"""

    model_config = SettingsConfigDict(
        env_file=BACKEND_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Twitch OAuth (validated at point of use so the CLI can still print help)
    twitch_client_id: str = Field(default="", description="Twitch OAuth Client ID")
    twitch_client_secret: str = Field(default="", description="Twitch OAuth Client Secret")

    # Registry
    database_url: str = Field(..., description="PostgreSQL registry URL")

    # EventSub webhook transport
    public_url: str = Field(default="", description="Public base URL for EventSub callbacks")
    eventsub_secret: str = Field(default="", description="EventSub webhook signing secret")

    # Connection behaviour
    lazy_connect: bool = Field(default=False, description="Defer chat connection until a channel is live")

    # Timers
    sync_interval_seconds: int = Field(default=0, description="Full reconciliation period, 0 disables")
    ad_poll_interval_seconds: int = Field(default=30, description="Ad schedule sweep period")
    change_queue_size: int = Field(default=256, description="Bounded realtime change queue size")

    # Health server
    health_port: int = Field(default=8080, description="Health check HTTP port")

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("public_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("ad_poll_interval_seconds", "change_queue_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper

    @property
    def eventsub_callback_url(self) -> str:
        return f"{self.public_url}/twitch/event" if self.public_url else ""


@lru_cache
def get_settings() -> BotSettings:
    """Get cached settings instance"""
    return BotSettings()  # type: ignore[call-arg]
