"""Configuration models and enums for ytarticle."""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

ENV_PREFIX = "YTARTICLE_"


class WritingStyle(str, Enum):
    CASUAL = "casual"
    FORMAL = "formal"
    TECHNICAL = "technical"
    CUSTOM = "custom"


class Audience(str, Enum):
    GENERAL = "general"
    EXPERT = "expert"
    YOUNG = "young"
    CUSTOM = "custom"


class ArticleLength(str, Enum):
    RATING = "rating"
    FIGHT = "fight"
    SUMMARY = "summary"
    BRIEF = "brief"
    STANDARD = "standard"
    DETAILED = "detailed"


class OutputFormat(str, Enum):
    MARKDOWN = "markdown"
    HTML = "html"
    FAQ = "faq"
    LISTICLE = "listicle"


class GenerationOptions(BaseModel):
    """User-adjustable generation settings, sent to the API as the ``config`` object."""

    model_config = ConfigDict(extra="allow")

    style: WritingStyle = WritingStyle.CASUAL
    audience: Audience = Audience.GENERAL
    length: ArticleLength = ArticleLength.STANDARD
    output_format: OutputFormat = OutputFormat.MARKDOWN
    language: str = Field(default="en", pattern=r"^[a-z]{2}$")
    style_instructions: str | None = None
    audience_instructions: str | None = None

    @model_validator(mode="after")
    def validate_custom_instructions(self) -> "GenerationOptions":
        if self.style == WritingStyle.CUSTOM and not self.style_instructions:
            raise ValueError("style_instructions are required when style is 'custom'")
        if self.audience == Audience.CUSTOM and not self.audience_instructions:
            raise ValueError("audience_instructions are required when audience is 'custom'")
        return self

    def to_config(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ApiSettings(BaseModel):
    """Connection settings for the remote generation API."""

    api_url: str = "http://localhost:8000/api/v1"
    websocket_url: str = "ws://localhost:8000/api/v1/ws"
    api_token: SecretStr | None = None
    webhook_url: str | None = None
    webhook_secret: SecretStr | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)
    user_agent: str = "ytarticle/0.1"

    @field_validator("api_url", "websocket_url", "webhook_url")
    @classmethod
    def strip_trailing_slash(cls, value: str | None) -> str | None:
        return value.rstrip("/") if value else value

    @model_validator(mode="after")
    def validate_schemes(self) -> "ApiSettings":
        if not self.api_url.startswith(("http://", "https://")):
            raise ValueError("api_url must be an http(s) URL")
        if not self.websocket_url.startswith(("ws://", "wss://")):
            raise ValueError("websocket_url must be a ws(s) URL")
        if self.webhook_url and not self.webhook_url.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return self


class ChannelSettings(BaseModel):
    """Timeouts and retry policy for the realtime progress channel."""

    connect_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=300.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_base_delay: float = Field(default=1.0, ge=0)
    lookup_attempts: int = Field(default=5, ge=1)
    lookup_delay: float = Field(default=2.0, ge=0)
    result_lookup_url: str | None = None


class RegistrySettings(BaseModel):
    """Retention policy for tracked requests."""

    grace_seconds: float = Field(default=60.0, ge=0)
    max_lifetime_seconds: float = Field(default=3600.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def validate_lifetime(self) -> "RegistrySettings":
        if self.max_lifetime_seconds < self.grace_seconds:
            raise ValueError("max_lifetime_seconds should be >= grace_seconds")
        return self


class StoreSettings(BaseModel):
    """Where materialized articles are written and how they are linked."""

    article_dir: Path | None = None
    public_base_url: str = "/articles"


class Settings(BaseModel):
    api: ApiSettings = Field(default_factory=ApiSettings)
    channel: ChannelSettings = Field(default_factory=ChannelSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    log_level: str = "INFO"


_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "API_URL": ("api", "api_url"),
    "WEBSOCKET_URL": ("api", "websocket_url"),
    "API_TOKEN": ("api", "api_token"),
    "WEBHOOK_URL": ("api", "webhook_url"),
    "WEBHOOK_SECRET": ("api", "webhook_secret"),
    "TIMEOUT": ("api", "timeout_seconds"),
    "CONNECT_TIMEOUT": ("channel", "connect_timeout"),
    "READ_TIMEOUT": ("channel", "read_timeout"),
    "MAX_RECONNECT_ATTEMPTS": ("channel", "max_reconnect_attempts"),
    "RECONNECT_BASE_DELAY": ("channel", "reconnect_base_delay"),
    "RESULT_LOOKUP_URL": ("channel", "result_lookup_url"),
    "GRACE_SECONDS": ("registry", "grace_seconds"),
    "MAX_LIFETIME_SECONDS": ("registry", "max_lifetime_seconds"),
    "SWEEP_INTERVAL": ("registry", "sweep_interval_seconds"),
    "ARTICLE_DIR": ("store", "article_dir"),
    "PUBLIC_BASE_URL": ("store", "public_base_url"),
}


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from ``YTARTICLE_*`` environment variables."""

    source = os.environ if environ is None else environ
    sections: dict[str, dict[str, Any]] = {"api": {}, "channel": {}, "registry": {}, "store": {}}

    for suffix, (section, field_name) in _ENV_FIELDS.items():
        value = source.get(f"{ENV_PREFIX}{suffix}")
        if value is not None and value != "":
            sections[section][field_name] = value

    log_level = source.get(f"{ENV_PREFIX}LOG_LEVEL", "INFO").upper()
    return Settings(**sections, log_level=log_level)
