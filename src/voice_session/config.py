"""Configuration schema for the voice session client.

Defines Pydantic models for loading and validating client configuration
from YAML files, ``.env`` files and environment variables. Configuration is
loaded once at startup and injected into the components that need it.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ApiConfig(BaseModel):
    """Agent backend HTTP API configuration."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(
        default="https://ivita.test",
        description="Agent backend base URL",
    )
    prefix: str = Field(
        default="/agora-ai",
        description="Path prefix prepended to every endpoint (empty for none)",
    )
    access_token: str = Field(
        default="",
        description="Bearer token sent in the Authorization header (empty disables)",
    )
    timeout_s: float = Field(
        default=10.0,
        gt=0,
        description="Total timeout for a single backend request in seconds",
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Remove trailing slashes from the base URL."""
        v = v.strip()
        if not v:
            raise ValueError("API base_url must not be empty")
        return v.rstrip("/")

    @field_validator("prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        """Normalize prefix to a single leading slash and no trailing slash."""
        v = v.strip().strip("/")
        if not v:
            return ""
        return f"/{v}"

    def with_prefix(self, path: str) -> str:
        """Join the configured prefix and an endpoint path.

        Args:
            path: Endpoint path, e.g. ``/start-agent``

        Returns:
            Prefixed path, e.g. ``/agora-ai/start-agent``
        """
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.prefix}{path}"


class RtcConfig(BaseModel):
    """Real-time channel configuration."""

    model_config = ConfigDict(frozen=True)

    app_id: str = Field(
        default="YOUR_APP_ID",
        description="Application identifier passed to the transport on join",
    )
    url: str = Field(
        default="ws://localhost:7880",
        description="LiveKit server URL",
    )
    reconcile_interval_ms: int = Field(
        default=500,
        ge=50,
        description="Interval of the remote participant reconciliation pass",
    )


class MediaConfig(BaseModel):
    """Local microphone configuration."""

    model_config = ConfigDict(frozen=True)

    mic_enabled: bool = Field(
        default=True,
        description="Initial microphone preference",
    )
    release_on_disable: bool = Field(
        default=True,
        description="Close the capture device when the microphone is turned off",
    )
    sample_rate: int = Field(
        default=48000,
        description="Capture and playback sample rate in Hz",
    )
    num_channels: int = Field(
        default=1,
        ge=1,
        le=2,
        description="Capture channel count",
    )

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that the sample rate is supported by the transport."""
        valid_rates = [16000, 24000, 48000]
        if v not in valid_rates:
            raise ValueError(f"Media sample_rate must be one of {valid_rates}, got {v}")
        return v


class ClientConfig(BaseModel):
    """Root client configuration."""

    model_config = ConfigDict(frozen=True)

    api: ApiConfig = Field(default_factory=ApiConfig)
    rtc: RtcConfig = Field(default_factory=RtcConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @staticmethod
    def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
        """Overlay environment variables onto raw configuration data."""
        if base_url := os.getenv("AGENT_API_BASE_URL"):
            data.setdefault("api", {})["base_url"] = base_url

        # An explicitly empty prefix is meaningful, so check presence
        if (prefix := os.getenv("AGENT_API_PREFIX")) is not None:
            data.setdefault("api", {})["prefix"] = prefix

        if access_token := os.getenv("AGENT_USER_ACCESS_TOKEN"):
            data.setdefault("api", {})["access_token"] = access_token

        if timeout_s := os.getenv("AGENT_API_TIMEOUT_S"):
            data.setdefault("api", {})["timeout_s"] = float(timeout_s)

        if app_id := os.getenv("RTC_APP_ID"):
            data.setdefault("rtc", {})["app_id"] = app_id

        if livekit_url := os.getenv("LIVEKIT_URL"):
            data.setdefault("rtc", {})["url"] = livekit_url

        if mic_enabled := os.getenv("MIC_ENABLED"):
            data.setdefault("media", {})["mic_enabled"] = mic_enabled.lower() in (
                "true",
                "1",
                "yes",
            )

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return data

    @classmethod
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(cls._apply_env_overrides(data))

    @classmethod
    def from_env(cls, path: Path | None = None) -> "ClientConfig":
        """Load configuration from ``.env``, optional YAML, and the environment.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults with environment overrides
        """
        from dotenv import load_dotenv

        load_dotenv()

        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(cls._apply_env_overrides({}))
