"""Configuration schema and validation using Pydantic.

Validates and coerces values gathered from the environment, an optional
``.env`` file, and programmatic overrides into typed settings with defaults.
"""

from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_URL = "https://api.attio.com"
MIN_API_KEY_LENGTH = 10


class AttioSettings(BaseSettings):
    """Pydantic settings schema for the Attio client.

    Integrates with environment variables using the ``ATTIO_`` prefix. Delays
    and timeouts are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="ATTIO_",
        env_file=None,  # Only used when explicitly requested
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Connection ---

    api_key: str | None = Field(
        default=None,
        description="Attio API key or OAuth access token",
    )

    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="API base URL",
        min_length=1,
    )

    timeout_seconds: float | None = Field(
        default=30.0,
        description="Per-request timeout; None or 0 disables it",
        ge=0,
    )

    correlation_ids: bool = Field(
        default=False,
        description="Send an x-attio-correlation-id header with every request",
    )

    # --- Retry ---

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=5.0, ge=0)

    # --- Listing and batching ---

    batch_concurrency: int = Field(default=4, ge=1)
    page_size: int = Field(default=50, ge=1)

    # --- Validation Rules ---

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be joined with a single slash."""
        stripped = v.strip().rstrip("/")
        if not stripped.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return stripped

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str | None) -> str | None:
        """Reject keys that are obviously malformed."""
        if v is None:
            return None
        if len(v) < MIN_API_KEY_LENGTH:
            raise ValueError(
                f"api_key looks too short (expected at least {MIN_API_KEY_LENGTH} characters)"
            )
        if any(ch.isspace() for ch in v):
            raise ValueError("api_key must not contain whitespace")
        return v

    @model_validator(mode="after")
    def validate_delays(self) -> "AttioSettings":
        """Ensure the retry delay cap is not below the initial delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def to_dict(self) -> dict[str, Any]:
        """Return field values keyed by name, in declaration order."""
        return {name: getattr(self, name) for name in type(self).model_fields}
