"""Configuration data types, following the resolve-once, freeze-then-flow pattern."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal, NamedTuple

from attio_core.batch import BatchOptions
from attio_core.retry import RetryConfig

from .schema import DEFAULT_BASE_URL

# --- Source Tracking Types ---

ConfigOrigin = Literal["programmatic", "env", "env_file", "default"]
SourceMap = Mapping[str, ConfigOrigin]

_FIELD_ORDER = (
    "api_key",
    "base_url",
    "timeout_seconds",
    "correlation_ids",
    "max_retries",
    "initial_delay",
    "max_delay",
    "batch_concurrency",
    "page_size",
)


def _redact(api_key: str | None) -> str | None:
    return "[REDACTED]" if api_key else None


class ResolvedConfig(NamedTuple):
    """Configuration after resolution from all sources, before freezing.

    Carries ``origin``, which records where each field's value came from.
    """

    api_key: str | None
    base_url: str
    timeout_seconds: float | None
    correlation_ids: bool
    max_retries: int
    initial_delay: float
    max_delay: float
    batch_concurrency: int
    page_size: int

    # Audit metadata
    origin: SourceMap

    def __repr__(self) -> str:
        """Repr with redacted API key for safe logging."""
        fields = ", ".join(
            f"{name}={_redact(self.api_key) if name == 'api_key' else getattr(self, name)!r}"
            for name in _FIELD_ORDER
        )
        return f"ResolvedConfig({fields}, origin={dict(self.origin)!r})"

    __str__ = __repr__

    def to_frozen(self) -> "FrozenConfig":
        """Drop the audit metadata and return the immutable runtime config."""
        return FrozenConfig(**{name: getattr(self, name) for name in _FIELD_ORDER})

    def audit(self) -> str:
        """Render one ``field: origin:value`` line per field, key redacted."""
        lines = []
        for name in _FIELD_ORDER:
            origin = self.origin.get(name, "default")
            value = getattr(self, name)
            if name == "api_key":
                display = "<redacted>" if value else "None"
            elif origin == "env":
                display = f"ATTIO_{name.upper()}={value}"
            else:
                display = str(value)
            lines.append(f"{name}: {origin}:{display}")
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class FrozenConfig:
    """Immutable configuration handed to the client."""

    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float | None = 30.0
    correlation_ids: bool = False
    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    batch_concurrency: int = 4
    page_size: int = 50

    @property
    def retry(self) -> RetryConfig:
        """Retry policy derived from the retry fields."""
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
        )

    @property
    def batch(self) -> BatchOptions:
        """Default batch options derived from ``batch_concurrency``."""
        return BatchOptions(concurrency=self.batch_concurrency)

    def __repr__(self) -> str:
        """Repr with redacted API key for safe logging."""
        fields = ", ".join(
            f"{name}={_redact(self.api_key) if name == 'api_key' else getattr(self, name)!r}"
            for name in _FIELD_ORDER
        )
        return f"FrozenConfig({fields})"

    __str__ = __repr__
