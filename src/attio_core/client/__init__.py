"""HTTP client, lifecycle hooks, and response-envelope helpers."""

# ruff: noqa: I001

from .response import (
    unwrap_data,
    unwrap_items,
    unwrap_pagination_cursor,
    unwrap_pagination_offset,
    validate_payload,
)
from .hooks import (
    ClientHooks,
    ErrorEvent,
    RedactionConfig,
    RequestEvent,
    ResponseEvent,
    compose_hooks,
    logging_hooks,
    redact,
)
from .http import AttioClient

__all__ = [  # noqa: RUF022
    # Client
    "AttioClient",
    # Hooks
    "ClientHooks",
    "ErrorEvent",
    "RequestEvent",
    "ResponseEvent",
    "RedactionConfig",
    "compose_hooks",
    "logging_hooks",
    "redact",
    # Response helpers
    "unwrap_data",
    "unwrap_items",
    "unwrap_pagination_cursor",
    "unwrap_pagination_offset",
    "validate_payload",
]
