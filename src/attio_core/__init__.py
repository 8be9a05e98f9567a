"""Resilient request execution core for the Attio REST API."""

import importlib.metadata
import logging

from attio_core.batch import BatchItem, BatchOptions, BatchRunner, run_batch
from attio_core.cancellation import (
    AbortController,
    AbortSignal,
    ComposedSignal,
    abortable_sleep,
    await_with_signal,
    compose_signal,
    guarded_signal,
)
from attio_core.client import AttioClient, ClientHooks, compose_hooks, logging_hooks
from attio_core.config import FrozenConfig, resolve_config
from attio_core.exceptions import (
    APIError,
    AttioError,
    ClientError,
    ConfigurationError,
    OperationCancelledError,
    RateLimitError,
    RequestTimeoutError,
    ResponseValidationError,
    ServerError,
    TransportError,
    normalize_error,
)
from attio_core.core.types import (
    BatchOutcome,
    CursorPage,
    Fulfilled,
    OffsetPage,
    Rejected,
)
from attio_core.pagination import (
    PaginationOptions,
    collect_cursor_pages,
    collect_pages,
    iterate_cursor_pages,
    iterate_pages,
)
from attio_core.retry import (
    DEFAULT_RETRY_CONFIG,
    RetryConfig,
    calculate_retry_delay,
    execute_with_retry,
    is_retryable_error,
)
from attio_core.telemetry import TelemetryContext, TelemetryReporter

# Version handling
try:
    __version__ = importlib.metadata.version("attio-core")
except importlib.metadata.PackageNotFoundError:
    __version__ = "development"

# Set up a null handler for the library's root logger.
# This prevents 'No handler found' errors if the consuming app has no logging configured.
logging.getLogger(__name__).addHandler(logging.NullHandler())

# Public API
__all__ = [  # noqa: RUF022
    # Client
    "AttioClient",
    "ClientHooks",
    "compose_hooks",
    "logging_hooks",
    # Configuration
    "FrozenConfig",
    "resolve_config",
    # Retry
    "DEFAULT_RETRY_CONFIG",
    "RetryConfig",
    "calculate_retry_delay",
    "execute_with_retry",
    "is_retryable_error",
    # Cancellation
    "AbortController",
    "AbortSignal",
    "ComposedSignal",
    "abortable_sleep",
    "await_with_signal",
    "compose_signal",
    "guarded_signal",
    # Pagination
    "CursorPage",
    "OffsetPage",
    "PaginationOptions",
    "collect_cursor_pages",
    "collect_pages",
    "iterate_cursor_pages",
    "iterate_pages",
    # Batch
    "BatchItem",
    "BatchOptions",
    "BatchOutcome",
    "BatchRunner",
    "Fulfilled",
    "Rejected",
    "run_batch",
    # Exceptions
    "APIError",
    "AttioError",
    "ClientError",
    "ConfigurationError",
    "OperationCancelledError",
    "RateLimitError",
    "RequestTimeoutError",
    "ResponseValidationError",
    "ServerError",
    "TransportError",
    "normalize_error",
    # Telemetry (extension points)
    "TelemetryContext",
    "TelemetryReporter",
]
