"""Retry with exponential backoff for a single asynchronous call site.

``execute_with_retry`` runs a zero-argument coroutine function, classifies each
failure, and re-invokes it after a capped exponential delay while the failure
is transient and the retry budget lasts. Attempts never overlap: each one
finishes or fails before the next delay starts.

Classification:

- transport failures, 5xx, 408 and 429 responses are retried;
- other 4xx responses, validation failures and cancellations are raised
  immediately;
- on exhaustion the last failure is re-raised unchanged, so callers see the
  same exception type a direct call would have produced.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
import dataclasses
import logging
import random
from typing import Any

import httpx

from attio_core.cancellation import AbortSignal, abortable_sleep
from attio_core.exceptions import (
    APIError,
    ConfigurationError,
    OperationCancelledError,
    RequestTimeoutError,
    ResponseValidationError,
    TransportError,
)
from attio_core.telemetry import TelemetryContext, TelemetryContextProtocol

log = logging.getLogger(__name__)

# Jittered delays stay within +/-25% of the nominal value, narrowed for small
# multipliers so that consecutive ranges never overlap.
_JITTER_SPREAD = 0.25

type SleepFunction = Callable[[float, AbortSignal | None], Awaitable[None]]


@dataclasses.dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff policy for one logical operation.

    Delays are in seconds. ``max_retries`` counts re-attempts, so the
    operation runs at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_status_codes: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})
    respect_retry_after: bool = True
    retry_on_timeout: bool = False

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ConfigurationError("max_delay must be >= initial_delay")
        if self.backoff_multiplier < 1:
            raise ConfigurationError("backoff_multiplier must be >= 1")
        # Accept any iterable of codes while keeping the field hashable.
        object.__setattr__(
            self, "retryable_status_codes", frozenset(self.retryable_status_codes)
        )

    def with_overrides(self, **overrides: Any) -> RetryConfig:
        """Return a copy with the given fields replaced; ``None`` values are skipped."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown retry option(s): {', '.join(sorted(unknown))}"
            )
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes) if changes else self


DEFAULT_RETRY_CONFIG = RetryConfig()


def resolve_retry_config(
    *layers: RetryConfig | Mapping[str, Any] | None,
) -> RetryConfig:
    """Merge retry settings, later layers taking precedence.

    A ``RetryConfig`` layer replaces everything before it; a mapping layer
    overrides only the keys it sets. ``None`` layers are ignored.

    Example:
        resolve_retry_config(client_retry, {"max_retries": 0})
    """
    resolved = DEFAULT_RETRY_CONFIG
    for layer in layers:
        if layer is None:
            continue
        if isinstance(layer, RetryConfig):
            resolved = layer
        else:
            resolved = resolved.with_overrides(**layer)
    return resolved


def calculate_retry_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before re-attempt number ``attempt + 1``.

    A positive server ``Retry-After`` hint replaces the computed backoff when
    ``respect_retry_after`` is set. The result never exceeds ``max_delay``.
    """
    if config.respect_retry_after and retry_after is not None and retry_after > 0:
        return min(retry_after, config.max_delay)

    multiplier = config.backoff_multiplier
    base = config.initial_delay * (multiplier**attempt)
    if config.jitter:
        # Strictly inside base * (1 + s) <= base * m * (1 - s), so rounding
        # cannot reorder neighbouring delays.
        spread = min(_JITTER_SPREAD, 0.99 * (multiplier - 1) / (multiplier + 1))
        base *= 1 - spread + 2 * spread * rng()
    return min(base, config.max_delay)


def is_retryable_error(error: BaseException, config: RetryConfig) -> bool:
    """Return True when ``error`` is a transient failure worth re-attempting."""
    if isinstance(error, RequestTimeoutError):
        return config.retry_on_timeout
    if isinstance(error, OperationCancelledError | ResponseValidationError):
        return False
    if isinstance(error, TransportError | httpx.TransportError | ConnectionError):
        return True
    if isinstance(error, APIError):
        status = error.status
        if status is None:
            return True
        return status in config.retryable_status_codes or 500 <= status < 600
    return False


async def execute_with_retry[T](
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    signal: AbortSignal | None = None,
    sleep: SleepFunction | None = None,
    telemetry: TelemetryContextProtocol | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently, or retries run out.

    Args:
        operation: Zero-argument coroutine function; called once per attempt.
        config: Backoff policy. Defaults to ``DEFAULT_RETRY_CONFIG``.
        signal: Optional cancellation signal. It is checked before every
            attempt and interrupts backoff delays.
        sleep: Delay function ``(seconds, signal)``; injectable for tests.
        telemetry: Optional telemetry context.

    Returns:
        The first successful result.

    Raises:
        The last failure, unchanged, when it is not retryable or the budget
        is exhausted; the signal's reason when cancelled.
    """
    cfg = config or DEFAULT_RETRY_CONFIG
    wait = sleep or abortable_sleep
    tele = telemetry or TelemetryContext()

    attempt = 0
    while True:
        if signal is not None:
            signal.raise_if_aborted()
        try:
            with tele("retry.attempt", attempt=attempt):
                return await operation()
        except Exception as error:
            if attempt >= cfg.max_retries or not is_retryable_error(error, cfg):
                if attempt:
                    log.debug(
                        "Giving up after %d attempt(s): %s", attempt + 1, error
                    )
                raise
            delay = calculate_retry_delay(
                attempt, cfg, getattr(error, "retry_after", None)
            )
            log.debug(
                "Attempt %d failed with %s; retrying in %.3fs",
                attempt + 1,
                type(error).__name__,
                delay,
            )
            tele.count("retry.backoff", attempt=attempt)
        await wait(delay, signal)
        attempt += 1
