"""Request lifecycle hooks, structured logging, and log redaction.

``AttioClient`` reports every attempt through three optional callbacks
(``on_request``, ``on_response``, ``on_error``). ``logging_hooks`` builds a set
that writes ``attio.request`` / ``attio.response`` at DEBUG and
``attio.error`` at ERROR, with the structured context attached to the log
record as ``attio_context`` and secrets replaced by ``[REDACTED]``.

Hooks observe; they never alter a request. An exception raised by a hook is
logged and swallowed.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
import dataclasses
import logging
import re
from typing import Any
import uuid

import httpx

from attio_core.exceptions import AttioError

log = logging.getLogger(__name__)

DEFAULT_REDACTION_TEXT = "[REDACTED]"
DEFAULT_SENSITIVE_KEY_PATTERNS = (
    "authorization",
    "api_key",
    "api-key",
    "apikey",
    "token",
    "secret",
    "password",
    "cookie",
    "set-cookie",
)
CORRELATION_ID_HEADER = "x-attio-correlation-id"

_SEGMENT_SPLIT = re.compile(r"[^a-z0-9]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclasses.dataclass(frozen=True, slots=True)
class RedactionConfig:
    """Which keys count as secrets and what replaces their values."""

    enabled: bool = True
    replace_with: str = DEFAULT_REDACTION_TEXT
    sensitive_key_patterns: tuple[str, ...] = DEFAULT_SENSITIVE_KEY_PATTERNS


_DEFAULT_REDACTION = RedactionConfig()


def is_sensitive_key(key: str, config: RedactionConfig = _DEFAULT_REDACTION) -> bool:
    """Match ``key`` against the sensitive patterns.

    A key matches on equality, on any ``-``/``_`` separated segment, or when
    its alphanumeric form ends with the pattern's (``x-api-key``,
    ``clientSecret`` and ``refresh_token`` all match).
    """
    normalized = key.lower()
    segments = [s for s in _SEGMENT_SPLIT.split(normalized) if s]
    collapsed = _NON_ALNUM.sub("", normalized)
    for pattern in config.sensitive_key_patterns:
        pattern = pattern.lower()
        if normalized == pattern or pattern in segments:
            return True
        collapsed_pattern = _NON_ALNUM.sub("", pattern)
        if collapsed_pattern and collapsed.endswith(collapsed_pattern):
            return True
    return False


def redact_url(url: str, config: RedactionConfig = _DEFAULT_REDACTION) -> str:
    """Replace the values of sensitive query parameters in ``url``."""
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return url
    if not parsed.query:
        return url
    params = [
        (k, config.replace_with if is_sensitive_key(k, config) else v)
        for k, v in parsed.params.multi_items()
    ]
    return str(parsed.copy_with(params=params))


def redact(
    value: Any, config: RedactionConfig = _DEFAULT_REDACTION, key: str | None = None
) -> Any:
    """Return a copy of ``value`` with sensitive entries replaced.

    Mappings and lists are walked recursively. A string under the key ``url``
    has its query string redacted.
    """
    if not config.enabled:
        return value
    if key is not None and is_sensitive_key(key, config):
        return config.replace_with
    if isinstance(value, str) and key is not None and key.lower() == "url":
        return redact_url(value, config)
    if isinstance(value, Mapping):
        return {k: redact(v, config, str(k)) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [redact(v, config) for v in value]
    return value


def new_correlation_id() -> str:
    return str(uuid.uuid4())


# --- Events ---


@dataclasses.dataclass(frozen=True, slots=True)
class RequestEvent:
    """An attempt is about to be sent."""

    request: httpx.Request
    attempt: int
    correlation_id: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class ResponseEvent:
    """An attempt received a response (any status)."""

    request: httpx.Request
    response: httpx.Response
    attempt: int
    elapsed: float
    correlation_id: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class ErrorEvent:
    """An attempt failed; ``error`` is already normalized."""

    error: AttioError
    attempt: int
    request: httpx.Request | None = None
    response: httpx.Response | None = None
    correlation_id: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class ClientHooks:
    on_request: Callable[[RequestEvent], None] | None = None
    on_response: Callable[[ResponseEvent], None] | None = None
    on_error: Callable[[ErrorEvent], None] | None = None


def call_hook[E](hook: Callable[[E], None] | None, event: E) -> None:
    """Invoke ``hook`` with ``event``, logging rather than raising on failure."""
    if hook is None:
        return
    try:
        hook(event)
    except Exception:
        log.exception("Client hook %r failed for %s", hook, type(event).__name__)


def compose_hooks(*hooks: ClientHooks | None) -> ClientHooks:
    """Merge hook sets; each event is delivered to every set, in order."""
    present = [h for h in hooks if h is not None]
    if len(present) == 1:
        return present[0]

    def fan_out(attr: str) -> Callable[[Any], None] | None:
        targets = [getattr(h, attr) for h in present if getattr(h, attr) is not None]
        if not targets:
            return None

        def deliver(event: Any) -> None:
            for target in targets:
                call_hook(target, event)

        return deliver

    return ClientHooks(
        on_request=fan_out("on_request"),
        on_response=fan_out("on_response"),
        on_error=fan_out("on_error"),
    )


def logging_hooks(
    logger: logging.Logger | None = None,
    *,
    redaction: RedactionConfig = _DEFAULT_REDACTION,
) -> ClientHooks:
    """Build hooks that log each attempt through ``logger``.

    Example:
        logging.basicConfig(level=logging.DEBUG)
        client = AttioClient(hooks=logging_hooks())
    """
    target = logger or logging.getLogger("attio_core.client")

    def emit(level: int, message: str, context: dict[str, Any]) -> None:
        if target.isEnabledFor(level):
            target.log(level, message, extra={"attio_context": redact(context, redaction)})

    def on_request(event: RequestEvent) -> None:
        emit(
            logging.DEBUG,
            "attio.request",
            {
                "method": event.request.method,
                "url": str(event.request.url),
                "headers": dict(event.request.headers),
                "attempt": event.attempt,
                "correlation_id": event.correlation_id,
            },
        )

    def on_response(event: ResponseEvent) -> None:
        emit(
            logging.DEBUG,
            "attio.response",
            {
                "method": event.request.method,
                "url": str(event.request.url),
                "status": event.response.status_code,
                "ok": event.response.is_success,
                "elapsed": round(event.elapsed, 4),
                "attempt": event.attempt,
                "correlation_id": event.correlation_id,
            },
        )

    def on_error(event: ErrorEvent) -> None:
        emit(
            logging.ERROR,
            "attio.error",
            {
                "message": str(event.error),
                "error": type(event.error).__name__,
                "code": event.error.code,
                "status": event.error.status,
                "request_id": event.error.request_id,
                "url": str(event.request.url) if event.request is not None else None,
                "attempt": event.attempt,
                "correlation_id": event.correlation_id,
            },
        )

    return ClientHooks(on_request=on_request, on_response=on_response, on_error=on_error)
