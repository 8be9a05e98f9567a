"""Helpers for reading Attio response envelopes.

Attio wraps most payloads as ``{"data": ...}``; listings add a
``pagination`` block carrying ``next_cursor`` or ``next_offset``. These
helpers are deliberately forgiving about shape: anything that does not look
like an envelope is returned as-is.
"""

from collections.abc import Mapping
import logging
from typing import Any

from pydantic import TypeAdapter, ValidationError

from attio_core.exceptions import ResponseValidationError

log = logging.getLogger(__name__)

_ITEM_KEYS = ("data", "items", "records")


def unwrap_data(result: Any) -> Any:
    """Return ``result["data"]`` when present, otherwise ``result`` itself."""
    if isinstance(result, Mapping) and "data" in result:
        return result["data"]
    return result


def unwrap_items(result: Any) -> list[Any]:
    """Extract an item list from an envelope, a nested envelope, or a bare list."""
    data = unwrap_data(result)
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        for key in _ITEM_KEYS:
            nested = data.get(key)
            if isinstance(nested, list):
                return nested
    return []


def _pagination_block(result: Any) -> Mapping[str, Any] | None:
    if isinstance(result, Mapping) and isinstance(result.get("pagination"), Mapping):
        return result["pagination"]
    data = unwrap_data(result)
    if isinstance(data, Mapping) and isinstance(data.get("pagination"), Mapping):
        return data["pagination"]
    return None


def unwrap_pagination_cursor(result: Any) -> str | None:
    """Return the next cursor from a listing envelope, if any."""
    pagination = _pagination_block(result)
    if pagination is None:
        return None
    cursor = pagination.get("next_cursor", pagination.get("nextCursor"))
    return cursor if isinstance(cursor, str) and cursor else None


def unwrap_pagination_offset(result: Any) -> tuple[bool, int | None]:
    """Return ``(reported, next_offset)`` from a listing envelope.

    ``reported`` distinguishes an explicit ``null`` (the server says there is
    nothing more) from a missing key (the server said nothing).
    """
    pagination = _pagination_block(result)
    if pagination is None:
        return False, None
    for key in ("next_offset", "nextOffset"):
        if key in pagination:
            value = pagination[key]
            if isinstance(value, int) and not isinstance(value, bool):
                return True, value
            return True, None
    return False, None


def validate_payload[T](payload: Any, type_: type[T] | Any, *, what: str = "payload") -> T:
    """Validate ``payload`` against ``type_`` with pydantic.

    Raises:
        ResponseValidationError: If the payload does not match. The pydantic
            error list is kept on ``errors`` for inspection.
    """
    try:
        return TypeAdapter(type_).validate_python(payload)
    except ValidationError as e:
        log.debug("Invalid %s: %s", what, e)
        raise ResponseValidationError(
            f"Invalid API response: {what} did not match the expected shape "
            f"({e.error_count()} error(s)).",
            errors=e.errors(include_url=False),
            data=payload,
        ) from e
