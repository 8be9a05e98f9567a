"""Pagination drivers over a "fetch one page" function.

Two listing protocols are supported:

- offset/limit: ``fetch_page(offset, limit)``; continuation comes from the
  page's ``next_offset`` / ``has_more`` or, failing that, from the page size;
- cursor: ``fetch_page(cursor)``; a missing cursor ends the listing.

Each protocol has an eager driver (``collect_pages`` /
``collect_cursor_pages``) returning a list, and a lazy driver
(``iterate_pages`` / ``iterate_cursor_pages``) that yields items one at a time
and only requests the next page once the current one has been consumed. Both
drivers of a protocol walk pages with the same generator, so they stop under
exactly the same conditions.

``max_items`` is authoritative: output is truncated to it even when the same
page also hits ``max_pages`` or signals exhaustion.

A fetch function may return a page object (``OffsetPage``/``CursorPage``), a
bare ``{"items": [...], "next_offset": ...}`` mapping, or a raw Attio envelope
(``{"data": [...], "pagination": {...}}``).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
import dataclasses
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from attio_core.cancellation import AbortSignal
from attio_core.client.response import (
    unwrap_items,
    unwrap_pagination_cursor,
    unwrap_pagination_offset,
    validate_payload,
)
from attio_core.exceptions import ConfigurationError
from attio_core.core.types import CursorPage, OffsetPage
from attio_core.telemetry import TelemetryContext, TelemetryContextProtocol

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50

type FetchOffsetPage = Callable[[int, int], Awaitable[Any]]
type FetchCursorPage = Callable[[str | None], Awaitable[Any]]


@dataclasses.dataclass(frozen=True, slots=True)
class PaginationOptions:
    """Limits and starting point for one listing.

    ``limit`` and ``page_size`` are synonyms for the per-request page size;
    ``limit`` wins when both are set. ``cursor`` is only read by the cursor
    drivers, ``offset`` only by the offset drivers. ``item_type`` validates page
    items with pydantic.
    """

    offset: int = 0
    limit: int | None = None
    page_size: int | None = None
    max_pages: int | None = None
    max_items: int | None = None
    signal: AbortSignal | None = None
    cursor: str | None = None
    item_type: Any = None

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ConfigurationError("offset must be >= 0")
        for name in ("limit", "page_size"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ConfigurationError(f"{name} must be >= 1")
        for name in ("max_pages", "max_items"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ConfigurationError(f"{name} must be >= 0")

    @property
    def effective_page_size(self) -> int:
        return self.limit or self.page_size or DEFAULT_PAGE_SIZE


def _resolve_options(
    options: PaginationOptions | None, overrides: Mapping[str, Any]
) -> PaginationOptions:
    opts = options or PaginationOptions()
    return dataclasses.replace(opts, **overrides) if overrides else opts


# --- Page coercion ---


class _OffsetPageShape(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: list[Any]
    next_offset: int | None = Field(default=None, alias="nextOffset")
    has_more: bool | None = Field(default=None, alias="hasMore")
    total: int | None = None


class _CursorPageShape(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: list[Any]
    next_cursor: str | None = Field(default=None, alias="nextCursor")


def _typed_items(items: list[Any], item_type: Any) -> list[Any]:
    if item_type is None:
        return items
    return validate_payload(items, list[item_type], what="page items")


def to_offset_page(page: Any, item_type: Any = None) -> OffsetPage[Any]:
    """Coerce whatever a fetch function returned into an ``OffsetPage``.

    A mapping that does not match the bare ``{"items": ...}`` page shape is
    read as a raw API envelope. Items are validated against ``item_type``
    either way; a mismatch raises ``ResponseValidationError``.
    """
    if isinstance(page, OffsetPage):
        return page
    if isinstance(page, Mapping) and "items" in page:
        try:
            shape = _OffsetPageShape.model_validate(page)
        except ValidationError as e:
            log.debug("Page did not match the bare page shape, unwrapping: %s", e)
        else:
            has_more = shape.has_more
            if has_more is None and shape.next_offset is None and (
                "next_offset" in page or "nextOffset" in page
            ):
                has_more = False
            items = _typed_items(shape.items, item_type)
            return OffsetPage(items, shape.next_offset, has_more, shape.total)

    reported, next_offset = unwrap_pagination_offset(page)
    has_more = False if reported and next_offset is None else None
    return OffsetPage(_typed_items(unwrap_items(page), item_type), next_offset, has_more)


def to_cursor_page(page: Any, item_type: Any = None) -> CursorPage[Any]:
    """Coerce whatever a fetch function returned into a ``CursorPage``."""
    if isinstance(page, CursorPage):
        return page
    if isinstance(page, Mapping) and "items" in page:
        try:
            shape = _CursorPageShape.model_validate(page)
        except ValidationError as e:
            log.debug("Page did not match the bare page shape, unwrapping: %s", e)
        else:
            return CursorPage(_typed_items(shape.items, item_type), shape.next_cursor)
    items = _typed_items(unwrap_items(page), item_type)
    return CursorPage(items, unwrap_pagination_cursor(page))


def next_page_offset(page: OffsetPage[Any], offset: int, page_size: int) -> int | None:
    """Return the offset of the following page, or ``None`` when exhausted."""
    count = len(page.items)
    if count == 0:
        return None
    if page.next_offset is not None:
        # A server offset that does not advance would loop forever.
        return page.next_offset if page.next_offset > offset else None
    if page.has_more is not None:
        return offset + count if page.has_more else None
    if count < page_size:
        return None
    return offset + count


# --- Page walkers ---


def _stopped(signal: AbortSignal | None) -> bool:
    return signal is not None and signal.aborted


async def _walk_offset_pages(
    fetch_page: FetchOffsetPage,
    opts: PaginationOptions,
    tele: TelemetryContextProtocol,
) -> AsyncIterator[Any]:
    page_size = opts.effective_page_size
    offset: int | None = opts.offset
    pages = 0
    produced = 0

    while offset is not None:
        if opts.max_pages is not None and pages >= opts.max_pages:
            return
        if opts.max_items is not None and produced >= opts.max_items:
            return
        if _stopped(opts.signal):
            log.debug("Pagination cancelled before page %d (offset=%d)", pages, offset)
            return

        with tele("pagination.page", offset=offset, limit=page_size):
            raw = await fetch_page(offset, page_size)
        page = to_offset_page(raw, opts.item_type)
        pages += 1

        for item in page.items:
            if opts.max_items is not None and produced >= opts.max_items:
                return
            if _stopped(opts.signal):
                return
            yield item
            produced += 1

        offset = next_page_offset(page, offset, page_size)


async def _walk_cursor_pages(
    fetch_page: FetchCursorPage,
    opts: PaginationOptions,
    tele: TelemetryContextProtocol,
) -> AsyncIterator[Any]:
    cursor = opts.cursor
    pages = 0
    produced = 0

    while True:
        if opts.max_pages is not None and pages >= opts.max_pages:
            return
        if opts.max_items is not None and produced >= opts.max_items:
            return
        if _stopped(opts.signal):
            log.debug("Pagination cancelled before page %d", pages)
            return

        with tele("pagination.page", cursor=cursor):
            raw = await fetch_page(cursor)
        page = to_cursor_page(raw, opts.item_type)
        pages += 1

        for item in page.items:
            if opts.max_items is not None and produced >= opts.max_items:
                return
            if _stopped(opts.signal):
                return
            yield item
            produced += 1

        if not page.items or not page.next_cursor or page.next_cursor == cursor:
            return
        cursor = page.next_cursor


# --- Public drivers ---


async def collect_pages(
    fetch_page: FetchOffsetPage,
    options: PaginationOptions | None = None,
    *,
    telemetry: TelemetryContextProtocol | None = None,
    **overrides: Any,
) -> list[Any]:
    """Fetch offset pages until a limit is hit or the listing is exhausted.

    Args:
        fetch_page: ``async (offset, limit) -> page``.
        options: Limits; keyword ``overrides`` replace individual fields.
        telemetry: Optional telemetry context.

    Returns:
        Items in server order, never more than ``max_items``. If the signal
        fires, the items collected so far are returned.

    Raises:
        Whatever ``fetch_page`` raises; a failed page aborts the listing.
    """
    opts = _resolve_options(options, overrides)
    walker = _walk_offset_pages(fetch_page, opts, telemetry or TelemetryContext())
    return [item async for item in walker]


def iterate_pages(
    fetch_page: FetchOffsetPage,
    options: PaginationOptions | None = None,
    *,
    telemetry: TelemetryContextProtocol | None = None,
    **overrides: Any,
) -> AsyncIterator[Any]:
    """Lazily yield items across offset pages.

    The returned iterator is single-pass. Iterating again requires a new
    call, which fetches every page again. When ``signal`` fires the iterator
    simply ends.

    Example:
        async for record in iterate_pages(fetch, limit=100, signal=signal):
            ...
    """
    opts = _resolve_options(options, overrides)
    return _walk_offset_pages(fetch_page, opts, telemetry or TelemetryContext())


async def collect_cursor_pages(
    fetch_page: FetchCursorPage,
    options: PaginationOptions | None = None,
    *,
    telemetry: TelemetryContextProtocol | None = None,
    **overrides: Any,
) -> list[Any]:
    """Cursor-protocol counterpart of ``collect_pages``."""
    opts = _resolve_options(options, overrides)
    walker = _walk_cursor_pages(fetch_page, opts, telemetry or TelemetryContext())
    return [item async for item in walker]


def iterate_cursor_pages(
    fetch_page: FetchCursorPage,
    options: PaginationOptions | None = None,
    *,
    telemetry: TelemetryContextProtocol | None = None,
    **overrides: Any,
) -> AsyncIterator[Any]:
    """Cursor-protocol counterpart of ``iterate_pages``."""
    opts = _resolve_options(options, overrides)
    return _walk_cursor_pages(fetch_page, opts, telemetry or TelemetryContext())
