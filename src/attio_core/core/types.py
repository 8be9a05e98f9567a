"""Core data types shared by the pagination drivers and the batch runner.

These are plain frozen dataclasses: constructed once, never mutated, and safe
to hand across task boundaries.
"""

from __future__ import annotations

from collections.abc import Sequence
import dataclasses
from typing import Literal

# --- Batch outcomes ---


@dataclasses.dataclass(frozen=True, slots=True)
class Fulfilled[T]:
    """A batch item that completed with a value."""

    value: T
    label: str | None = None
    status: Literal["fulfilled"] = "fulfilled"

    @property
    def ok(self) -> bool:
        return True


@dataclasses.dataclass(frozen=True, slots=True)
class Rejected:
    """A batch item that failed, containing the raised exception."""

    reason: BaseException
    label: str | None = None
    status: Literal["rejected"] = "rejected"

    @property
    def ok(self) -> bool:
        return False


type BatchOutcome[T] = Fulfilled[T] | Rejected


# --- Pages ---


@dataclasses.dataclass(frozen=True, slots=True)
class OffsetPage[T]:
    """One page of an offset/limit listing.

    Continuation is read from the first field that is set:

    - ``next_offset``: the server-reported offset of the following page.
    - ``has_more``: an explicit flag; ``False`` ends the listing.
    - neither: a short page (fewer items than requested) ends the listing.
    """

    items: Sequence[T]
    next_offset: int | None = None
    has_more: bool | None = None
    total: int | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class CursorPage[T]:
    """One page of a cursor listing; ``next_cursor=None`` ends the listing."""

    items: Sequence[T]
    next_cursor: str | None = None
