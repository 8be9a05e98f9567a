"""Cooperative cancellation signals and timeout composition.

A request can be stopped for two reasons: the caller gave up (their signal
fired) or the request ran past its timeout. ``compose_signal`` merges both into
one effective ``AbortSignal`` that is handed to a single downstream call, and
returns a cleanup action that releases the timer and the listener bridging the
caller's signal. Cleanup must run on every exit path; ``guarded_signal`` wraps
that in a context manager.

Cancellation is cooperative. A signal only flips a flag and notifies
listeners; operations observe it at their own suspension points, for example
through ``await_with_signal`` or ``abortable_sleep``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
import logging

from attio_core.exceptions import OperationCancelledError, RequestTimeoutError

log = logging.getLogger(__name__)

type AbortListener = Callable[[AbortSignal], None]


def _noop() -> None:
    return None


class AbortSignal:
    """A one-shot flag: once active it stays active.

    Listeners registered with ``on_activate`` run exactly once, in
    registration order, on the first activation.
    """

    __slots__ = ("_aborted", "_listeners", "_reason")

    def __init__(self) -> None:  # noqa: D107
        self._aborted = False
        self._reason: BaseException | None = None
        self._listeners: list[AbortListener] = []

    @classmethod
    def aborted_with(cls, reason: BaseException | None = None) -> AbortSignal:
        """Return a signal that is already active."""
        signal = cls()
        signal._activate(reason or OperationCancelledError("The operation was aborted."))
        return signal

    @property
    def aborted(self) -> bool:
        return self._aborted

    def is_active(self) -> bool:
        """Return True once the signal has fired."""
        return self._aborted

    @property
    def reason(self) -> BaseException | None:
        """The exception describing why the signal fired, if it has."""
        return self._reason

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def on_activate(self, callback: AbortListener) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it.

        If the signal is already active the callback runs immediately and the
        returned remover does nothing.
        """
        if self._aborted:
            callback(self)
            return _noop
        self._listeners.append(callback)

        def remove() -> None:
            with suppress(ValueError):
                self._listeners.remove(callback)

        return remove

    def raise_if_aborted(self) -> None:
        """Raise the activation reason if the signal has fired."""
        if self._aborted:
            raise _reason_of(self)

    async def wait(self) -> None:
        """Suspend until the signal fires."""
        if self._aborted:
            return
        fired = asyncio.get_running_loop().create_future()
        remove = self.on_activate(lambda _s: fired.done() or fired.set_result(None))
        try:
            await fired
        finally:
            remove()

    def _activate(self, reason: BaseException) -> bool:
        if self._aborted:
            return False
        self._aborted = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                log.exception("Abort listener %r failed", listener)
        return True

    def __repr__(self) -> str:
        state = f"aborted, reason={self._reason!r}" if self._aborted else "active=False"
        return f"AbortSignal({state})"


class AbortController:
    """Owns an ``AbortSignal`` and is the only party allowed to fire it."""

    __slots__ = ("signal",)

    def __init__(self) -> None:  # noqa: D107
        self.signal = AbortSignal()

    def abort(self, reason: BaseException | None = None) -> None:
        """Fire the signal. Later calls are ignored; the first reason wins."""
        self.signal._activate(
            reason
            if reason is not None
            else OperationCancelledError("The operation was aborted.")
        )


def _reason_of(signal: AbortSignal) -> BaseException:
    return signal.reason or OperationCancelledError("The operation was aborted.")


@dataclass(slots=True)
class ComposedSignal:
    """The effective signal for one guarded call plus its teardown.

    ``signal`` is ``None`` when neither a caller signal nor a timeout was
    given. ``cleanup`` is idempotent.
    """

    signal: AbortSignal | None
    timer_started: bool = False
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    _unbridge: Callable[[], None] | None = field(default=None, repr=False)

    def cleanup(self) -> None:
        """Cancel the timeout timer and detach from the caller's signal."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._unbridge is not None:
            self._unbridge()
            self._unbridge = None


def compose_signal(
    signal: AbortSignal | None = None,
    timeout: float | None = None,
) -> ComposedSignal:
    """Merge a caller signal with a timeout into one effective signal.

    Must be called from a running event loop when ``timeout`` is set.

    Args:
        signal: The caller's signal, if any. It is observed, never fired.
        timeout: Seconds before the effective signal fires on its own.
            ``None`` or ``0`` disables the timeout.

    Returns:
        A ``ComposedSignal``. Without a timeout the caller's signal is passed
        through unchanged and no timer is started. If the caller's signal has
        already fired, the effective signal is active immediately.
    """
    if not timeout:
        return ComposedSignal(signal)

    if signal is not None and signal.aborted:
        return ComposedSignal(AbortSignal.aborted_with(signal.reason))

    controller = AbortController()
    timer = asyncio.get_running_loop().call_later(
        timeout,
        controller.abort,
        RequestTimeoutError(f"Request timed out after {timeout:g}s."),
    )
    unbridge = None
    if signal is not None:
        unbridge = signal.on_activate(lambda source: controller.abort(source.reason))
    return ComposedSignal(
        controller.signal, timer_started=True, _timer=timer, _unbridge=unbridge
    )


@contextmanager
def guarded_signal(
    signal: AbortSignal | None = None,
    timeout: float | None = None,
) -> Iterator[AbortSignal | None]:
    """Context manager form of ``compose_signal`` with guaranteed cleanup."""
    composed = compose_signal(signal, timeout)
    try:
        yield composed.signal
    finally:
        composed.cleanup()


async def await_with_signal[T](
    awaitable: Awaitable[T],
    signal: AbortSignal | None,
) -> T:
    """Await ``awaitable`` unless ``signal`` fires first.

    When the signal wins, the underlying task is cancelled and the signal's
    reason is raised. When both finish together the result wins.
    """
    if signal is None:
        return await awaitable
    if signal.aborted:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise _reason_of(signal)

    task = asyncio.ensure_future(awaitable)
    fired = asyncio.get_running_loop().create_future()
    remove = signal.on_activate(lambda _s: fired.done() or fired.set_result(None))
    try:
        await asyncio.wait({task, fired}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        remove()
        fired.cancel()

    if task.done():
        return task.result()

    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled():
        # Mark the exception retrieved; the abort reason takes precedence.
        task.exception()
    raise _reason_of(signal)


async def abortable_sleep(delay: float, signal: AbortSignal | None = None) -> None:
    """Sleep for ``delay`` seconds, raising early if ``signal`` fires."""
    await await_with_signal(asyncio.sleep(delay), signal)
