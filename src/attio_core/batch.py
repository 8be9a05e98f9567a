"""Bounded-concurrency batch runner.

``run_batch`` executes independent async operations through a sliding window:
items start strictly in submission order, at most ``concurrency`` at a time,
and each completion immediately frees a slot for the next pending item.
Outcomes are recorded at the item's original index, so the returned list is in
submission order whatever the completion order.

All accounting lives in one ``_BatchState`` owned by the scheduling loop in
``BatchRunner.run``. Item tasks never touch it; they report back by posting a
``_Completion`` to a queue the loop drains.

Modes:

- default: every failure is demoted to a ``Rejected`` outcome and the batch
  always returns one outcome per item;
- ``stop_on_error``: the first failure fires the batch abort signal, stops
  further launches, and is raised as the batch result. Later failures are
  discarded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
import dataclasses
import enum
import inspect
import logging
from typing import Any

from attio_core.cancellation import AbortController, AbortSignal, compose_signal
from attio_core.exceptions import ConfigurationError, OperationCancelledError
from attio_core.core.types import BatchOutcome, Fulfilled, Rejected
from attio_core.telemetry import TelemetryContext, TelemetryContextProtocol

log = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4

# Tasks left running after a fail-fast abort. Held here so they are not
# garbage collected mid-flight; each removes itself when done.
_orphaned_tasks: set[asyncio.Task[None]] = set()


class BatchPhase(enum.Enum):
    """Lifecycle of one batch invocation."""

    ACCEPTING = "accepting"
    DRAINING = "draining"
    SETTLED = "settled"
    ABORTED = "aborted"


@dataclasses.dataclass(frozen=True, slots=True)
class BatchItem[T]:
    """One unit of batch work.

    ``run`` is called with no arguments, or with ``signal=`` when it declares
    a ``signal`` parameter (or ``**kwargs``).
    """

    run: Callable[..., Awaitable[T]]
    label: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class BatchOptions:
    """Batch settings; ``concurrency`` below 1 is treated as 1."""

    concurrency: int = DEFAULT_CONCURRENCY
    stop_on_error: bool = False
    item_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.item_timeout is not None and self.item_timeout < 0:
            raise ConfigurationError("item_timeout must be >= 0")

    @property
    def effective_concurrency(self) -> int:
        return max(1, self.concurrency)


@dataclasses.dataclass(slots=True)
class _BatchState:
    outcomes: list[BatchOutcome[Any] | None]
    next_index: int = 0
    active: int = 0
    aborted: bool = False
    phase: BatchPhase = BatchPhase.ACCEPTING

    @property
    def exhausted(self) -> bool:
        return self.next_index >= len(self.outcomes)


@dataclasses.dataclass(frozen=True, slots=True)
class _Completion:
    index: int
    outcome: BatchOutcome[Any]


def _accepts_signal(fn: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(
        p.name == "signal" or p.kind is inspect.Parameter.VAR_KEYWORD for p in params
    )


def _as_options(options: BatchOptions | Mapping[str, Any] | None) -> BatchOptions:
    if options is None:
        return BatchOptions()
    if isinstance(options, BatchOptions):
        return options
    if isinstance(options, Mapping):
        known = {f.name for f in dataclasses.fields(BatchOptions)}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown batch option(s): {', '.join(sorted(unknown))}"
            )
        return BatchOptions(**options)
    raise ConfigurationError(
        f"Batch options must be BatchOptions or a mapping, got {type(options).__name__}"
    )


def _as_item(item: BatchItem[Any] | Callable[..., Awaitable[Any]]) -> BatchItem[Any]:
    if isinstance(item, BatchItem):
        return item
    if callable(item):
        return BatchItem(item)
    raise TypeError(f"Batch items must be BatchItem or callable, got {type(item).__name__}")


class BatchRunner:
    """Runs batches with fixed options; reusable across invocations."""

    def __init__(
        self,
        options: BatchOptions | Mapping[str, Any] | None = None,
        *,
        telemetry: TelemetryContextProtocol | None = None,
    ):
        self.options = _as_options(options)
        self._tele = telemetry or TelemetryContext()

    async def run(
        self, items: Iterable[BatchItem[Any] | Callable[..., Awaitable[Any]]]
    ) -> list[BatchOutcome[Any]]:
        """Execute ``items`` and return one outcome per item, in order.

        Raises:
            The first item failure when ``stop_on_error`` is set.
            ``asyncio.CancelledError`` if the caller is cancelled; running
            items are cancelled first.
        """
        entries = [_as_item(item) for item in items]
        if not entries:
            return []

        opts = self.options
        limit = opts.effective_concurrency
        state = _BatchState(outcomes=[None] * len(entries))
        completions: asyncio.Queue[_Completion] = asyncio.Queue()
        abort = AbortController() if opts.stop_on_error else None
        running: dict[int, asyncio.Task[None]] = {}

        def launch() -> None:
            while not state.aborted and state.active < limit and not state.exhausted:
                index = state.next_index
                state.next_index += 1
                state.active += 1
                running[index] = asyncio.create_task(
                    self._run_item(index, entries[index], abort, completions),
                    name=f"attio-batch-item-{index}",
                )
            if state.exhausted and state.phase is BatchPhase.ACCEPTING:
                state.phase = BatchPhase.DRAINING

        with self._tele("batch.run", size=len(entries), concurrency=limit):
            try:
                launch()
                while state.active:
                    done = await completions.get()
                    state.active -= 1
                    running.pop(done.index, None)
                    outcome = done.outcome

                    if isinstance(outcome, Rejected) and abort is not None:
                        state.aborted = True
                        state.phase = BatchPhase.ABORTED
                        self._abort(abort, done.index, outcome.reason, running)
                        raise outcome.reason

                    if isinstance(outcome, Rejected):
                        self._tele.count("batch.item.rejected", index=done.index)
                    state.outcomes[done.index] = outcome
                    launch()
            except asyncio.CancelledError:
                for task in running.values():
                    task.cancel()
                await asyncio.gather(*running.values(), return_exceptions=True)
                raise

        state.phase = BatchPhase.SETTLED
        log.debug(
            "Batch settled: %d item(s), %d rejected",
            len(entries),
            sum(1 for o in state.outcomes if isinstance(o, Rejected)),
        )
        return [o for o in state.outcomes if o is not None]

    def _abort(
        self,
        controller: AbortController,
        index: int,
        reason: BaseException,
        running: dict[int, asyncio.Task[None]],
    ) -> None:
        log.debug(
            "Batch aborted by item %d (%s); %d item(s) still running",
            index,
            type(reason).__name__,
            len(running),
        )
        cancelled = OperationCancelledError(f"Batch aborted: item {index} failed.")
        cancelled.__cause__ = reason
        controller.abort(cancelled)
        for task in running.values():
            _orphaned_tasks.add(task)
            task.add_done_callback(_orphaned_tasks.discard)

    async def _run_item(
        self,
        index: int,
        item: BatchItem[Any],
        abort: AbortController | None,
        completions: asyncio.Queue[_Completion],
    ) -> None:
        composed = compose_signal(
            abort.signal if abort is not None else None, self.options.item_timeout
        )
        try:
            value = await self._invoke(item, composed.signal)
        except asyncio.CancelledError as e:
            completions.put_nowait(_Completion(index, Rejected(e, item.label)))
            raise
        except Exception as e:
            completions.put_nowait(_Completion(index, Rejected(e, item.label)))
        else:
            completions.put_nowait(_Completion(index, Fulfilled(value, item.label)))
        finally:
            composed.cleanup()

    @staticmethod
    async def _invoke(item: BatchItem[Any], signal: AbortSignal | None) -> Any:
        if _accepts_signal(item.run):
            return await item.run(signal=signal)
        return await item.run()


async def run_batch(
    items: Iterable[BatchItem[Any] | Callable[..., Awaitable[Any]]],
    options: BatchOptions | Mapping[str, Any] | None = None,
    *,
    telemetry: TelemetryContextProtocol | None = None,
    **overrides: Any,
) -> list[BatchOutcome[Any]]:
    """Run ``items`` with bounded concurrency.

    Example:
        outcomes = await run_batch(
            [BatchItem(lambda: client.get(f"/v2/objects/{o}"), label=o) for o in slugs],
            concurrency=2,
        )
        failed = [o for o in outcomes if not o.ok]
    """
    opts = _as_options(options)
    if overrides:
        opts = dataclasses.replace(opts, **overrides)
    return await BatchRunner(opts, telemetry=telemetry).run(items)
