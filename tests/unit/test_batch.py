import asyncio
from typing import Any

import pytest

from attio_core.batch import (
    BatchItem,
    BatchOptions,
    BatchRunner,
    run_batch,
)
from attio_core.cancellation import AbortSignal
from attio_core.exceptions import (
    ClientError,
    ConfigurationError,
    OperationCancelledError,
)
from attio_core.core.types import Fulfilled, Rejected
from attio_core.retry import RetryConfig, execute_with_retry

pytestmark = pytest.mark.unit


class ConcurrencyTracker:
    """Tracks how many instrumented operations run at the same time."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.started: list[int] = []

    def item(self, index: int, *, delay: float = 0.01, fail: bool = False) -> BatchItem[int]:
        async def run() -> int:
            self.started.append(index)
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                await asyncio.sleep(delay)
                if fail:
                    raise ClientError(f"item {index} failed", status=400)
                return index * 10
            finally:
                self.active -= 1

        return BatchItem(run, label=f"item-{index}")


@pytest.mark.asyncio
async def test_empty_batch_returns_empty_list():
    assert await run_batch([]) == []
    assert await run_batch([], BatchOptions(stop_on_error=True)) == []


@pytest.mark.asyncio
async def test_concurrency_cap_is_never_exceeded():
    tracker = ConcurrencyTracker()

    outcomes = await run_batch([tracker.item(i) for i in range(5)], concurrency=2)

    assert tracker.peak == 2
    assert [o.status for o in outcomes] == ["fulfilled"] * 5
    assert [o.value for o in outcomes] == [0, 10, 20, 30, 40]
    assert [o.label for o in outcomes] == [f"item-{i}" for i in range(5)]


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrency", [0, -3])
async def test_non_positive_concurrency_is_clamped_to_one(concurrency):
    tracker = ConcurrencyTracker()

    outcomes = await run_batch([tracker.item(i) for i in range(3)], concurrency=concurrency)

    assert tracker.peak == 1
    assert len(outcomes) == 3


@pytest.mark.asyncio
async def test_outcomes_keep_submission_order_despite_completion_order():
    tracker = ConcurrencyTracker()
    items = [tracker.item(0, delay=0.05), tracker.item(1, delay=0.01), tracker.item(2, delay=0.0)]

    outcomes = await run_batch(items, concurrency=3)

    assert [o.value for o in outcomes] == [0, 10, 20]


@pytest.mark.asyncio
async def test_sliding_window_launches_next_item_as_soon_as_a_slot_frees():
    tracker = ConcurrencyTracker()
    items = [
        tracker.item(0, delay=0.2),
        tracker.item(1, delay=0.01),
        tracker.item(2, delay=0.01),
        tracker.item(3, delay=0.01),
    ]

    await run_batch(items, concurrency=2)

    # Items 2 and 3 start while item 0 is still running.
    assert tracker.started == [0, 1, 2, 3]
    assert tracker.peak == 2


@pytest.mark.asyncio
async def test_failures_are_recorded_per_item_by_default():
    tracker = ConcurrencyTracker()
    items = [tracker.item(0), tracker.item(1, fail=True), tracker.item(2), tracker.item(3, fail=True)]

    outcomes = await run_batch(items, concurrency=2)

    assert len(outcomes) == 4
    assert [o.status for o in outcomes] == ["fulfilled", "rejected", "fulfilled", "rejected"]
    assert isinstance(outcomes[1], Rejected)
    assert isinstance(outcomes[1].reason, ClientError)
    assert outcomes[1].label == "item-1"
    assert not outcomes[1].ok and outcomes[0].ok


@pytest.mark.asyncio
async def test_bare_callables_are_accepted():
    async def one() -> int:
        return 1

    outcomes = await run_batch([one])

    assert outcomes == [Fulfilled(1)]


@pytest.mark.asyncio
async def test_invalid_items_are_rejected_up_front():
    with pytest.raises(TypeError):
        await run_batch([42])  # type: ignore[list-item]


# --- Fail-fast ---


@pytest.mark.asyncio
async def test_fail_fast_raises_first_failure_and_stops_launching():
    tracker = ConcurrencyTracker()
    items = [
        tracker.item(0, delay=0.05),
        tracker.item(1, delay=0.0, fail=True),
        tracker.item(2),
        tracker.item(3),
        tracker.item(4),
    ]

    with pytest.raises(ClientError, match="item 1 failed"):
        await run_batch(items, concurrency=2, stop_on_error=True)

    assert tracker.started == [0, 1]
    await asyncio.sleep(0.06)  # item 0 keeps running, unobserved
    assert tracker.started == [0, 1]


@pytest.mark.asyncio
async def test_fail_fast_aborts_running_items_that_accept_a_signal():
    received: list[AbortSignal] = []
    aborted = asyncio.Event()

    async def long_running(signal: AbortSignal) -> str:
        received.append(signal)
        await signal.wait()
        aborted.set()
        signal.raise_if_aborted()
        return "unreachable"

    async def failing() -> None:
        await asyncio.sleep(0.01)
        raise ClientError("bad input", status=422)

    with pytest.raises(ClientError, match="bad input"):
        await run_batch(
            [BatchItem(long_running), BatchItem(failing)],
            concurrency=2,
            stop_on_error=True,
        )

    await asyncio.wait_for(aborted.wait(), timeout=1)
    assert received[0].aborted
    assert isinstance(received[0].reason, OperationCancelledError)


@pytest.mark.asyncio
async def test_later_failures_after_abort_are_discarded():
    async def fail(message: str, delay: float) -> None:
        await asyncio.sleep(delay)
        raise ClientError(message, status=400)

    with pytest.raises(ClientError) as ei:
        await run_batch(
            [
                BatchItem(lambda: fail("first", 0.01)),
                BatchItem(lambda: fail("second", 0.02)),
            ],
            concurrency=2,
            stop_on_error=True,
        )

    assert str(ei.value) == "first"
    await asyncio.sleep(0.03)  # let the orphaned item settle quietly


@pytest.mark.asyncio
async def test_signal_is_only_passed_in_fail_fast_mode():
    seen: list[Any] = []

    async def run(signal: AbortSignal | None = None) -> None:
        seen.append(signal)

    await run_batch([BatchItem(run)])
    await run_batch([BatchItem(run)], stop_on_error=True)

    assert seen[0] is None
    assert isinstance(seen[1], AbortSignal)


@pytest.mark.asyncio
async def test_item_timeout_signals_items_cooperatively():
    async def slow(signal: AbortSignal) -> str:
        await signal.wait()
        signal.raise_if_aborted()
        return "unreachable"

    outcomes = await run_batch([BatchItem(slow)], item_timeout=0.01)

    assert outcomes[0].status == "rejected"
    assert isinstance(outcomes[0].reason, OperationCancelledError)


# --- Composition and cancellation ---


@pytest.mark.asyncio
async def test_items_with_internal_retries_compose_transparently():
    attempts = {"n": 0}

    async def flaky() -> str:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("blip")
        return "done"

    item = BatchItem(
        lambda: execute_with_retry(flaky, RetryConfig(initial_delay=0.0, max_delay=0.0)),
        label="retrying",
    )

    outcomes = await run_batch([item])

    assert outcomes == [Fulfilled("done", label="retrying")]
    assert attempts["n"] == 3


@pytest.mark.asyncio
async def test_cancelling_the_batch_cancels_running_items():
    cancelled = asyncio.Event()
    started = asyncio.Event()

    async def forever() -> None:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    task = asyncio.create_task(BatchRunner(BatchOptions(concurrency=1)).run([forever]))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.wait_for(cancelled.wait(), timeout=1)


@pytest.mark.asyncio
async def test_runner_is_reusable():
    runner = BatchRunner(BatchOptions(concurrency=2))

    async def one() -> int:
        return 1

    assert await runner.run([one, one]) == [Fulfilled(1), Fulfilled(1)]
    assert await runner.run([one]) == [Fulfilled(1)]


@pytest.mark.asyncio
async def test_cancelled_batch_waits_for_item_teardown():
    started = asyncio.Event()
    torn_down: list[str] = []

    async def slow_teardown() -> None:
        started.set()
        try:
            await asyncio.sleep(10)
        finally:
            await asyncio.sleep(0.01)
            torn_down.append("done")

    task = asyncio.create_task(run_batch([slow_teardown, slow_teardown], concurrency=2))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert torn_down == ["done", "done"]


@pytest.mark.asyncio
async def test_options_may_be_given_as_a_mapping():
    tracker = ConcurrencyTracker()

    outcomes = await run_batch([tracker.item(i) for i in range(4)], {"concurrency": 2})

    assert [o.value for o in outcomes] == [0, 10, 20, 30]
    assert tracker.peak == 2
    assert BatchRunner({"stop_on_error": True}).options == BatchOptions(stop_on_error=True)


@pytest.mark.parametrize("options", [{"concurency": 2}, 3])
def test_invalid_options_are_rejected(options):
    with pytest.raises(ConfigurationError, match="[Bb]atch option"):
        BatchRunner(options)
