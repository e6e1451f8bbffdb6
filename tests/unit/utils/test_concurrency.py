"""Regression tests for the bounded worker pool and timeout helpers."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from bastion_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        captured.append(
            SimpleNamespace(
                exc_type=getattr(unraisable, "exc_type", None),
                err_msg=getattr(unraisable, "err_msg", None),
            )
        )

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


async def _collect(pool: WorkerPool[int], factories: list[Callable[[], Awaitable[int]]]) -> dict:
    return {index: value async for index, value in pool.run(factories)}


async def test_worker_pool_never_exceeds_its_bound() -> None:
    active = 0
    peak = 0

    def make(value: int) -> Callable[[], Awaitable[int]]:
        async def work() -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return value

        return work

    results = await _collect(WorkerPool(2), [make(i) for i in range(6)])

    assert results == {i: i for i in range(6)}
    assert peak == 2


async def test_worker_pool_skips_unstarted_work_after_cancel() -> None:
    token = CancellationToken()
    started: list[int] = []

    def make(value: int) -> Callable[[], Awaitable[int]]:
        async def work() -> int:
            started.append(value)
            if value == 0:
                token.cancel()
            await asyncio.sleep(0)
            return value

        return work

    results = await _collect(WorkerPool(1, cancel_token=token), [make(i) for i in range(4)])

    assert started == [0]
    assert results == {0: 0}


async def test_worker_pool_propagates_first_failure() -> None:
    async def boom() -> int:
        raise RuntimeError("worker exploded")

    with pytest.raises(RuntimeError, match="worker exploded"):
        await _collect(WorkerPool(2), [_slow, boom])


def test_worker_pool_and_semaphore_reject_non_positive_bounds() -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        WorkerPool(0)
    with pytest.raises(ValueError, match="limit"):
        BoundedSemaphore(0)


async def test_bounded_semaphore_tracks_permits_in_use() -> None:
    semaphore = BoundedSemaphore(2)
    async with semaphore.permit():
        assert semaphore.in_use == 1
        async with semaphore.permit():
            assert semaphore.in_use == 2
    assert semaphore.in_use == 0


async def test_run_with_timeout_returns_value_before_deadline() -> None:
    assert await run_with_timeout(_slow(), 1.0) == 1


async def test_run_with_timeout_rejects_non_positive_deadline() -> None:
    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(ValueError, match="timeout_seconds"):
            await run_with_timeout(_slow(), 0)


async def test_run_with_timeout_does_not_leak_coroutine_on_early_cancel() -> None:
    token = CancellationToken()
    token.cancel()

    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(coro, 1.0, token)
        del coro
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001, None)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_observes_cancellation_mid_flight() -> None:
    token = CancellationToken()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(asyncio.sleep(5, result=1), 5.0, token)
    await canceller
