"""
Bounded-concurrency execution with per-item retry and timeout.

`with_timeout` and `with_retry` wrap a zero-argument coroutine factory, so the
retry layer always starts a fresh attempt under a fresh ceiling:

    call = with_retry(with_timeout(lambda: synth(text), 120), max_attempts=3)
    audio = await call()

`run_bounded` fans a list of items out to at most `concurrency` concurrent
operations and reports per-item success or failure in the input order.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

import httpx

from research_video import config
from research_video.errors import BatchIncompleteError, SynthesisTimeoutError, UpstreamError
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

RETRYABLE_ERRORS = (UpstreamError, httpx.HTTPError)


@dataclass
class RetryPolicy:
    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    base_delay: float = config.RETRY_BASE_DELAY
    max_delay: float = config.RETRY_MAX_DELAY
    timeout: Optional[float] = config.SYNTHESIS_TIMEOUT

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1` (attempt counts from 1)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * 0.1) if delay > 0 else 0.0


def with_timeout(operation: Callable[[], Awaitable[R]], ceiling: Optional[float]) -> Callable[[], Awaitable[R]]:
    """Abort an attempt that exceeds `ceiling` seconds. No ceiling means no limit."""

    async def call() -> R:
        if ceiling is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=ceiling)
        except asyncio.TimeoutError as exc:
            raise SynthesisTimeoutError(f"operation exceeded {ceiling:.0f}s") from exc

    return call


def with_retry(
    operation: Callable[[], Awaitable[R]],
    max_attempts: int = config.RETRY_MAX_ATTEMPTS,
    base_delay: float = config.RETRY_BASE_DELAY,
    max_delay: float = config.RETRY_MAX_DELAY,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Callable[[], Awaitable[R]]:
    """Retry upstream failures with exponential backoff. Other errors propagate immediately."""
    policy = RetryPolicy(max_attempts=max(1, max_attempts), base_delay=base_delay, max_delay=max_delay)

    async def call() -> R:
        attempt = 1
        while True:
            try:
                return await operation()
            except RETRYABLE_ERRORS as exc:
                if attempt >= policy.max_attempts:
                    raise
                delay = policy.delay_for(attempt)
                logger.warning("Attempt %d/%d failed (%s), retrying in %.1fs", attempt, policy.max_attempts, exc, delay)
                if on_retry:
                    on_retry(attempt, exc)
                await asyncio.sleep(delay)
                attempt += 1

    return call


@dataclass
class ItemResult(Generic[R]):
    index: int
    ok: bool
    value: Optional[R] = None
    error: Optional[BaseException] = None
    attempts: int = 1


@dataclass
class BatchReport(Generic[R]):
    results: List[ItemResult[R]] = field(default_factory=list)

    @property
    def succeeded(self) -> List[ItemResult[R]]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[ItemResult[R]]:
        return [r for r in self.results if not r.ok]

    def raise_if_incomplete(self, project_id: Optional[str] = None) -> None:
        if self.failed:
            indices = [r.index for r in self.failed]
            raise BatchIncompleteError(f"{len(indices)} of {len(self.results)} items failed", indices, project_id)


async def run_bounded(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[R]],
    concurrency: int,
    policy: Optional[RetryPolicy] = None,
    on_complete: Optional[Callable[[ItemResult[R], int, int], Any]] = None,
    require_all: bool = False,
    project_id: Optional[str] = None,
) -> BatchReport[R]:
    """
    Run `operation` on every item with at most `concurrency` in flight.

    Item failures are recorded, not raised, unless `require_all` is set. The
    `on_complete(result, done, total)` callback fires once per finished item
    in completion order and may be a coroutine function. Cancelling the
    caller cancels every in-flight operation.
    """
    policy = policy or RetryPolicy()
    semaphore = asyncio.Semaphore(max(1, concurrency))
    total = len(items)
    results: List[Optional[ItemResult[R]]] = [None] * total
    done = 0

    async def worker(index: int, item: T) -> None:
        nonlocal done
        attempts = 0

        def count_retry(_attempt: int, _exc: BaseException) -> None:
            nonlocal attempts
            attempts += 1

        async with semaphore:
            call = with_retry(
                with_timeout(lambda: operation(item), policy.timeout),
                max_attempts=policy.max_attempts,
                base_delay=policy.base_delay,
                max_delay=policy.max_delay,
                on_retry=count_retry,
            )
            try:
                value = await call()
                result = ItemResult(index=index, ok=True, value=value, attempts=attempts + 1)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error("Item %d failed after %d attempt(s): %s", index, attempts + 1, exc)
                result = ItemResult(index=index, ok=False, error=exc, attempts=attempts + 1)

        results[index] = result
        done += 1
        if on_complete:
            outcome = on_complete(result, done, total)
            if asyncio.iscoroutine(outcome):
                await outcome

    tasks = [asyncio.create_task(worker(i, item)) for i, item in enumerate(items)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    report = BatchReport(results=[r for r in results if r is not None])
    if require_all:
        report.raise_if_incomplete(project_id)
    return report
