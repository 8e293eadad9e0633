import asyncio

import pytest

from research_video.errors import BatchIncompleteError, SynthesisTimeoutError, UpstreamError, ValidationError
from research_video.services.scheduler import RetryPolicy, run_bounded, with_retry, with_timeout


@pytest.mark.asyncio
async def test_with_retry_recovers_after_transient_failures():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise UpstreamError("503 from vendor")
        return "ok"

    result = await with_retry(flaky, max_attempts=3, base_delay=0)()

    assert result == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_with_retry_gives_up_after_max_attempts():
    attempts = []

    async def always_down():
        attempts.append(1)
        raise UpstreamError("still down")

    with pytest.raises(UpstreamError):
        await with_retry(always_down, max_attempts=3, base_delay=0)()
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_non_upstream_errors():
    attempts = []

    async def bad_input():
        attempts.append(1)
        raise ValidationError("empty text")

    with pytest.raises(ValidationError):
        await with_retry(bad_input, max_attempts=5, base_delay=0)()
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_with_timeout_raises_retryable_timeout():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(SynthesisTimeoutError):
        await with_timeout(slow, 0.01)()


@pytest.mark.asyncio
async def test_timeout_inside_retry_gets_a_fresh_ceiling_per_attempt():
    calls = []

    async def slow_then_fast():
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(1)
        return len(calls)

    result = await with_retry(with_timeout(slow_then_fast, 0.05), max_attempts=2, base_delay=0)()
    assert result == 2


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
    assert 1.0 <= policy.delay_for(1) <= 1.1
    assert 2.0 <= policy.delay_for(2) <= 2.2
    assert 5.0 <= policy.delay_for(10) <= 5.5
    assert RetryPolicy(base_delay=0).delay_for(3) == 0.0


@pytest.mark.asyncio
async def test_run_bounded_caps_in_flight_operations():
    in_flight = 0
    peak = 0

    async def work(item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return item * 2

    report = await run_bounded(list(range(12)), work, concurrency=3, policy=RetryPolicy(timeout=None))

    assert peak <= 3
    assert [r.value for r in report.results] == [i * 2 for i in range(12)]
    assert len(report.succeeded) == 12


@pytest.mark.asyncio
async def test_run_bounded_records_failures_without_cancelling_siblings():
    completed = []

    async def work(item):
        if item == 2:
            raise UpstreamError("boom")
        return item

    async def on_complete(result, done, total):
        completed.append((result.index, result.ok, done, total))

    report = await run_bounded(
        [0, 1, 2, 3],
        work,
        concurrency=2,
        policy=RetryPolicy(max_attempts=2, base_delay=0, timeout=None),
        on_complete=on_complete,
    )

    assert [r.index for r in report.failed] == [2]
    assert report.failed[0].attempts == 2
    assert isinstance(report.failed[0].error, UpstreamError)
    assert len(completed) == 4
    assert sorted(c[2] for c in completed) == [1, 2, 3, 4]
    assert all(c[3] == 4 for c in completed)


@pytest.mark.asyncio
async def test_run_bounded_require_all_raises_with_failed_indices():
    async def work(item):
        if item in (1, 3):
            raise UpstreamError("nope")
        return item

    with pytest.raises(BatchIncompleteError) as excinfo:
        await run_bounded(
            [0, 1, 2, 3],
            work,
            concurrency=4,
            policy=RetryPolicy(max_attempts=1, base_delay=0, timeout=None),
            require_all=True,
        )
    assert excinfo.value.failed == [1, 3]
