import asyncio

import pytest

from cardbatch.ordered_queue import StrictOrderQueue


def _job(value, delay):
    async def compute():
        await asyncio.sleep(delay)
        return value

    return compute


@pytest.mark.asyncio
async def test_commits_follow_key_order_not_completion_order():
    queue = StrictOrderQueue(max_concurrency=4)
    committed = []

    async def commit(result, error):
        committed.append(result)

    queue.submit(1, _job('one', 0.05), commit)
    queue.submit(2, _job('two', 0.0), commit)
    queue.submit(3, _job('three', 0.02), commit)
    await queue.drain()

    assert committed == ['one', 'two', 'three']
    assert queue.committed == [1, 2, 3]


@pytest.mark.asyncio
async def test_later_key_waits_for_earlier_submission():
    queue = StrictOrderQueue()
    committed = []

    async def commit(result, error):
        committed.append(result)

    queue.submit(2, _job(2, 0), commit)
    await asyncio.sleep(0.02)
    assert committed == []

    queue.submit(1, _job(1, 0), commit)
    await queue.drain()
    assert committed == [1, 2]


@pytest.mark.asyncio
async def test_drain_skips_missing_keys():
    queue = StrictOrderQueue()
    committed = []

    async def commit(result, error):
        committed.append(result)

    queue.submit(1, _job(1, 0), commit)
    queue.submit(3, _job(3, 0), commit)
    await queue.drain()

    assert committed == [1, 3]
    assert queue.skipped == [2]
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_failed_computation_is_committed_with_error():
    queue = StrictOrderQueue()
    outcomes = []

    async def boom():
        raise ValueError('bad page')

    async def commit(result, error):
        outcomes.append((result, type(error)))

    queue.submit(1, boom, commit)
    queue.submit(2, _job('ok', 0), commit)
    await queue.drain()

    assert outcomes == [(None, ValueError), ('ok', type(None))]


@pytest.mark.asyncio
async def test_commit_exception_does_not_stop_consumer():
    queue = StrictOrderQueue()
    committed = []

    async def flaky_commit(result, error):
        if result == 1:
            raise OSError('disk full')
        committed.append(result)

    queue.submit(1, _job(1, 0), flaky_commit)
    queue.submit(2, _job(2, 0), flaky_commit)
    await queue.drain()

    assert committed == [2]
    assert queue.committed == [1, 2]


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    queue = StrictOrderQueue(max_concurrency=2)
    running = 0
    peak = 0

    def tracked(value):
        async def compute():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return value

        return compute

    async def commit(result, error):
        pass

    for key in range(1, 7):
        queue.submit(key, tracked(key), commit)
    await queue.drain()

    assert peak == 2
    assert queue.committed == [1, 2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_submit_after_drain_is_rejected():
    queue = StrictOrderQueue()
    await queue.drain()
    with pytest.raises(RuntimeError):
        queue.submit(1, _job(1, 0), lambda result, error: None)
