import asyncio

import pytest

from docgraph.errors import RetryLimitExceededError
from docgraph.key_pool import KeyRotationPool
from docgraph.task_queue import ResilientTaskQueue, validate_vectors


class ScriptedEmbeddings:
    """Embedding client whose behaviour is decided by a shared script."""

    def __init__(self, script, key):
        self.script = script
        self.key = key

    async def aembed_documents(self, texts):
        return await self.script(self.key, texts)


def _queue(script, keys=("k1",), **options):
    pool = KeyRotationPool(list(keys), lambda kind, key, **_: ScriptedEmbeddings(script, key))
    defaults = dict(base_delay=0.001, short_cap=0.005, long_delay=0.005)
    defaults.update(options)
    return ResilientTaskQueue(pool, **defaults)


def _vectors(texts):
    return [[1.0, float(len(t))] for t in texts]


def test_validate_vectors():
    assert validate_vectors([[0.1, 0.2]], 1)
    assert validate_vectors([[0.0, 0.3], [1.0, 0.0]], 2)
    assert not validate_vectors([[0.0, 0.0]], 1)
    assert not validate_vectors([[0.1]], 2)
    assert not validate_vectors([[]], 1)
    assert not validate_vectors(None, 1)
    assert not validate_vectors([[float("nan")]], 1)
    assert not validate_vectors([["x"]], 1)
    assert not validate_vectors([], 0)


def test_retry_delay_schedule():
    queue = ResilientTaskQueue(
        KeyRotationPool(["k"], lambda *a, **kw: None),
        base_delay=2.0,
        backoff_multiplier=1.5,
        short_cap=30.0,
        short_attempts=10,
        long_delay=300.0,
    )
    assert queue.retry_delay(1) == pytest.approx(2.0)
    assert queue.retry_delay(2) == pytest.approx(3.0)
    assert queue.retry_delay(3) == pytest.approx(4.5)
    assert queue.retry_delay(10) == pytest.approx(30.0)
    assert queue.retry_delay(11) == pytest.approx(300.0)


@pytest.mark.asyncio
async def test_empty_batch_resolves_immediately():
    async def script(key, texts):
        raise AssertionError("should not be called")

    assert await _queue(script).submit([]) == []


@pytest.mark.asyncio
async def test_task_eventually_succeeds_after_transient_failures():
    attempts = []

    async def script(key, texts):
        attempts.append(key)
        if len(attempts) <= 3:
            raise RuntimeError("429 Too Many Requests")
        return _vectors(texts)

    queue = _queue(script)
    assert await queue.submit(["hello"]) == [[1.0, 5.0]]
    assert len(attempts) == 4


@pytest.mark.asyncio
async def test_all_zero_vectors_rotate_to_next_key():
    used = []

    async def script(key, texts):
        used.append(key)
        if key == "k1":
            return [[0.0, 0.0] for _ in texts]
        return _vectors(texts)

    queue = _queue(script, keys=("k1", "k2"))
    assert await queue.submit(["ab"]) == [[1.0, 2.0]]
    assert used == ["k1", "k2"]


@pytest.mark.asyncio
async def test_retry_ceiling_rejects_the_task():
    used = []

    async def script(key, texts):
        used.append(key)
        raise RuntimeError("quota exceeded")

    queue = _queue(script, keys=("k1", "k2", "k3"), max_retries=1)
    with pytest.raises(RetryLimitExceededError) as exc_info:
        await queue.submit(["x"])
    assert exc_info.value.attempts == 1
    # Each attempt walks every key once, starting again from the first.
    assert used == ["k1", "k2", "k3", "k1", "k2", "k3"]


@pytest.mark.asyncio
async def test_retried_task_jumps_ahead_of_waiting_tasks():
    order = []
    failed_once = set()

    async def script(key, texts):
        label = texts[0]
        order.append(label)
        if label == "A" and label not in failed_once:
            failed_once.add(label)
            raise RuntimeError("429")
        if label == "B":
            await asyncio.sleep(0.05)
        return _vectors(texts)

    queue = _queue(script, base_delay=0.001, short_cap=0.001)
    results = await asyncio.gather(
        queue.submit(["A"]), queue.submit(["B"]), queue.submit(["C"])
    )
    assert order == ["A", "B", "A", "C"]
    assert results == [[[1.0, 1.0]], [[1.0, 1.0]], [[1.0, 1.0]]]


@pytest.mark.asyncio
async def test_only_one_batch_in_flight():
    in_flight = 0
    peak = 0

    async def script(key, texts):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return _vectors(texts)

    queue = _queue(script)
    await asyncio.gather(*(queue.submit([str(i)]) for i in range(5)))
    assert peak == 1
    assert not queue.is_processing
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_close_cancels_pending_work():
    async def script(key, texts):
        raise RuntimeError("429")

    queue = _queue(script, base_delay=10.0, short_cap=10.0)
    pending = asyncio.ensure_future(queue.submit(["x"]))
    await asyncio.sleep(0.01)
    assert queue.pending == 1
    await queue.close()
    assert queue.pending == 0
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
