from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, List, Optional, Sequence, Set
import asyncio
import logging
import math
import time

from .config import settings
from .errors import InvalidResponseError, RetryLimitExceededError
from .key_pool import KeyRotationPool, invoke_with_rotation


logger = logging.getLogger(__name__)


def _is_usable_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number != 0.0


def validate_vectors(result: Any, expected: int) -> bool:
    """
    A batch response is usable only when it holds one vector per input and
    every vector carries at least one finite, non-zero value. All-zero
    vectors are how quota-limited keys answer, so they count as failures.
    """
    if result is None or isinstance(result, (str, bytes, dict)):
        return False
    try:
        vectors = list(result)
    except TypeError:
        return False
    if len(vectors) != expected or expected == 0:
        return False
    for vector in vectors:
        if vector is None or isinstance(vector, (str, bytes)):
            return False
        try:
            values = list(vector)
        except TypeError:
            return False
        if not values:
            return False
        if not any(_is_usable_number(v) for v in values):
            return False
    return True


@dataclass
class _Task:
    texts: List[str]
    future: asyncio.Future
    retry_count: int = 0
    created_at: float = field(default_factory=time.monotonic)


class ResilientTaskQueue:
    """
    Single-consumer embedding queue. Tasks run strictly in arrival order,
    except that a retried task goes back to the front once its backoff
    delay has elapsed. Only one batch is ever in flight.
    """

    def __init__(
        self,
        pool: KeyRotationPool,
        base_delay: float = 2.0,
        backoff_multiplier: float = 1.5,
        short_cap: float = 30.0,
        short_attempts: int = 10,
        long_delay: float = 300.0,
        max_retries: Optional[int] = 100,
        warn_after: int = 20,
    ):
        self.pool = pool
        self.base_delay = base_delay
        self.backoff_multiplier = backoff_multiplier
        self.short_cap = short_cap
        self.short_attempts = short_attempts
        self.long_delay = long_delay
        self.max_retries = max_retries or None
        self.warn_after = warn_after

        self._queue: Deque[_Task] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.TimerHandle] = set()

    @classmethod
    def from_settings(cls, pool: KeyRotationPool) -> "ResilientTaskQueue":
        return cls(
            pool,
            base_delay=settings.retry_base_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            short_cap=settings.retry_short_cap,
            short_attempts=settings.retry_short_attempts,
            long_delay=settings.retry_long_delay,
            max_retries=settings.retry_max_attempts,
            warn_after=settings.retry_warn_after,
        )

    # Public API

    @property
    def pending(self) -> int:
        return len(self._queue) + len(self._timers)

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def submit(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._queue.append(_Task(texts=list(texts), future=future))
        self._ensure_worker()
        return await future

    def retry_delay(self, retry_count: int) -> float:
        if retry_count <= self.short_attempts:
            return min(
                self.base_delay * self.backoff_multiplier ** (retry_count - 1),
                self.short_cap,
            )
        return self.long_delay

    async def close(self) -> None:
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.cancel()

    # Worker

    def _ensure_worker(self) -> None:
        if not self.is_processing:
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        logger.info("Embedding queue started, %d task(s) waiting", len(self._queue))
        while self._queue:
            task = self._queue.popleft()
            if task.future.done():
                # caller went away
                continue
            try:
                result = await self._execute(task.texts)
            except asyncio.CancelledError:
                raise
            except Exception as err:
                logger.error("Embedding task failed: %s", err)
                self._schedule_retry(task, str(err))
                continue

            if validate_vectors(result, len(task.texts)):
                if not task.future.done():
                    task.future.set_result(result)
                logger.info(
                    "Embedding task done (%d texts, %d retries)",
                    len(task.texts), task.retry_count,
                )
            else:
                self._schedule_retry(task, "invalid or empty embedding response")
        logger.info("Embedding queue drained")

    async def _execute(self, texts: List[str]) -> List[List[float]]:
        if self.pool.exhausted:
            self.pool.reset()

        async def _embed(client) -> List[List[float]]:
            vectors = await client.aembed_documents(texts)
            if not validate_vectors(vectors, len(texts)):
                raise InvalidResponseError(
                    "embedding service returned empty or all-zero vectors"
                )
            return vectors

        logger.debug("Executing embedding task with %d texts", len(texts))
        return await invoke_with_rotation(self.pool, "embedding", _embed)

    def _schedule_retry(self, task: _Task, reason: str) -> None:
        task.retry_count += 1
        if self.max_retries is not None and task.retry_count > self.max_retries:
            logger.error(
                "Embedding task abandoned after %d retries: %s", self.max_retries, reason
            )
            if not task.future.done():
                task.future.set_exception(
                    RetryLimitExceededError(self.max_retries, reason)
                )
            return

        delay = self.retry_delay(task.retry_count)
        logger.warning(
            "Embedding task failed (%s); retry #%d in %.1fs", reason, task.retry_count, delay
        )
        if task.retry_count > self.warn_after:
            logger.warning(
                "Embedding task has retried %d times; check API quota and connectivity",
                task.retry_count,
            )

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _requeue() -> None:
            self._timers.discard(handle)
            if task.future.done():
                return
            self._queue.appendleft(task)
            self._ensure_worker()

        handle = loop.call_later(delay, _requeue)
        self._timers.add(handle)
