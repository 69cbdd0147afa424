from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, List, Optional, Sequence
import asyncio
import logging

from .errors import ConfigurationError, KeyPoolExhaustedError


logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]


class KeyRotationPool:
    """
    Ordered credentials with a cursor. Clients are built fresh on every
    ``current_client`` call because each rotation means a new binding.
    """

    def __init__(self, keys: Sequence[str], factory: ClientFactory, name: str = "pool"):
        keys = [k for k in keys if k]
        if not keys:
            raise ConfigurationError(
                "No API credentials configured; set API_KEYS to a comma-separated list."
            )
        self._keys: List[str] = list(keys)
        self._factory = factory
        self._cursor = 0
        self._lock = asyncio.Lock()
        self.name = name

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def exhausted(self) -> bool:
        return self._cursor >= len(self._keys)

    def current_client(self, kind: str, **options) -> Optional[Any]:
        if self.exhausted:
            return None
        logger.debug("[%s] building %s client with key #%d", self.name, kind, self._cursor)
        return self._factory(kind, self._keys[self._cursor], **options)

    def advance(self) -> bool:
        self._cursor += 1
        if self._cursor < len(self._keys):
            logger.info(
                "[%s] key may be rate limited, rotating to key #%d", self.name, self._cursor
            )
            return True
        logger.error("[%s] all %d keys have been tried", self.name, len(self._keys))
        return False

    def reset(self) -> None:
        if self._cursor:
            logger.info("[%s] cursor reset to key #0", self.name)
        self._cursor = 0

    def fork(self, name: Optional[str] = None) -> "KeyRotationPool":
        """Phase-local pool over the same credentials with its own cursor."""
        return KeyRotationPool(self._keys, self._factory, name=name or self.name)

    @asynccontextmanager
    async def owned(self):
        """Serialize phases sharing this pool; each phase starts from key #0."""
        async with self._lock:
            self.reset()
            yield self


async def invoke_with_rotation(
    pool: KeyRotationPool,
    kind: str,
    call: Callable[[Any], Awaitable[Any]],
    should_rotate: Callable[[BaseException], bool] = lambda err: True,
    **client_options,
) -> Any:
    """
    Run ``call(client)`` against the current credential, rotating on errors
    accepted by ``should_rotate``. Raises ``KeyPoolExhaustedError`` once the
    last credential has failed.
    """
    last_error: Optional[BaseException] = None
    while True:
        client = pool.current_client(kind, **client_options)
        if client is None:
            raise KeyPoolExhaustedError(
                f"[{pool.name}] no API key left for {kind}"
            ) from last_error
        try:
            return await call(client)
        except Exception as err:
            if not should_rotate(err):
                raise
            last_error = err
            logger.warning("[%s] %s call failed with key #%d: %s", pool.name, kind, pool.cursor, err)
            if not pool.advance():
                raise KeyPoolExhaustedError(
                    f"[{pool.name}] every API key failed for {kind}: {err}"
                ) from err
