"""
Progress stream protocol.

Retrieval code sends typed events into a ``ProgressChannel``; the transport
drains ``stream()`` and writes one JSON object per line. Exactly one
``result`` event closes the channel.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, Iterator
import asyncio
import json
import logging

from .errors import ProgressChannelClosedError


logger = logging.getLogger(__name__)

EVENT_TYPES = {
    "progress",
    "graph",
    "vector",
    "fulltext",
    "graphProgress",
    "vectorProgress",
    "fulltextProgress",
    "result",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProgressEvent:
    type: str
    message: str = ""
    data: Any = None
    timestamp: str = field(default_factory=_now)
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown progress event type: {self.type}")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, "message": self.message, "data": self.data}
        out.update(self.extra)
        out["timestamp"] = self.timestamp
        return out

    def to_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str) + "\n"


class ProgressChannel:
    """Single-writer, append-only event channel for one query."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.events: list = []

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, event: ProgressEvent) -> None:
        if self._closed:
            raise ProgressChannelClosedError(
                f"progress channel already closed, dropping {event.type!r} event"
            )
        self.events.append(event)
        self._queue.put_nowait(event)

    def send(self, message: str, data: Any = None, type: str = "progress") -> ProgressEvent:
        if type == "result":
            raise ValueError("use close() to send the result event")
        event = ProgressEvent(type=type, message=message, data=data)
        logger.debug("progress: %s", message)
        self._put(event)
        return event

    def close(self, result: Dict[str, Any]) -> ProgressEvent:
        """Emit the terminal result event; nothing can be written afterwards."""
        payload = {k: v for k, v in result.items() if k not in ("type", "timestamp")}
        message = payload.pop("message", "")
        event = ProgressEvent(type="result", message=message, extra=payload)
        self._put(event)
        self._closed = True
        return event

    async def stream(self) -> AsyncIterator[str]:
        while True:
            event = await self._queue.get()
            yield event.to_line()
            if event.type == "result":
                return


def parse_progress_lines(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Decode NDJSON progress lines, skipping blank or malformed ones."""
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed progress line %r: %s", line[:200], e)
            continue
        if not isinstance(data, dict) or "type" not in data:
            logger.warning("Skipping progress line without a type: %r", line[:200])
            continue
        yield data
