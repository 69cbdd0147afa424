"""Consumer side of the query stream."""

from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

import httpx

from .progress import parse_progress_lines
from .synthesis import build_answer_segments


logger = logging.getLogger(__name__)

__all__ = ["QueryStreamError", "stream_query", "build_answer_segments"]


class QueryStreamError(RuntimeError):
    """The server rejected the query or the stream ended without a result."""


async def stream_query(
    base_url: str,
    question: str,
    selected_ids: Sequence[str],
    on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    timeout: float = 300.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """
    POST a question and read progress lines until the result event.
    Non-result events go to ``on_progress``; the result event is returned.
    """
    body = {"question": question, "selectedFileIds": list(selected_ids)}
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport) as client:
        async with client.stream("POST", "/api/query-stream", json=body) as resp:
            if resp.status_code != 200:
                await resp.aread()
                try:
                    detail = resp.json().get("error")
                except ValueError:
                    detail = resp.text
                raise QueryStreamError(f"query rejected ({resp.status_code}): {detail}")

            async for line in resp.aiter_lines():
                for event in parse_progress_lines([line]):
                    if event["type"] == "result":
                        return event
                    if on_progress is not None:
                        on_progress(event)

    raise QueryStreamError("stream ended without a result event")


def render_answer(result: Dict[str, Any]) -> str:
    """Plain-text answer with [n] citation markers and a numbered source list."""
    if result.get("error"):
        return f"Error: {result['error']} ({result.get('details', '')})"

    segments: List[Dict[str, Any]] = result.get("answer_segments") or build_answer_segments(
        result.get("answer", ""), result.get("answer_with_citations") or []
    )
    text_parts: List[str] = []
    sources: Dict[int, str] = {}
    for part in segments:
        if part["type"] == "text":
            text_parts.append(part["value"])
        else:
            details = part.get("details") or {}
            text_parts.append(f"[{part['number']}]")
            sources.setdefault(part["number"], f"{details.get('source')} (page {details.get('page')})")

    lines = [" ".join(p for p in text_parts if p)]
    if sources:
        lines.append("")
        lines.extend(f"[{n}] {label}" for n, label in sorted(sources.items()))
    return "\n".join(lines)
