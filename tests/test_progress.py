import json

import pytest

from docgraph.errors import ProgressChannelClosedError
from docgraph.progress import ProgressChannel, ProgressEvent, parse_progress_lines


@pytest.mark.asyncio
async def test_stream_ends_with_single_result_event():
    channel = ProgressChannel()
    channel.send("Processing query...")
    channel.send("[vector] done, 3 results", 3, type="vector")
    channel.close({"question": "q", "answer": "a", "raw_sources": []})

    lines = [line async for line in channel.stream()]
    events = [json.loads(line) for line in lines]

    assert all(line.endswith("\n") for line in lines)
    assert [e["type"] for e in events] == ["progress", "vector", "result"]
    assert events[1]["data"] == 3
    assert events[-1]["answer"] == "a"
    assert "timestamp" in events[0]


def test_writes_after_close_are_rejected():
    channel = ProgressChannel()
    channel.close({"error": "boom", "details": "x"})
    assert channel.closed
    with pytest.raises(ProgressChannelClosedError):
        channel.send("late")
    with pytest.raises(ProgressChannelClosedError):
        channel.close({"answer": "again"})


def test_result_type_only_through_close():
    channel = ProgressChannel()
    with pytest.raises(ValueError):
        channel.send("nope", type="result")
    with pytest.raises(ValueError):
        ProgressEvent(type="mystery")


def test_consumer_skips_blank_and_malformed_lines():
    lines = [
        '{"type": "progress", "message": "start"}',
        "",
        "{not json",
        '["no", "type"]',
        '{"type": "result", "answer": "done"}',
    ]
    events = list(parse_progress_lines(lines))
    assert [e["type"] for e in events] == ["progress", "result"]
