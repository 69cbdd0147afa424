import pytest

from docgraph.progress import ProgressChannel
from docgraph.retrieval import fuse_results
from docgraph.schemas import DocumentPayload, RetrievalResult


def _result(chunk_id, strategy, score=1.0):
    return RetrievalResult(
        chunk_id=chunk_id,
        text=f"text of {chunk_id}",
        document_id="doc",
        document_name="doc.txt",
        page_number=1,
        score=score,
        strategy=strategy,
    )


def test_fusion_deduplicates_with_graph_vector_fulltext_precedence():
    fused = fuse_results(
        {
            "fulltext": [_result("c3", "fulltext"), _result("c1", "fulltext")],
            "vector": [_result("c2", "vector", 0.9), _result("c1", "vector", 0.8)],
            "graph": [_result("c1", "graph", 2.0)],
        }
    )
    assert [r.chunk_id for r in fused] == ["c1", "c2", "c3"]
    assert [r.strategy for r in fused] == ["graph", "vector", "fulltext"]
    assert fused[0].score == 2.0


def test_fusion_handles_missing_and_empty_strategies():
    assert fuse_results({}) == []
    fused = fuse_results({"vector": [], "fulltext": [_result("c9", "fulltext")]})
    assert [r.chunk_id for r in fused] == ["c9"]


async def _ingest(service, text, name="acme.txt"):
    outcome = await service.ingest_document(
        DocumentPayload(name=name, data=text.encode(), mimetype="text/plain")
    )
    assert outcome.status == "created"
    return outcome.document_id


@pytest.mark.asyncio
async def test_single_chunk_found_by_every_strategy_is_returned_once(service):
    doc_id = await _ingest(service, "Acme is a manufacturing company.")
    channel = ProgressChannel()

    results = await service.retriever.retrieve("Who is Acme?", [doc_id], channel)

    assert len(results) == 1
    assert results[0].strategy == "graph"
    counts = {e.type: e.data for e in channel.events if e.type in ("graph", "vector", "fulltext")}
    assert counts == {"graph": 1, "vector": 1, "fulltext": 1}


@pytest.mark.asyncio
async def test_failing_strategy_degrades_to_zero_results(service, monkeypatch):
    doc_id = await _ingest(service, "Acme is a manufacturing company.")

    def broken_fulltext(*args, **kwargs):
        raise RuntimeError("index unavailable")

    monkeypatch.setattr(service.store, "fulltext_search", broken_fulltext)
    channel = ProgressChannel()
    results = await service.retriever.retrieve("Who is Acme?", [doc_id], channel)

    assert len(results) == 1
    fulltext_events = [e for e in channel.events if e.type == "fulltext"]
    assert len(fulltext_events) == 1
    assert fulltext_events[0].data == 0
    assert "failed" in fulltext_events[0].message


@pytest.mark.asyncio
async def test_retrieval_never_leaves_the_selection(service):
    acme_id = await _ingest(service, "Acme is a manufacturing company.")
    await _ingest(service, "Acme opened a second plant in Berlin.", name="news.txt")

    results = await service.retriever.retrieve("Acme", [acme_id], ProgressChannel())
    assert results
    assert {r.document_id for r in results} == {acme_id}


@pytest.mark.asyncio
async def test_question_without_entities_skips_graph_search(service):
    doc_id = await _ingest(service, "Acme is a manufacturing company.")
    channel = ProgressChannel()

    results = await service.retriever.retrieve("manufacturing", [doc_id], channel)

    graph_events = [e for e in channel.events if e.type == "graph"]
    assert graph_events[0].data == 0
    assert [r.strategy for r in results] == ["vector"]
