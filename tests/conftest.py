"""Pytest configuration and shared fixtures."""

import hashlib
import re

import pytest
from langchain_core.runnables import RunnableLambda

from docgraph.service import DocGraphService
from docgraph.store import KnowledgeStore
from docgraph.vector_store import VectorStore


DIMENSIONS = 16

# Entities the fake extraction model recognises in any text.
KNOWN_ENTITIES = {
    "acme": ("Acme", "Organization"),
    "berlin": ("Berlin", "Location"),
    "widget": ("Widget", "Product"),
    "globex": ("Globex", "Organization"),
}


class RateLimitError(Exception):
    status_code = 429


def fake_vector(text):
    """Bag-of-words hash vector; never all-zero."""
    vec = [0.0] * DIMENSIONS
    for token in re.findall(r"\w+", text.lower()):
        idx = int(hashlib.md5(token.encode()).hexdigest(), 16) % (DIMENSIONS - 1)
        vec[idx] += 1.0
    vec[-1] = 0.1
    return vec


def _last_message(prompt_value):
    return prompt_value.to_messages()[-1].content


def _entities_in(text):
    lowered = text.lower()
    return [KNOWN_ENTITIES[k] for k in KNOWN_ENTITIES if re.search(rf"\b{k}\b", lowered)]


class FakeEmbeddings:
    def __init__(self, backend, key):
        self.backend = backend
        self.key = key

    async def aembed_documents(self, texts):
        self.backend.record("embedding", self.key)
        self.backend.check(self.key)
        if self.key in self.backend.zero_keys:
            return [[0.0] * DIMENSIONS for _ in texts]
        return [fake_vector(t) for t in texts]

    async def aembed_query(self, text):
        self.backend.record("query_embedding", self.key)
        self.backend.check(self.key)
        return fake_vector(text)


class FakeBackend:
    """
    Stands in for the model endpoints. Keys listed in ``failing_keys``
    answer with a rate-limit error, keys in ``zero_keys`` return all-zero
    embeddings.
    """

    def __init__(self):
        self.failing_keys = set()
        self.zero_keys = set()
        self.calls = []
        self.answer_fails = False
        self.extraction_fails = False
        self.stray_chunk_id = None

    def record(self, kind, key):
        self.calls.append((kind, key))

    def check(self, key):
        if key in self.failing_keys:
            raise RateLimitError("429 Too Many Requests")

    def keys_used(self, kind):
        return [key for k, key in self.calls if k == kind]

    def factory(self, kind, key, schema=None, temperature=None):
        if kind == "embedding":
            return FakeEmbeddings(self, key)
        if kind == "extraction":
            async def _extract(prompt_value):
                self.record("extraction", key)
                self.check(key)
                if self.extraction_fails:
                    raise RateLimitError("429 extraction quota exhausted")
                found = _entities_in(_last_message(prompt_value))
                entities = [{"name": n, "type": t} for n, t in found]
                relationships = []
                names = {n for n, _ in found}
                if {"Acme", "Berlin"} <= names:
                    relationships.append({"source": "Acme", "target": "Berlin", "type": "located_in"})
                if {"Acme", "Widget"} <= names:
                    relationships.append({"source": "Acme", "target": "Widget", "type": "produces"})
                return {"entities": entities, "relationships": relationships}
            return RunnableLambda(_extract)
        if kind == "query_entities":
            async def _query_entities(prompt_value):
                self.record("query_entities", key)
                self.check(key)
                return {"entities": [n for n, _ in _entities_in(_last_message(prompt_value))]}
            return RunnableLambda(_query_entities)
        if kind == "answer":
            async def _answer(prompt_value):
                self.record("answer", key)
                self.check(key)
                if self.answer_fails:
                    raise RuntimeError("completion service unavailable")
                text = _last_message(prompt_value)
                refs = re.findall(
                    r'source_file: "([^"]*)", page_number: "([^"]*)", '
                    r'file_id: "([^"]*)", file_chunk_id: "([^"]*)"',
                    text,
                )
                segments = [
                    {
                        "segment_text": f"Fact {i}.",
                        "segment_type": "answer_text",
                        "source_reference": {
                            "source_file": source,
                            "file_id": file_id,
                            "file_chunk_id": chunk_id,
                            "page_number": page,
                            "source_index": i,
                        },
                    }
                    for i, (source, page, file_id, chunk_id) in enumerate(refs, start=1)
                ]
                if self.stray_chunk_id:
                    segments.append(
                        {
                            "segment_text": "Unsupported claim.",
                            "segment_type": "analysis",
                            "source_reference": {
                                "source_file": "elsewhere.pdf",
                                "file_id": "unknown",
                                "file_chunk_id": self.stray_chunk_id,
                                "page_number": "1",
                                "source_index": 99,
                            },
                        }
                    )
                return {
                    "answer": "Acme is located in Berlin.",
                    "answer_with_citations": [{"content_segments": segments}],
                }
            return RunnableLambda(_answer)
        raise ValueError(f"Unknown client kind: {kind}")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store(tmp_path):
    vectors = VectorStore(collection_name="test_chunks", path=tmp_path / "chroma")
    return KnowledgeStore(graph_path=tmp_path / "graph_store.json", vector_store=vectors)


@pytest.fixture
def service(store, backend):
    svc = DocGraphService(
        store=store,
        api_keys=["key-1", "key-2", "key-3"],
        client_factory=backend.factory,
    )
    svc.reranker = None
    svc.extraction_agent.batch_delay = 0
    queue = svc.embedding_queue
    queue.base_delay = 0.01
    queue.short_cap = 0.02
    queue.long_delay = 0.02
    return svc
