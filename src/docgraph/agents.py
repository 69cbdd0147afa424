from __future__ import annotations
from typing import List, Dict, Any, Iterator
from textwrap import dedent
import asyncio
import json
import logging
import time

from langchain_core.prompts import ChatPromptTemplate

from .config import settings
from .errors import InvalidResponseError, is_rate_limit_error
from .key_pool import KeyRotationPool, invoke_with_rotation
from .schemas import DocumentChunk, Entity, GraphExtraction, Relation, normalize_entity_name
from .task_queue import ResilientTaskQueue, validate_vectors


logger = logging.getLogger(__name__)


GRAPH_EXTRACTION_SCHEMA: Dict[str, Any] = {
    "title": "GraphExtraction",
    "description": "Entities and explicit relationships found in a text chunk.",
    "type": "object",
    "properties": {
        "entities": {
            "type": "array",
            "description": "Entities extracted from the text",
            "items": {
                "type": "object",
                "properties": {"name": {"type": "string"}, "type": {"type": "string"}},
                "required": ["name", "type"],
            },
        },
        "relationships": {
            "type": "array",
            "description": "Explicit relationships between the extracted entities",
            "items": {
                "type": "object",
                "properties": {
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "type": {"type": "string"},
                },
                "required": ["source", "target", "type"],
            },
        },
    },
    "required": ["entities", "relationships"],
}

QUERY_ENTITY_SCHEMA: Dict[str, Any] = {
    "title": "QueryEntities",
    "description": "Key entities mentioned in a question.",
    "type": "object",
    "properties": {
        "entities": {
            "type": "array",
            "description": "An array of key entities extracted from the text.",
            "items": {"type": "string", "description": "A single key entity."},
        }
    },
    "required": ["entities"],
}


def _batched(items: List[Any], size: int) -> Iterator[List[Any]]:
    size = max(1, size)
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _to_name_list(val) -> List[str]:
    # Models sometimes return a list where a single name is expected.
    if val is None:
        return []
    if isinstance(val, list):
        return [str(v).strip() for v in val if isinstance(v, (str, int)) and str(v).strip()]
    if isinstance(val, (str, int)):
        return [str(val).strip()] if str(val).strip() else []
    return []


class EmbeddingAgent:
    """Chunk embeddings through the resilient queue, query embeddings direct."""

    def __init__(self, queue: ResilientTaskQueue, batch_size: int | None = None):
        self.queue = queue
        self.batch_size = max(1, batch_size or settings.embedding_batch_size)

    async def embed_chunks(self, texts: List[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        if not texts:
            return vectors
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size
        async with self.queue.pool.owned():
            logger.info(
                "Embedding %d chunks in %d batches with %d available keys",
                len(texts), total_batches, len(self.queue.pool),
            )
            for batch_index, batch in enumerate(_batched(texts, self.batch_size), start=1):
                batch_vectors = await self.queue.submit(batch)
                vectors.extend(batch_vectors)
                logger.info("Embedding batch %d/%d done", batch_index, total_batches)
        return vectors

    async def embed_query(self, text: str, pool: KeyRotationPool) -> List[float]:
        async def _embed(client) -> List[float]:
            vector = await client.aembed_query(text)
            if not validate_vectors([vector], 1):
                raise InvalidResponseError("query embedding is empty or all-zero")
            return vector

        return await invoke_with_rotation(pool, "embedding", _embed)


class GraphExtractionAgent:
    """
    Extracts entities and relations chunk by chunk. Chunks of one batch are
    sent concurrently; a rate limit or unusable answer rotates the key and
    retries the whole batch, anything else aborts.
    """

    def __init__(self, batch_size: int | None = None, batch_delay: float | None = None):
        self.batch_size = max(1, batch_size or settings.extraction_batch_size)
        self.batch_delay = settings.extraction_batch_delay if batch_delay is None else batch_delay

        system_prompt = dedent(
            """
            You are a general-purpose information extraction AI. Analyse any kind
            of text and extract its core entities and the explicit relationships
            between them.

            Rules:
            1. Entities are nouns or noun phrases naming real-world objects or
               core concepts. Infer a short, generic type from context (e.g.
               Person, Organization, Location, Product, Technology, Date,
               Concept, Event); do not use a fixed list.
            2. Relationships must be direct links clearly stated in the text.
               Use a concise verb phrase as the type (e.g. located_in,
               invented, acquired, owns, partner_of, released_on).
            3. Use only the provided text. Never infer unstated relationships
               or use outside knowledge.
            4. Relationship source and target must match an entity name
               exactly. If nothing is found return empty arrays.
            """
        )
        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", system_prompt),
                ("user", "---\n{chunk}\n---"),
            ]
        )

    def _parse_response(self, raw: Any) -> GraphExtraction:
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                raw = None
        if not isinstance(raw, dict):
            raise InvalidResponseError("extraction model returned no structured result")

        entities: List[Entity] = []
        known = set()
        for ent in raw.get("entities") or []:
            if not isinstance(ent, dict):
                continue
            name = str(ent.get("name") or ent.get("label") or "").strip()
            if not name:
                continue
            entities.append(Entity(name=name, type=str(ent.get("type") or "Concept").strip()))
            known.add(normalize_entity_name(name))

        relationships: List[Relation] = []
        for rel in raw.get("relationships") or raw.get("relations") or []:
            if not isinstance(rel, dict):
                continue
            rel_type = str(rel.get("type") or "related_to").strip()
            for src in _to_name_list(rel.get("source")):
                for tgt in _to_name_list(rel.get("target")):
                    if normalize_entity_name(src) not in known:
                        continue
                    if normalize_entity_name(tgt) not in known:
                        continue
                    relationships.append(Relation(source=src, target=tgt, type=rel_type))
        return GraphExtraction(entities=entities, relationships=relationships)

    async def _run_batch(self, model, batch: List[DocumentChunk]) -> List[GraphExtraction]:
        chain = self.prompt | model
        responses = await asyncio.gather(
            *(chain.ainvoke({"chunk": chunk.text}) for chunk in batch)
        )
        return [self._parse_response(r) for r in responses]

    @staticmethod
    def _should_rotate(err: BaseException) -> bool:
        return is_rate_limit_error(err) or isinstance(err, InvalidResponseError)

    async def run(self, chunks: List[DocumentChunk], pool: KeyRotationPool) -> List[GraphExtraction]:
        results: List[GraphExtraction] = []
        if not chunks:
            return results
        pool.reset()
        total_batches = (len(chunks) + self.batch_size - 1) // self.batch_size
        logger.info(
            "Extracting entities from %d chunks (batch_size=%d)", len(chunks), self.batch_size
        )
        for batch_index, batch in enumerate(_batched(chunks, self.batch_size), start=1):
            batch_start = time.perf_counter()
            extracted = await invoke_with_rotation(
                pool,
                "extraction",
                lambda model: self._run_batch(model, batch),
                should_rotate=self._should_rotate,
                schema=GRAPH_EXTRACTION_SCHEMA,
            )
            results.extend(extracted)
            logger.info(
                "Extraction batch %d/%d finished in %.2fs",
                batch_index, total_batches, time.perf_counter() - batch_start,
            )
            if batch_index < total_batches and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
        empty = sum(1 for r in results if r.found_nothing)
        if empty:
            logger.info("%d/%d chunks had no entities or relationships", empty, len(results))
        return results


class QueryEntityAgent:
    """Lightweight entity extraction for a question."""

    def __init__(self):
        self.prompt = ChatPromptTemplate.from_messages(
            [
                (
                    "system",
                    "Extract the most important people, places, organizations or "
                    "concepts mentioned in the question. Return only entity names.",
                ),
                ("user", "Question: {question}"),
            ]
        )

    async def run(self, question: str, pool: KeyRotationPool) -> List[str]:
        async def _extract(model) -> List[str]:
            resp = await (self.prompt | model).ainvoke({"question": question})
            if not isinstance(resp, dict):
                raise InvalidResponseError("entity extraction returned no structured result")
            ents = resp.get("entities") or []
            return [e.strip() for e in ents if isinstance(e, str) and e.strip()]

        return await invoke_with_rotation(
            pool, "query_entities", _extract, schema=QUERY_ENTITY_SCHEMA
        )
