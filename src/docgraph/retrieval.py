from __future__ import annotations
from typing import Dict, List, Sequence
import asyncio
import logging

from .agents import EmbeddingAgent, QueryEntityAgent
from .config import settings
from .key_pool import KeyRotationPool
from .progress import ProgressChannel
from .schemas import RetrievalResult
from .store import KnowledgeStore


logger = logging.getLogger(__name__)

# Fixed merge precedence: on a chunk id collision the earlier strategy wins.
FUSION_ORDER = ("graph", "vector", "fulltext")


def fuse_results(results_by_strategy: Dict[str, Sequence[RetrievalResult]]) -> List[RetrievalResult]:
    """
    Union the strategy result lists keyed by chunk id. The first result seen
    for an id is kept as-is; later duplicates are dropped, never merged.
    """
    fused: Dict[str, RetrievalResult] = {}
    for strategy in FUSION_ORDER:
        for result in results_by_strategy.get(strategy) or []:
            if result is None or not result.chunk_id:
                continue
            if result.chunk_id not in fused:
                fused[result.chunk_id] = result
    return list(fused.values())


class HybridRetriever:
    """
    Runs graph, vector and full-text search concurrently. Each strategy
    catches its own failure and reports zero results, so one broken
    strategy never takes the query down.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedding_agent: EmbeddingAgent,
        entity_agent: QueryEntityAgent,
        pool: KeyRotationPool,
        vector_top_k: int | None = None,
        fulltext_top_k: int | None = None,
    ):
        self.store = store
        self.embedding_agent = embedding_agent
        self.entity_agent = entity_agent
        self.pool = pool
        self.vector_top_k = vector_top_k or settings.vector_top_k
        self.fulltext_top_k = fulltext_top_k or settings.fulltext_top_k

    async def graph_search(
        self, question: str, document_ids: Sequence[str], channel: ProgressChannel
    ) -> List[RetrievalResult]:
        try:
            channel.send("[graph] extracting entities from the question...", type="graphProgress")
            entities = await self.entity_agent.run(question, self.pool.fork("query-entities"))
            if not entities:
                channel.send("[graph] no entities extracted, skipping", 0, type="graph")
                return []
            channel.send(f"[graph] entities: [{', '.join(entities)}], searching...")
            results = await asyncio.to_thread(self.store.entity_search, entities, document_ids)
            if results:
                channel.send(f"[graph] done, {len(results)} results", len(results), type="graph")
            else:
                channel.send("[graph] no chunk mentions these entities", 0, type="graph")
            return results
        except Exception as e:
            logger.exception("Graph search failed")
            channel.send(f"[graph] failed: {e}", 0, type="graph")
            return []

    async def vector_search(
        self, question: str, document_ids: Sequence[str], channel: ProgressChannel
    ) -> List[RetrievalResult]:
        try:
            channel.send("[vector] embedding the question...", type="vectorProgress")
            query_vector = await self.embedding_agent.embed_query(
                question, self.pool.fork("query-embedding")
            )
            channel.send("[vector] searching chunk embeddings...")
            results = await asyncio.to_thread(
                self.store.vector_search, query_vector, document_ids, self.vector_top_k
            )
            if results:
                channel.send(f"[vector] done, {len(results)} results", len(results), type="vector")
            else:
                channel.send("[vector] no results", 0, type="vector")
            return results
        except Exception as e:
            logger.exception("Vector search failed")
            channel.send(f"[vector] failed: {e}", 0, type="vector")
            return []

    async def fulltext_search(
        self, question: str, document_ids: Sequence[str], channel: ProgressChannel
    ) -> List[RetrievalResult]:
        try:
            channel.send("[fulltext] running keyword search...", type="fulltextProgress")
            results = await asyncio.to_thread(
                self.store.fulltext_search, question, document_ids, self.fulltext_top_k
            )
            if results:
                channel.send(f"[fulltext] done, {len(results)} results", len(results), type="fulltext")
            else:
                channel.send("[fulltext] no results", 0, type="fulltext")
            return results
        except Exception as e:
            logger.exception("Full-text search failed")
            channel.send(f"[fulltext] failed: {e}", 0, type="fulltext")
            return []

    async def retrieve(
        self, question: str, document_ids: Sequence[str], channel: ProgressChannel
    ) -> List[RetrievalResult]:
        if not document_ids:
            return []
        names = await asyncio.to_thread(self.store.document_names, document_ids)
        channel.send(
            f"Searching {len(names)} of {len(document_ids)} selected documents",
            sorted(names.values()),
        )
        channel.send("Running graph, vector and full-text search in parallel...")
        graph_results, vector_results, fulltext_results = await asyncio.gather(
            self.graph_search(question, document_ids, channel),
            self.vector_search(question, document_ids, channel),
            self.fulltext_search(question, document_ids, channel),
        )
        logger.info(
            "Retrieval counts: graph=%d vector=%d fulltext=%d",
            len(graph_results), len(vector_results), len(fulltext_results),
        )

        channel.send("Fusing and de-duplicating results...")
        fused = fuse_results(
            {"graph": graph_results, "vector": vector_results, "fulltext": fulltext_results}
        )
        channel.send(f"Fusion done, {len(fused)} candidate chunks", len(fused))
        return fused
