from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional, Sequence
import asyncio
import logging

from .agents import EmbeddingAgent, GraphExtractionAgent, QueryEntityAgent
from .config import settings
from .errors import DocGraphError, IngestionError
from .ingestion import build_chunks, content_hash, load_pages
from .key_pool import KeyRotationPool
from .llm import build_client
from .progress import ProgressChannel
from .reranker import JinaReranker
from .retrieval import HybridRetriever
from .schemas import ChunkRecord, DocumentMeta, DocumentPayload, IngestionOutcome
from .store import KnowledgeStore
from .synthesis import NO_ANSWER_MESSAGE, AnswerAgent, build_answer_segments
from .task_queue import ResilientTaskQueue


logger = logging.getLogger(__name__)


class DocGraphService:
    """
    Ingestion coordinator and query pipeline over one knowledge store.
    Each phase that rotates keys gets its own pool: the embedding queue owns
    one instance, extraction and query phases fork a fresh one per run.
    """

    def __init__(
        self,
        store: Optional[KnowledgeStore] = None,
        api_keys: Optional[Sequence[str]] = None,
        client_factory: Optional[Callable[..., Any]] = None,
        reranker: Optional[JinaReranker] = None,
    ):
        keys = settings.api_key_list if api_keys is None else list(api_keys)
        self.key_pool = KeyRotationPool(keys, client_factory or build_client, name="keys")
        self.store = store or KnowledgeStore()

        self.embedding_queue = ResilientTaskQueue.from_settings(self.key_pool.fork("embedding"))
        self.embedding_agent = EmbeddingAgent(self.embedding_queue)
        self.extraction_agent = GraphExtractionAgent()
        self.entity_agent = QueryEntityAgent()
        self.answer_agent = AnswerAgent()
        self.retriever = HybridRetriever(
            self.store, self.embedding_agent, self.entity_agent, self.key_pool
        )
        if reranker is None and settings.rerank_enabled:
            reranker = JinaReranker()
        self.reranker = reranker

    # Ingestion

    async def ingest_document(self, payload: DocumentPayload) -> IngestionOutcome:
        """
        received -> hashed -> (deduped | chunked) -> embedded
        -> graph-extracted -> written -> done
        """
        name = payload.name
        logger.info("[%s] received (%d bytes)", name, payload.size)

        file_hash = content_hash(payload.data)
        logger.info("[%s] hashed %s", name, file_hash[:12])
        existing = await asyncio.to_thread(self.store.find_document_by_hash, file_hash)
        if existing is not None:
            logger.info("[%s] deduped, already stored as %s", name, existing["id"])
            return IngestionOutcome(
                filename=name,
                status="exists",
                document_id=existing["id"],
                message="File already exists, skipped processing",
            )

        pages = await asyncio.to_thread(load_pages, payload.data, name, payload.mimetype)
        chunks = build_chunks(pages, source=name)
        if not chunks:
            raise IngestionError(f"{name} has no extractable content", filename=name)
        logger.info("[%s] chunked into %d chunks", name, len(chunks))

        vectors = await self.embedding_agent.embed_chunks([c.text for c in chunks])
        if len(vectors) != len(chunks):
            raise IngestionError(
                f"expected {len(chunks)} embeddings for {name}, got {len(vectors)}", filename=name
            )
        logger.info("[%s] embedded %d chunks", name, len(vectors))

        extractions = await self.extraction_agent.run(chunks, self.key_pool.fork("extraction"))
        logger.info("[%s] graph extracted", name)

        records = [
            ChunkRecord(
                text=chunk.text,
                page_number=chunk.page_number,
                embedding=vector,
                entities=extraction.entities,
                relationships=extraction.relationships,
            )
            for chunk, vector, extraction in zip(chunks, vectors, extractions)
        ]
        meta = DocumentMeta(hash=file_hash, name=name, size=payload.size, mimetype=payload.mimetype)
        written = await asyncio.to_thread(self.store.write_document, meta, records)
        if not written.created:
            # Another upload of the same bytes won the race.
            return IngestionOutcome(
                filename=name,
                status="exists",
                document_id=written.document_id,
                message="File already exists, skipped processing",
            )
        logger.info("[%s] written as %s", name, written.document_id)

        outcome = IngestionOutcome(
            filename=name,
            status="created",
            document_id=written.document_id,
            chunk_count=len(records),
            entity_count=sum(len(r.entities) for r in records),
            relationship_count=sum(len(r.relationships) for r in records),
            message=f"Built graph for {name}",
        )
        logger.info(
            "[%s] done: %d chunks, %d entities, %d relationships",
            name, outcome.chunk_count, outcome.entity_count, outcome.relationship_count,
        )
        return outcome

    async def _ingest_safely(self, payload: DocumentPayload) -> IngestionOutcome:
        try:
            return await self.ingest_document(payload)
        except DocGraphError as e:
            logger.error("Ingestion of %s failed: %s", payload.name, e)
            return IngestionOutcome(filename=payload.name, status="error", message=str(e))
        except Exception as e:
            logger.exception("Unexpected error while ingesting %s", payload.name)
            return IngestionOutcome(filename=payload.name, status="error", message=str(e))

    async def ingest_many(self, payloads: Sequence[DocumentPayload]) -> List[IngestionOutcome]:
        """Ingest every payload independently; one failure never affects the others."""
        return list(await asyncio.gather(*(self._ingest_safely(p) for p in payloads)))

    # Query

    @staticmethod
    def validate_query(question: Optional[str], document_ids: Optional[Sequence[str]]) -> Optional[str]:
        if not question or not question.strip():
            return "Please provide a question"
        if not document_ids:
            return "Please select at least one document"
        return None

    async def answer_query(
        self,
        question: str,
        document_ids: Sequence[str],
        channel: ProgressChannel,
    ) -> None:
        """Drive retrieval and synthesis; always ends with exactly one result event."""
        question = question.strip()
        try:
            channel.send("Processing query...", {"question": question})
            results = await self.retriever.retrieve(question, list(document_ids), channel)

            if not results:
                channel.close(
                    {
                        "question": question,
                        "answer": NO_ANSWER_MESSAGE,
                        "answer_with_citations": [],
                        "answer_segments": build_answer_segments(NO_ANSWER_MESSAGE, []),
                        "raw_sources": [],
                    }
                )
                return

            if self.reranker is not None:
                channel.send("Reranking candidates...")
                results = await self.reranker.rerank(question, results)

            channel.send("Generating answer...")
            answer = await self.answer_agent.run(question, results, self.key_pool.fork("answer"))

            channel.send("Query complete")
            channel.close(
                {
                    "question": question,
                    "answer": answer["answer"],
                    "answer_with_citations": answer["answer_with_citations"],
                    "answer_segments": build_answer_segments(
                        answer["answer"], answer["answer_with_citations"]
                    ),
                    "raw_sources": [r.to_source() for r in results],
                }
            )
        except Exception as e:
            logger.exception("Query processing failed")
            if not channel.closed:
                channel.send(f"Query processing failed: {e}")
                channel.close({"error": "Query processing failed", "details": str(e)})

    # Document management

    def list_documents(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": doc["id"],
                "filename": doc.get("name"),
                "original_name": doc.get("name"),
                "file_size": doc.get("size"),
                "mime_type": doc.get("mimetype"),
                "upload_date": doc.get("created_at"),
                "status": "completed",
                "total_chunks": doc.get("total_chunks", 0),
            }
            for doc in self.store.list_documents()
        ]

    def get_document(self, document_id: str) -> Dict[str, Any]:
        found = self.store.get_document(document_id)
        doc = found["document"]
        chunks = [
            {"id": c["id"], "content": c.get("text", ""), "page_number": c.get("page_number")}
            for c in found["chunks"]
        ]
        return {
            "file": {
                "id": doc["id"],
                "filename": doc.get("name"),
                "original_name": doc.get("name"),
                "file_size": doc.get("size"),
                "mime_type": doc.get("mimetype"),
                "upload_date": doc.get("created_at"),
                "status": "completed",
                "total_chunks": len(chunks),
            },
            "chunks": chunks,
        }

    def delete_document(self, document_id: str) -> Dict[str, Any]:
        doc = self.store.delete_document(document_id)
        return {
            "message": f"File '{doc.get('name')}' was deleted.",
            "deletedFile": {"id": doc["id"], "name": doc.get("name")},
        }

    async def close(self) -> None:
        await self.embedding_queue.close()
