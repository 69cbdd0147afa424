from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import logging
import threading
import uuid

from .config import settings
from .errors import DocumentNotFoundError, StoreWriteError
from .fulltext import FullTextIndex
from .graph_store import GraphStore
from .schemas import ChunkRecord, DocumentMeta, RetrievalResult, WriteResult
from .vector_store import VectorStore


logger = logging.getLogger(__name__)


class KnowledgeStore:
    """
    Graph-capable store: the entity graph (networkx), the chunk vector index
    (chromadb) and BM25 full-text search behind one lock. Writes are
    all-or-nothing per document.
    """

    def __init__(
        self,
        graph_path: Optional[Path] = None,
        vector_store: Optional[VectorStore] = None,
    ):
        self.graph_path = graph_path or settings.graph_store_path
        self.graph_store = self._load_graph_store()
        self.vector_store = vector_store or VectorStore()
        self._lock = threading.RLock()

    def _load_graph_store(self) -> GraphStore:
        path = self.graph_path
        if path.exists():
            try:
                return GraphStore.load(path)
            except Exception as e:
                logger.warning("Failed to load existing graph store %s: %s", path, e)
        return GraphStore()

    # Documents

    def find_document_by_hash(self, content_hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.graph_store.find_document_by_hash(content_hash)

    def list_documents(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self.graph_store.list_documents()

    def get_document(self, document_id: str) -> Dict[str, Any]:
        with self._lock:
            doc = self.graph_store.get_document(document_id)
            if doc is None:
                raise DocumentNotFoundError(document_id)
            return {"document": doc, "chunks": self.graph_store.document_chunks(document_id)}

    def delete_document(self, document_id: str) -> Dict[str, Any]:
        with self._lock:
            doc = self.graph_store.get_document(document_id)
            if doc is None:
                raise DocumentNotFoundError(document_id)
            staged = self.graph_store.copy()
            chunk_ids = staged.remove_document(document_id)
            staged.save(self.graph_path)
            self.graph_store = staged
            self.vector_store.delete_chunks(chunk_ids)
            logger.info("Deleted document %s (%s, %d chunks)", doc["name"], document_id, len(chunk_ids))
            return doc

    def write_document(self, meta: DocumentMeta, chunks: Sequence[ChunkRecord]) -> WriteResult:
        """
        One transaction: upsert the document by hash, then create chunks,
        merge mentioned entities and typed relations. Changes are staged on
        a copy of the graph and only swapped in once vectors are indexed
        and the graph is persisted.
        """
        with self._lock:
            existing = self.graph_store.find_document_by_hash(meta.hash)
            if existing is not None:
                logger.info("Document %s already stored as %s", meta.name, existing["id"])
                return WriteResult(document_id=existing["id"], created=False)

            staged = self.graph_store.copy()
            document_id = str(uuid.uuid4())
            created_at = datetime.now(timezone.utc).isoformat()
            staged.add_document(document_id, meta, created_at)

            chunk_ids: List[str] = []
            relations_written = 0
            for record in chunks:
                chunk_id = str(uuid.uuid4())
                chunk_ids.append(chunk_id)
                staged.add_chunk(document_id, chunk_id, record.text, record.page_number)
                for entity in record.entities:
                    staged.upsert_entity(entity)
                    staged.link_mention(chunk_id, entity.name)
            for record in chunks:
                for rel in record.relationships:
                    if staged.add_relation(rel):
                        relations_written += 1

            vectors_added = False
            try:
                self.vector_store.add_chunks(
                    chunk_ids,
                    [record.embedding for record in chunks],
                    document_id,
                    [record.page_number for record in chunks],
                )
                vectors_added = True
                staged.save(self.graph_path)
            except Exception as e:
                if vectors_added:
                    try:
                        self.vector_store.delete_chunks(chunk_ids)
                    except Exception as cleanup_error:
                        logger.error("Vector rollback failed for %s: %s", document_id, cleanup_error)
                logger.error("Graph write for %s rolled back: %s", meta.name, e)
                raise StoreWriteError(f"failed to write graph for {meta.name}: {e}") from e

            self.graph_store = staged
            logger.info(
                "Stored document %s as %s (%d chunks, %d relations)",
                meta.name, document_id, len(chunk_ids), relations_written,
            )
            return WriteResult(document_id=document_id, created=True, chunk_ids=chunk_ids)

    def document_names(self, document_ids: Sequence[str]) -> Dict[str, str]:
        """Names of the given documents; unknown ids are left out."""
        with self._lock:
            out = {}
            for doc_id in document_ids:
                doc = self.graph_store.get_document(doc_id)
                if doc is not None:
                    out[doc_id] = doc.get("name", "")
            return out

    # Retrieval

    def _result(self, chunk: Dict[str, Any], score: float, strategy: str,
                entities: Optional[List[Dict[str, str]]] = None) -> RetrievalResult:
        doc = self.graph_store.get_document(chunk["document_id"]) or {}
        return RetrievalResult(
            chunk_id=chunk["id"],
            text=chunk.get("text", ""),
            document_id=chunk["document_id"],
            document_name=doc.get("name", ""),
            page_number=chunk.get("page_number"),
            score=score,
            strategy=strategy,
            mentioned_entities=(
                entities if entities is not None else self.graph_store.chunk_entities(chunk["id"])
            ),
        )

    def vector_search(
        self, query_vector: Sequence[float], document_ids: Sequence[str], k: int = 20
    ) -> List[RetrievalResult]:
        with self._lock:
            hits = self.vector_store.similarity_search(query_vector, document_ids, k=k)
            out = []
            for hit in hits:
                chunk = self.graph_store.get_chunk(hit["id"])
                if chunk is None:
                    continue
                out.append(self._result(chunk, hit["score"], "vector"))
            return out

    def entity_search(
        self, entity_names: Sequence[str], document_ids: Sequence[str]
    ) -> List[RetrievalResult]:
        with self._lock:
            matches = self.graph_store.chunks_mentioning(entity_names, document_ids)
            return [
                self._result(m["chunk"], float(len(m["entities"])), "graph", m["entities"])
                for m in matches
            ]

    def fulltext_search(
        self, query: str, document_ids: Sequence[str], k: int = 10
    ) -> List[RetrievalResult]:
        with self._lock:
            chunks = self.graph_store.chunks_for_documents(document_ids)
            hits = FullTextIndex(chunks).search(query, top_k=k)
            return [self._result(h["chunk"], h["score"], "fulltext") for h in hits]
