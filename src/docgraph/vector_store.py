from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Sequence
from pathlib import Path

import numpy as np
from chromadb import PersistentClient

from .config import settings


class VectorStore:
    """
    Thin wrapper around a ChromaDB persistent collection of chunk
    embeddings. Scoring is exact cosine over the selected documents, so
    results do not depend on the approximate index.
    """

    def __init__(
        self,
        collection_name: str | None = None,
        path: Optional[Path] = None,
    ):
        self.client = PersistentClient(path=str(path or settings.chroma_db_dir))
        self.collection_name = collection_name or settings.chroma_collection
        self.collection = self.client.get_or_create_collection(
            name=self.collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    def count(self) -> int:
        return self.collection.count()

    def add_chunks(
        self,
        chunk_ids: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        document_id: str,
        page_numbers: Sequence[Optional[int]],
    ) -> None:
        if not chunk_ids:
            return
        metadatas = [
            {"document_id": document_id, "page_number": page if page is not None else -1}
            for page in page_numbers
        ]
        self.collection.add(
            ids=list(chunk_ids),
            embeddings=[list(map(float, e)) for e in embeddings],
            metadatas=metadatas,
        )

    def delete_chunks(self, chunk_ids: Iterable[str]) -> None:
        ids = list(chunk_ids)
        if ids:
            self.collection.delete(ids=ids)

    @staticmethod
    def _where(document_ids: Sequence[str]) -> Dict:
        ids = list(document_ids)
        if len(ids) == 1:
            return {"document_id": ids[0]}
        return {"document_id": {"$in": ids}}

    def similarity_search(
        self,
        query_vector: Sequence[float],
        document_ids: Sequence[str],
        k: int = 20,
    ) -> List[Dict]:
        """Top-k chunk ids of the selected documents by cosine similarity."""
        if not document_ids or k <= 0:
            return []
        res = self.collection.get(
            where=self._where(document_ids),
            include=["embeddings"],
        )
        ids = res.get("ids") or []
        embeddings = res.get("embeddings")
        if not ids or embeddings is None or len(embeddings) == 0:
            return []

        matrix = np.asarray(embeddings, dtype=float)
        query = np.asarray(query_vector, dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)

        order = np.argsort(-scores, kind="stable")[:k]
        return [{"id": ids[i], "score": float(scores[i])} for i in order]
