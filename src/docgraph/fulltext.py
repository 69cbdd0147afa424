"""Keyword search over chunk texts using BM25."""

from __future__ import annotations
from typing import Any, Dict, List
import logging
import re

from rank_bm25 import BM25Okapi


logger = logging.getLogger(__name__)

_CJK = "\u3400-\u9fff\uf900-\ufaff"
# CJK ideographs are single-character tokens; other scripts split on word runs.
_TOKEN_RE = re.compile(rf"[{_CJK}]|[^\W{_CJK}]+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class FullTextIndex:
    """
    BM25 index over a set of chunks. Built per query from the chunks of the
    selected documents, so it always reflects the current store contents.
    """

    def __init__(self, chunks: List[Dict[str, Any]]):
        self.chunks = [c for c in chunks if tokenize(c.get("text", ""))]
        self.bm25 = None
        if self.chunks:
            self.bm25 = BM25Okapi([tokenize(c["text"]) for c in self.chunks])

    def search(self, query: str, top_k: int = 10) -> List[Dict[str, Any]]:
        if self.bm25 is None or top_k <= 0:
            return []
        tokenized_query = tokenize(query)
        if not tokenized_query:
            return []

        scores = self.bm25.get_scores(tokenized_query)
        query_terms = set(tokenized_query)
        hits = []
        for i, chunk in enumerate(self.chunks):
            # BM25Okapi can score a shared term at or below zero on tiny
            # corpora, so keep any chunk containing a query term.
            if not query_terms.intersection(tokenize(chunk["text"])):
                continue
            hits.append((float(scores[i]), i))

        hits.sort(key=lambda h: (-h[0], h[1]))
        out = [{"chunk": self.chunks[i], "score": score} for score, i in hits[:top_k]]
        logger.debug("Full-text search matched %d chunks", len(out))
        return out
