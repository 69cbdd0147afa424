"""Optional reranking through a Jina-compatible HTTP endpoint."""

from __future__ import annotations
from typing import List, Optional
import logging

import httpx

from .config import settings
from .schemas import RetrievalResult


logger = logging.getLogger(__name__)


class JinaReranker:
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        top_n: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.rerank_url
        self.api_key = api_key if api_key is not None else settings.rerank_api_key
        self.model = model or settings.rerank_model
        self.top_n = top_n or settings.rerank_top_n
        self.timeout = timeout or settings.rerank_timeout
        self._transport = transport

    async def rerank(self, question: str, results: List[RetrievalResult]) -> List[RetrievalResult]:
        """
        Reorder results by the service's relevance score. On any failure the
        input is returned unchanged so the answer still gets produced.
        """
        if not results:
            return results

        payload = {
            "model": self.model,
            "query": question,
            "documents": [{"text": r.text} for r in results],
            "top_n": min(self.top_n, len(results)),
            "return_documents": False,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
                ranked = resp.json().get("results") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Reranker request failed, keeping fused order: %s", e)
            return results

        out: List[RetrievalResult] = []
        seen = set()
        for item in ranked:
            idx = item.get("index")
            if not isinstance(idx, int) or not 0 <= idx < len(results) or idx in seen:
                continue
            seen.add(idx)
            result = results[idx]
            result.relevance_score = item.get("relevance_score")
            out.append(result)
        if not out:
            logger.warning("Reranker returned no usable indices, keeping fused order")
            return results
        logger.info("Reranked %d candidates down to %d", len(results), len(out))
        return out
