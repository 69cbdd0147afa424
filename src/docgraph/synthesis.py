from __future__ import annotations
from typing import Any, Dict, List, Sequence
from textwrap import dedent
import logging

from langchain_core.prompts import ChatPromptTemplate

from .errors import InvalidResponseError
from .key_pool import KeyRotationPool, invoke_with_rotation
from .schemas import RetrievalResult


logger = logging.getLogger(__name__)

SEGMENT_TYPES = ["answer_text", "quoted_content", "analysis"]

NO_ANSWER_MESSAGE = "no relevant information found in the specified documents"


def format_context(results: Sequence[RetrievalResult]) -> str:
    """Numbered context blocks carrying the ids the model may cite."""
    blocks = []
    for index, doc in enumerate(results, start=1):
        source_info = (
            f'source_file: "{doc.document_name}", page_number: "{doc.page_number}", '
            f'file_id: "{doc.document_id}", file_chunk_id: "{doc.chunk_id}"'
        )
        blocks.append(f'[Context source {index}]\n{source_info}\ncontent: """\n{doc.text}\n"""')
    return "\n\n".join(blocks)


def build_answer_schema(results: Sequence[RetrievalResult]) -> Dict[str, Any]:
    """
    Structured answer schema. The id fields are enums over the supplied
    context so the model cannot cite a source it was not given.
    """
    file_ids = sorted({r.document_id for r in results})
    chunk_ids = [r.chunk_id for r in results]
    return {
        "title": "CitedAnswer",
        "description": "An answer split into segments that each cite one context source.",
        "type": "object",
        "properties": {
            "answer": {"type": "string", "description": "The complete answer in Markdown"},
            "answer_with_citations": {
                "type": "array",
                "description": "Answer paragraphs with citation markers",
                "items": {
                    "type": "object",
                    "properties": {
                        "content_segments": {
                            "type": "array",
                            "description": "Pieces of the paragraph, each tied to one source",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "segment_text": {"type": "string"},
                                    "segment_type": {"type": "string", "enum": SEGMENT_TYPES},
                                    "source_reference": {
                                        "type": "object",
                                        "properties": {
                                            "source_file": {"type": "string"},
                                            "file_id": {"type": "string", "enum": file_ids},
                                            "file_chunk_id": {"type": "string", "enum": chunk_ids},
                                            "page_number": {"type": "string"},
                                            "source_index": {"type": "number"},
                                        },
                                        "required": [
                                            "source_file",
                                            "file_id",
                                            "file_chunk_id",
                                            "page_number",
                                            "source_index",
                                        ],
                                    },
                                },
                                "required": ["segment_text", "segment_type", "source_reference"],
                            },
                        }
                    },
                    "required": ["content_segments"],
                },
            },
        },
        "required": ["answer", "answer_with_citations"],
    }


def assign_citation_numbers(chunk_ids: Sequence[str]) -> List[int]:
    """First occurrence of a chunk id gets the next number; repeats reuse it."""
    numbers: Dict[str, int] = {}
    out = []
    for chunk_id in chunk_ids:
        if chunk_id not in numbers:
            numbers[chunk_id] = len(numbers) + 1
        out.append(numbers[chunk_id])
    return out


def _iter_segments(answer_with_citations: Sequence[Dict[str, Any]]):
    for paragraph in answer_with_citations or []:
        if not isinstance(paragraph, dict):
            continue
        for segment in paragraph.get("content_segments") or []:
            if isinstance(segment, dict):
                yield segment


def build_answer_segments(answer: str, answer_with_citations: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Flatten a cited answer into ordered text and citation parts. Consecutive
    segments citing the same chunk share one marker.
    """
    segments = list(_iter_segments(answer_with_citations))
    if not segments:
        return [{"type": "text", "value": answer or ""}]

    # (text, reference) per run of consecutive segments citing one chunk
    runs: List[tuple] = []
    for segment in segments:
        ref = segment.get("source_reference") or {}
        text = str(segment.get("segment_text", ""))
        if runs and runs[-1][1].get("file_chunk_id") == ref.get("file_chunk_id"):
            runs[-1] = (runs[-1][0] + "\n" + text, runs[-1][1])
        else:
            runs.append((text, ref))

    numbers = assign_citation_numbers([ref.get("file_chunk_id") for _, ref in runs])
    parts: List[Dict[str, Any]] = []
    for (text, ref), number in zip(runs, numbers):
        chunk_id = ref.get("file_chunk_id")
        parts.append({"type": "text", "value": text.strip()})
        parts.append(
            {
                "type": "citation",
                "number": number,
                "details": {
                    "fileId": ref.get("file_id"),
                    "chunkId": chunk_id,
                    "source": ref.get("source_file"),
                    "page": ref.get("page_number"),
                },
            }
        )
    return parts


class AnswerAgent:
    """Asks the completion service for a schema-constrained, cited answer."""

    def __init__(self, temperature: float | None = None):
        self.temperature = temperature
        system_prompt = dedent(
            """
            Answer the question strictly from the provided content, in Markdown.
            1. Read all content and identify the pieces directly relevant to the question.
            2. Base the answer only on those pieces and ignore unrelated or contradictory content.
            3. If the answer is found, state it directly.
            4. If the question asks about a variant of a topic in the content, use the
               content as the framework, reason by analogy, and say explicitly that the
               answer is an inference based on that topic.
            5. Never use knowledge outside the content. If nothing can be inferred, say
               that the provided material does not allow an answer.

            Every entry of answer_with_citations.content_segments, whatever its
            segment_type (answer_text, quoted_content, analysis), must carry a complete
            source_reference: source_file, page_number, source_index, file_id and
            file_chunk_id, copied from the context block it relies on.
            """
        )
        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", system_prompt),
                ("user", "Content:\n{context}\n\nQuestion:\n{question}"),
            ]
        )

    async def run(
        self,
        question: str,
        results: Sequence[RetrievalResult],
        pool: KeyRotationPool,
    ) -> Dict[str, Any]:
        context = format_context(results)
        schema = build_answer_schema(results)
        allowed_chunks = {r.chunk_id for r in results}

        async def _generate(model) -> Dict[str, Any]:
            resp = await (self.prompt | model).ainvoke({"context": context, "question": question})
            if not isinstance(resp, dict) or not isinstance(resp.get("answer"), str):
                raise InvalidResponseError("completion service returned no structured answer")
            return resp

        pool.reset()
        response = await invoke_with_rotation(
            pool, "answer", _generate, schema=schema, temperature=self.temperature
        )

        cited = []
        for paragraph in response.get("answer_with_citations") or []:
            if not isinstance(paragraph, dict):
                continue
            segments = [
                s for s in _iter_segments([paragraph])
                if (s.get("source_reference") or {}).get("file_chunk_id") in allowed_chunks
            ]
            if segments:
                cited.append({"content_segments": segments})
        dropped = sum(1 for _ in _iter_segments(response.get("answer_with_citations") or [])) - sum(
            len(p["content_segments"]) for p in cited
        )
        if dropped:
            logger.warning("Dropped %d answer segments citing unknown chunks", dropped)

        return {"answer": response["answer"], "answer_with_citations": cited}
