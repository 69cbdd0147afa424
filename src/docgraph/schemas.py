from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional


@dataclass
class DocumentPayload:
    """Raw upload as it arrives from the transport layer."""
    name: str
    data: bytes
    mimetype: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class DocumentMeta:
    hash: str
    name: str
    size: int
    mimetype: str


@dataclass
class DocumentChunk:
    id: str
    text: str
    source: str
    page_number: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Entity:
    name: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Relation:
    source: str      # entity name
    target: str      # entity name
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphExtraction:
    """
    Successful extraction for one chunk. Empty lists mean the model looked
    and found nothing; a failed extraction never produces this object.
    """
    entities: List[Entity] = field(default_factory=list)
    relationships: List[Relation] = field(default_factory=list)

    @property
    def found_nothing(self) -> bool:
        return not self.entities and not self.relationships


@dataclass
class ChunkRecord:
    """Fully assembled chunk handed to the store writer."""
    text: str
    page_number: int
    embedding: List[float]
    entities: List[Entity] = field(default_factory=list)
    relationships: List[Relation] = field(default_factory=list)


@dataclass
class WriteResult:
    document_id: str
    created: bool
    chunk_ids: List[str] = field(default_factory=list)


@dataclass
class IngestionOutcome:
    filename: str
    status: str                 # "created" | "exists" | "error"
    document_id: Optional[str] = None
    chunk_count: int = 0
    entity_count: int = 0
    relationship_count: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        if self.status == "error":
            return {
                "error": True,
                "originalname": self.filename,
                "message": self.message,
            }
        out: Dict[str, Any] = {
            "message": self.message,
            "fileId": self.document_id,
            "isNew": self.status == "created",
        }
        if self.status == "created":
            out.update(
                chunksCount=self.chunk_count,
                entitiesCount=self.entity_count,
                relationshipsCount=self.relationship_count,
            )
        return out


@dataclass
class RetrievalResult:
    chunk_id: str
    text: str
    document_id: str
    document_name: str
    page_number: Optional[int]
    score: float
    strategy: str
    mentioned_entities: List[Dict[str, str]] = field(default_factory=list)
    relevance_score: Optional[float] = None

    def to_source(self) -> Dict[str, Any]:
        return {
            "content": self.text,
            "source": self.document_name or "unknown source",
            "pageNumber": self.page_number,
            "score": self.relevance_score if self.relevance_score is not None else self.score,
            "fileId": self.document_id,
            "chunkId": self.chunk_id,
            "strategy": self.strategy,
            "mentionedEntities": self.mentioned_entities,
        }


def normalize_entity_name(name: str) -> str:
    return " ".join(str(name).split()).lower()
