from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional
import json
from pathlib import Path
import networkx as nx
from networkx.readwrite import json_graph

from .schemas import DocumentMeta, Entity, Relation, normalize_entity_name


DOCUMENT = "Document"
CHUNK = "Chunk"
ENTITY = "Entity"

HAS_CHUNK = "HAS_CHUNK"
MENTIONS = "MENTIONS"


def document_node(document_id: str) -> str:
    return f"doc:{document_id}"


def chunk_node(chunk_id: str) -> str:
    return f"chunk:{chunk_id}"


def entity_node(name: str) -> str:
    return f"entity:{normalize_entity_name(name)}"


class GraphStore:
    """
    Directed multigraph holding documents, their chunks and the entities
    the chunks mention.
    Nodes: doc:<id>, chunk:<id>, entity:<normalized name>
    Edges: HAS_CHUNK, MENTIONS, and typed entity relations keyed by type
    """

    def __init__(self):
        self.graph = nx.MultiDiGraph()

    # Persistence

    def copy(self) -> "GraphStore":
        inst = GraphStore()
        inst.graph = self.graph.copy()
        return inst

    def to_dict(self) -> Dict:
        return json_graph.node_link_data(self.graph, name="node", edges="links")

    @classmethod
    def from_dict(cls, data: Dict) -> "GraphStore":
        inst = cls()
        inst.graph = json_graph.node_link_graph(
            data, multigraph=True, directed=True, name="node", edges="links"
        )
        return inst

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(self.to_dict(), ensure_ascii=False),
            encoding="utf-8",
        )
        tmp_path.replace(path)

    @classmethod
    def load(cls, path: Path) -> "GraphStore":
        data = json.loads(path.read_text(encoding="utf-8"))
        return cls.from_dict(data)

    # Documents

    def _documents(self) -> Iterable[tuple]:
        for node_id, data in self.graph.nodes(data=True):
            if data.get("label") == DOCUMENT:
                yield node_id, data

    def find_document_by_hash(self, content_hash: str) -> Optional[Dict[str, Any]]:
        for _, data in self._documents():
            if data.get("hash") == content_hash:
                return dict(data)
        return None

    def add_document(self, document_id: str, meta: DocumentMeta, created_at: str) -> None:
        self.graph.add_node(
            document_node(document_id),
            label=DOCUMENT,
            id=document_id,
            hash=meta.hash,
            name=meta.name,
            size=meta.size,
            mimetype=meta.mimetype,
            created_at=created_at,
        )

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        node = document_node(document_id)
        if node not in self.graph:
            return None
        return dict(self.graph.nodes[node])

    def list_documents(self) -> List[Dict[str, Any]]:
        docs = []
        for node_id, data in self._documents():
            doc = dict(data)
            doc["total_chunks"] = sum(
                1 for _, _, k in self.graph.out_edges(node_id, keys=True) if k == HAS_CHUNK
            )
            docs.append(doc)
        docs.sort(key=lambda d: d.get("created_at") or "", reverse=True)
        return docs

    def remove_document(self, document_id: str) -> List[str]:
        """Drop a document and its chunks. Entities stay, even orphaned ones."""
        chunk_ids = [c["id"] for c in self.document_chunks(document_id)]
        self.graph.remove_nodes_from(chunk_node(cid) for cid in chunk_ids)
        self.graph.remove_node(document_node(document_id))
        return chunk_ids

    # Chunks

    def add_chunk(
        self, document_id: str, chunk_id: str, text: str, page_number: Optional[int]
    ) -> None:
        node = chunk_node(chunk_id)
        self.graph.add_node(
            node,
            label=CHUNK,
            id=chunk_id,
            document_id=document_id,
            text=text,
            page_number=page_number,
        )
        self.graph.add_edge(document_node(document_id), node, key=HAS_CHUNK)

    def get_chunk(self, chunk_id: str) -> Optional[Dict[str, Any]]:
        node = chunk_node(chunk_id)
        if node not in self.graph:
            return None
        return dict(self.graph.nodes[node])

    def document_chunks(self, document_id: str) -> List[Dict[str, Any]]:
        node = document_node(document_id)
        if node not in self.graph:
            return []
        chunks = [
            dict(self.graph.nodes[v])
            for _, v, k in self.graph.out_edges(node, keys=True)
            if k == HAS_CHUNK
        ]
        chunks.sort(key=lambda c: (c.get("page_number") or 0))
        return chunks

    def chunks_for_documents(self, document_ids: Iterable[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for doc_id in document_ids:
            out.extend(self.document_chunks(doc_id))
        return out

    def chunk_entities(self, chunk_id: str) -> List[Dict[str, str]]:
        node = chunk_node(chunk_id)
        if node not in self.graph:
            return []
        out = []
        for _, v, k in self.graph.out_edges(node, keys=True):
            if k != MENTIONS:
                continue
            data = self.graph.nodes[v]
            out.append({"name": data.get("name", ""), "type": data.get("type", "")})
        return out

    # Entities

    def upsert_entity(self, entity: Entity) -> str:
        node = entity_node(entity.name)
        if node in self.graph:
            data = self.graph.nodes[node]
            types = list(data.get("types", []))
            if entity.type and entity.type not in types:
                types.append(entity.type)
                data["types"] = types
            return node
        self.graph.add_node(
            node,
            label=ENTITY,
            name=entity.name.strip(),
            type=entity.type,
            types=[entity.type] if entity.type else [],
        )
        return node

    def link_mention(self, chunk_id: str, entity_name: str) -> None:
        self.graph.add_edge(chunk_node(chunk_id), entity_node(entity_name), key=MENTIONS)

    # Relations

    def add_relation(self, rel: Relation) -> bool:
        """Merge a typed edge between two known entities; False if one is missing."""
        source = entity_node(rel.source)
        target = entity_node(rel.target)
        if source not in self.graph or target not in self.graph:
            return False
        self.graph.add_edge(
            source,
            target,
            key=rel.type,
            type=rel.type,
            properties=rel.properties,
        )
        return True

    # Traversal

    def chunks_mentioning(
        self, entity_names: Iterable[str], document_ids: Iterable[str]
    ) -> List[Dict[str, Any]]:
        """
        Chunks of the given documents that mention any of the entities
        (case-insensitive), with the distinct matched entities per chunk.
        """
        allowed = set(document_ids)
        matched: Dict[str, Dict[str, Any]] = {}
        seen_entities = set()
        for name in entity_names:
            node = entity_node(name)
            if node in seen_entities or node not in self.graph:
                continue
            seen_entities.add(node)
            entity_data = self.graph.nodes[node]
            for u, _, k in self.graph.in_edges(node, keys=True):
                if k != MENTIONS:
                    continue
                chunk = self.graph.nodes[u]
                if chunk.get("document_id") not in allowed:
                    continue
                entry = matched.setdefault(
                    chunk["id"], {"chunk": dict(chunk), "entities": []}
                )
                entry["entities"].append(
                    {"name": entity_data.get("name", ""), "type": entity_data.get("type", "")}
                )
        out = list(matched.values())
        out.sort(key=lambda e: (e["chunk"].get("page_number") or 0))
        return out
