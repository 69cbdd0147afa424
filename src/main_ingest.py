# src/main_ingest.py

from __future__ import annotations
import asyncio

from docgraph.config import settings
from docgraph.ingestion import discover_all_sources, guess_mimetype
from docgraph.logging_config import setup_logging
from docgraph.schemas import DocumentPayload
from docgraph.service import DocGraphService


async def ingest_all() -> list:
    service = DocGraphService()
    try:
        paths = discover_all_sources(settings.data_dir)
        payloads = [
            DocumentPayload(name=p.name, data=p.read_bytes(), mimetype=guess_mimetype(p.name))
            for p in paths
        ]
        return await service.ingest_many(payloads)
    finally:
        await service.close()


def main():
    """
    Ingest every supported file under data_dir:
    - Skip files whose content is already stored
    - Chunk, embed and extract entities/relations
    - Write each document in one transaction
    """
    setup_logging()
    outcomes = asyncio.run(ingest_all())

    print("Ingestion finished")
    print(f"- Files processed : {len(outcomes)}")
    for o in outcomes:
        if o.status == "created":
            print(
                f"  - {o.filename}: created {o.document_id} "
                f"({o.chunk_count} chunks, {o.entity_count} entities, "
                f"{o.relationship_count} relationships)"
            )
        elif o.status == "exists":
            print(f"  - {o.filename}: already stored as {o.document_id}")
        else:
            print(f"  - {o.filename}: FAILED ({o.message})")


if __name__ == "__main__":
    main()
