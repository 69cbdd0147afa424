# src/api/server.py

from __future__ import annotations
from functools import lru_cache
from typing import List
import asyncio
import logging

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from docgraph.config import settings
from docgraph.errors import DocumentNotFoundError
from docgraph.ingestion import guess_mimetype
from docgraph.logging_config import setup_logging
from docgraph.progress import ProgressChannel
from docgraph.schemas import DocumentPayload
from docgraph.service import DocGraphService

logger = logging.getLogger(__name__)

app = FastAPI(title="DocGraph QA API", version="0.3.0")
_running_queries: set = set()


@lru_cache(maxsize=1)
def get_service() -> DocGraphService:
    return DocGraphService()


@app.on_event("startup")
def on_startup():
    setup_logging()


class QueryRequest(BaseModel):
    question: str = ""
    selected_file_ids: List[str] = Field(default_factory=list, alias="selectedFileIds")

    model_config = {"populate_by_name": True}


class UploadResponse(BaseModel):
    message: str
    results: list[dict]


@app.post("/upload-multiple", response_model=UploadResponse)
async def upload_multiple(
    files: List[UploadFile] = File(default=[]),
    service: DocGraphService = Depends(get_service),
):
    """
    Ingest every uploaded file. Each file gets its own outcome entry; one
    failing file never fails the request.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")

    payloads = []
    rejected = []
    for upload in files:
        data = await upload.read()
        name = upload.filename or "upload"
        if len(data) > settings.max_upload_bytes:
            rejected.append(
                {"error": True, "originalname": name, "message": "File exceeds the upload size limit"}
            )
            continue
        payloads.append(
            DocumentPayload(name=name, data=data, mimetype=upload.content_type or guess_mimetype(name))
        )

    outcomes = await service.ingest_many(payloads)
    results = [o.to_dict() for o in outcomes] + rejected
    return UploadResponse(message=f"Processed {len(results)} files", results=results)


@app.post("/api/query-stream")
async def query_stream(req: QueryRequest, service: DocGraphService = Depends(get_service)):
    error = service.validate_query(req.question, req.selected_file_ids)
    if error:
        return JSONResponse(status_code=400, content={"error": error})

    channel = ProgressChannel()
    # The query keeps running even if the client goes away.
    task = asyncio.create_task(service.answer_query(req.question, req.selected_file_ids, channel))
    _running_queries.add(task)
    task.add_done_callback(_running_queries.discard)
    return StreamingResponse(channel.stream(), media_type="text/plain; charset=utf-8")


@app.get("/files")
def list_files(service: DocGraphService = Depends(get_service)):
    return service.list_documents()


@app.get("/files/{file_id}")
def get_file(file_id: str, service: DocGraphService = Depends(get_service)):
    try:
        return service.get_document(file_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/files/{file_id}")
def delete_file(file_id: str, service: DocGraphService = Depends(get_service)):
    try:
        return service.delete_document(file_id)
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/health")
def health():
    return {"status": "ok"}
