from __future__ import annotations
from typing import List
from pathlib import Path
import hashlib
import io
import logging
import mimetypes
import uuid

import pandas as pd
from bs4 import BeautifulSoup
from langchain_text_splitters import RecursiveCharacterTextSplitter
from pypdf import PdfReader

from .config import settings
from .errors import IngestionError
from .schemas import DocumentChunk


logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".pdf", ".csv", ".tsv", ".xlsx", ".html", ".htm", ".md", ".txt"}

_MIME_TO_EXTENSION = {
    "application/pdf": ".pdf",
    "text/csv": ".csv",
    "text/tab-separated-values": ".tsv",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "text/html": ".html",
    "text/markdown": ".md",
    "text/plain": ".txt",
}


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def guess_mimetype(filename: str) -> str:
    mime, _ = mimetypes.guess_type(filename)
    return mime or "application/octet-stream"


def discover_all_sources(data_dir: Path | None = None) -> List[Path]:
    """Return every supported file under data_dir."""
    data_dir = data_dir or settings.data_dir
    logger.info("Scanning %s for supported files...", data_dir)
    paths: List[Path] = []
    for path in sorted(data_dir.rglob("*")):
        if path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS:
            paths.append(path)
    logger.info("Total sources discovered: %d", len(paths))
    return paths


def _resolve_extension(filename: str, mimetype: str | None) -> str:
    ext = Path(filename).suffix.lower()
    if ext in SUPPORTED_EXTENSIONS:
        return ext
    base_mime = (mimetype or "").split(";")[0].strip().lower()
    return _MIME_TO_EXTENSION.get(base_mime, ext)


def _pages_from_pdf(data: bytes) -> List[str]:
    reader = PdfReader(io.BytesIO(data))
    pages = []
    for page_num, page in enumerate(reader.pages, start=1):
        pages.append(page.extract_text() or "")
        if page_num % 10 == 0:
            logger.debug("Parsed %d pages", page_num)
    return pages


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="ignore")


def _text_from_html(data: bytes) -> str:
    soup = BeautifulSoup(_decode(data), "html.parser")
    for script in soup(["script", "style"]):
        script.extract()
    return soup.get_text(separator="\n")


def _text_from_table(data: bytes, ext: str) -> str:
    buffer = io.BytesIO(data)
    if ext == ".xlsx":
        df = pd.read_excel(buffer)
    elif ext == ".tsv":
        df = pd.read_csv(buffer, sep="\t")
    else:
        df = pd.read_csv(buffer)
    return df.to_csv(index=False)


def load_pages(data: bytes, filename: str, mimetype: str | None = None) -> List[str]:
    """
    Extract per-page text from a raw upload. PDFs keep their pagination;
    every other format is a single page.
    """
    ext = _resolve_extension(filename, mimetype)
    logger.info("Loading %s as %s (%d bytes)", filename, ext or "unknown", len(data))
    try:
        if ext == ".pdf":
            return _pages_from_pdf(data)
        if ext in {".csv", ".tsv", ".xlsx"}:
            return [_text_from_table(data, ext)]
        if ext in {".html", ".htm"}:
            return [_text_from_html(data)]
        if ext in {".md", ".txt"}:
            return [_decode(data)]
    except Exception as e:
        raise IngestionError(f"failed to read {filename}: {e}", filename=filename) from e
    raise IngestionError(f"unsupported file type: {ext or mimetype}", filename=filename)


def build_chunks(
    pages: List[str],
    source: str,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    min_page_chars: int | None = None,
) -> List[DocumentChunk]:
    """Split pages into overlapping chunks that remember their page number."""
    chunk_size = chunk_size or settings.chunk_size
    chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
    min_page_chars = settings.min_page_chars if min_page_chars is None else min_page_chars

    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
    )

    chunks: List[DocumentChunk] = []
    for page_number, page_text in enumerate(pages, start=1):
        if len(page_text.strip()) < min_page_chars:
            continue
        for piece in splitter.split_text(page_text):
            chunks.append(
                DocumentChunk(
                    id=str(uuid.uuid4()),
                    text=piece,
                    source=source,
                    page_number=page_number,
                )
            )

    logger.info("Chunked %s into %d chunks", source, len(chunks))
    return chunks
