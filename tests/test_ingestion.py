import io

import pytest
from pypdf import PdfWriter

from docgraph.errors import IngestionError
from docgraph.ingestion import (
    build_chunks,
    content_hash,
    discover_all_sources,
    guess_mimetype,
    load_pages,
)


def test_content_hash_depends_only_on_bytes():
    assert content_hash(b"same bytes") == content_hash(b"same bytes")
    assert content_hash(b"same bytes") != content_hash(b"other bytes")
    assert len(content_hash(b"")) == 64


def test_load_plain_text_and_markdown():
    assert load_pages(b"hello world", "notes.txt") == ["hello world"]
    assert load_pages(b"# Title\nbody", "README.md") == ["# Title\nbody"]


def test_load_html_drops_scripts():
    html = b"<html><head><script>var x = 1;</script></head><body><p>Acme in Berlin</p></body></html>"
    (page,) = load_pages(html, "page.html")
    assert "Acme in Berlin" in page
    assert "var x" not in page


def test_load_csv_as_single_page():
    (page,) = load_pages(b"company,city\nAcme,Berlin\n", "companies.csv")
    assert "Acme,Berlin" in page


def test_load_uses_mimetype_when_extension_is_missing():
    assert load_pages(b"plain body", "upload", mimetype="text/plain") == ["plain body"]


def test_pdf_keeps_one_page_per_page():
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)

    pages = load_pages(buffer.getvalue(), "blank.pdf")
    assert len(pages) == 2
    assert build_chunks(pages, source="blank.pdf") == []


def test_unsupported_or_corrupt_files_raise():
    with pytest.raises(IngestionError):
        load_pages(b"\x00\x01", "archive.zip", mimetype="application/zip")
    with pytest.raises(IngestionError):
        load_pages(b"not a pdf", "broken.pdf")


def test_build_chunks_tracks_pages_and_skips_short_pages():
    pages = ["First page with enough text.", "tiny", "Third page, also long enough."]
    chunks = build_chunks(pages, source="doc.pdf", chunk_size=200, chunk_overlap=20)
    assert [c.page_number for c in chunks] == [1, 3]
    assert all(c.source == "doc.pdf" for c in chunks)
    assert len({c.id for c in chunks}) == 2


def test_build_chunks_splits_long_pages_with_bounded_size():
    text = " ".join(f"word{i}" for i in range(400))
    chunks = build_chunks([text], source="long.txt", chunk_size=200, chunk_overlap=40)
    assert len(chunks) > 1
    assert all(len(c.text) <= 200 for c in chunks)
    assert all(c.page_number == 1 for c in chunks)


def test_discover_all_sources(tmp_path):
    (tmp_path / "a.txt").write_text("a")
    (tmp_path / "nested").mkdir()
    (tmp_path / "nested" / "b.md").write_text("b")
    (tmp_path / "ignored.bin").write_bytes(b"\x00")

    found = discover_all_sources(tmp_path)
    assert [p.name for p in found] == ["a.txt", "b.md"]


def test_guess_mimetype():
    assert guess_mimetype("file.pdf") == "application/pdf"
    assert guess_mimetype("no_extension") == "application/octet-stream"
