from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from veille.extract.clean import ExtractError, clean_text
from veille.extract.html import extract_html

TEXT_SUFFIXES = {".txt", ".md", ".markdown"}
HTML_SUFFIXES = {".html", ".htm"}
PDF_SUFFIXES = {".pdf"}


@dataclass(slots=True)
class Document:
    path: str
    title: str
    raw_text: str


def parse_document(path: str) -> Document:
    """Read a local text, markdown, HTML or PDF file. Blocking; run it in a thread."""
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if suffix not in TEXT_SUFFIXES | HTML_SUFFIXES | PDF_SUFFIXES:
        raise ExtractError(f"unsupported document type: {suffix or '(none)'}")

    try:
        if suffix in PDF_SUFFIXES:
            title, text = _read_pdf(file_path)
        elif suffix in HTML_SUFFIXES:
            extraction = extract_html(file_path.read_bytes())
            title, text = extraction.title, extraction.text
        else:
            text = file_path.read_text(encoding="utf-8", errors="replace")
            title = ""
    except OSError as exc:
        raise ExtractError(f"read document {path}: {exc}") from exc

    if not title:
        title = _first_line(text) or file_path.stem
    return Document(path=path, title=title, raw_text=text)


def _read_pdf(file_path: Path) -> tuple[str, str]:
    try:
        reader = PdfReader(str(file_path))
        pages = [page.extract_text() or "" for page in reader.pages]
        metadata = reader.metadata
    except PdfReadError as exc:
        raise ExtractError(f"pdf parse: {exc}") from exc
    title = ""
    if metadata is not None and metadata.title:
        title = clean_text(str(metadata.title))
    return title, "\n\n".join(pages)


def _first_line(text: str) -> str:
    for line in text.splitlines():
        stripped = line.strip().lstrip("#").strip()
        if stripped:
            return stripped[:200]
    return ""
