"""Plain text extraction for uploaded documents.

Supports PDF (pypdf), DOCX (python-docx), HTML and plain text/Markdown.
"""

import io
import logging
from pathlib import Path

import pypdf
from docx import Document

from pipelines.html_ingest import clean_text, parse_html_to_text

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".markdown", ".csv"}
HTML_EXTENSIONS = {".html", ".htm"}
SUPPORTED_EXTENSIONS = {".pdf", ".docx"} | TEXT_EXTENSIONS | HTML_EXTENSIONS


class UnsupportedDocumentError(ValueError):
    """Raised for file types the extractor cannot read."""


class DocumentExtractionError(ValueError):
    """Raised when a supported document cannot be parsed."""


def _extract_pdf(data: bytes) -> str:
    reader = pypdf.PdfReader(io.BytesIO(data))
    parts = []
    for page in reader.pages:
        page_text = (page.extract_text() or "").strip()
        if page_text:
            parts.append(page_text)
    return "\n\n".join(parts)


def _extract_docx(data: bytes) -> str:
    doc = Document(io.BytesIO(data))
    parts = [para.text for para in doc.paragraphs if para.text.strip()]

    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))

    return "\n\n".join(parts)


def _decode_text(data: bytes) -> str:
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    return data.decode("utf-8", errors="replace")


def extract_text_from_bytes(data: bytes, filename: str) -> str:
    """Extract raw text from an uploaded file.

    Args:
        data: File contents
        filename: Original file name, used to pick the parser

    Raises:
        UnsupportedDocumentError: for unknown extensions
        DocumentExtractionError: when the file cannot be parsed
    """
    ext = Path(filename or "").suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedDocumentError(f"Unsupported file type: {ext or filename}")

    try:
        if ext == ".pdf":
            return _extract_pdf(data)
        if ext == ".docx":
            return _extract_docx(data)
        if ext in HTML_EXTENSIONS:
            return parse_html_to_text(_decode_text(data), filename, "").cleaned_text
        return _decode_text(data)
    except Exception as e:
        logger.warning(f"Failed to extract text from {filename}: {e}")
        raise DocumentExtractionError(f"Could not extract text from {filename}: {e}") from e


def extract_clean_text(data: bytes, filename: str) -> str:
    """Extract and normalise text the same way crawled pages are cleaned."""
    return clean_text(extract_text_from_bytes(data, filename))
