from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Literal

import pymupdf

from psetflow.errors import DocumentValidationError
from psetflow.schemas.jobs import DocumentInput

DocumentKind = Literal["pdf", "latex"]

_PDF_SIGNATURE = b"%PDF"
_PDF_MIME = "application/pdf"
_SOURCE_EXTENSIONS = frozenset({".tex", ".latex", ".ltx", ".txt", ".md"})
_SOURCE_MIME_TYPES = frozenset({"application/x-tex", "application/x-latex"})


class PdfEncryptedError(DocumentValidationError):
    """Raised when an uploaded PDF is encrypted or requires a password."""


@dataclass(frozen=True)
class ValidatedDocument:
    kind: DocumentKind
    filename: str
    checksum_sha256: str
    page_count: int
    pages: list[str] = field(default_factory=list)
    source: str | None = None


def sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _open_pdf(pdf_bytes: bytes) -> Any:
    # PyMuPDF typing is partial.
    pymupdf_module: Any = pymupdf
    return pymupdf_module.open(stream=pdf_bytes, filetype="pdf")


def detect_document_kind(
    *, filename: str, content_type: str | None, data: bytes
) -> DocumentKind:
    """Classify an upload as a PDF or as LaTeX/plain-text source.

    The PDF signature wins over the declared type; otherwise the extension and
    content type decide. Anything else is rejected.
    """

    if data.lstrip()[:4] == _PDF_SIGNATURE:
        return "pdf"

    suffix = PurePath(filename).suffix.lower()
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if suffix == ".pdf" or mime == _PDF_MIME:
        return "pdf"
    if suffix in _SOURCE_EXTENSIONS or mime in _SOURCE_MIME_TYPES or mime.startswith("text/"):
        return "latex"
    if not suffix and not mime:
        return "latex"
    raise DocumentValidationError(
        f"Unsupported document type for {filename!r}; upload a PDF or LaTeX source"
    )


def extract_page_texts(pdf_bytes: bytes) -> list[str]:
    """Return the text of each PDF page in reading order, trailing blank lines removed."""

    pages: list[str] = []
    with _open_pdf(pdf_bytes) as doc:
        for page in doc:
            lines = page.get_text("text", sort=True).splitlines()
            while lines and not lines[-1].strip():
                lines.pop()
            pages.append("\n".join(lines))
    return pages


def _validate_pdf(document: DocumentInput, checksum: str) -> ValidatedDocument:
    try:
        with _open_pdf(document.data) as doc:
            # Both flags are present across PyMuPDF versions.
            if getattr(doc, "is_encrypted", False) or getattr(doc, "needs_pass", False):
                raise PdfEncryptedError("PDF is encrypted or requires a password")
            page_count = int(getattr(doc, "page_count", len(doc)))
    except DocumentValidationError:
        raise
    except Exception as exc:
        raise DocumentValidationError("Failed to parse PDF") from exc

    if page_count < 1:
        raise DocumentValidationError("PDF has no pages")

    try:
        pages = extract_page_texts(document.data)
    except Exception as exc:
        raise DocumentValidationError("Failed to extract text from PDF") from exc

    return ValidatedDocument(
        kind="pdf",
        filename=document.filename,
        checksum_sha256=checksum,
        page_count=page_count,
        pages=pages,
    )


def _validate_source(document: DocumentInput, checksum: str) -> ValidatedDocument:
    try:
        source = document.data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DocumentValidationError("LaTeX source must be UTF-8 encoded") from exc
    if not source.strip():
        raise DocumentValidationError("LaTeX source is empty")

    return ValidatedDocument(
        kind="latex",
        filename=document.filename,
        checksum_sha256=checksum,
        page_count=1,
        source=source,
    )


def validate_document(document: DocumentInput | None) -> ValidatedDocument:
    """Check that the submitted document can be processed.

    Raises ``DocumentValidationError`` for a missing, empty, unsupported,
    unreadable or encrypted input.
    """

    if document is None or not document.data:
        raise DocumentValidationError("No document provided")

    checksum = sha256_hex(document.data)
    kind = detect_document_kind(
        filename=document.filename,
        content_type=document.content_type,
        data=document.data,
    )
    if kind == "pdf":
        return _validate_pdf(document, checksum)
    return _validate_source(document, checksum)
