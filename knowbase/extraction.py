"""Text extraction from uploaded files."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

from langchain_core.documents import Document as LCDocument
from langchain_community.document_loaders import Docx2txtLoader, PyMuPDFLoader

from .errors import ValidationError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "txt": "text/plain",
    "md": "text/markdown",
    "markdown": "text/markdown",
    "csv": "text/csv",
    "html": "text/html",
    "htm": "text/html",
    "json": "application/json",
}

SUPPORTED_TYPES = tuple(CONTENT_TYPES)


def content_type_for(file_type: str) -> str:
    return CONTENT_TYPES.get(file_type.lower(), "application/octet-stream")


def infer_file_type(file_name: str, file_type: Optional[str] = None) -> str:
    """Normalized file type from an explicit type or the file extension."""
    kind = (file_type or Path(file_name).suffix).lower().lstrip(".")
    if not kind:
        raise ValidationError(f"Cannot determine file type of {file_name!r}")
    if kind not in CONTENT_TYPES:
        raise ValidationError(
            f"Unsupported file type: {kind}. Supported: {', '.join(SUPPORTED_TYPES)}"
        )
    return kind


def sanitize_text(text: str) -> str:
    """Replace undecodable characters with spaces and drop NUL bytes."""
    return text.replace("\ufffd", " ").replace("\x00", "")


def _decode(data: bytes) -> str:
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    return data.decode("utf-8", errors="replace")


class TextExtractor:
    """Turns raw file bytes into plain text, by file type."""

    def __init__(self, pdf_extract_images: bool = False):
        self.pdf_extract_images = pdf_extract_images
        self._handlers: Dict[str, Callable[[bytes], str]] = {
            "txt": _decode,
            "md": _decode,
            "markdown": _decode,
            "csv": _decode,
            "html": _decode,
            "htm": _decode,
            "json": self._extract_json,
            "pdf": self._extract_pdf,
            "docx": self._extract_docx,
        }

    def supports(self, file_type: str) -> bool:
        return file_type.lower() in self._handlers

    def extract(self, data: bytes, file_type: str) -> str:
        """
        Extract text from file content.

        Args:
            data: Raw file bytes
            file_type: Normalized type ('pdf', 'docx', 'txt', 'md', ...)

        Returns:
            Extracted text (may be empty)
        """
        handler = self._handlers.get(file_type.lower())
        if handler is None:
            raise ValidationError(f"Unsupported file type: {file_type}")
        text = sanitize_text(handler(data))
        logger.debug(f"Extracted {len(text)} characters from {file_type} ({len(data)} bytes)")
        return text

    def _extract_json(self, data: bytes) -> str:
        raw = _decode(data)
        try:
            return json.dumps(json.loads(raw), indent=2, ensure_ascii=False)
        except json.JSONDecodeError:
            # Index malformed JSON as plain text
            return raw

    def _extract_pdf(self, data: bytes) -> str:
        return self._load_with(
            data, ".pdf",
            lambda path: PyMuPDFLoader(path, extract_images=self.pdf_extract_images),
        )

    def _extract_docx(self, data: bytes) -> str:
        return self._load_with(data, ".docx", Docx2txtLoader)

    @staticmethod
    def _load_with(data: bytes, suffix: str, loader_factory) -> str:
        """Run a langchain file loader over the bytes via a temp file."""
        fd, path = tempfile.mkstemp(suffix=suffix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            docs: List[LCDocument] = loader_factory(path).load()
        finally:
            os.unlink(path)
        pages = [(d.page_content or "").strip() for d in docs]
        return "\n\n".join(p for p in pages if p)
