"""Content transforms: HTML to text and attachment text extraction.

What:
  Detect HTML markup hiding in plain-text bodies, convert HTML bodies to
  readable text, and extract text from attachments (PDF through
  ``pdfplumber``, text-like formats directly).

Why:
  The message engine promises a plain-text view for every message even when
  the sender only provided HTML, and search over attachment content needs a
  textual form of common document types.

How:
  ``html2text`` renders HTML without hard wrapping; ``pdfplumber`` walks the
  pages of a PDF. Extraction failures are logged and produce ``""`` so a
  damaged attachment never breaks reading the message.

Interfaces:
  :func:`looks_like_html`, :func:`html_to_text`, :func:`can_extract`,
  :func:`extract_text`.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

import html2text
import pdfplumber

from ..utils.logging import JsonLogger, get_logger

_HTML_MARKERS = re.compile(
    r"<\s*(?:!doctype|html|head|body|div|p|br|table|tr|td|span|a\s|img|style|font|b|i|ul|li)\b",
    re.IGNORECASE,
)
_TEXT_SUFFIXES = frozenset({".txt", ".text", ".csv", ".md", ".log", ".json", ".xml", ".ics"})
_HTML_SUFFIXES = frozenset({".html", ".htm"})
_PDF_SUFFIX = ".pdf"


def looks_like_html(text: Optional[str]) -> bool:
    """True when ``text`` carries HTML markup (legacy bodies stored as text)."""

    if not text:
        return False
    return len(_HTML_MARKERS.findall(text[:20000])) >= 2


def html_to_text(html: Optional[str]) -> str:
    """Render ``html`` as readable plain text."""

    if not html:
        return ""
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.ignore_images = True
    converter.ignore_links = False
    return converter.handle(html).strip()


def can_extract(path: Path) -> bool:
    suffix = path.suffix.lower()
    return suffix == _PDF_SUFFIX or suffix in _TEXT_SUFFIXES or suffix in _HTML_SUFFIXES


def _extract_pdf(path: Path) -> str:
    with pdfplumber.open(path) as pdf:
        pages = []
        for page in pdf.pages:
            text = page.extract_text()
            if text:
                pages.append(text)
    return "\n".join(pages).strip()


def extract_text(path: Path, *, logger: Optional[JsonLogger] = None) -> str:
    """Extract text from the attachment stored at ``path``.

    Args:
      path: Attachment file.
      logger: Logger receiving extraction failures.

    Returns:
      Extracted text, ``""`` for unsupported or unreadable files.
    """

    suffix = path.suffix.lower()
    try:
        if suffix == _PDF_SUFFIX:
            return _extract_pdf(path)
        if suffix in _HTML_SUFFIXES:
            return html_to_text(path.read_text(encoding="utf-8", errors="replace"))
        if suffix in _TEXT_SUFFIXES:
            return path.read_text(encoding="utf-8", errors="replace")
    except Exception as exc:  # pdfminer raises a wide range of parser errors
        (logger or get_logger("mailcache.content")).warning(
            "attachment_extraction_failed", attachment=path.name, error=repr(exc)
        )
    return ""
