"""Text extraction from uploaded EPUB and PDF documents.

EPUB books are read with ``ebooklib`` and every content document of the
spine is parsed with ``BeautifulSoup``; PDF files are read page by page
with PyMuPDF (``fitz``), which also exposes the font size of each text
span for the font-size chapter heuristic in :mod:`epub2audio.chapters`.

The public entry point is :func:`process_file`. It validates the upload,
extracts the text, detects the dominant language and returns a
:class:`DocumentResult` with chapter boundaries expressed as offsets into
the extracted text.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import ebooklib
import fitz  # PyMuPDF
from ebooklib import epub

from . import config
from .chapters import (
    Chapter,
    TextSpan,
    detect_chapters_by_font_size,
    detect_chapters_in_html,
    detect_chapters_in_text,
    merge_chapters,
)
from .errors import ExtractionError, UnsupportedFileError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ("epub", "pdf")

# EPUB has no pages; estimate one page per 2000 characters.
CHARACTERS_PER_PAGE = 2000

LANGUAGE_SAMPLE_SIZE = 2000
LANGUAGE_PATTERNS = {
    "english": re.compile(r"\b(the|and|is|in|to|of)\b", re.IGNORECASE),
    "spanish": re.compile(r"\b(el|la|los|las|en|de|y|que|es)\b", re.IGNORECASE),
    "french": re.compile(r"\b(le|la|les|dans|et|de)\b", re.IGNORECASE),
    "german": re.compile(r"\b(der|die|das|und|in|zu)\b", re.IGNORECASE),
}

# PDF artefacts that should not be read aloud.
_BRACKETED_NUMBERS = re.compile(r"\[\s*\d+\s*\]")
_PAGE_NUMBER_LINE = re.compile(r"^\s*[-–—]?\s*\d+\s*[-–—]?\s*$")


@dataclass
class DocumentResult:
    text: str
    total_characters: int
    processed_pages: int
    language: str
    chapters: List[Chapter] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "metadata": {
                "total_characters": self.total_characters,
                "processed_pages": self.processed_pages,
                "language": self.language,
                "chapters": [chapter.to_dict() for chapter in self.chapters],
            },
        }


def file_extension(filename: str) -> str:
    return Path(filename).suffix.lstrip(".").lower()


def validate_file(filename: str, size: int) -> None:
    """Reject uploads that cannot be converted.

    Raises ``UnsupportedFileError`` for anything other than EPUB/PDF and
    ``ExtractionError`` for empty or oversized files.
    """
    if file_extension(filename) not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileError("Please upload an EPUB or PDF file")
    if size == 0:
        raise ExtractionError("The file appears to be empty")
    if size > config.MAX_UPLOAD_BYTES:
        limit_mb = config.MAX_UPLOAD_BYTES // (1024 * 1024)
        raise ExtractionError(
            f"Please upload a file smaller than {limit_mb}MB", title="File too large"
        )


def format_file_size(num_bytes: int) -> str:
    """Human readable size using 1024 based units."""
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1)
    value = round(num_bytes / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def detect_language(text: str) -> str:
    """Guess the language from stop words in the first 2000 characters.

    Each language scores the number of *distinct* stop words found. English
    wins ties and empty input.
    """
    sample = text[:LANGUAGE_SAMPLE_SIZE]
    best_language, best_score = "english", 0
    for language, pattern in LANGUAGE_PATTERNS.items():
        unique = {match.lower() for match in pattern.findall(sample)}
        if len(unique) > best_score:
            best_language, best_score = language, len(unique)
    logger.debug("Detected language %s (score %d)", best_language, best_score)
    return best_language


def extract_epub(path: Path, detect_chapters: bool = True) -> Tuple[str, List[Chapter]]:
    """Extract the text of an EPUB in spine order.

    Each spine document contributes its whitespace-collapsed body text;
    documents are separated by a blank line. Chapter offsets are absolute
    positions in the returned text.
    """
    try:
        book = epub.read_epub(str(path))
    except Exception as exc:
        logger.error("EPUB extraction error for %s: %s", path, exc)
        raise ExtractionError("Failed to extract text from EPUB") from exc

    parts: List[str] = []
    chapters: List[Chapter] = []
    offset = 0
    for item_id, _linear in book.spine:
        item = book.get_item_with_id(item_id)
        if item is None or isinstance(item, epub.EpubNav):
            continue
        if item.get_type() != ebooklib.ITEM_DOCUMENT:
            continue
        try:
            html_doc = item.get_content().decode("utf-8", errors="ignore")
        except Exception as exc:
            logger.warning("Failed to load spine item %s: %s", item.get_name(), exc)
            continue
        text, found = detect_chapters_in_html(html_doc, offset)
        if not text:
            continue
        parts.append(text)
        if detect_chapters:
            chapters.extend(found)
        offset += len(text) + 2

    full_text = "\n\n".join(parts)
    logger.info("EPUB text extraction completed, total length: %d", len(full_text))
    return full_text, merge_chapters(chapters)


def _read_pdf_pages(doc: "fitz.Document") -> Tuple[str, List[TextSpan]]:
    """Flatten every page into text while recording span font sizes."""
    pages: List[str] = []
    spans: List[TextSpan] = []
    offset = 0
    for page in doc:
        lines: List[str] = []
        line_start = offset
        for block in page.get_text("dict").get("blocks", []):
            for line in block.get("lines", []):
                line_text = ""
                line_spans = []
                for span in line.get("spans", []):
                    span_text = _BRACKETED_NUMBERS.sub("", span.get("text", ""))
                    if not span_text:
                        continue
                    line_spans.append((len(line_text), span_text, float(span.get("size", 0.0))))
                    line_text += span_text
                if not line_text.strip() or _PAGE_NUMBER_LINE.match(line_text):
                    continue
                for rel, span_text, size in line_spans:
                    spans.append(TextSpan(text=span_text, size=size, offset=line_start + rel))
                lines.append(line_text)
                line_start += len(line_text) + 1
        page_text = "\n".join(lines)
        pages.append(page_text)
        offset += len(page_text) + 2
    return "\n\n".join(pages), spans


def extract_pdf(path: Path, detect_chapters: bool = True) -> Tuple[str, List[Chapter], int]:
    """Extract text, chapters and page count from a PDF."""
    try:
        with fitz.open(str(path)) as doc:
            page_count = doc.page_count
            text, spans = _read_pdf_pages(doc)
    except Exception as exc:
        logger.error("PDF extraction error for %s: %s", path, exc)
        raise ExtractionError("Failed to extract text from PDF") from exc

    chapters: List[Chapter] = []
    if detect_chapters:
        chapters = merge_chapters(detect_chapters_by_font_size(spans) + detect_chapters_in_text(text))
    logger.info("PDF text extraction completed, total length: %d", len(text))
    # Only trailing whitespace may go; chapter offsets index from the start.
    return text.rstrip(), chapters, page_count


def process_file(path: Path, filename: Optional[str] = None, detect_chapters: bool = True) -> DocumentResult:
    """Validate and extract an uploaded document.

    ``filename`` is the name the user uploaded; it decides the format and
    defaults to the name of ``path``.
    """
    path = Path(path)
    filename = filename or path.name
    validate_file(filename, path.stat().st_size)

    if file_extension(filename) == "pdf":
        text, chapters, pages = extract_pdf(path, detect_chapters)
    else:
        text, chapters = extract_epub(path, detect_chapters)
        pages = max(1, math.ceil(len(text) / CHARACTERS_PER_PAGE))

    if not text.strip():
        raise ExtractionError("No readable text was found in the document")

    language = detect_language(text)
    if chapters:
        for chapter in chapters:
            chapter.language = language
    else:
        chapters = [Chapter(title="Chapter 1", start_index=0, language=language)]

    logger.info(
        "Processed %s: %d characters, %d pages, %d chapters, language %s",
        filename, len(text), pages, len(chapters), language,
    )
    return DocumentResult(
        text=text,
        total_characters=len(text),
        processed_pages=pages,
        language=language,
        chapters=chapters,
    )
