"""Heuristic chapter detection.

Three independent detectors produce candidate chapter boundaries, each
tagged with the heuristic that found it and a confidence between 0 and 1:

* ``heading`` / ``pattern`` from HTML documents (EPUB content files). Known
  heading selectors are scanned in priority order and a heading is kept
  when its text looks like ``Chapter 3`` / ``Part IV`` / ``12.`` or when it
  is an ``<h1>``.
* ``pattern`` from plain text, one line at a time (used for PDF text).
* ``style`` from font sizes (PDF spans). Text that is set noticeably larger
  than the dominant body size is assumed to be a heading.

``merge_chapters`` reconciles overlapping candidates and
``attach_timestamps`` converts character offsets into approximate audio
positions.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# Common chapter heading selectors in priority order
HEADING_SELECTORS = (
    "h1",
    "h2",
    '[class*="chapter"]',
    '[class*="title"]',
    '[role="heading"]',
    "h3",
)

CHAPTER_PATTERN = re.compile(
    r"^(chapter|section|part)\s+(\d+|[IVXLC]+)\b|^\d+\.", re.IGNORECASE
)

MAX_TITLE_LENGTH = 100

# Used to turn a character offset into an audio timestamp.
WORDS_PER_MINUTE = 150
CHARACTERS_PER_WORD = 5

HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}


@dataclass
class Chapter:
    title: str
    start_index: int
    timestamp: Optional[int] = None
    confidence: float = 0.5
    type: Optional[str] = None
    language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chapter":
        return cls(
            title=data.get("title", ""),
            start_index=int(data.get("start_index", 0)),
            timestamp=data.get("timestamp"),
            confidence=float(data.get("confidence", 0.5)),
            type=data.get("type"),
            language=data.get("language"),
        )


@dataclass
class TextSpan:
    """A run of text with a single font size at a global character offset."""

    text: str
    size: float
    offset: int


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _is_chapter_title(title: str) -> bool:
    return bool(CHAPTER_PATTERN.search(title))


def detect_chapters_in_html(html_doc: str, start_index: int = 0) -> Tuple[str, List[Chapter]]:
    """Detect chapter headings in one HTML document.

    Returns the body text with whitespace collapsed and the chapters found
    in it. Offsets are absolute: ``start_index`` is the position at which
    this document's text begins in the combined book text.
    """
    try:
        soup = BeautifulSoup(html_doc, "lxml")
        root = soup.body or soup
        text = _collapse(root.get_text(" "))

        # Document order of every element, so matches from different
        # selectors can be emitted in reading order.
        order = {id(el): pos for pos, el in enumerate(root.find_all(True))}

        seen: set[int] = set()
        candidates = []
        for selector in HEADING_SELECTORS:
            for element in root.select(selector):
                if id(element) in seen:
                    continue
                seen.add(id(element))
                title = _collapse(element.get_text(" "))
                if not title or len(title) >= MAX_TITLE_LENGTH:
                    continue
                tag = element.name.lower()
                if _is_chapter_title(title):
                    confidence = 0.9 if tag in HEADING_TAGS else 0.75
                    kind = "pattern"
                elif tag == "h1":
                    confidence = 0.6
                    kind = "heading"
                else:
                    continue
                candidates.append((order.get(id(element), 0), title, confidence, kind))

        candidates.sort(key=lambda item: item[0])
        chapters: List[Chapter] = []
        cursor = 0
        for _, title, confidence, kind in candidates:
            position = text.find(title, cursor)
            if position < 0:
                position = text.find(title)
            if position < 0:
                position = 0
            else:
                cursor = position
            chapter = Chapter(
                title=title,
                start_index=start_index + position,
                confidence=confidence,
                type=kind,
            )
            if chapters and chapters[-1].title == title and chapters[-1].start_index == chapter.start_index:
                continue
            chapters.append(chapter)
        return text, chapters
    except Exception as exc:
        logger.warning("Error in chapter detection: %s", exc)
        return "", []


def detect_chapters_in_text(text: str, start_index: int = 0) -> List[Chapter]:
    """Find lines of plain text that look like chapter headings."""
    chapters: List[Chapter] = []
    for match in re.finditer(r"[^\n]+", text):
        line = match.group(0)
        title = line.strip()
        if not title or len(title) >= MAX_TITLE_LENGTH:
            continue
        if not _is_chapter_title(title):
            continue
        # Numbered lines are frequently list items rather than headings.
        confidence = 0.7 if re.match(r"^(chapter|section|part)\b", title, re.IGNORECASE) else 0.5
        offset = match.start() + (len(line) - len(line.lstrip()))
        chapters.append(
            Chapter(title=title, start_index=start_index + offset, confidence=confidence, type="pattern")
        )
    return chapters


def body_font_size(spans: Iterable[TextSpan]) -> Optional[float]:
    """Return the font size that carries the most characters."""
    weights: Counter = Counter()
    for span in spans:
        weights[round(span.size, 1)] += len(span.text.strip())
    weights = Counter({size: count for size, count in weights.items() if count > 0})
    if not weights:
        return None
    # Most characters wins; on a tie the smaller size is the body text.
    return max(weights.items(), key=lambda item: (item[1], -item[0]))[0]


def detect_chapters_by_font_size(spans: Sequence[TextSpan], ratio: float = 1.3) -> List[Chapter]:
    """Treat runs of text set at least ``ratio`` times the body size as headings.

    Consecutive heading spans of the same size (a title broken over two
    lines, or split into several spans by the PDF producer) are merged
    into one chapter as long as the merged title stays short.
    """
    body = body_font_size(spans)
    if not body:
        return []

    chapters: List[Chapter] = []
    pending: Optional[Chapter] = None
    pending_end = 0
    pending_size = 0.0

    def flush() -> None:
        nonlocal pending
        if pending is not None:
            chapters.append(pending)
            pending = None

    for span in sorted(spans, key=lambda s: s.offset):
        title = span.text.strip()
        is_heading = (
            bool(title)
            and len(title) < MAX_TITLE_LENGTH
            and any(ch.isalpha() for ch in title)
            and span.size >= body * ratio
        )
        if not is_heading:
            if title:
                flush()
            continue
        size_ratio = span.size / body
        confidence = round(min(0.95, 0.5 + (size_ratio - 1) * 0.5), 2)
        lead = len(span.text) - len(span.text.lstrip())
        span_end = span.offset + len(span.text)
        if (
            pending is not None
            and span.offset - pending_end <= 2
            and abs(span.size - pending_size) < 0.5
            and len(pending.title) + 1 + len(title) < MAX_TITLE_LENGTH
        ):
            pending.title = f"{pending.title} {title}"
            pending_end = span_end
            continue
        flush()
        pending = Chapter(
            title=title,
            start_index=span.offset + lead,
            confidence=confidence,
            type="style",
        )
        pending_end = span_end
        pending_size = span.size
    flush()
    return chapters


def merge_chapters(candidates: Iterable[Chapter], min_gap: int = 50) -> List[Chapter]:
    """Collapse candidates that start within ``min_gap`` characters of each other.

    The candidate with the higher confidence survives.
    """
    ordered = sorted(candidates, key=lambda c: (c.start_index, -c.confidence))
    merged: List[Chapter] = []
    for chapter in ordered:
        if merged and chapter.start_index - merged[-1].start_index < min_gap:
            if chapter.confidence > merged[-1].confidence:
                merged[-1] = chapter
            continue
        merged.append(chapter)
    return merged


def attach_timestamps(chapters: Iterable[Chapter]) -> List[Chapter]:
    """Estimate where each chapter starts in the audio, in whole minutes."""
    result = []
    for chapter in chapters:
        if chapter.timestamp:
            result.append(chapter)
            continue
        words_before = chapter.start_index / CHARACTERS_PER_WORD
        minutes_mark = math.floor(words_before / WORDS_PER_MINUTE)
        result.append(replace(chapter, timestamp=minutes_mark * 60))
    return result
