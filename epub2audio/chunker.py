"""Text cleaning and chunking for the text-to-speech APIs.

Google Cloud TTS rejects requests whose input is larger than 5000 bytes,
so extracted text is split into chunks of at most ``CHUNK_MAX_BYTES``
UTF-8 bytes. The splitter prefers sentence boundaries, falls back to word
boundaries for very long sentences and only cuts inside a word when a
single word is larger than the limit (which in practice means garbage
such as a base64 blob that slipped through extraction).
"""

from __future__ import annotations

import math
import re
from typing import List

from .errors import ChunkValidationError

DEFAULT_MAX_BYTES = 4800
# Largest UTF-8 encoding of a single character.
MIN_MAX_BYTES = 4

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F-\x9F]")
_PDF_MARKER = re.compile(r"\[pdf\]", re.IGNORECASE)
_PAGE_MARKER = re.compile(r"\[page\s*\d*\]", re.IGNORECASE)
_SENTENCE_SPACING = re.compile(r"([.!?])\s*(\w)")


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def clean_text(text: str) -> str:
    """Normalise text before it is sent to a TTS API.

    Whitespace (including newlines) is collapsed to single spaces, control
    characters and ``[pdf]`` / ``[page N]`` markers left by converters are
    removed, curly quotes become straight quotes and a space is enforced
    after sentence punctuation.
    """
    text = re.sub(r"\s+", " ", text)
    text = _CONTROL_CHARS.sub("", text)
    text = _PDF_MARKER.sub("", text)
    text = _PAGE_MARKER.sub("", text)
    text = text.replace("‘", "'").replace("’", "'")
    text = text.replace("“", '"').replace("”", '"')
    text = _SENTENCE_SPACING.sub(r"\1 \2", text)
    return re.sub(r" {2,}", " ", text).strip()


def _split_word(word: str, max_bytes: int) -> List[str]:
    """Cut a single oversized word on character boundaries."""
    pieces: List[str] = []
    current = ""
    for char in word:
        if current and _byte_len(current + char) > max_bytes:
            pieces.append(current)
            current = char
        else:
            current += char
    if current:
        pieces.append(current)
    return pieces


def _split_sentence(sentence: str, max_bytes: int) -> List[str]:
    """Split a sentence larger than ``max_bytes`` on word boundaries."""
    pieces: List[str] = []
    current = ""
    for word in sentence.split():
        if _byte_len(word) > max_bytes:
            if current:
                pieces.append(current)
                current = ""
            pieces.extend(_split_word(word, max_bytes))
            continue
        candidate = f"{current} {word}" if current else word
        if _byte_len(candidate) > max_bytes and current:
            pieces.append(current)
            current = word
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


def chunk_text(text: str, max_bytes: int = DEFAULT_MAX_BYTES) -> List[str]:
    """Split ``text`` into chunks not exceeding ``max_bytes`` UTF-8 bytes.

    The text is first split on newlines into paragraphs and each paragraph
    on sentence terminators. Sentences are then packed greedily, joined by
    a single space, until adding the next one would overflow the limit.
    Sentences that are too large on their own are split on words.
    """
    if max_bytes < MIN_MAX_BYTES:
        raise ValueError(f"max_bytes must be at least {MIN_MAX_BYTES}")

    sentences: List[str] = []
    for paragraph in text.split("\n"):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        for sentence in SENTENCE_SPLIT.split(paragraph):
            sentence = sentence.strip()
            if not sentence:
                continue
            if _byte_len(sentence) > max_bytes:
                sentences.extend(_split_sentence(sentence, max_bytes))
            else:
                sentences.append(sentence)

    chunks: List[str] = []
    buf: List[str] = []
    current_len = 0
    for sentence in sentences:
        sent_len = _byte_len(sentence)
        # +1 for the joining space
        if buf and current_len + 1 + sent_len > max_bytes:
            chunks.append(" ".join(buf))
            buf = [sentence]
            current_len = sent_len
        else:
            current_len += sent_len + (1 if buf else 0)
            buf.append(sentence)
    if buf:
        chunks.append(" ".join(buf))
    return chunks


def validate_chunk(text: str, max_bytes: int = DEFAULT_MAX_BYTES) -> bool:
    """Raise ``ChunkValidationError`` unless ``text`` is a sendable chunk."""
    if not text or not text.strip():
        raise ChunkValidationError("Text chunk cannot be empty")
    size = _byte_len(text)
    if size > max_bytes:
        raise ChunkValidationError(
            f"Maximum chunk size exceeded: {size} bytes (limit {max_bytes})"
        )
    return True


def estimate_chunk_count(total_characters: int, chunk_size: int = DEFAULT_MAX_BYTES) -> int:
    """Approximate the number of chunks for ``total_characters`` of text."""
    if total_characters <= 0:
        return 0
    return math.ceil(total_characters / chunk_size)
