from __future__ import annotations

import fitz
import pytest
from ebooklib import epub

from epub2audio import config
from epub2audio.errors import ExtractionError, UnsupportedFileError
from epub2audio.extraction import (
    detect_language,
    format_file_size,
    process_file,
    validate_file,
)


PARAGRAPH = (
    "The cat sat on the mat and the dog slept in the sun. It is a quiet day in the "
    "village and nothing much happens to anyone."
)


def _write_epub(path):
    book = epub.EpubBook()
    book.set_identifier("epub2audio-test")
    book.set_title("Test Book")
    book.set_language("en")

    chapters = []
    for number in (1, 2):
        item = epub.EpubHtml(title=f"Chapter {number}", file_name=f"chap{number}.xhtml", lang="en")
        item.content = f"<html><body><h1>Chapter {number}</h1><p>{PARAGRAPH}</p></body></html>"
        book.add_item(item)
        chapters.append(item)

    book.toc = tuple(chapters)
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ["nav"] + chapters
    epub.write_epub(str(path), book)
    return path


def _write_pdf(path, pages=("Chapter One", "Chapter Two")):
    doc = fitz.open()
    for number, heading in enumerate(pages, start=1):
        page = doc.new_page()
        if heading:
            page.insert_text((72, 72), heading, fontsize=24)
            for line in range(6):
                page.insert_text((72, 120 + line * 16), f"Line {line} of the story goes on and on.", fontsize=11)
            page.insert_text((300, 800), str(number), fontsize=9)
    doc.save(str(path))
    doc.close()
    return path


def test_epub_text_chapters_and_language(tmp_path):
    path = _write_epub(tmp_path / "book.epub")
    result = process_file(path)

    assert "Chapter 1" in result.text and "Chapter 2" in result.text
    assert result.text.count(PARAGRAPH) == 2
    assert result.total_characters == len(result.text)
    assert result.processed_pages == 1
    assert result.language == "english"
    assert [c.title for c in result.chapters] == ["Chapter 1", "Chapter 2"]
    for chapter in result.chapters:
        assert result.text[chapter.start_index:].startswith(chapter.title)
        assert chapter.language == "english"


def test_epub_without_chapter_detection_gets_single_chapter(tmp_path):
    path = _write_epub(tmp_path / "book.epub")
    result = process_file(path, detect_chapters=False)
    assert [(c.title, c.start_index) for c in result.chapters] == [("Chapter 1", 0)]


def test_pdf_headings_by_font_size(tmp_path):
    path = _write_pdf(tmp_path / "book.pdf")
    result = process_file(path)

    assert result.processed_pages == 2
    assert [c.title for c in result.chapters] == ["Chapter One", "Chapter Two"]
    assert all(c.type == "style" for c in result.chapters)
    for chapter in result.chapters:
        assert result.text[chapter.start_index:].startswith(chapter.title)
    # Page numbers are not read aloud.
    assert "1" not in [line.strip() for line in result.text.splitlines()]


def test_upload_name_decides_format(tmp_path):
    path = _write_pdf(tmp_path / "upload.bin")
    result = process_file(path, filename="Report.PDF")
    assert result.processed_pages == 2


def test_pdf_without_text_is_rejected(tmp_path):
    path = _write_pdf(tmp_path / "blank.pdf", pages=("",))
    with pytest.raises(ExtractionError, match="No readable text"):
        process_file(path)


def test_corrupt_epub_is_rejected(tmp_path):
    path = tmp_path / "broken.epub"
    path.write_bytes(b"this is not a zip archive")
    with pytest.raises(ExtractionError, match="EPUB"):
        process_file(path)


def test_validate_file(monkeypatch):
    with pytest.raises(UnsupportedFileError):
        validate_file("notes.txt", 10)
    with pytest.raises(ExtractionError, match="empty"):
        validate_file("book.epub", 0)

    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 1024 * 1024)
    with pytest.raises(ExtractionError) as excinfo:
        validate_file("book.pdf", 2 * 1024 * 1024)
    assert excinfo.value.title == "File too large"
    validate_file("book.pdf", 1024)


def test_detect_language():
    assert detect_language("El perro y la casa de los niños que es grande") == "spanish"
    assert detect_language("Der Hund und die Katze sind in das Haus zu gehen") == "german"
    assert detect_language("") == "english"


def test_format_file_size():
    assert format_file_size(0) == "0 Bytes"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(1024 * 1024) == "1 MB"
