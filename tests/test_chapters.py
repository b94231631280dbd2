from __future__ import annotations

from epub2audio.chapters import (
    Chapter,
    TextSpan,
    attach_timestamps,
    body_font_size,
    detect_chapters_by_font_size,
    detect_chapters_in_html,
    detect_chapters_in_text,
    merge_chapters,
)


HTML_DOC = """
<html><body>
  <h1>Chapter 1</h1>
  <p>It was a bright cold day in April.</p>
  <h2>Part II</h2>
  <p>The clocks were striking thirteen.</p>
  <h2>An unnumbered aside</h2>
  <div class="chapter-title">Section 3</div>
</body></html>
"""


def test_html_headings_matching_the_pattern_become_chapters():
    text, chapters = detect_chapters_in_html(HTML_DOC)
    titles = [c.title for c in chapters]
    assert titles == ["Chapter 1", "Part II", "Section 3"]
    assert chapters[0].confidence == 0.9
    assert chapters[0].type == "pattern"
    # Non-heading element matched through the class selector.
    assert chapters[2].confidence == 0.75
    for chapter in chapters:
        assert text[chapter.start_index:].startswith(chapter.title)


def test_unnumbered_h1_is_a_low_confidence_heading():
    text, chapters = detect_chapters_in_html("<body><h1>Prologue</h1><p>Once upon a time.</p></body>")
    assert text == "Prologue Once upon a time."
    assert [(c.title, c.type, c.confidence) for c in chapters] == [("Prologue", "heading", 0.6)]


def test_html_offsets_are_shifted_by_start_index():
    _, chapters = detect_chapters_in_html("<body><h1>Chapter 4</h1><p>x</p></body>", start_index=500)
    assert chapters[0].start_index == 500


def test_long_headings_are_ignored():
    title = "Chapter 1 " + "very long " * 20
    _, chapters = detect_chapters_in_html(f"<body><h1>{title}</h1></body>")
    assert chapters == []


def test_plain_text_detection():
    text = "Preface text\nCHAPTER 2\nbody\n  3. Numbered\nsomething else"
    chapters = detect_chapters_in_text(text)
    assert [(c.title, c.confidence) for c in chapters] == [("CHAPTER 2", 0.7), ("3. Numbered", 0.5)]
    assert text[chapters[1].start_index:].startswith("3. Numbered")


def test_body_font_size_is_size_with_most_characters():
    spans = [
        TextSpan("Title", 24.0, 0),
        TextSpan("a" * 200, 11.0, 6),
        TextSpan("b" * 50, 9.0, 207),
    ]
    assert body_font_size(spans) == 11.0
    assert body_font_size([]) is None


def test_font_size_detection_merges_adjacent_heading_spans():
    spans = [
        TextSpan("The Beginning", 22.0, 0),
        TextSpan("of Things", 22.0, 14),
        TextSpan("b" * 300, 11.0, 24),
        TextSpan("Second", 18.0, 325),
        TextSpan("c" * 300, 11.0, 332),
    ]
    chapters = detect_chapters_by_font_size(spans)
    assert [c.title for c in chapters] == ["The Beginning of Things", "Second"]
    assert chapters[0].type == "style"
    assert chapters[0].confidence == 0.95
    assert chapters[1].start_index == 325


def test_merge_keeps_most_confident_of_nearby_candidates():
    merged = merge_chapters([
        Chapter("Chapter 1", 0, confidence=0.5),
        Chapter("Chapter 1", 10, confidence=0.9),
        Chapter("Chapter 2", 400, confidence=0.7),
    ])
    assert [(c.start_index, c.confidence) for c in merged] == [(10, 0.9), (400, 0.7)]


def test_timestamps_from_offsets():
    chapters = attach_timestamps([
        Chapter("A", 0),
        Chapter("B", 749),
        Chapter("C", 2250),
        Chapter("D", 100, timestamp=42),
    ])
    assert [c.timestamp for c in chapters] == [0, 0, 180, 42]


def test_chapter_dict_round_trip():
    chapter = Chapter("Chapter 9", 12, timestamp=60, confidence=0.9, type="pattern", language="english")
    assert Chapter.from_dict(chapter.to_dict()) == chapter
