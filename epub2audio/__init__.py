"""EPUB and PDF to audiobook conversion service.

This package contains a FastAPI based service that extracts the text of
uploaded EPUB and PDF documents, detects their chapters and language, and
converts the text to a single MP3 file through a text-to-speech API.

The modules in this package are:

* ``extraction.py`` – Validation of uploads and text extraction with
  ``ebooklib``/``BeautifulSoup`` (EPUB) and PyMuPDF (PDF).

* ``chapters.py`` – Heuristic chapter detection from HTML headings, text
  patterns and PDF font sizes, plus audio timestamp estimation.

* ``chunker.py`` – Text cleaning and splitting into chunks that fit a
  single TTS request.

* ``tts.py`` – TTS providers: a silent placeholder, Google Cloud
  Text-to-Speech and ElevenLabs.

* ``retry.py`` – Exponential backoff for provider calls.

* ``conversion.py`` – Parallel chunk synthesis, integrity checks and the
  background conversion pipeline.

* ``progress.py`` – Progress, speed and time remaining estimation.

* ``cache.py`` / ``storage.py`` – Audio cache keyed by a content hash,
  stored on the local filesystem.

* ``db.py`` – SQLite helpers for conversions, chunks and system logs.

* ``events.py`` – In-process change feed for server-sent events.

* ``monitoring.py`` – System statistics and logging configuration.

* ``main.py`` – The FastAPI application itself.

Configuration is read from environment variables in ``config.py``.
Without any API key the ``silent`` provider is used, which keeps the
whole pipeline usable for development and tests.
"""
