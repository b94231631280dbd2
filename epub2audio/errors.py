"""Exception types raised by the conversion pipeline."""

from __future__ import annotations


class Epub2AudioError(Exception):
    """Base class for all errors raised by this package."""


class ExtractionError(Epub2AudioError):
    """A document could not be read or contained no usable text.

    ``title`` is a short summary suitable for a notification, the
    exception message carries the longer description.
    """

    def __init__(self, description: str, title: str = "Invalid file") -> None:
        super().__init__(description)
        self.title = title
        self.description = description


class UnsupportedFileError(ExtractionError, ValueError):
    """The uploaded file is not an EPUB or PDF document."""


class ChunkValidationError(Epub2AudioError, ValueError):
    """A text chunk is empty or exceeds the TTS request limit."""


class SynthesisError(Epub2AudioError):
    """The text-to-speech API returned an error for a chunk."""


class NonRetryableError(SynthesisError):
    """A synthesis failure that retrying will not fix (auth, quota, bad payload)."""


class StorageError(Epub2AudioError):
    """A blob could not be read from or written to the object store."""


class CacheError(Epub2AudioError):
    """The audio cache could not be consulted or updated."""


class ConversionError(Epub2AudioError):
    """A conversion finished without producing complete audio."""
