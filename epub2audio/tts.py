"""Text-to-speech providers.

A provider has a ``name`` attribute and an async ``synthesize(text,
voice)`` method returning the MP3 bytes for one chunk together with an
estimated duration in seconds. Three providers are available:

* ``SilentTTSProvider`` needs no credentials. It repeats a bundled one
  second silent MP3 according to the length of the text, which keeps the
  whole pipeline usable in development and tests.
* ``GoogleTTSProvider`` calls the Google Cloud Text-to-Speech REST API
  with an API key.
* ``ElevenLabsProvider`` calls the ElevenLabs text-to-speech endpoint.

HTTP failures are mapped onto :class:`~epub2audio.errors.SynthesisError`;
authentication and quota failures become
:class:`~epub2audio.errors.NonRetryableError` so the retry loop gives up
immediately.
"""

from __future__ import annotations

import base64
import logging
import math
from typing import Dict, List, Optional, Tuple

import httpx

from . import config
from .errors import NonRetryableError, SynthesisError

logger = logging.getLogger(__name__)

# Base64 encoded MP3 of approximately one second of silence.
# ``ffmpeg -f lavfi -i anullsrc=r=24000:cl=mono -t 1 -q:a 9 silence.mp3``
SILENT_MP3_BASE64 = (
    "SUQzBAAAAAAAI1RTU0UAAAAPAAADTGF2ZjU4Ljc2LjEwMAAAAAAAAAAAAAAA/+M4wAAAAAAAAAAAA"
    "EluZm8AAAAPAAAAAwAAAbAAqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqq1dXV1dXV1dXV1"
    "dXV1dXV1dXV1dXV1dXV1dXV1dXV1dXV//////////////////////////////AAAAAExhdmM1OC4xMwAA"
    "AAAAAAAAAAAAACQDkAAAAAAAAAGw9wrNaQAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
    "AAAAAAAAAA/+MYxAAAAANIAAAAAExBTUUzLjEwMFVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVV/+MYxDsAAANIAAAAAFVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV/+MYxHYAAANIAAAAAFVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
)

_sanitised = SILENT_MP3_BASE64.replace("\n", "").replace(" ", "")
_padding = "=" * ((4 - (len(_sanitised) % 4)) % 4)
SILENT_MP3_BYTES: bytes = base64.b64decode(_sanitised + _padding)

GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"
ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice}"

DEFAULT_GOOGLE_VOICE = "en-US-Standard-C"
DEFAULT_ELEVENLABS_VOICE = "21m00Tcm4TlvDq8ikWAM"

# Roughly 120 words per minute.
CHARS_PER_SECOND = 15

VOICES: Dict[str, List[Dict[str, str]]] = {
    "english": [
        {"id": "en-US-Standard-C", "label": "English - Female (Standard)"},
        {"id": "en-US-Standard-B", "label": "English - Male (Standard)"},
    ],
    "spanish": [
        {"id": "es-US-Standard-A", "label": "Spanish - Female (Standard)"},
        {"id": "es-US-Standard-B", "label": "Spanish - Male (Standard)"},
    ],
    "french": [
        {"id": "fr-FR-Standard-A", "label": "French - Female (Standard)"},
        {"id": "fr-FR-Standard-B", "label": "French - Male (Standard)"},
    ],
    "german": [
        {"id": "de-DE-Standard-A", "label": "German - Female (Standard)"},
        {"id": "de-DE-Standard-B", "label": "German - Male (Standard)"},
    ],
}

PREVIEW_TEXTS = {
    "english": "Hello! This is a preview of my voice.",
    "spanish": "¡Hola! Este es un adelanto de mi voz.",
    "french": "Bonjour! Ceci est un aperçu de ma voix.",
    "german": "Hallo! Dies ist eine Vorschau meiner Stimme.",
}


def estimate_duration(text: str) -> int:
    """Seconds of speech for ``text``, at least one."""
    return max(1, math.ceil(len(text) / CHARS_PER_SECOND))


def language_code(voice_id: str) -> str:
    """``en-US-Standard-C`` -> ``en-US``."""
    return "-".join(voice_id.split("-")[:2])


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code in (401, 403):
        raise NonRetryableError(f"Unauthorized: {provider} rejected the request ({response.status_code})")
    if response.status_code == 429:
        raise NonRetryableError(f"Rate limit exceeded for {provider}")
    if response.is_error:
        logger.error("%s TTS error response %s: %s", provider, response.status_code, response.text[:500])
        raise SynthesisError(f"{provider} speech synthesis failed: {response.status_code} {response.reason_phrase}")


class SilentTTSProvider:
    """A placeholder provider that returns silent MP3 audio.

    Concatenating MP3 files byte for byte is valid because MP3 streams can
    be joined at frame boundaries, so one second of silence is simply
    repeated for the estimated duration of the text.
    """

    name = "silent"

    async def synthesize(self, text: str, voice: Optional[str] = None) -> Tuple[bytes, int]:
        seconds = estimate_duration(text)
        return SILENT_MP3_BYTES * seconds, seconds


class GoogleTTSProvider:
    """Google Cloud Text-to-Speech using an API key.

    The language code is derived from the voice name, so any of the
    ``VOICES`` ids (or other Google voice names) can be passed directly.
    """

    name = "google"

    def __init__(self, api_key: str, speaking_rate: float = 1.0, pitch: float = 0.0,
                 timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.api_key = api_key
        self.speaking_rate = speaking_rate
        self.pitch = pitch
        self.timeout = timeout
        self.transport = transport

    async def synthesize(self, text: str, voice: Optional[str] = None) -> Tuple[bytes, int]:
        voice = voice or DEFAULT_GOOGLE_VOICE
        payload = {
            "input": {"text": text},
            "voice": {"languageCode": language_code(voice), "name": voice},
            "audioConfig": {
                "audioEncoding": "MP3",
                "speakingRate": self.speaking_rate,
                "pitch": self.pitch,
            },
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(GOOGLE_TTS_URL, params={"key": self.api_key}, json=payload)
        _raise_for_status(response, self.name)
        audio_content = response.json().get("audioContent")
        if not audio_content:
            raise NonRetryableError("Missing audioContent in Google TTS response")
        return base64.b64decode(audio_content), estimate_duration(text)


class ElevenLabsProvider:
    """ElevenLabs text-to-speech; ``voice`` is an ElevenLabs voice id."""

    name = "elevenlabs"

    def __init__(self, api_key: str, model_id: str = "eleven_monolingual_v1",
                 stability: float = 0.5, similarity_boost: float = 0.5,
                 timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.api_key = api_key
        self.model_id = model_id
        self.stability = stability
        self.similarity_boost = similarity_boost
        self.timeout = timeout
        self.transport = transport

    async def synthesize(self, text: str, voice: Optional[str] = None) -> Tuple[bytes, int]:
        voice = voice or DEFAULT_ELEVENLABS_VOICE
        headers = {
            "Accept": "audio/mpeg",
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        payload = {
            "text": text.strip(),
            "model_id": self.model_id,
            "voice_settings": {
                "stability": self.stability,
                "similarity_boost": self.similarity_boost,
            },
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(ELEVENLABS_TTS_URL.format(voice=voice), headers=headers, json=payload)
        _raise_for_status(response, self.name)
        if not response.content:
            raise NonRetryableError("Missing audioContent in ElevenLabs response")
        return response.content, estimate_duration(text)


def build_providers() -> Dict[str, object]:
    """Instantiate every provider whose credentials are configured."""
    providers: Dict[str, object] = {"silent": SilentTTSProvider()}
    if config.GOOGLE_TTS_API_KEY:
        providers["google"] = GoogleTTSProvider(api_key=config.GOOGLE_TTS_API_KEY)
    if config.ELEVEN_LABS_API_KEY:
        providers["elevenlabs"] = ElevenLabsProvider(api_key=config.ELEVEN_LABS_API_KEY)
    logger.info("Registered TTS providers: %s", ", ".join(sorted(providers)))
    return providers
