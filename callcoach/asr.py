from __future__ import annotations

import asyncio
import io
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from openai import AsyncOpenAI

from .errors import TranscriptionError
from .logging import RichLogger
from .settings import settings

MIN_AUDIO_BYTES = 8000


def normalize_mime(mime: Optional[str]) -> str:
    """Browser/recorder MIME types mapped onto what the transcription API accepts."""
    m = str(mime or "").lower()
    if "mp4" in m or "m4a" in m or "quicktime" in m:
        return "audio/mp4"
    if "ogg" in m:
        return "audio/ogg"
    return m or "audio/webm"


_EXT = {"audio/mp4": "m4a", "audio/ogg": "ogg", "audio/wav": "wav", "audio/x-wav": "wav",
        "audio/webm": "webm", "audio/mpeg": "mp3"}


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, mime: str, filename: Optional[str] = None) -> str:
        ...


class OpenAITranscriber:
    """Hosted transcription. Empty string means no speech; failures raise TranscriptionError."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        if client is None and settings.openai_api_key:
            client = AsyncOpenAI(api_key=settings.openai_api_key)
        self.client = client
        self.model = model or settings.transcribe_model

    async def transcribe(self, audio: bytes, mime: str, filename: Optional[str] = None) -> str:
        if self.client is None:
            raise TranscriptionError("Missing OPENAI_API_KEY")
        mime = normalize_mime(mime)
        filename = filename or f"audio.{_EXT.get(mime, 'webm')}"
        t0 = time.time()
        try:
            resp = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio, mime),
            )
        except Exception as e:
            raise TranscriptionError(f"transcription failed: {e!r}") from e
        text = (getattr(resp, "text", "") or "").strip()
        dt = (time.time() - t0) * 1000
        print(f"[{RichLogger._format_time()}] {RichLogger.timing('Transcribe', dt)} chars={len(text)}")
        return text


@dataclass
class WhisperConfig:
    model: str = settings.faster_whisper_model   # e.g. "base.en"
    language: Optional[str] = "en"
    beam_size: int = 1
    compute_type: str = "int8"


class WhisperTranscriber:
    """
    Local faster-whisper transcription (install the `local-asr` extra).
    The model loads on first use and decoding runs in the default executor.
    """

    def __init__(self, cfg: Optional[WhisperConfig] = None):
        self.cfg = cfg or WhisperConfig()
        self._model = None

    def _load(self):
        if self._model is None:
            try:
                from faster_whisper import WhisperModel
            except ImportError as e:
                raise TranscriptionError("faster-whisper not installed (pip install 'callcoach[local-asr]')") from e
            print(f"[ASR] 🎯 Initializing Faster-Whisper with model: {self.cfg.model}")
            self._model = WhisperModel(self.cfg.model, compute_type=self.cfg.compute_type)
            print(f"[ASR] ✅ Faster-Whisper model '{self.cfg.model}' loaded successfully")
        return self._model

    def _decode_text(self, audio: bytes) -> str:
        model = self._load()
        segments, _info = model.transcribe(
            io.BytesIO(audio),
            language=self.cfg.language,
            vad_filter=False,
            beam_size=self.cfg.beam_size,
            condition_on_previous_text=False,
            temperature=0.0,
        )
        return "".join(seg.text for seg in segments).strip()

    async def transcribe(self, audio: bytes, mime: str, filename: Optional[str] = None) -> str:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._decode_text, audio)
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"local transcription failed: {e!r}") from e


def make_transcriber() -> Transcriber:
    if settings.local_asr:
        return WhisperTranscriber()
    return OpenAITranscriber()
