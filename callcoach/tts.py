"""ElevenLabs text-to-speech for coach replies."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

import httpx

from .logging import RichLogger
from .settings import settings


class ElevenLabsTTS:
    """
    One POST per reply, whole MP3 back. Returns None when unconfigured,
    given empty text, or when the service answers non-200.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
        base_url: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 30.0,
    ):
        self.api_key = api_key if api_key is not None else settings.elevenlabs_api_key
        self.voice_id = voice_id if voice_id is not None else settings.elevenlabs_voice_id
        self.model_id = model_id or settings.elevenlabs_model_id
        self.base_url = (base_url or settings.elevenlabs_base_url).rstrip("/")
        self.http = http
        self.timeout_s = timeout_s

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.voice_id)

    def _payload(self, text: str) -> Dict[str, Any]:
        return {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.8},
        }

    async def synthesize(self, text: str) -> Optional[Tuple[bytes, str]]:
        trimmed = (text or "").strip()
        if not self.enabled or not trimmed:
            return None

        url = f"{self.base_url}/v1/text-to-speech/{self.voice_id}"
        headers = {
            "xi-api-key": self.api_key or "",
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
        }
        t0 = time.time()
        if self.http is not None:
            response = await self.http.post(url, headers=headers, json=self._payload(trimmed))
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.post(url, headers=headers, json=self._payload(trimmed))

        if response.status_code != 200:
            detail = response.text[:200]
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('TTS', f'{response.status_code} {detail}')}")
            return None

        audio = response.content
        mime = response.headers.get("Content-Type", "audio/mpeg").split(";")[0].strip() or "audio/mpeg"
        print(f"[{RichLogger._format_time()}] {RichLogger.tts_complete(len(audio), (time.time() - t0) * 1000)}")
        return audio, mime
