from __future__ import annotations

from typing import Optional

import httpx
import orjson

from .errors import CoachRequestError, TranscriptionError
from .models import CoachReply, TurnRequest
from .settings import settings


class CoachClient:
    """HTTP side of the call client: upload an utterance, ask the coach."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        transcribe_timeout_s: float = 30.0,
        coach_timeout_s: float = 60.0,
    ):
        self.base_url = (base_url or settings.server_url).rstrip("/")
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(base_url=self.base_url)
        self.transcribe_timeout_s = transcribe_timeout_s
        self.coach_timeout_s = coach_timeout_s

    async def transcribe(self, audio: bytes, mime: str) -> str:
        ext = "wav" if "wav" in mime else "webm"
        try:
            resp = await self.http.post(
                f"{self.base_url}/api/transcribe",
                files={"audio": (f"utterance.{ext}", audio, mime)},
                timeout=self.transcribe_timeout_s,
            )
        except httpx.HTTPError as e:
            raise TranscriptionError(f"transcribe request failed: {e!r}") from e
        if resp.status_code != 200:
            raise TranscriptionError(f"transcribe {resp.status_code}: {resp.text[:200]}")
        data = orjson.loads(resp.content)
        return str(data.get("text") or "").strip()

    async def ask(self, request: TurnRequest) -> CoachReply:
        try:
            resp = await self.http.post(
                f"{self.base_url}/api/call-coach",
                content=orjson.dumps(request.to_payload()),
                headers={"Content-Type": "application/json"},
                timeout=self.coach_timeout_s,
            )
        except httpx.HTTPError as e:
            raise CoachRequestError(f"coach request failed: {e!r}") from e
        if resp.status_code != 200:
            raise CoachRequestError(f"coach {resp.status_code}: {resp.text[:200]}")
        return CoachReply.from_json(orjson.loads(resp.content))

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()
