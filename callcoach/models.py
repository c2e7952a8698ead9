from __future__ import annotations

import base64
import hashlib
import io
import time
import wave
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from . import wire

Source = Literal["voice", "chat"]
SessionKey = Tuple[str, str, str]


def fingerprint(text: str) -> str:
    """Content hash of a transcript, insensitive to case and spacing."""
    norm = " ".join((text or "").lower().split())
    return hashlib.sha256(norm.encode("utf-8")).hexdigest()


def _first(obj: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = obj.get(k)
        if v not in (None, ""):
            return v
    return None


@dataclass
class CallSession:
    call_id: str
    device_id: str
    conversation_id: Optional[str] = None
    state: str = "IDLE"
    started_at: float = field(default_factory=time.time)


@dataclass
class Utterance:
    chunks: List[bytes]
    started_at: float
    last_voice_activity_at: float
    duration_ms: float
    stop_reason: str
    heard_voice: bool = True
    sample_rate: int = 16000

    @property
    def audio(self) -> bytes:
        return b"".join(self.chunks)

    def is_empty(self) -> bool:
        return not self.chunks or not any(self.chunks)

    def to_wav(self) -> bytes:
        """PCM16 mono chunks wrapped as a WAV file for upload."""
        buf = io.BytesIO()
        with wave.open(buf, "wb") as w:
            w.setnchannels(1)
            w.setsampwidth(2)
            w.setframerate(self.sample_rate)
            w.writeframes(self.audio)
        return buf.getvalue()


@dataclass
class TurnRequest:
    transcript: str
    call_id: Optional[str] = None
    device_id: Optional[str] = None
    conversation_id: Optional[str] = None
    source: Source = "voice"
    want_audio: bool = True
    rolling_summary: str = ""
    system_event: str = ""
    system_say: str = ""
    user_id: str = ""

    @property
    def is_system(self) -> bool:
        return bool(self.system_event or self.system_say)

    @property
    def session_key(self) -> SessionKey:
        return (
            self.call_id or "no_call",
            self.device_id or "no_device",
            self.conversation_id or "no_conversation",
        )

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.transcript)

    @classmethod
    def from_payload(cls, body: Dict[str, Any]) -> "TurnRequest":
        source = str(body.get(wire.F_SOURCE) or "voice").lower()
        transcript = _first(body, wire.F_TRANSCRIPT, "user_turn", "utterance") or ""
        want_audio = body.get(wire.F_WANT_AUDIO)
        return cls(
            transcript=str(transcript).strip(),
            call_id=_first(body, wire.F_CALL_ID, "callId"),
            device_id=_first(body, wire.F_DEVICE_ID, "deviceId"),
            conversation_id=_first(body, wire.F_CONVERSATION_ID, "conversation_id", "c"),
            source="chat" if source == "chat" else "voice",
            want_audio=True if want_audio is None else bool(want_audio),
            rolling_summary=str(_first(body, wire.F_ROLLING_SUMMARY, "rollingSummary") or "").strip(),
            system_event=str(_first(body, wire.F_SYSTEM_EVENT, "systemEvent") or "").strip(),
            system_say=str(_first(body, wire.F_SYSTEM_SAY, "systemSay") or "").strip(),
            user_id=str(body.get("user_id") or ""),
        )

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            wire.F_SOURCE: self.source,
            wire.F_CONVERSATION_ID: self.conversation_id,
            wire.F_TRANSCRIPT: self.transcript,
            wire.F_CALL_ID: self.call_id,
            wire.F_DEVICE_ID: self.device_id,
            wire.F_WANT_AUDIO: self.want_audio,
        }
        if self.rolling_summary:
            out[wire.F_ROLLING_SUMMARY] = self.rolling_summary
        if self.system_event:
            out[wire.F_SYSTEM_EVENT] = self.system_event
        if self.system_say:
            out[wire.F_SYSTEM_SAY] = self.system_say
        return out


@dataclass
class AssistantTurn:
    text: str
    audio_bytes: Optional[bytes] = None
    mime_type: Optional[str] = None
    used_knowledge: bool = False

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_bytes)


@dataclass
class GatewayResult:
    """What the gateway hands back for one request."""
    turn: Optional[AssistantTurn]
    conversation_id: Optional[str] = None
    call_id: Optional[str] = None
    skipped_duplicate: bool = False
    joined: bool = False
    system_event: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        if self.skipped_duplicate or self.turn is None:
            return {
                wire.R_SKIPPED_DUPLICATE: True,
                wire.R_TEXT: "",
                wire.R_ASSISTANT_TEXT: "",
                wire.R_USED_KNOWLEDGE: False,
                "conversationId": self.conversation_id,
                "call_id": self.call_id,
            }
        body: Dict[str, Any] = {
            wire.R_TEXT: self.turn.text,
            wire.R_ASSISTANT_TEXT: self.turn.text,
            wire.R_USED_KNOWLEDGE: self.turn.used_knowledge,
            "conversationId": self.conversation_id,
            "call_id": self.call_id,
        }
        if self.system_event is not None:
            body[wire.F_SYSTEM_EVENT] = self.system_event or None
        if self.turn.audio_bytes:
            body[wire.R_AUDIO_B64] = base64.b64encode(self.turn.audio_bytes).decode("ascii")
            body[wire.R_MIME] = self.turn.mime_type or "audio/mpeg"
        return body


@dataclass
class CoachReply:
    """Client-side view of a gateway response."""
    text: str
    audio_bytes: Optional[bytes] = None
    mime_type: str = "audio/mpeg"
    used_knowledge: bool = False
    skipped_duplicate: bool = False
    conversation_id: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CoachReply":
        b64 = data.get(wire.R_AUDIO_B64)
        audio = base64.b64decode(b64) if b64 else None
        return cls(
            text=str(data.get(wire.R_ASSISTANT_TEXT) or data.get(wire.R_TEXT) or "").strip(),
            audio_bytes=audio,
            mime_type=str(data.get(wire.R_MIME) or "audio/mpeg"),
            used_knowledge=bool(data.get(wire.R_USED_KNOWLEDGE)),
            skipped_duplicate=bool(data.get(wire.R_SKIPPED_DUPLICATE)),
            conversation_id=data.get(wire.F_CONVERSATION_ID) or None,
        )
