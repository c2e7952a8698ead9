from __future__ import annotations

import asyncio
import os
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Tuple

from . import wire
from .asr import MIN_AUDIO_BYTES, Transcriber
from .errors import CollaboratorTimeout, InvalidTurnRequest
from .logging import RichLogger
from .metrics import TurnLog
from .models import AssistantTurn, GatewayResult, TurnRequest
from .prompt import (
    END_MAX_CHARS,
    FALLBACK_END,
    FALLBACK_GREETING,
    FALLBACK_NUDGE,
    NUDGE_MAX_CHARS,
    SYSTEM_SAY_MAX_CHARS,
    build_messages,
    greeting_messages,
    kb_query,
    no_response_messages,
    rewrite_messages,
    sanitize,
    summary_messages,
)
from .registry import TurnRegistry
from .settings import settings

FALLBACK_SYSTEM = "I'm here. If you're still with me, go ahead and speak."


class ChatModel(Protocol):
    async def chat(self, messages: List[Dict[str, Any]], *, temperature: float = ...,
                   frequency_penalty: float = ..., presence_penalty: float = ...,
                   max_tokens: Optional[int] = ...) -> str:
        ...


class Retriever(Protocol):
    async def retrieve(self, query: str, top_k: int = ...) -> str:
        ...


class SpeechSynth(Protocol):
    async def synthesize(self, text: str) -> Optional[Tuple[bytes, str]]:
        ...


@dataclass
class GatewayConfig:
    history_limit: int = 12
    top_k: int = 10

    # Decoding for the main reply
    temperature: float = settings.temperature
    frequency_penalty: float = settings.frequency_penalty
    presence_penalty: float = settings.presence_penalty

    # Lexicon-conformance rewrite
    rewrite_temperature: float = 0.3
    rewrite_max_tokens: int = 400

    # System lines / greeting / summary
    system_temperature: float = 0.95
    system_max_tokens: int = 80
    greeting_max_tokens: int = 160
    summary_temperature: float = 0.2
    summary_max_tokens: int = 220

    # Collaborator bounds (seconds)
    llm_timeout_s: float = settings.llm_timeout_s
    retrieval_timeout_s: float = settings.retrieval_timeout_s
    tts_timeout_s: float = settings.tts_timeout_s
    store_timeout_s: float = settings.store_timeout_s
    transcribe_timeout_s: float = settings.transcribe_timeout_s

    log_system_events: bool = settings.log_system_events
    metrics_file: str = field(default_factory=lambda: os.getenv("CALLCOACH_METRICS_FILE", settings.metrics_file))

    def __post_init__(self):
        if self.history_limit < 0:
            raise ValueError(f"history_limit must be >= 0, got {self.history_limit}")
        if not 1 <= self.top_k <= 100:
            raise ValueError(f"top_k must be between 1 and 100, got {self.top_k}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be between 0 and 2, got {self.temperature}")
        for name in ("llm_timeout_s", "retrieval_timeout_s", "tts_timeout_s", "store_timeout_s",
                     "transcribe_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")


class CoachGateway:
    """
    Transcript in, one AssistantTurn out per logical utterance.

    Concurrent copies of the same request share a single generation; a
    repeat that arrives after it finished but inside the dedupe window is
    answered with `skipped_duplicate` and costs nothing.
    """

    def __init__(
        self,
        llm: ChatModel,
        registry: Optional[TurnRegistry] = None,
        knowledge: Optional[Retriever] = None,
        tts: Optional[SpeechSynth] = None,
        store: Optional[Any] = None,
        transcriber: Optional[Transcriber] = None,
        cfg: Optional[GatewayConfig] = None,
    ):
        self.llm = llm
        self.registry = registry or TurnRegistry(
            dedupe_window_s=settings.dedupe_window_s, record_ttl_s=settings.dedupe_record_ttl_s
        )
        self.knowledge = knowledge
        self.tts = tts
        self.store = store
        self.transcriber = transcriber
        self.cfg = cfg or GatewayConfig()
        self.metrics_file = self.cfg.metrics_file
        self.turn_log = TurnLog(self.metrics_file)
        self._background: set[asyncio.Task] = set()

    # ------------- entry points -------------
    async def handle(self, req: TurnRequest) -> GatewayResult:
        route = f"system:{req.system_event or 'say'}" if req.is_system else f"coach:{req.source}"
        print(f"[{RichLogger._format_time()}] {RichLogger.request_info(req.call_id, route)}")
        if req.is_system:
            return await self._handle_system(req)
        if not req.transcript.strip():
            raise InvalidTurnRequest("Missing transcript")

        t0 = time.time()
        skey = req.session_key
        fp = req.fingerprint
        fkey = skey + (fp,)

        # No await between these checks and registry.run() registering the flight.
        joining = self.registry.in_flight(fkey) is not None
        if joining:
            print(f"[{RichLogger._format_time()}] {RichLogger.flight_join(fp)}")
        else:
            if self.registry.is_duplicate(skey, fp):
                print(f"[{RichLogger._format_time()}] {RichLogger.dedupe_hit(fp)}")
                self._write_metrics(req, skipped=1)
                return GatewayResult(None, req.conversation_id, req.call_id, skipped_duplicate=True)
            self.registry.remember(skey, fp)

        try:
            turn, joined = await self.registry.run(fkey, lambda: self._generate(req))
        except BaseException:
            if not joining:
                self.registry.forget(skey, fp)
            raise

        if joined:
            self._write_metrics(req, rt_ms=(time.time() - t0) * 1000, joined=1,
                                used_knowledge=turn.used_knowledge)
        return GatewayResult(turn, req.conversation_id, req.call_id, joined=joined)

    async def greeting(self, name: str = "", want_audio: bool = True) -> AssistantTurn:
        try:
            out = await self._bounded(
                "llm",
                self.llm.chat(greeting_messages(name), temperature=self.cfg.system_temperature,
                              max_tokens=self.cfg.greeting_max_tokens),
                self.cfg.llm_timeout_s,
            )
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('greeting', repr(e))}")
            out = ""
        text = sanitize(out, 600) or FALLBACK_GREETING
        audio = await self._speak(text) if want_audio else None
        return AssistantTurn(text, *(audio or (None, None)))

    async def transcribe(self, audio: bytes, mime: str, filename: Optional[str] = None) -> Dict[str, Any]:
        """Proxy to the transcription collaborator; tiny blobs are skipped."""
        if len(audio) < MIN_AUDIO_BYTES:
            return {"text": "", "skipped": True, "reason": "audio_too_small", "bytes": len(audio)}
        if self.transcriber is None:
            raise RuntimeError("no transcriber configured")
        text = await self._bounded(
            "transcribe", self.transcriber.transcribe(audio, mime, filename), self.cfg.transcribe_timeout_s
        )
        return {"text": (text or "").strip()}

    async def drain(self) -> None:
        """Wait for fire-and-forget persistence tasks (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------- pipeline -------------
    async def _generate(self, req: TurnRequest) -> AssistantTurn:
        t0 = time.time()
        conversation, history = await self._load_memory(req.conversation_id)

        t_ret = time.time()
        knowledge = await self._retrieve(req.transcript)
        retrieval_ms = (time.time() - t_ret) * 1000

        messages = build_messages(
            req.transcript,
            knowledge,
            history=history,
            summary=str((conversation or {}).get("summary") or ""),
            rolling_summary=req.rolling_summary,
        )
        t_llm = time.time()
        draft = await self._bounded(
            "llm",
            self.llm.chat(
                messages,
                temperature=self.cfg.temperature,
                frequency_penalty=self.cfg.frequency_penalty,
                presence_penalty=self.cfg.presence_penalty,
            ),
            self.cfg.llm_timeout_s,
        )
        llm_ms = (time.time() - t_llm) * 1000
        text = sanitize(draft)

        rewrite_ms = 0.0
        if knowledge.strip() and text:
            t_rw = time.time()
            text = await self._rewrite(text, knowledge)
            rewrite_ms = (time.time() - t_rw) * 1000
        print(f"[{RichLogger._format_time()}] {RichLogger.planning_response(text)}")

        t_tts = time.time()
        audio = await self._speak(text) if req.want_audio else None
        tts_ms = (time.time() - t_tts) * 1000 if req.want_audio else 0.0

        turn = AssistantTurn(
            text=text,
            audio_bytes=audio[0] if audio else None,
            mime_type=audio[1] if audio else None,
            used_knowledge=bool(knowledge.strip()),
        )
        self._spawn(self._persist_turn(req, conversation, history, text))

        rt_ms = (time.time() - t0) * 1000
        print(f"[{RichLogger._format_time()}] {RichLogger.turn_summary(rt_ms, llm_ms, rewrite_ms, tts_ms)}")
        self._write_metrics(
            req,
            rt_ms=rt_ms,
            retrieval_ms=retrieval_ms,
            llm_ms=llm_ms,
            rewrite_ms=rewrite_ms,
            tts_ms=tts_ms,
            used_knowledge=turn.used_knowledge,
        )
        return turn

    async def _handle_system(self, req: TurnRequest) -> GatewayResult:
        call_key = (req.call_id or "no_call", req.device_id or "no_device")
        if req.system_say:
            reply = sanitize(req.system_say, SYSTEM_SAY_MAX_CHARS)
        elif req.system_event in (wire.EVT_NO_RESPONSE_NUDGE, wire.EVT_NO_RESPONSE_END):
            kind = "end" if req.system_event == wire.EVT_NO_RESPONSE_END else "nudge"
            reply = await self._no_response_line(kind, self.registry.recent_variants(call_key, kind))
            self.registry.remember_variant(call_key, kind, reply)
        else:
            reply = FALLBACK_SYSTEM

        audio = await self._speak(reply) if req.want_audio else None
        self._spawn(self._persist_system(req, reply))
        turn = AssistantTurn(reply, audio[0] if audio else None, audio[1] if audio else None, False)
        return GatewayResult(turn, req.conversation_id, req.call_id, system_event=req.system_event)

    async def _no_response_line(self, kind: str, recent: List[str]) -> str:
        try:
            out = await self._bounded(
                "llm",
                self.llm.chat(no_response_messages(kind, recent), temperature=self.cfg.system_temperature,
                              max_tokens=self.cfg.system_max_tokens),
                self.cfg.llm_timeout_s,
            )
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('no-response line', repr(e))}")
            out = ""
        cleaned = sanitize(out, END_MAX_CHARS if kind == "end" else NUDGE_MAX_CHARS)
        if not cleaned:
            return FALLBACK_END if kind == "end" else FALLBACK_NUDGE
        return cleaned

    # ------------- best-effort collaborators -------------
    async def _bounded(self, name: str, aw: Awaitable[Any], timeout_s: float) -> Any:
        try:
            return await asyncio.wait_for(aw, timeout_s)
        except asyncio.TimeoutError as e:
            raise CollaboratorTimeout(name, timeout_s) from e

    async def _load_memory(self, conversation_id: Optional[str]) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        if self.store is None or not conversation_id:
            return None, []
        try:
            conversation = await self._bounded(
                "store", self.store.fetch_conversation(conversation_id), self.cfg.store_timeout_s
            )
            history = await self._bounded(
                "store", self.store.fetch_history(conversation_id, self.cfg.history_limit), self.cfg.store_timeout_s
            )
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('history', repr(e))}")
            return None, []
        return conversation, list(history or [])

    async def _retrieve(self, transcript: str) -> str:
        if self.knowledge is None:
            return ""
        try:
            context = await self._bounded(
                "retrieval",
                self.knowledge.retrieve(kb_query(transcript), self.cfg.top_k),
                self.cfg.retrieval_timeout_s,
            )
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('retrieval', repr(e))}")
            return ""
        return context or ""

    async def _rewrite(self, draft: str, knowledge: str) -> str:
        try:
            out = await self._bounded(
                "rewrite",
                self.llm.chat(rewrite_messages(draft, knowledge), temperature=self.cfg.rewrite_temperature,
                              max_tokens=self.cfg.rewrite_max_tokens),
                self.cfg.llm_timeout_s,
            )
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('rewrite', repr(e))}")
            return draft
        return sanitize(out) or draft

    async def _speak(self, text: str) -> Optional[Tuple[bytes, str]]:
        if self.tts is None or not text:
            return None
        try:
            return await self._bounded("tts", self.tts.synthesize(text), self.cfg.tts_timeout_s)
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('TTS', repr(e))}")
            return None

    # ------------- persistence (fire-and-forget) -------------
    def _spawn(self, coro) -> None:
        if self.store is None or not getattr(self.store, "enabled", True):
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_turn(
        self,
        req: TurnRequest,
        conversation: Optional[Dict[str, Any]],
        history: List[Dict[str, Any]],
        reply: str,
    ) -> None:
        store = self.store
        bound = self.cfg.store_timeout_s
        try:
            row = store.call_session_row(
                user_id=req.user_id, device_id=req.device_id, call_id=req.call_id,
                source=req.source, transcript=req.transcript, reply=reply,
            )
            await self._bounded("store", store.insert_call_session(row), bound)

            if conversation and req.conversation_id:
                cid = req.conversation_id
                await self._bounded(
                    "store",
                    store.insert_messages(conversation, cid, [("user", req.transcript), ("assistant", reply)]),
                    bound,
                )
                await self._refresh_summary(conversation, cid, history, req.transcript, reply)
                await self._bounded("store", store.maybe_update_title(conversation, cid, req.transcript), bound)
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.error(f'persist turn: {e!r}')}")
            traceback.print_exc()

    async def _refresh_summary(
        self, conversation: Dict[str, Any], cid: str, history: List[Dict[str, Any]], user_text: str, reply: str
    ) -> None:
        base = list(history) + [{"role": "user", "content": user_text}, {"role": "assistant", "content": reply}]
        try:
            summary = await self._bounded(
                "llm",
                self.llm.chat(
                    summary_messages(str(conversation.get("summary") or ""), base),
                    temperature=self.cfg.summary_temperature,
                    max_tokens=self.cfg.summary_max_tokens,
                ),
                self.cfg.llm_timeout_s,
            )
            if summary:
                await self._bounded("store", self.store.update_summary(cid, summary[:500]), self.cfg.store_timeout_s)
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('summary', repr(e))}")

    async def _persist_system(self, req: TurnRequest, reply: str) -> None:
        store = self.store
        bound = self.cfg.store_timeout_s
        try:
            if self.cfg.log_system_events:
                label = f"[system_event] {req.system_event}" if req.system_event else "[system_say]"
                row = store.call_session_row(
                    user_id=req.user_id, device_id=req.device_id, call_id=req.call_id,
                    source=req.source or "voice_system", transcript=label, reply=reply,
                )
                await self._bounded("store", store.insert_call_session(row), bound)
            if req.conversation_id:
                conversation = await self._bounded("store", store.fetch_conversation(req.conversation_id), bound)
                if conversation:
                    await self._bounded(
                        "store", store.insert_messages(conversation, req.conversation_id, [("assistant", reply)]), bound
                    )
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.error(f'persist system line: {e!r}')}")

    # ------------- metrics -------------
    def _write_metrics(self, req: TurnRequest, **fields: Any) -> None:
        event: Dict[str, Any] = {
            "t": time.time(),
            "evt": "turn_metrics",
            "call_id": req.call_id,
            "source": req.source,
        }
        for k, v in fields.items():
            event[k] = int(round(v)) if isinstance(v, float) else v
        self.turn_log.append(event)
