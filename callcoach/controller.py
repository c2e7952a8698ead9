from __future__ import annotations

import asyncio
import contextlib
import traceback
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Tuple

from . import wire
from .capture import STOP_CANCELLED
from .clock import MonotonicClock
from .errors import MicUnavailable
from .logging import RichLogger
from .models import CallSession, CoachReply, TurnRequest, Utterance
from .playback import PlaybackManager
from .state_machine import (
    AskCoach,
    CallState,
    Delay,
    Event,
    PlayEffect,
    PlaySpeech,
    PollMute,
    ReleaseResources,
    SetStatus,
    StartCapture,
    StartTimer,
    StopTimer,
    Timings,
    Transcribe,
    UnlockAudio,
    transition,
)

Observer = Callable[[str, str], None]


class Capturer(Protocol):
    async def begin_capture(self, should_continue: Callable[[], bool] = ...) -> Utterance:
        ...


class CoachBackend(Protocol):
    async def transcribe(self, audio: bytes, mime: str) -> str:
        ...

    async def ask(self, request: TurnRequest) -> CoachReply:
        ...


@dataclass
class ControllerConfig:
    connect_delay_ms: int = 900
    mute_poll_ms: int = 250
    retry_delay_ms: int = 800
    playback_timeout_ms: int = 35000

    # No-response handling
    idle_nudge_ms: int = 25000      # 0 disables
    max_idle_nudges: int = 1

    want_audio: bool = True
    summary_turns: int = 6
    summary_max_chars: int = 600

    def __post_init__(self):
        if self.connect_delay_ms < 0:
            raise ValueError(f"connect_delay_ms must be >= 0ms, got {self.connect_delay_ms}")
        if self.mute_poll_ms < 10:
            raise ValueError(f"mute_poll_ms must be >= 10ms, got {self.mute_poll_ms}")
        if self.retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0ms, got {self.retry_delay_ms}")
        if self.playback_timeout_ms < 1000:
            raise ValueError(f"playback_timeout_ms must be >= 1000ms, got {self.playback_timeout_ms}")
        if self.idle_nudge_ms < 0:
            raise ValueError(f"idle_nudge_ms must be >= 0ms, got {self.idle_nudge_ms}")
        if self.max_idle_nudges < 0:
            raise ValueError(f"max_idle_nudges must be >= 0, got {self.max_idle_nudges}")

    @property
    def timings(self) -> Timings:
        return Timings(
            connect_delay_ms=self.connect_delay_ms,
            mute_poll_ms=self.mute_poll_ms,
            retry_delay_ms=self.retry_delay_ms,
        )


class OwnerGuard:
    """Who holds a device role ("microphone", "speaker"). Busy means no-op."""

    def __init__(self, role: str):
        self.role = role
        self.owner: Optional[str] = None

    @property
    def held(self) -> bool:
        return self.owner is not None

    def acquire(self, owner: str) -> bool:
        if self.owner is not None:
            print(f"[{RichLogger._format_time()}] {RichLogger.guard_busy(self.role, self.owner)}")
            return False
        self.owner = owner
        return True

    def release(self, owner: str) -> None:
        if self.owner == owner:
            self.owner = None


class TurnController:
    """
    Runs one call: executes the effects produced by the state machine and
    feeds it the events that come back from capture, transcription, the
    coach gateway and playback.
    """

    def __init__(
        self,
        session: CallSession,
        capture: Capturer,
        backend: CoachBackend,
        playback: PlaybackManager,
        cfg: Optional[ControllerConfig] = None,
        clock: Optional[MonotonicClock] = None,
        observer: Optional[Observer] = None,
    ):
        self.session = session
        self.capture = capture
        self.backend = backend
        self.playback = playback
        self.cfg = cfg or ControllerConfig()
        self.clock = clock or MonotonicClock()
        self.observer = observer

        self.state = CallState.IDLE
        self.status = ""
        self.active = False
        self.turn_id = 0
        self.mic_muted = False
        self.speaker_muted = False
        self.transcript: List[Tuple[str, str]] = []

        self.mic = OwnerGuard("microphone")
        self.speaker = OwnerGuard("speaker")

        self._timings = self.cfg.timings
        self._task: Optional[asyncio.Task] = None
        self._fx_tasks: set[asyncio.Task] = set()
        self._ending = False
        self._closed = asyncio.Event()

        self._utterance: Optional[Utterance] = None
        self._last_text = ""
        self._reply: Optional[CoachReply] = None

        self._timer_started_ms: Optional[float] = None
        self._timer_stopped_ms: Optional[float] = None
        self._last_heard_ms = 0.0
        self._nudges = 0
        self._end_after_reply = False

    # ------------- public API -------------
    @property
    def elapsed_s(self) -> float:
        if self._timer_started_ms is None:
            return 0.0
        end = self._timer_stopped_ms if self._timer_stopped_ms is not None else self.clock.now_ms()
        return max(0.0, (end - self._timer_started_ms) / 1000.0)

    @property
    def rolling_summary(self) -> str:
        recent = self.transcript[-self.cfg.summary_turns:]
        text = " | ".join(f"{who}: {what}" for who, what in recent)
        return text[-self.cfg.summary_max_chars:]

    async def start(self) -> None:
        """Dial: unlock audio, ring, then hand the call to the background loop."""
        if self.state != CallState.IDLE or self.active or self._ending:
            return
        self.active = True
        self._log(RichLogger.call_start())
        await self.playback.unlock()
        if self._ending:
            return
        self._task = asyncio.create_task(self._run())

    async def hang_up(self) -> None:
        """End the call. Safe to call any number of times."""
        if self._ending:
            return
        self._ending = True
        self.active = False
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._step(Event.HANGUP)
        self._log(RichLogger.call_end("hangup"))
        self._closed.set()

    def set_mic_muted(self, muted: bool) -> None:
        self.mic_muted = muted

    def set_speaker_muted(self, muted: bool) -> None:
        self.speaker_muted = muted
        self.playback.set_muted(muted)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # ------------- loop -------------
    async def _run(self) -> None:
        event: Optional[Event] = Event.START
        try:
            while self.active:
                if event is None:
                    event = self._next_event()
                if event in (Event.HANGUP, Event.MIC_ERROR):
                    await self._finish(event)
                    return
                event = await self._step(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log(RichLogger.error(repr(e)))
            traceback.print_exc()
            await self._finish(Event.HANGUP)

    def _next_event(self) -> Optional[Event]:
        if self.state == CallState.LISTENING:
            if self._end_after_reply:
                return Event.HANGUP
            if self.mic_muted:
                return Event.MIC_MUTED
            idle_ms = self.clock.now_ms() - self._last_heard_ms
            if self.cfg.idle_nudge_ms and idle_ms >= self.cfg.idle_nudge_ms:
                return Event.IDLE_TIMEOUT
            return Event.CAPTURE_BEGIN
        raise RuntimeError(f"no follow-up event in {self.state.value}")

    async def _finish(self, event: Event) -> None:
        if self._ending:
            return
        self._ending = True
        self.active = False
        await self._step(event)
        self._log(RichLogger.call_end(event.value.lower()))
        self._closed.set()

    async def _step(self, event: Event) -> Optional[Event]:
        t = transition(self.state, event, self._timings)
        if t.next_state != self.state:
            self._log(RichLogger.state_transition(self.state.value, t.next_state.value, event.value))
            self.state = t.next_state
            self.session.state = t.next_state.value

        follow: Optional[Event] = None
        for fx in t.effects:
            if not self.active and t.next_state != CallState.ENDED:
                return None
            nxt = await self._execute(fx)
            if nxt is not None:
                follow = nxt
        return follow

    # ------------- effects -------------
    async def _execute(self, fx) -> Optional[Event]:
        if isinstance(fx, UnlockAudio):
            await self.playback.unlock()
        elif isinstance(fx, StartTimer):
            self._timer_started_ms = self.clock.now_ms()
            self._last_heard_ms = self._timer_started_ms
        elif isinstance(fx, StopTimer):
            if self._timer_started_ms is not None and self._timer_stopped_ms is None:
                self._timer_stopped_ms = self.clock.now_ms()
        elif isinstance(fx, SetStatus):
            self.status = fx.text
            self._notify("status", fx.text)
        elif isinstance(fx, PlayEffect):
            if fx.wait:
                await self.playback.play_effect(fx.kind)
            else:
                task = asyncio.create_task(self.playback.play_effect(fx.kind))
                self._fx_tasks.add(task)
                task.add_done_callback(self._fx_tasks.discard)
        elif isinstance(fx, Delay):
            await self.clock.sleep(fx.ms)
            if fx.then == Event.CONNECTED:
                self._last_heard_ms = self.clock.now_ms()
            return fx.then
        elif isinstance(fx, PollMute):
            await self.clock.sleep(fx.ms)
        elif isinstance(fx, StartCapture):
            return await self._do_capture()
        elif isinstance(fx, Transcribe):
            return await self._do_transcribe()
        elif isinstance(fx, AskCoach):
            return await self._do_ask(system=fx.system)
        elif isinstance(fx, PlaySpeech):
            return await self._do_speak()
        elif isinstance(fx, ReleaseResources):
            self._release()
        return None

    async def _do_capture(self) -> Event:
        if self.speaker.owner == "speech" or not self.mic.acquire("capture"):
            await self.clock.sleep(self.cfg.mute_poll_ms)
            return Event.CAPTURE_EMPTY
        self.turn_id += 1
        try:
            utt = await self.capture.begin_capture(lambda: self.active and not self.mic_muted)
        except MicUnavailable as e:
            self._log(RichLogger.error(str(e)))
            return Event.MIC_ERROR
        finally:
            self.mic.release("capture")

        self._log(RichLogger.capture_done(utt.duration_ms, len(utt.chunks), utt.stop_reason))
        if utt.stop_reason == STOP_CANCELLED or not utt.heard_voice:
            return Event.CAPTURE_EMPTY
        self._utterance = utt
        return Event.CAPTURE_OK

    async def _do_transcribe(self) -> Event:
        utt, self._utterance = self._utterance, None
        if utt is None:
            return Event.TRANSCRIPT_EMPTY
        t0 = self.clock.now_ms()
        try:
            text = await self.backend.transcribe(utt.to_wav(), "audio/wav")
        except Exception as e:
            self._log(RichLogger.reconnecting(f"transcribe: {e!r}"))
            return Event.TRANSCRIBE_ERROR
        finally:
            del utt

        text = (text or "").strip()
        if not text:
            return Event.TRANSCRIPT_EMPTY
        self._log(RichLogger.transcript(text, self.clock.now_ms() - t0))
        self._last_text = text
        self._last_heard_ms = self.clock.now_ms()
        self._nudges = 0
        self._bubble("you", text)
        return Event.TRANSCRIPT_OK

    async def _do_ask(self, system: bool = False) -> Event:
        req = TurnRequest(
            transcript="" if system else self._last_text,
            call_id=self.session.call_id,
            device_id=self.session.device_id,
            conversation_id=self.session.conversation_id,
            source=wire.SOURCE_VOICE,
            want_audio=self.cfg.want_audio and not self.speaker_muted,
            rolling_summary=self.rolling_summary,
        )
        if system:
            self._last_heard_ms = self.clock.now_ms()
            if self._nudges >= self.cfg.max_idle_nudges:
                req.system_event = wire.EVT_NO_RESPONSE_END
                self._end_after_reply = True
            else:
                req.system_event = wire.EVT_NO_RESPONSE_NUDGE
                self._nudges += 1

        t0 = self.clock.now_ms()
        try:
            reply = await self.backend.ask(req)
        except Exception as e:
            self._log(RichLogger.reconnecting(f"coach: {e!r}"))
            return Event.COACH_ERROR

        if reply.skipped_duplicate:
            self._log(RichLogger.dedupe_hit(req.fingerprint))
            return Event.COACH_SKIPPED
        if reply.conversation_id and not self.session.conversation_id:
            self.session.conversation_id = reply.conversation_id

        has_audio = bool(reply.audio_bytes) and not self.speaker_muted
        self._log(RichLogger.reply(reply.text, has_audio, self.clock.now_ms() - t0))
        if reply.text:
            self._bubble("coach", reply.text)
        if has_audio:
            self._reply = reply
            return Event.REPLY_AUDIO
        return Event.REPLY_TEXT_ONLY

    async def _do_speak(self) -> Event:
        reply, self._reply = self._reply, None
        if reply is None or not self.speaker.acquire("speech"):
            return Event.PLAYBACK_DONE
        try:
            await self.playback.play_speech(
                reply.audio_bytes or b"", reply.mime_type, self.cfg.playback_timeout_ms
            )
        finally:
            self.speaker.release("speech")
        return Event.PLAYBACK_DONE

    def _release(self) -> None:
        for task in list(self._fx_tasks):
            task.cancel()
        self._fx_tasks.clear()
        self.playback.stop()
        self._utterance = None
        self._reply = None

    # ------------- helpers -------------
    def _bubble(self, who: str, text: str) -> None:
        self.transcript.append((who, text))
        self._notify(who, text)

    def _notify(self, kind: str, text: str) -> None:
        if self.observer is None:
            return
        with contextlib.suppress(Exception):
            self.observer(kind, text)

    def _log(self, msg: str) -> None:
        session_info = RichLogger.session_info(self.session.call_id, self.turn_id, self.state.value)
        print(f"[{RichLogger._format_time()}] {session_info} {msg}")
