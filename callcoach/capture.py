from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from collections import deque
from typing import AsyncContextManager, Callable, Optional, Protocol

from .clock import MonotonicClock
from .errors import MicUnavailable
from .logging import RichLogger
from .models import Utterance
from .settings import settings
from .vad import SilenceConfig, SilenceDetector, SpeechGate

STOP_CANCELLED = "cancelled"


class MicrophoneSource(Protocol):
    sample_rate: int

    def read_available(self) -> bytes:
        """Drain PCM16 mono captured since the previous call."""
        ...


MicFactory = Callable[[], AsyncContextManager[MicrophoneSource]]


class SoundDeviceMicrophone:
    """
    Microphone via a sounddevice RawInputStream.

    The PortAudio callback runs on its own thread and only appends to a deque;
    the capture loop drains it once per tick.
    """

    def __init__(self, sample_rate: int = settings.sample_rate, frame_ms: int = settings.frame_ms,
                 device: Optional[int | str] = None):
        self.sample_rate = sample_rate
        self.blocksize = int(sample_rate * frame_ms / 1000)
        self.device = device
        self._frames: deque[bytes] = deque()
        self._lock = threading.Lock()
        self._stream = None

    def _callback(self, indata, frames, time_info, status):
        if status:
            print(f"[{RichLogger._format_time()}] 🎙️  input status: {status}")
        with self._lock:
            self._frames.append(bytes(indata))

    async def __aenter__(self) -> "SoundDeviceMicrophone":
        import sounddevice as sd

        try:
            self._stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            raise MicUnavailable(f"microphone open failed: {e!r}") from e
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            with contextlib.suppress(Exception):
                stream.stop()
            with contextlib.suppress(Exception):
                stream.close()
        with self._lock:
            self._frames.clear()

    def read_available(self) -> bytes:
        with self._lock:
            if not self._frames:
                return b""
            out = b"".join(self._frames)
            self._frames.clear()
        return out


class AudioCapture:
    """
    Records one utterance: opens the mic, ticks the silence detector, and
    always releases the mic on the way out.
    """

    def __init__(
        self,
        mic_factory: MicFactory,
        cfg: Optional[SilenceConfig] = None,
        clock: Optional[MonotonicClock] = None,
        sample_rate: int = settings.sample_rate,
    ):
        self.mic_factory = mic_factory
        self.cfg = cfg or SilenceConfig()
        self.clock = clock or MonotonicClock()
        self.sample_rate = sample_rate
        self.gate = (
            SpeechGate(sample_rate=sample_rate, aggressiveness=self.cfg.webrtc_aggressiveness)
            if self.cfg.use_webrtc
            else None
        )
        self.last_detector: Optional[SilenceDetector] = None

    async def begin_capture(self, should_continue: Callable[[], bool] = lambda: True) -> Utterance:
        """
        Capture until silence, the ceiling, or `should_continue()` turns False.
        Raises MicUnavailable when the mic cannot be opened or yields nothing.
        """
        det = SilenceDetector(self.cfg)
        self.last_detector = det
        chunks: list[bytes] = []
        reason: Optional[str] = None
        wall_start = time.time()
        t0 = self.clock.now_ms()
        now = t0

        try:
            async with self.mic_factory() as mic:
                t0 = self.clock.now_ms()
                now = t0
                det.reset(t0)
                while reason is None:
                    # last tick is cut short so the ceiling is never overshot
                    left = self.cfg.max_turn_ms - (self.clock.now_ms() - t0)
                    await self.clock.sleep(max(0.0, min(self.cfg.tick_ms, left)))
                    if not should_continue():
                        reason = STOP_CANCELLED
                        break
                    data = mic.read_available()
                    if data:
                        chunks.append(data)
                    level = det.measure(data)
                    speech = self.gate.is_speech(data) if self.gate else None
                    now = self.clock.now_ms()
                    reason = det.update(level, now, speech)
        except (MicUnavailable, asyncio.CancelledError):
            raise
        except Exception as e:
            raise MicUnavailable(f"capture failed: {e!r}") from e

        utt = Utterance(
            chunks=chunks,
            started_at=wall_start,
            last_voice_activity_at=wall_start + (det.last_voice_at_ms - t0) / 1000.0,
            duration_ms=now - t0,
            stop_reason=reason,
            heard_voice=det.heard_voice,
            sample_rate=self.sample_rate,
        )
        if reason != STOP_CANCELLED and utt.is_empty():
            raise MicUnavailable("no audio captured")
        return utt
