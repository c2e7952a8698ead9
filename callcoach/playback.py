from __future__ import annotations

import asyncio
import contextlib
import io
import math
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import numpy as np

from . import wire
from .logging import RichLogger


class AudioSink(Protocol):
    async def play(self, samples: np.ndarray, sample_rate: int, stop: asyncio.Event) -> bool:
        """Play mono float32 samples; True if played to the end, False if stopped."""
        ...


@dataclass
class PlaybackConfig:
    effect_rate: int = 24000
    effect_volume: float = 0.5
    unlock_ms: int = 50
    speech_timeout_ms: int = 35000

    def __post_init__(self):
        if not 0.0 < self.effect_volume <= 1.0:
            raise ValueError(f"effect_volume must be in (0, 1], got {self.effect_volume}")
        if self.speech_timeout_ms < 1000:
            raise ValueError(f"speech_timeout_ms must be >= 1000ms, got {self.speech_timeout_ms}")


def _linear_resample_f32(x: np.ndarray, src_hz: int, dst_hz: int) -> np.ndarray:
    if src_hz == dst_hz or x.size == 0:
        return x
    n_out = int(math.floor(x.size * dst_hz / float(src_hz)))
    xp = np.arange(x.size, dtype=np.float64)
    new_pos = np.linspace(0, x.size - 1, num=n_out, dtype=np.float64)
    return np.interp(new_pos, xp, x.astype(np.float32)).astype(np.float32)


def _tone(freqs: tuple[float, ...], ms: int, rate: int, volume: float) -> np.ndarray:
    n = int(rate * ms / 1000)
    t = np.arange(n, dtype=np.float32) / rate
    y = sum(np.sin(2 * np.pi * f * t) for f in freqs) / max(1, len(freqs))
    # 5 ms fade in/out to avoid clicks
    fade = min(n // 2, int(rate * 0.005))
    if fade:
        ramp = np.linspace(0.0, 1.0, fade, dtype=np.float32)
        y[:fade] *= ramp
        y[-fade:] *= ramp[::-1]
    return (y * volume).astype(np.float32)


def _gap(ms: int, rate: int) -> np.ndarray:
    return np.zeros(int(rate * ms / 1000), dtype=np.float32)


def build_effects(rate: int, volume: float) -> Dict[str, np.ndarray]:
    ring = np.concatenate([
        _tone((440.0, 480.0), 400, rate, volume), _gap(200, rate),
        _tone((440.0, 480.0), 400, rate, volume), _gap(300, rate),
    ])
    connect = np.concatenate([_tone((660.0,), 120, rate, volume), _tone((880.0,), 160, rate, volume)])
    reconnect = np.concatenate([
        _tone((520.0,), 90, rate, volume), _gap(70, rate),
        _tone((520.0,), 90, rate, volume), _gap(70, rate),
        _tone((520.0,), 90, rate, volume),
    ])
    end = np.concatenate([_tone((880.0,), 140, rate, volume), _tone((440.0,), 220, rate, volume)])
    return {
        wire.FX_RING: ring,
        wire.FX_CONNECT: connect,
        wire.FX_RECONNECT: reconnect,
        wire.FX_END: end,
    }


def decode_audio(data: bytes) -> tuple[np.ndarray, int]:
    """Decode an encoded clip (mp3/wav/ogg...) to mono float32."""
    import soundfile as sf

    samples, rate = sf.read(io.BytesIO(data), dtype="float32")
    if samples.ndim > 1:
        samples = samples[:, 0]
    return np.ascontiguousarray(samples, dtype=np.float32), int(rate)


class _Playing:
    def __init__(self, kind: str):
        self.kind = kind
        self.stop = asyncio.Event()


class PlaybackManager:
    """
    The single output channel. Every clip (effects and AI speech) goes through
    here; a new clip supersedes whatever is playing.
    """

    def __init__(self, sink: AudioSink, cfg: Optional[PlaybackConfig] = None):
        self.sink = sink
        self.cfg = cfg or PlaybackConfig()
        self.effects = build_effects(self.cfg.effect_rate, self.cfg.effect_volume)
        self.muted = False
        self.unlocked = False
        self._lock = asyncio.Lock()
        self._current: Optional[_Playing] = None

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    @property
    def playing_kind(self) -> Optional[str]:
        return self._current.kind if self._current else None

    async def unlock(self) -> bool:
        """Prime the output device with a silent clip, once."""
        if self.unlocked:
            return True
        silent = _gap(self.cfg.unlock_ms, self.cfg.effect_rate)
        try:
            await self.sink.play(silent, self.cfg.effect_rate, asyncio.Event())
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('audio unlock', repr(e))}")
            return False
        self.unlocked = True
        return True

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
        if muted:
            self.stop()

    def stop(self) -> None:
        if self._current is not None:
            self._current.stop.set()

    async def _play(self, kind: str, samples: np.ndarray, rate: int) -> bool:
        if not self.unlocked:
            await self.unlock()
        # supersede whatever is on the channel (same kind restarts from zero)
        self.stop()
        playing = _Playing(kind)
        async with self._lock:
            if self.muted or playing.stop.is_set():
                return False
            self._current = playing
            try:
                return await self.sink.play(samples, rate, playing.stop)
            finally:
                if self._current is playing:
                    self._current = None

    async def play_effect(self, kind: str) -> bool:
        if self.muted:
            return False
        samples = self.effects.get(kind)
        if samples is None:
            raise ValueError(f"unknown effect: {kind}")
        print(f"[{RichLogger._format_time()}] {RichLogger.effect(kind)}")
        try:
            return await self._play(kind, samples, self.cfg.effect_rate)
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('effect ' + kind, repr(e))}")
            return False

    async def play_speech(self, data: bytes, mime: str = "audio/mpeg", timeout_ms: Optional[int] = None) -> bool:
        """
        Play AI speech to its end, the timeout, or the first fault.
        Never raises (cancellation aside); False means it did not finish cleanly.
        """
        if self.muted or not data:
            return False
        timeout_ms = timeout_ms or self.cfg.speech_timeout_ms
        samples: Optional[np.ndarray] = None
        try:
            loop = asyncio.get_running_loop()
            samples, rate = await loop.run_in_executor(None, decode_audio, data)
            return await asyncio.wait_for(self._play("speech", samples, rate), timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('playback', f'timeout after {timeout_ms}ms ({mime})')}")
            return False
        except Exception as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('playback', f'{mime}: {e!r}')}")
            return False
        finally:
            if self._current is not None and self._current.kind == "speech":
                self._current.stop.set()
            del samples


class SoundDeviceSink:
    """Speaker via one lazily opened sounddevice OutputStream."""

    def __init__(self, sample_rate: int = 24000, block: int = 2048, device: Optional[int | str] = None):
        self.sample_rate = sample_rate
        self.block = block
        self.device = device
        self._stream = None

    def _ensure_stream(self):
        if self._stream is None:
            import sounddevice as sd

            self._stream = sd.OutputStream(
                samplerate=self.sample_rate, channels=1, dtype="float32", device=self.device
            )
            self._stream.start()
        return self._stream

    async def play(self, samples: np.ndarray, sample_rate: int, stop: asyncio.Event) -> bool:
        loop = asyncio.get_running_loop()
        stream = self._ensure_stream()
        audio = _linear_resample_f32(samples, sample_rate, self.sample_rate)
        for i in range(0, audio.size, self.block):
            if stop.is_set():
                return False
            chunk = audio[i:i + self.block]
            await loop.run_in_executor(None, stream.write, chunk.reshape(-1, 1))
        return not stop.is_set()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            with contextlib.suppress(Exception):
                stream.stop()
            with contextlib.suppress(Exception):
                stream.close()
