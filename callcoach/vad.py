from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import webrtcvad

STOP_SILENCE = "silence"
STOP_MAX_TURN = "max_turn"


@dataclass
class SilenceConfig:
    tick_ms: int = 70                 # analysis interval
    window_samples: int = 512         # analyser window (most recent samples per tick)
    silence_threshold: float = 0.02   # normalized 0..1 level counted as voice
    min_record_ms: int = 900          # talk floor before silence may end the turn
    silence_hold_ms: int = 1100       # silence needed after last voice
    max_turn_ms: int = 30000          # hard ceiling

    # Adaptive noise floor (threshold follows the room)
    adaptive: bool = False
    noise_update_ms: int = 250
    threshold_multiplier: float = 2.2
    threshold_min: float = 0.018
    threshold_max: float = 0.085

    # Optional WebRTC VAD gate on top of the energy threshold
    use_webrtc: bool = False
    webrtc_aggressiveness: int = 2

    def __post_init__(self):
        if self.tick_ms < 10:
            raise ValueError(f"tick_ms must be >= 10ms, got {self.tick_ms}")
        if self.window_samples < 64:
            raise ValueError(f"window_samples must be >= 64, got {self.window_samples}")
        if not 0.0 < self.silence_threshold < 1.0:
            raise ValueError(f"silence_threshold must be in (0, 1), got {self.silence_threshold}")
        if self.silence_hold_ms < self.tick_ms:
            raise ValueError("silence_hold_ms must cover at least one tick")
        if self.max_turn_ms <= self.min_record_ms:
            raise ValueError("max_turn_ms must exceed min_record_ms")
        if self.webrtc_aggressiveness not in (0, 1, 2, 3):
            raise ValueError("webrtc_aggressiveness must be 0..3")


def rms16(pcm: bytes) -> float:
    """Normalized RMS (0..1) of little-endian PCM16 mono."""
    if len(pcm) < 2:
        return 0.0
    x = np.frombuffer(pcm[: len(pcm) - (len(pcm) % 2)], dtype="<i2").astype(np.float32) / 32768.0
    return float(np.sqrt(np.mean(x * x)))


class SilenceDetector:
    """
    Decides when an utterance is over, one tick at a time.

    Usage:
        det = SilenceDetector(cfg)
        det.reset(now_ms)
        level = det.measure(pcm_tail)          # RMS of the newest window
        reason = det.update(level, now_ms)     # None while still capturing

    Stops when the talk floor has passed AND silence has held long enough,
    or unconditionally at the ceiling.
    """

    def __init__(self, cfg: SilenceConfig | None = None):
        self.cfg = cfg or SilenceConfig()
        self.reset(0.0)

    def reset(self, now_ms: float) -> None:
        self.started_at_ms = now_ms
        self.last_voice_at_ms = now_ms
        self.heard_voice = False
        self.noise_floor = 0.01
        self._noise_samples = 0
        self._last_noise_update_ms = now_ms

    @property
    def threshold(self) -> float:
        if not self.cfg.adaptive:
            return self.cfg.silence_threshold
        thr = self.noise_floor * self.cfg.threshold_multiplier
        return max(self.cfg.threshold_min, min(self.cfg.threshold_max, thr))

    def measure(self, pcm_tail: bytes) -> float:
        window = pcm_tail[-self.cfg.window_samples * 2:]
        return rms16(window)

    def _update_noise_floor(self, level: float, now_ms: float) -> None:
        if now_ms - self._last_noise_update_ms < self.cfg.noise_update_ms:
            return
        self._last_noise_update_ms = now_ms
        capped = min(level, self.noise_floor * 3 + 0.01)
        if self._noise_samples < 1:
            self.noise_floor = capped
            self._noise_samples = 1
            return
        alpha = 0.10
        self.noise_floor = self.noise_floor * (1 - alpha) + capped * alpha
        self._noise_samples += 1
        self.noise_floor = max(0.004, min(0.05, self.noise_floor))

    def update(self, level: float, now_ms: float, speech_frame: Optional[bool] = None) -> Optional[str]:
        """
        Feed one tick. `speech_frame` is the WebRTC verdict when that gate is on
        (None means "no opinion").
        """
        is_voice = level > self.threshold and speech_frame is not False
        if is_voice:
            self.last_voice_at_ms = now_ms
            self.heard_voice = True
        elif self.cfg.adaptive:
            self._update_noise_floor(level, now_ms)

        elapsed = now_ms - self.started_at_ms
        if elapsed >= self.cfg.max_turn_ms:
            return STOP_MAX_TURN
        if elapsed > self.cfg.min_record_ms and (now_ms - self.last_voice_at_ms) > self.cfg.silence_hold_ms:
            return STOP_SILENCE
        return None


class SpeechGate:
    """
    Thin wrapper over WebRTC VAD for fixed-size PCM16 frames.

    Frames must be 10/20/30 ms at 8/16/32/48 kHz. Pure tones (ring effects
    leaking into the mic) are rejected.
    """

    def __init__(self, sample_rate: int = 16000, frame_ms: int = 20, aggressiveness: int = 2):
        if sample_rate not in (8000, 16000, 32000, 48000):
            raise ValueError("WebRTC VAD supports 8000/16000/32000/48000 Hz only")
        if frame_ms not in (10, 20, 30):
            raise ValueError("WebRTC VAD supports frame sizes of 10, 20, or 30 ms")
        self.sample_rate = sample_rate
        self._vad = webrtcvad.Vad(aggressiveness)
        self.frame_bytes = int(sample_rate * frame_ms / 1000) * 2

    def is_speech(self, pcm: bytes) -> Optional[bool]:
        """Verdict on the newest complete frame in `pcm`; None if too short."""
        if len(pcm) < self.frame_bytes:
            return None
        frame = pcm[-self.frame_bytes:]
        try:
            speech = self._vad.is_speech(frame, sample_rate=self.sample_rate)
        except Exception:
            speech = False
        if speech and self._looks_like_pure_tone(frame):
            return False
        return speech

    @staticmethod
    def _looks_like_pure_tone(frame: bytes) -> bool:
        x = np.frombuffer(frame, dtype="<i2").astype(np.float32) / 32768.0
        rms = float(np.sqrt(np.mean(x * x)) + 1e-9)
        if rms > 0.35:  # loud, don't suppress
            return False
        x = x - np.mean(x)
        mag = np.abs(np.fft.rfft(x))
        if mag.size > 1:
            mag[0] = 0.0
        total = float(np.sum(mag) + 1e-9)
        return float(np.max(mag)) / total > 0.90 and rms < 0.25
