import asyncio
import math
import struct
import time
from typing import List, Tuple

import numpy as np
import pytest

from callcoach import wire
from callcoach.models import Utterance
from callcoach.playback import PlaybackConfig, PlaybackManager, build_effects, decode_audio


class FakeSink:
    def __init__(self, fail: bool = False):
        self.calls: List[Tuple[int, int]] = []
        self.fail = fail

    async def play(self, samples, sample_rate, stop):
        self.calls.append((int(samples.size), sample_rate))
        if self.fail:
            raise RuntimeError("device gone")
        await asyncio.sleep(0)
        return not stop.is_set()


class BlockingSink:
    """Plays until stopped or released by the test."""

    def __init__(self):
        self.calls: List[Tuple[int, int]] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def play(self, samples, sample_rate, stop):
        self.calls.append((int(samples.size), sample_rate))
        if samples.size and np.any(samples):
            self.started.set()
        while not stop.is_set() and not self.release.is_set():
            await asyncio.sleep(0.001)
        return not stop.is_set()


def wav_clip(ms: int = 200, rate: int = 16000) -> bytes:
    n = int(rate * ms / 1000)
    vals = [int(0.3 * math.sin(2 * math.pi * 440.0 * i / rate) * 32767) for i in range(n)]
    pcm = struct.pack("<" + "h" * n, *vals)
    utt = Utterance(chunks=[pcm], started_at=time.time(), last_voice_activity_at=time.time(),
                    duration_ms=ms, stop_reason="silence", sample_rate=rate)
    return utt.to_wav()


def test_effects_are_bounded_float32():
    fx = build_effects(24000, 0.5)
    assert set(fx) == {wire.FX_RING, wire.FX_CONNECT, wire.FX_RECONNECT, wire.FX_END}
    for samples in fx.values():
        assert samples.dtype == np.float32
        assert samples.size > 0
        assert float(np.max(np.abs(samples))) <= 0.5 + 1e-6


def test_decode_wav_to_mono_float32():
    samples, rate = decode_audio(wav_clip(100))
    assert rate == 16000
    assert samples.dtype == np.float32
    assert samples.ndim == 1
    assert samples.size == 1600


def test_config_validation():
    with pytest.raises(ValueError):
        PlaybackConfig(effect_volume=0.0)
    with pytest.raises(ValueError):
        PlaybackConfig(speech_timeout_ms=10)


@pytest.mark.asyncio
async def test_unlock_plays_one_silent_clip():
    sink = FakeSink()
    pb = PlaybackManager(sink)
    assert await pb.unlock() is True
    assert await pb.unlock() is True
    assert len(sink.calls) == 1
    assert sink.calls[0] == (1200, 24000)


@pytest.mark.asyncio
async def test_unlock_failure_is_reported_not_raised():
    pb = PlaybackManager(FakeSink(fail=True))
    assert await pb.unlock() is False
    assert pb.unlocked is False


@pytest.mark.asyncio
async def test_effect_plays_after_implicit_unlock():
    sink = FakeSink()
    pb = PlaybackManager(sink)
    assert await pb.play_effect(wire.FX_CONNECT) is True
    assert len(sink.calls) == 2
    assert pb.is_playing is False


@pytest.mark.asyncio
async def test_muted_effect_is_skipped():
    sink = FakeSink()
    pb = PlaybackManager(sink)
    pb.set_muted(True)
    assert await pb.play_effect(wire.FX_RING) is False
    assert sink.calls == []


@pytest.mark.asyncio
async def test_unknown_effect_raises():
    pb = PlaybackManager(FakeSink())
    with pytest.raises(ValueError):
        await pb.play_effect("fanfare")


@pytest.mark.asyncio
async def test_same_effect_restarts_instead_of_overlapping():
    sink = BlockingSink()
    pb = PlaybackManager(sink)
    await pb.unlock()

    first = asyncio.create_task(pb.play_effect(wire.FX_RING))
    await asyncio.wait_for(sink.started.wait(), 1.0)
    second = asyncio.create_task(pb.play_effect(wire.FX_RING))

    assert await asyncio.wait_for(first, 1.0) is False
    await asyncio.sleep(0.01)
    assert pb.playing_kind == wire.FX_RING
    sink.release.set()
    assert await asyncio.wait_for(second, 1.0) is True
    # unlock + two ring starts, never two at once
    assert len(sink.calls) == 3


@pytest.mark.asyncio
async def test_speech_plays_to_end():
    sink = FakeSink()
    pb = PlaybackManager(sink)
    assert await pb.play_speech(wav_clip(), "audio/wav") is True
    assert sink.calls[-1] == (3200, 16000)
    assert pb.is_playing is False


@pytest.mark.asyncio
async def test_garbage_audio_resolves_false():
    sink = FakeSink()
    pb = PlaybackManager(sink)
    assert await pb.play_speech(b"not really audio at all", "audio/mpeg") is False
    assert await pb.play_speech(b"", "audio/mpeg") is False


@pytest.mark.asyncio
async def test_sink_fault_resolves_false():
    pb = PlaybackManager(FakeSink(fail=True))
    pb.unlocked = True
    assert await pb.play_speech(wav_clip(), "audio/wav") is False


@pytest.mark.asyncio
async def test_muting_mid_speech_stops_it():
    sink = BlockingSink()
    pb = PlaybackManager(sink)
    task = asyncio.create_task(pb.play_speech(wav_clip(), "audio/wav"))
    await asyncio.wait_for(sink.started.wait(), 1.0)
    assert pb.playing_kind == "speech"

    pb.set_muted(True)
    assert await asyncio.wait_for(task, 1.0) is False
    assert pb.is_playing is False


@pytest.mark.asyncio
async def test_speech_timeout_resolves_false():
    sink = BlockingSink()
    pb = PlaybackManager(sink)
    t0 = time.monotonic()
    assert await pb.play_speech(wav_clip(), "audio/wav", timeout_ms=50) is False
    assert time.monotonic() - t0 < 1.0
    assert pb.is_playing is False
