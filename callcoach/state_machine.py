"""
Call lifecycle as a pure transition table.

`transition(state, event)` returns the next state plus a tuple of effects.
Effects are plain data; the TurnController executes them. Nothing here
touches audio, the network, or the clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from . import wire
from .errors import IllegalTransition


class CallState(str, Enum):
    IDLE = "IDLE"
    RINGING = "RINGING"
    LISTENING = "LISTENING"
    CAPTURING = "CAPTURING"
    TRANSCRIBING = "TRANSCRIBING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"
    RECONNECTING = "RECONNECTING"
    ENDED = "ENDED"


class Event(str, Enum):
    START = "START"
    CONNECTED = "CONNECTED"
    MIC_MUTED = "MIC_MUTED"
    CAPTURE_BEGIN = "CAPTURE_BEGIN"
    CAPTURE_OK = "CAPTURE_OK"
    CAPTURE_EMPTY = "CAPTURE_EMPTY"
    MIC_ERROR = "MIC_ERROR"
    TRANSCRIPT_OK = "TRANSCRIPT_OK"
    TRANSCRIPT_EMPTY = "TRANSCRIPT_EMPTY"
    TRANSCRIBE_ERROR = "TRANSCRIBE_ERROR"
    REPLY_AUDIO = "REPLY_AUDIO"
    REPLY_TEXT_ONLY = "REPLY_TEXT_ONLY"
    COACH_ERROR = "COACH_ERROR"
    COACH_SKIPPED = "COACH_SKIPPED"
    PLAYBACK_DONE = "PLAYBACK_DONE"
    RETRY = "RETRY"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    HANGUP = "HANGUP"


# ---- effects ----
@dataclass(frozen=True)
class UnlockAudio:
    pass


@dataclass(frozen=True)
class PlayEffect:
    kind: str
    wait: bool = True


@dataclass(frozen=True)
class SetStatus:
    text: str


@dataclass(frozen=True)
class StartCapture:
    pass


@dataclass(frozen=True)
class Transcribe:
    pass


@dataclass(frozen=True)
class AskCoach:
    system: bool = False


@dataclass(frozen=True)
class PlaySpeech:
    pass


@dataclass(frozen=True)
class Delay:
    ms: int
    then: Event


@dataclass(frozen=True)
class PollMute:
    ms: int


@dataclass(frozen=True)
class ReleaseResources:
    pass


@dataclass(frozen=True)
class StartTimer:
    pass


@dataclass(frozen=True)
class StopTimer:
    pass


Effect = object


@dataclass(frozen=True)
class Transition:
    next_state: CallState
    effects: Tuple[Effect, ...] = ()


@dataclass(frozen=True)
class Timings:
    connect_delay_ms: int = 900
    mute_poll_ms: int = 250
    retry_delay_ms: int = 800


DEFAULT_TIMINGS = Timings()

S = CallState
E = Event


def _reconnect(t: Timings) -> Transition:
    return Transition(S.RECONNECTING, (
        PlayEffect(wire.FX_RECONNECT, wait=False),
        SetStatus("Reconnecting…"),
        Delay(t.retry_delay_ms, E.RETRY),
    ))


def _table(t: Timings) -> Dict[Tuple[CallState, Event], Transition]:
    return {
        (S.IDLE, E.START): Transition(S.RINGING, (
            UnlockAudio(),
            StartTimer(),
            SetStatus("Ringing…"),
            PlayEffect(wire.FX_RING, wait=False),
            Delay(t.connect_delay_ms, E.CONNECTED),
        )),
        (S.RINGING, E.CONNECTED): Transition(S.LISTENING, (
            PlayEffect(wire.FX_CONNECT),
            SetStatus("Connected"),
        )),
        (S.LISTENING, E.MIC_MUTED): Transition(S.LISTENING, (
            SetStatus("Mic muted"),
            PollMute(t.mute_poll_ms),
        )),
        (S.LISTENING, E.CAPTURE_BEGIN): Transition(S.CAPTURING, (
            SetStatus("Listening…"),
            StartCapture(),
        )),
        (S.LISTENING, E.IDLE_TIMEOUT): Transition(S.THINKING, (
            AskCoach(system=True),
        )),
        (S.CAPTURING, E.CAPTURE_OK): Transition(S.TRANSCRIBING, (
            SetStatus("Transcribing…"),
            Transcribe(),
        )),
        (S.CAPTURING, E.CAPTURE_EMPTY): Transition(S.LISTENING),
        (S.TRANSCRIBING, E.TRANSCRIPT_EMPTY): Transition(S.LISTENING),
        (S.TRANSCRIBING, E.TRANSCRIBE_ERROR): _reconnect(t),
        (S.TRANSCRIBING, E.TRANSCRIPT_OK): Transition(S.THINKING, (
            SetStatus("Thinking…"),
            AskCoach(),
        )),
        (S.THINKING, E.REPLY_AUDIO): Transition(S.SPEAKING, (
            SetStatus("Speaking…"),
            PlaySpeech(),
        )),
        (S.THINKING, E.REPLY_TEXT_ONLY): Transition(S.LISTENING),
        (S.THINKING, E.COACH_SKIPPED): Transition(S.LISTENING),
        (S.THINKING, E.COACH_ERROR): _reconnect(t),
        (S.SPEAKING, E.PLAYBACK_DONE): Transition(S.LISTENING),
        (S.RECONNECTING, E.RETRY): Transition(S.LISTENING),
    }


_END_EFFECTS = (
    ReleaseResources(),
    StopTimer(),
    PlayEffect(wire.FX_END),
    SetStatus("Call ended"),
)

_TABLES: Dict[Timings, Dict[Tuple[CallState, Event], Transition]] = {}


def transition(state: CallState, event: Event, timings: Optional[Timings] = None) -> Transition:
    """Next state and effects for `event` in `state`; raises IllegalTransition."""
    if state == S.ENDED:
        if event in (E.HANGUP, E.MIC_ERROR):
            return Transition(S.ENDED)
        raise IllegalTransition(state.value, event.value)
    if event == E.HANGUP:
        return Transition(S.ENDED, _END_EFFECTS)
    if event == E.MIC_ERROR and state == S.CAPTURING:
        return Transition(S.ENDED, (SetStatus("Microphone unavailable"),) + _END_EFFECTS)

    t = timings or DEFAULT_TIMINGS
    table = _TABLES.get(t)
    if table is None:
        table = _TABLES[t] = _table(t)
    try:
        return table[(state, event)]
    except KeyError:
        raise IllegalTransition(state.value, event.value) from None
