from __future__ import annotations


class CallCoachError(Exception):
    """Base class for everything this package raises on purpose."""


class MicUnavailable(CallCoachError):
    """Microphone denied, missing, or produced no audio. Ends the call."""


class TranscriptionError(CallCoachError):
    """Transcription service failed (as opposed to hearing nothing)."""


class CoachRequestError(CallCoachError):
    """The coach gateway could not produce a reply for this turn."""


class CollaboratorTimeout(CallCoachError):
    def __init__(self, name: str, timeout_s: float):
        super().__init__(f"{name} timed out after {timeout_s:.1f}s")
        self.name = name
        self.timeout_s = timeout_s


class InvalidTurnRequest(CallCoachError):
    """Client sent something the gateway cannot act on (400)."""


class IllegalTransition(CallCoachError):
    def __init__(self, state: str, event: str):
        super().__init__(f"no transition from {state} on {event}")
        self.state = state
        self.event = event
