import io
import wave

from callcoach import wire
from callcoach.models import (
    AssistantTurn,
    CoachReply,
    GatewayResult,
    TurnRequest,
    Utterance,
    fingerprint,
)
from callcoach.phone import load_device_id


def test_fingerprint_ignores_case_and_spacing():
    assert fingerprint("I feel  stuck\n") == fingerprint("i feel stuck")
    assert fingerprint("I feel stuck") != fingerprint("I feel stuck.")
    assert len(fingerprint("")) == 64


def test_session_key_fills_missing_parts():
    req = TurnRequest(transcript="hi", call_id="c")
    assert req.session_key == ("c", "no_device", "no_conversation")
    assert req.is_system is False
    assert TurnRequest(transcript="", system_event=wire.EVT_NO_RESPONSE_NUDGE).is_system


def test_from_payload_defaults():
    req = TurnRequest.from_payload({"utterance": "  hello  ", "source": "CHAT"})
    assert req.transcript == "hello"
    assert req.source == "chat"
    assert req.want_audio is True
    assert TurnRequest.from_payload({"transcript": "x", "source": "sms"}).source == "voice"
    assert TurnRequest.from_payload({"transcript": "x", "want_audio": False}).want_audio is False


def test_utterance_to_wav():
    utt = Utterance(chunks=[b"\x01\x00" * 160, b"\x02\x00" * 160], started_at=0.0,
                    last_voice_activity_at=0.0, duration_ms=20, stop_reason="silence")
    with wave.open(io.BytesIO(utt.to_wav()), "rb") as w:
        assert w.getnchannels() == 1
        assert w.getsampwidth() == 2
        assert w.getframerate() == 16000
        assert w.getnframes() == 320
    assert not utt.is_empty()
    assert Utterance(chunks=[b"\x00\x00"], started_at=0, last_voice_activity_at=0,
                     duration_ms=0, stop_reason="silence").is_empty()


def test_skipped_result_has_empty_text():
    body = GatewayResult(turn=None, conversation_id="v", call_id="c", skipped_duplicate=True).to_json()
    assert body[wire.R_SKIPPED_DUPLICATE] is True
    assert body[wire.R_TEXT] == ""
    assert wire.R_AUDIO_B64 not in body


def test_result_with_audio_defaults_mime():
    body = GatewayResult(turn=AssistantTurn(text="ok", audio_bytes=b"mp3")).to_json()
    assert body[wire.R_MIME] == "audio/mpeg"
    assert CoachReply.from_json(body).audio_bytes == b"mp3"


def test_reply_falls_back_to_text_field():
    reply = CoachReply.from_json({wire.R_TEXT: " hi "})
    assert reply.text == "hi"
    assert reply.skipped_duplicate is False


def test_device_id_is_created_once(tmp_path):
    path = str(tmp_path / "nested" / "device_id")
    first = load_device_id(path)
    assert first
    assert load_device_id(path) == first
