import asyncio
from typing import Any, Dict, List, Optional

import pytest

from callcoach import wire
from callcoach.errors import CollaboratorTimeout, InvalidTurnRequest
from callcoach.gateway import CoachGateway, GatewayConfig
from callcoach.metrics import read_turn_metrics
from callcoach.models import TurnRequest
from callcoach.prompt import FALLBACK_END, FALLBACK_GREETING, FALLBACK_NUDGE, PERSONA
from callcoach.registry import TurnRegistry

DRAFT = "Let's slow down and name what's hardest right now."


def kind_of(messages: List[Dict[str, str]]) -> str:
    first = messages[0]["content"]
    if first == PERSONA:
        return "reply"
    if first.startswith("You edit"):
        return "rewrite"
    if "Mode:" in messages[-1]["content"]:
        return "line"
    if "rolling summary" in first:
        return "summary"
    return "greeting"


class FakeLLM:
    def __init__(self, **responses: Any):
        self.responses: Dict[str, Any] = {"reply": DRAFT, "summary": "Caller feels stuck at work.", **responses}
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.delay = 0.0

    def count(self, kind: str) -> int:
        return sum(1 for k, _, _ in self.calls if k == kind)

    async def chat(self, messages, **kwargs) -> str:
        kind = kind_of(messages)
        self.calls.append((kind, messages, kwargs))
        if kind == "reply":
            self.started.set()
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
        await asyncio.sleep(0)
        out = self.responses.get(kind, "")
        if isinstance(out, Exception):
            raise out
        return out


class FakeKB:
    def __init__(self, context: Any = ""):
        self.context = context
        self.queries: List[tuple] = []

    async def retrieve(self, query: str, top_k: int = 10) -> str:
        self.queries.append((query, top_k))
        if isinstance(self.context, Exception):
            raise self.context
        return self.context


class FakeTTS:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.texts: List[str] = []

    async def synthesize(self, text: str):
        self.texts.append(text)
        if self.fail:
            raise RuntimeError("elevenlabs 503")
        return b"ID3fake-mp3", "audio/mpeg"


class FakeStore:
    def __init__(self, conversation=None, history=(), fail_insert: bool = False, enabled: bool = True):
        self.conversation = conversation
        self.history = list(history)
        self.fail_insert = fail_insert
        self.enabled = enabled
        self.call_rows: List[Dict[str, Any]] = []
        self.messages: List[tuple] = []
        self.summaries: List[str] = []
        self.titles: List[str] = []

    async def fetch_conversation(self, conversation_id):
        return self.conversation

    async def fetch_history(self, conversation_id, limit=12):
        return self.history[-limit:]

    def call_session_row(self, *, user_id, device_id, call_id, source, transcript, reply):
        return {"device_id": device_id, "call_id": call_id, "source": source,
                "input_transcript": transcript, "ai_text": reply}

    async def insert_call_session(self, row):
        if self.fail_insert:
            raise RuntimeError("supabase 500")
        self.call_rows.append(row)

    async def insert_messages(self, conversation, conversation_id, messages):
        self.messages.extend(messages)

    async def update_summary(self, conversation_id, summary):
        self.summaries.append(summary)

    async def maybe_update_title(self, conversation, conversation_id, first_text):
        self.titles.append(first_text)
        return True


class FakeTranscriber:
    def __init__(self, text: str = " I feel stuck at work "):
        self.text = text
        self.calls = 0

    async def transcribe(self, audio: bytes, mime: str, filename: Optional[str] = None) -> str:
        self.calls += 1
        return self.text


def make_gateway(tmp_path, llm=None, **kwargs):
    cfg_kwargs = {k: kwargs.pop(k) for k in list(kwargs) if k.endswith("_timeout_s")}
    cfg = GatewayConfig(metrics_file=str(tmp_path / "turns.ndjson"), **cfg_kwargs)
    return CoachGateway(llm=llm or FakeLLM(), cfg=cfg, **kwargs)


def turn(text="I feel stuck at work", **kw) -> TurnRequest:
    base = dict(transcript=text, call_id="call-1", device_id="dev-1", conversation_id="conv-1", want_audio=False)
    base.update(kw)
    return TurnRequest(**base)


# ---------------- dedupe & single-flight ----------------
@pytest.mark.asyncio
async def test_repeat_inside_window_is_skipped(tmp_path):
    llm = FakeLLM()
    gw = make_gateway(tmp_path, llm)

    first = await gw.handle(turn())
    second = await gw.handle(turn("  i feel STUCK at   work "))

    assert first.turn.text == DRAFT
    assert second.skipped_duplicate is True
    assert second.to_json()[wire.R_SKIPPED_DUPLICATE] is True
    assert second.to_json()[wire.R_TEXT] == ""
    assert llm.count("reply") == 1


@pytest.mark.asyncio
async def test_concurrent_duplicates_share_one_generation(tmp_path):
    llm = FakeLLM()
    llm.gate = asyncio.Event()
    gw = make_gateway(tmp_path, llm)

    a = asyncio.create_task(gw.handle(turn()))
    await asyncio.wait_for(llm.started.wait(), 1.0)
    b = asyncio.create_task(gw.handle(turn()))
    await asyncio.sleep(0.01)
    llm.gate.set()
    ra, rb = await asyncio.gather(a, b)

    assert llm.count("reply") == 1
    assert ra.joined is False and rb.joined is True
    assert rb.skipped_duplicate is False
    assert ra.turn is rb.turn
    assert gw.registry.flights == 0

    events = read_turn_metrics(gw.metrics_file)
    assert sum(1 for e in events if e.get("joined")) == 1


@pytest.mark.asyncio
async def test_other_conversation_is_not_a_duplicate(tmp_path):
    llm = FakeLLM()
    gw = make_gateway(tmp_path, llm)
    await gw.handle(turn())
    other = await gw.handle(turn(conversation_id="conv-2"))
    assert other.skipped_duplicate is False
    assert llm.count("reply") == 2


@pytest.mark.asyncio
async def test_repeat_after_window_is_answered(tmp_path):
    clock = {"t": 100.0}
    registry = TurnRegistry(dedupe_window_s=2.5, clock=lambda: clock["t"])
    llm = FakeLLM()
    gw = make_gateway(tmp_path, llm, registry=registry)
    await gw.handle(turn())
    clock["t"] += 3.0
    again = await gw.handle(turn())
    assert again.skipped_duplicate is False
    assert llm.count("reply") == 2


@pytest.mark.asyncio
async def test_llm_timeout_releases_the_utterance(tmp_path):
    llm = FakeLLM()
    llm.delay = 1.0
    gw = make_gateway(tmp_path, llm, llm_timeout_s=0.05)

    with pytest.raises(CollaboratorTimeout) as ei:
        await gw.handle(turn())
    assert ei.value.name == "llm"
    assert gw.registry.record(turn().session_key) is None
    assert gw.registry.flights == 0

    llm.delay = 0.0
    retry = await gw.handle(turn())
    assert retry.skipped_duplicate is False
    assert retry.turn.text == DRAFT


@pytest.mark.asyncio
async def test_llm_failure_propagates(tmp_path):
    gw = make_gateway(tmp_path, FakeLLM(reply=RuntimeError("openai 500")))
    with pytest.raises(RuntimeError):
        await gw.handle(turn())
    assert gw.registry.record(turn().session_key) is None


@pytest.mark.asyncio
async def test_blank_transcript_is_invalid(tmp_path):
    gw = make_gateway(tmp_path)
    with pytest.raises(InvalidTurnRequest):
        await gw.handle(turn("   "))


# ---------------- reply shaping ----------------
@pytest.mark.asyncio
async def test_reply_is_sanitized_for_speech(tmp_path):
    gw = make_gateway(tmp_path, FakeLLM(reply="**Breathe.** Then\n\n# name   _one_ thing `now`"))
    result = await gw.handle(turn())
    assert result.turn.text == "Breathe. Then name one thing now"


@pytest.mark.asyncio
async def test_long_reply_is_clamped(tmp_path):
    gw = make_gateway(tmp_path, FakeLLM(reply="word " * 600))
    result = await gw.handle(turn())
    assert len(result.turn.text) <= 1200
    assert result.turn.text.endswith("…")


@pytest.mark.asyncio
async def test_knowledge_triggers_rewrite(tmp_path):
    kb = FakeKB("Values-based action: small steps toward what matters.")
    llm = FakeLLM(rewrite="Take one values-based action today. What would that be?")
    gw = make_gateway(tmp_path, llm, knowledge=kb)

    result = await gw.handle(turn(" ".join(f"w{i}" for i in range(30))))

    assert result.turn.text == "Take one values-based action today. What would that be?"
    assert result.turn.used_knowledge is True
    assert result.to_json()[wire.R_USED_KNOWLEDGE] is True
    query, top_k = kb.queries[0]
    assert len(query.split()) == 18 and top_k == 10
    reply_messages = [m for k, m, _ in llm.calls if k == "reply"][0]
    assert "Values-based action" in reply_messages[1]["content"]


@pytest.mark.asyncio
async def test_rewrite_failure_keeps_the_draft(tmp_path):
    llm = FakeLLM(rewrite=RuntimeError("rewrite exploded"))
    gw = make_gateway(tmp_path, llm, knowledge=FakeKB("Some passage."))
    result = await gw.handle(turn())
    assert result.turn.text == DRAFT
    assert result.turn.used_knowledge is True


@pytest.mark.asyncio
async def test_no_knowledge_means_no_rewrite(tmp_path):
    llm = FakeLLM()
    gw = make_gateway(tmp_path, llm, knowledge=FakeKB(""))
    result = await gw.handle(turn())
    assert llm.count("rewrite") == 0
    assert result.turn.used_knowledge is False


@pytest.mark.asyncio
async def test_retrieval_failure_degrades(tmp_path):
    llm = FakeLLM()
    gw = make_gateway(tmp_path, llm, knowledge=FakeKB(RuntimeError("pinecone down")))
    result = await gw.handle(turn())
    assert result.turn.text == DRAFT
    assert result.turn.used_knowledge is False
    reply_messages = [m for k, m, _ in llm.calls if k == "reply"][0]
    assert "No relevant knowledge base passages" in reply_messages[1]["content"]


@pytest.mark.asyncio
async def test_tts_audio_is_attached(tmp_path):
    tts = FakeTTS()
    gw = make_gateway(tmp_path, tts=tts)
    body = (await gw.handle(turn(want_audio=True))).to_json()
    assert body[wire.R_AUDIO_B64]
    assert body[wire.R_MIME] == "audio/mpeg"
    assert tts.texts == [DRAFT]


@pytest.mark.asyncio
async def test_tts_failure_returns_text_only(tmp_path):
    gw = make_gateway(tmp_path, tts=FakeTTS(fail=True))
    result = await gw.handle(turn(want_audio=True))
    body = result.to_json()
    assert body[wire.R_TEXT] == DRAFT
    assert wire.R_AUDIO_B64 not in body


@pytest.mark.asyncio
async def test_text_only_request_skips_tts(tmp_path):
    tts = FakeTTS()
    gw = make_gateway(tmp_path, tts=tts)
    await gw.handle(turn(want_audio=False))
    assert tts.texts == []


# ---------------- system lines ----------------
@pytest.mark.asyncio
async def test_nudge_avoids_recent_lines_and_bypasses_dedupe(tmp_path):
    llm = FakeLLM(line="Still with me? Take your time.")
    gw = make_gateway(tmp_path, llm)
    req = turn("", system_event=wire.EVT_NO_RESPONSE_NUDGE)

    first = await gw.handle(req)
    second = await gw.handle(req)

    assert first.turn.text == "Still with me? Take your time."
    assert second.skipped_duplicate is False
    assert first.to_json()[wire.F_SYSTEM_EVENT] == wire.EVT_NO_RESPONSE_NUDGE
    second_prompt = [m for k, m, _ in llm.calls if k == "line"][1]
    assert "- Still with me? Take your time." in second_prompt[-1]["content"]
    assert "Mode: nudge" in second_prompt[-1]["content"]
    assert gw.registry.recent_variants(("call-1", "dev-1"), "nudge") == ["Still with me? Take your time."] * 2


@pytest.mark.asyncio
async def test_empty_system_line_falls_back(tmp_path):
    gw = make_gateway(tmp_path, FakeLLM(line=""))
    nudge = await gw.handle(turn("", system_event=wire.EVT_NO_RESPONSE_NUDGE))
    end = await gw.handle(turn("", system_event=wire.EVT_NO_RESPONSE_END))
    assert nudge.turn.text == FALLBACK_NUDGE
    assert end.turn.text == FALLBACK_END


@pytest.mark.asyncio
async def test_system_line_survives_llm_failure(tmp_path):
    gw = make_gateway(tmp_path, FakeLLM(line=RuntimeError("boom")))
    result = await gw.handle(turn("", system_event=wire.EVT_NO_RESPONSE_END))
    assert result.turn.text == FALLBACK_END


@pytest.mark.asyncio
async def test_system_say_is_spoken_verbatim_but_clamped(tmp_path):
    llm = FakeLLM()
    gw = make_gateway(tmp_path, llm)
    short = await gw.handle(turn("", system_say="One moment while I think."))
    long = await gw.handle(turn("", system_say="x" * 500))
    assert short.turn.text == "One moment while I think."
    assert len(long.turn.text) <= 220
    assert llm.calls == []


# ---------------- persistence ----------------
@pytest.mark.asyncio
async def test_turn_is_persisted_in_background(tmp_path):
    store = FakeStore(
        conversation={"id": "conv-1", "user_id": "u-1", "summary": "Has been stressed lately.", "title": ""},
        history=[{"role": "user", "content": "earlier worry"}, {"role": "assistant", "content": "earlier answer"}],
    )
    llm = FakeLLM()
    gw = make_gateway(tmp_path, llm, store=store)

    result = await gw.handle(turn())
    await gw.drain()

    memory = [m for k, m, _ in llm.calls if k == "reply"][0][2]["content"]
    assert "Has been stressed lately." in memory
    assert "User: earlier worry" in memory

    assert store.call_rows[0]["input_transcript"] == "I feel stuck at work"
    assert store.call_rows[0]["ai_text"] == result.turn.text
    assert store.messages == [("user", "I feel stuck at work"), ("assistant", DRAFT)]
    assert store.summaries == ["Caller feels stuck at work."]
    assert store.titles == ["I feel stuck at work"]


@pytest.mark.asyncio
async def test_store_failure_never_reaches_the_caller(tmp_path):
    store = FakeStore(conversation={"id": "conv-1", "user_id": "u-1"}, fail_insert=True)
    gw = make_gateway(tmp_path, store=store)
    result = await gw.handle(turn())
    await gw.drain()
    assert result.turn.text == DRAFT
    assert store.messages == []


@pytest.mark.asyncio
async def test_disabled_store_schedules_nothing(tmp_path):
    store = FakeStore(enabled=False)
    gw = make_gateway(tmp_path, store=store)
    await gw.handle(turn())
    assert not gw._background
    assert store.call_rows == []


@pytest.mark.asyncio
async def test_system_line_is_logged_when_enabled(tmp_path):
    store = FakeStore(conversation={"id": "conv-1", "user_id": "u-1"})
    gw = make_gateway(tmp_path, FakeLLM(line="Are you still there?"), store=store)
    gw.cfg.log_system_events = True
    await gw.handle(turn("", system_event=wire.EVT_NO_RESPONSE_NUDGE))
    await gw.drain()
    assert store.call_rows[0]["input_transcript"] == f"[system_event] {wire.EVT_NO_RESPONSE_NUDGE}"
    assert store.messages == [("assistant", "Are you still there?")]


# ---------------- metrics / transcribe / greeting ----------------
@pytest.mark.asyncio
async def test_turn_metrics_are_written(tmp_path):
    gw = make_gateway(tmp_path)
    await gw.handle(turn())
    await gw.handle(turn())

    events = read_turn_metrics(gw.metrics_file)
    assert len(events) == 2
    full, skipped = events
    assert full["call_id"] == "call-1"
    for key in ("rt_ms", "retrieval_ms", "llm_ms", "rewrite_ms", "tts_ms"):
        assert isinstance(full[key], int)
    assert skipped["skipped"] == 1


@pytest.mark.asyncio
async def test_transcribe_skips_tiny_blobs(tmp_path):
    asr = FakeTranscriber()
    gw = make_gateway(tmp_path, transcriber=asr)
    out = await gw.transcribe(b"\x00" * 100, "audio/webm")
    assert out == {"text": "", "skipped": True, "reason": "audio_too_small", "bytes": 100}
    assert asr.calls == 0

    out = await gw.transcribe(b"\x00" * 20000, "audio/wav", "utterance.wav")
    assert out == {"text": "I feel stuck at work"}
    assert asr.calls == 1


@pytest.mark.asyncio
async def test_greeting_falls_back_and_speaks(tmp_path):
    tts = FakeTTS()
    gw = make_gateway(tmp_path, FakeLLM(greeting=RuntimeError("no key")), tts=tts)
    hello = await gw.greeting("Sam")
    assert hello.text == FALLBACK_GREETING
    assert hello.audio_bytes == b"ID3fake-mp3"


def test_gateway_config_validation():
    with pytest.raises(ValueError):
        GatewayConfig(top_k=0)
    with pytest.raises(ValueError):
        GatewayConfig(llm_timeout_s=0)
