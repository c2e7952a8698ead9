"""
Rich logging utilities for the call client and the coach gateway.
Provides structured, emoji-enhanced logging for better debugging and monitoring.
"""

import time


class RichLogger:
    """Enhanced logging with emojis and structured output for call flow."""

    @staticmethod
    def _format_time() -> str:
        return time.strftime("%H:%M:%S", time.localtime())

    @staticmethod
    def _format_duration(ms: float) -> str:
        if ms < 1000:
            return f"{ms:.0f}ms"
        return f"{ms/1000:.1f}s"

    # ---- call client ----
    @staticmethod
    def session_info(call_id: str, turn_id: int, state: str) -> str:
        return f"🎯 [{(call_id or '--------')[:8]}] T{turn_id} {state}"

    @staticmethod
    def state_transition(old_state: str, new_state: str, reason: str = "") -> str:
        return f"🔄 {old_state} → {new_state}" + (f" ({reason})" if reason else "")

    @staticmethod
    def capture_done(duration_ms: float, chunks: int, reason: str) -> str:
        return f"🎙️  Captured {RichLogger._format_duration(duration_ms)} ({chunks} chunks, {reason})"

    @staticmethod
    def transcript(text: str, latency_ms: float) -> str:
        return f"✅ Heard: '{text}' ({RichLogger._format_duration(latency_ms)})"

    @staticmethod
    def reply(text: str, has_audio: bool, latency_ms: float) -> str:
        tag = "🔊" if has_audio else "📝"
        return f"💬 Coach {tag}: '{text[:80]}' ({RichLogger._format_duration(latency_ms)})"

    @staticmethod
    def effect(kind: str) -> str:
        return f"🔔 Effect: {kind}"

    @staticmethod
    def guard_busy(role: str, owner: str) -> str:
        return f"⛔ {role} busy (owner={owner}), skipping"

    @staticmethod
    def reconnecting(reason: str) -> str:
        return f"📶 Reconnecting: {reason}"

    @staticmethod
    def call_start() -> str:
        return "🚀 Call Start"

    @staticmethod
    def call_end(reason: str) -> str:
        return f"🛑 Call End ({reason})"

    # ---- gateway ----
    @staticmethod
    def request_info(call_id: str | None, route: str) -> str:
        return f"🧭 [{(call_id or 'no_call')[:8]}] {route}"

    @staticmethod
    def dedupe_hit(fingerprint: str) -> str:
        return f"♻️  Duplicate turn {fingerprint[:10]} skipped"

    @staticmethod
    def flight_join(fingerprint: str) -> str:
        return f"🔗 Joined in-flight turn {fingerprint[:10]}"

    @staticmethod
    def retrieval(chars: int, duration_ms: float) -> str:
        return f"📚 Knowledge: {chars} chars ({RichLogger._format_duration(duration_ms)})"

    @staticmethod
    def planning_response(text: str) -> str:
        return f"💬 Response: '{text[:100]}'"

    @staticmethod
    def tts_complete(total_bytes: int, duration_ms: float) -> str:
        return f"✅ TTS Complete: {total_bytes}B ({RichLogger._format_duration(duration_ms)})"

    @staticmethod
    def degraded(component: str, detail: str) -> str:
        return f"⚠️  {component} degraded: {detail}"

    @staticmethod
    def sweep(evicted: int) -> str:
        return f"🧹 Registry sweep evicted {evicted}"

    @staticmethod
    def error(error_msg: str) -> str:
        return f"❌ Error: {error_msg}"

    @staticmethod
    def timing(component: str, duration_ms: float) -> str:
        return f"⏱️  {component}: {RichLogger._format_duration(duration_ms)}"

    @staticmethod
    def turn_summary(total_ms: float, llm_ms: float, rewrite_ms: float, tts_ms: float) -> str:
        return (
            f"⏱️  Total: {RichLogger._format_duration(total_ms)} | LLM: {RichLogger._format_duration(llm_ms)}"
            f" | Rewrite: {RichLogger._format_duration(rewrite_ms)} | TTS: {RichLogger._format_duration(tts_ms)}"
        )

