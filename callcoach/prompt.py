from __future__ import annotations

import re
from typing import Any, Dict, List, Sequence

Message = Dict[str, str]

PERSONA = (
    "You are a warm, direct life coach on a live phone call.\n"
    "- Speak in plain sentences that sound natural out loud.\n"
    "- No markdown, bullet points, lists, emojis or headings.\n"
    "- Name what you hear, give one clear next move, and end with one short question.\n"
    "- Keep it under about 120 words unless the caller asks for more.\n"
    "- Never repeat an answer you already gave in this conversation; find fresh wording.\n"
)

EMPTY_KNOWLEDGE = "No relevant knowledge base passages were retrieved for this turn."

KB_QUERY_WORDS = 18
REPLY_MAX_CHARS = 1200
SYSTEM_SAY_MAX_CHARS = 220
NUDGE_MAX_CHARS = 170
END_MAX_CHARS = 210

FALLBACK_NUDGE = "I'm here with you. If you're still there, go ahead and tell me what's happening."
FALLBACK_END = "I haven't heard from you, so I'm going to end this call. Call me again when you're ready."
FALLBACK_GREETING = "Hey, it's good to hear from you. What's on your mind today?"

_MARKUP_RE = re.compile(r"[#*_>`]")
_WS_RE = re.compile(r"\s+")


def sanitize(text: str, max_chars: int = REPLY_MAX_CHARS) -> str:
    """Strip markup, collapse whitespace and clamp for speech synthesis."""
    s = _WS_RE.sub(" ", _MARKUP_RE.sub("", str(text or ""))).strip()
    if len(s) <= max_chars:
        return s
    return s[: max_chars - 1].strip() + "…"


def kb_query(transcript: str) -> str:
    return " ".join(str(transcript or "").split()[:KB_QUERY_WORDS])


def _history_snippet(history: Sequence[Dict[str, Any]]) -> str:
    if not history:
        return "—"
    return "\n".join(
        f"{'User' if m.get('role') == 'user' else 'Coach'}: {m.get('content') or ''}" for m in history
    )


def build_messages(
    transcript: str,
    knowledge: str,
    history: Sequence[Dict[str, Any]] = (),
    summary: str = "",
    rolling_summary: str = "",
) -> List[Message]:
    conversation_summary = summary.strip() or "—"
    if rolling_summary:
        combined = f"Conversation summary:\n{conversation_summary}\n\nRecent call summary:\n{rolling_summary}"
    else:
        combined = conversation_summary

    kb_instruction = (
        "KNOWLEDGE BASE USAGE\n\n"
        "If the context below is relevant, use it to ground your answer and stay consistent with its language.\n"
        "Synthesize; do not paste large blocks. If it is empty or unrelated, answer from sound coaching principles.\n"
        "Never mention retrieval or a knowledge base.\n\n"
        f"KNOWLEDGE BASE CONTEXT:\n{knowledge or EMPTY_KNOWLEDGE}"
    )
    memory_instruction = (
        "Conversation memory context for this thread.\n\n"
        f"Rolling summary:\n{combined}\n\n"
        f"Recent history (oldest to newest):\n{_history_snippet(history)}\n\n"
        "Use this context to stay consistent. Do not read this back to the user."
    )
    return [
        {"role": "system", "content": PERSONA},
        {"role": "system", "content": kb_instruction},
        {"role": "system", "content": memory_instruction},
        {"role": "user", "content": transcript},
    ]


def rewrite_messages(draft: str, knowledge: str) -> List[Message]:
    """Second pass: keep the draft's meaning, borrow the knowledge base's vocabulary."""
    sys = (
        "You edit a coach's spoken reply so its wording matches the terms and phrases used in the reference text.\n"
        "Keep the meaning, length and tone. Do not add new advice. Plain text only, no markdown.\n"
        "Return only the edited reply."
    )
    user = f"Reference text:\n{knowledge}\n\nDraft reply:\n{draft}\n\nEdited reply:"
    return [{"role": "system", "content": sys}, {"role": "user", "content": user}]


def no_response_messages(kind: str, recent: Sequence[str]) -> List[Message]:
    mode = "end" if kind == "end" else "nudge"
    sys = (
        "You are a warm life coach on a phone call. Output ONE short, speech-friendly line only.\n"
        "No bullet points, markdown, quotes or emojis.\n"
        "If mode is nudge: gently check in and invite the caller to speak.\n"
        "If mode is end: say you haven't heard them, you'll end the call, and they can call again.\n"
        "Do not reuse or closely mirror any of the recent lines provided.\n"
        "Nudge: 12 to 22 words. End: 14 to 26 words."
    )
    avoid = "\n".join(f"- {s}" for s in recent) if recent else "(none)"
    user = f"Mode: {mode}\nRecent lines to avoid:\n{avoid}\n\nWrite ONE line now:"
    return [{"role": "system", "content": sys}, {"role": "user", "content": user}]


def greeting_messages(name: str = "") -> List[Message]:
    who = f"The caller's name is {name}." if name else "You don't know the caller's name."
    sys = (
        "You are a warm life coach picking up a phone call. Write a 2 to 3 sentence greeting "
        "that sounds natural out loud and ends by inviting the caller to share what's on their mind. "
        "Plain text only."
    )
    return [{"role": "system", "content": sys}, {"role": "user", "content": who}]


def summary_messages(previous: str, messages: Sequence[Dict[str, Any]]) -> List[Message]:
    sys = (
        "Write a short rolling summary (2 to 4 sentences, max 500 characters) of an ongoing coaching "
        "conversation. Capture situation, patterns, and goals. Do NOT mention that this is a summary."
    )
    user = (
        f"Previous summary (may be empty):\n{previous.strip() or '(none)'}\n\n"
        f"Recent messages (oldest to newest):\n{_history_snippet(messages)}\n\n"
        "Update the summary now, staying under 500 characters."
    )
    return [{"role": "system", "content": sys}, {"role": "user", "content": user}]


def make_title(text: str, max_len: int = 80) -> str:
    clean = _WS_RE.sub(" ", str(text or "")).strip()
    if not clean:
        return "New Conversation"
    if len(clean) > max_len:
        clean = clean[: max_len - 1] + "…"
    return clean[0].upper() + clean[1:]
