from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from .logging import RichLogger
from .settings import settings


class LLM:
    """
    Thin async wrapper over the OpenAI SDK (v1.x): chat completions and
    embeddings. Disabled when no OPENAI_API_KEY is configured.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None,
                 embed_model: Optional[str] = None):
        self.model = model or settings.llm_model
        self.embed_model = embed_model or settings.embed_model
        if client is None and settings.openai_api_key:
            client = AsyncOpenAI(api_key=settings.openai_api_key)
        self.client = client
        self.enabled = client is not None

        if settings.llm_log:
            if self.enabled:
                print(f"[{RichLogger._format_time()}] 🤖 LLM: enabled=True model={self.model}")
            else:
                print(f"[{RichLogger._format_time()}] 🤖 LLM: enabled=False (no OPENAI_API_KEY) model={self.model}")

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.7,
        frequency_penalty: float = 0.0,
        presence_penalty: float = 0.0,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not self.enabled:
            raise RuntimeError("Missing OPENAI_API_KEY")
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if frequency_penalty:
            kwargs["frequency_penalty"] = frequency_penalty
        if presence_penalty:
            kwargs["presence_penalty"] = presence_penalty
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        t0 = time.time()
        resp = await self.client.chat.completions.create(**kwargs)  # type: ignore[union-attr]
        dt = (time.time() - t0) * 1000
        choice = resp.choices[0]
        out = (choice.message.content or "").strip()
        if settings.llm_log:
            print(f"[{RichLogger._format_time()}] 🤖 LLM ← finish={choice.finish_reason} dt={dt:.0f}ms chars={len(out)}")
        return out

    async def embed(self, text: str) -> List[float]:
        if not self.enabled:
            raise RuntimeError("Missing OPENAI_API_KEY")
        resp = await self.client.embeddings.create(  # type: ignore[union-attr]
            model=self.embed_model,
            input=str(text or "")[:8000],
        )
        if not resp.data:
            raise RuntimeError("No embedding returned")
        return list(resp.data[0].embedding)
