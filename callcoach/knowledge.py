from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .logging import RichLogger
from .settings import settings

Embedder = Callable[[str], Awaitable[List[float]]]

CONTEXT_MAX_CHARS = 4500
MAX_PASSAGES = 12
_TEXT_FIELDS = ("text", "chunk", "content", "body")


def join_matches(matches: List[Dict[str, Any]], max_chars: int = CONTEXT_MAX_CHARS) -> str:
    """Best-scoring passages first, separated by rules, capped at `max_chars`."""
    ranked = sorted(matches, key=lambda m: m.get("score") or 0.0, reverse=True)
    chunks: List[str] = []
    for m in ranked:
        md = m.get("metadata") or {}
        text = next((md[f] for f in _TEXT_FIELDS if md.get(f)), "")
        if text:
            chunks.append(str(text))
        if len(chunks) >= MAX_PASSAGES:
            break
    return "\n\n---\n\n".join(chunks)[:max_chars]


class KnowledgeBase:
    """
    Vector search over a Pinecone index's data-plane REST API.
    Empty string when unconfigured or nothing matched; errors propagate
    so the caller decides how to degrade.
    """

    def __init__(
        self,
        embed: Embedder,
        api_key: Optional[str] = None,
        index_host: Optional[str] = None,
        namespace: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ):
        self.embed = embed
        self.api_key = api_key if api_key is not None else settings.pinecone_api_key
        host = index_host if index_host is not None else settings.pinecone_index_host
        if host and not host.startswith("http"):
            host = f"https://{host}"
        self.index_host = host.rstrip("/") if host else None
        self.namespace = namespace if namespace is not None else settings.pinecone_namespace
        self.http = http
        self.timeout_s = timeout_s

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.index_host)

    async def _query(self, vector: List[float], top_k: int) -> Dict[str, Any]:
        body: Dict[str, Any] = {"vector": vector, "topK": top_k, "includeMetadata": True}
        if self.namespace:
            body["namespace"] = self.namespace
        headers = {"Api-Key": self.api_key or "", "Content-Type": "application/json"}
        url = f"{self.index_host}/query"
        if self.http is not None:
            response = await self.http.post(url, headers=headers, json=body)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.post(url, headers=headers, json=body)
        response.raise_for_status()
        return response.json()

    async def retrieve(self, query: str, top_k: int = 10) -> str:
        if not self.enabled or not (query or "").strip():
            return ""
        t0 = time.time()
        vector = await self.embed(query)
        data = await self._query(vector, top_k)
        context = join_matches(data.get("matches") or [])
        print(f"[{RichLogger._format_time()}] {RichLogger.retrieval(len(context), (time.time() - t0) * 1000)}")
        return context
