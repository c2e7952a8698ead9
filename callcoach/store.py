from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import orjson

from .logging import RichLogger
from .prompt import make_title
from .settings import settings

SENTINEL_UUID = "00000000-0000-0000-0000-000000000000"
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)


def is_uuid(v: Optional[str]) -> bool:
    return bool(_UUID_RE.match(v or ""))


def pick_user_uuid(user_id: Optional[str], override: Optional[str] = None) -> str:
    if override and is_uuid(override):
        return override
    if is_uuid(user_id):
        return str(user_id)
    return SENTINEL_UUID


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StoreError(RuntimeError):
    pass


class ConversationStore:
    """Conversations, messages and call log rows over Supabase's PostgREST API."""

    def __init__(
        self,
        url: Optional[str] = None,
        service_key: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ):
        base = url if url is not None else settings.supabase_url
        self.rest = f"{base.rstrip('/')}/rest/v1" if base else None
        self.service_key = service_key if service_key is not None else settings.supabase_service_role_key
        self.http = http
        self.timeout_s = timeout_s

    @property
    def enabled(self) -> bool:
        return bool(self.rest and self.service_key)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> Any:
        if not self.enabled:
            return None
        headers = {"apikey": self.service_key or "", "Authorization": f"Bearer {self.service_key}"}
        content = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            headers["Prefer"] = "return=minimal"
            content = orjson.dumps(body)
        url = f"{self.rest}/{path}"
        if self.http is not None:
            response = await self.http.request(method, url, params=params, headers=headers, content=content)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.request(method, url, params=params, headers=headers, content=content)
        if response.status_code >= 400:
            raise StoreError(f"Supabase {method} {path} {response.status_code}: {response.text[:200]}")
        if not response.content:
            return None
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError:
            return None

    # ---- reads ----
    async def fetch_conversation(self, conversation_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not conversation_id:
            return None
        rows = await self._request("GET", "conversations", params={
            "select": "id,user_id,title,summary,updated_at,last_updated_at",
            "id": f"eq.{conversation_id}",
            "limit": "1",
        })
        if not isinstance(rows, list) or not rows:
            return None
        return rows[0]

    async def fetch_history(self, conversation_id: Optional[str], limit: int = 12) -> List[Dict[str, Any]]:
        """Newest `limit` messages, returned oldest first."""
        if not conversation_id:
            return []
        rows = await self._request("GET", "conversation_messages", params={
            "select": "role,content,created_at",
            "conversation_id": f"eq.{conversation_id}",
            "order": "created_at.desc",
            "limit": str(limit),
        })
        if not isinstance(rows, list):
            return []
        return sorted(rows, key=lambda r: r.get("created_at") or "")

    # ---- writes ----
    async def insert_messages(
        self, conversation: Dict[str, Any], conversation_id: str, messages: Sequence[Tuple[str, str]]
    ) -> None:
        if not conversation.get("user_id"):
            return
        now = _now_iso()
        rows = [
            {
                "conversation_id": conversation_id,
                "user_id": conversation["user_id"],
                "role": role,
                "content": (content or "").strip(),
                "created_at": now,
            }
            for role, content in messages
        ]
        await self._request("POST", "conversation_messages", body=rows)
        await self.touch_conversation(conversation_id)

    async def touch_conversation(self, conversation_id: str, **fields: Any) -> None:
        now = _now_iso()
        patch = {"updated_at": now, "last_updated_at": now, **fields}
        await self._request("PATCH", "conversations", params={"id": f"eq.{conversation_id}"}, body=patch)

    async def update_summary(self, conversation_id: str, summary: str) -> None:
        await self._request(
            "PATCH", "conversations",
            params={"id": f"eq.{conversation_id}"},
            body={"summary": summary[:500], "last_updated_at": _now_iso()},
        )

    async def maybe_update_title(self, conversation: Dict[str, Any], conversation_id: str, first_text: str) -> bool:
        current = str(conversation.get("title") or "").strip()
        if (current and current != "New Conversation") or not first_text:
            return False
        await self.touch_conversation(conversation_id, title=make_title(first_text))
        return True

    async def insert_call_session(self, row: Dict[str, Any]) -> None:
        """Log one call turn; retried without timestamps for schemas that reject them."""
        try:
            await self._request("POST", "call_sessions", body=[row])
            return
        except StoreError:
            pass
        clone = {k: v for k, v in row.items() if k not in ("created_at", "timestamp")}
        try:
            await self._request("POST", "call_sessions", body=[clone])
        except StoreError as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('call_sessions', str(e))}")

    def call_session_row(
        self, *, user_id: str, device_id: Optional[str], call_id: Optional[str], source: str,
        transcript: str, reply: str,
    ) -> Dict[str, Any]:
        return {
            "user_id_uuid": pick_user_uuid(user_id, settings.user_uuid_override),
            "device_id": device_id,
            "call_id": call_id,
            "source": source,
            "input_transcript": transcript,
            "ai_text": reply,
            "created_at": _now_iso(),
        }
