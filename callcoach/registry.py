"""
In-process dedupe and single-flight bookkeeping for the coach gateway.

One TurnRegistry is owned by the app and injected into the gateway, so tests
get a fresh one each time. All mutation happens on the event loop thread with
no await between check and insert, which is what makes get-or-create atomic.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from .logging import RichLogger
from .models import SessionKey

FlightKey = Tuple[str, str, str, str]
CallKey = Tuple[str, str]


@dataclass
class DedupeRecord:
    fingerprint: str
    observed_at: float


@dataclass
class _Variants:
    lines: Dict[str, Deque[str]] = field(default_factory=dict)
    touched_at: float = 0.0


class TurnRegistry:
    def __init__(
        self,
        dedupe_window_s: float = 2.5,
        record_ttl_s: float = 60.0,
        variant_ttl_s: float = 3600.0,
        max_variants: int = 8,
        clock: Callable[[], float] = time.monotonic,
    ):
        if dedupe_window_s <= 0:
            raise ValueError(f"dedupe_window_s must be > 0, got {dedupe_window_s}")
        if record_ttl_s < dedupe_window_s:
            raise ValueError("record_ttl_s must be >= dedupe_window_s")
        self.dedupe_window_s = dedupe_window_s
        self.record_ttl_s = record_ttl_s
        self.variant_ttl_s = variant_ttl_s
        self.max_variants = max_variants
        self.clock = clock

        self._flights: Dict[FlightKey, asyncio.Future] = {}
        self._records: Dict[SessionKey, DedupeRecord] = {}
        self._variants: Dict[CallKey, _Variants] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ---- single-flight ----
    def in_flight(self, key: FlightKey) -> Optional[asyncio.Future]:
        fut = self._flights.get(key)
        if fut is not None and fut.done():
            return None
        return fut

    def begin(self, key: FlightKey) -> Tuple[asyncio.Future, bool]:
        """Get-or-create the pending result for `key`. True means the caller leads."""
        fut = self.in_flight(key)
        if fut is not None:
            return fut, False
        fut = asyncio.get_running_loop().create_future()
        self._flights[key] = fut
        return fut, True

    def settle(self, key: FlightKey, result: Any = None, exc: Optional[BaseException] = None) -> None:
        fut = self._flights.pop(key, None)
        if fut is None or fut.done():
            return
        if isinstance(exc, asyncio.CancelledError):
            fut.cancel()
        elif exc is not None:
            fut.set_exception(exc)
            # the leader re-raises on its own; followers still see it via await
            fut.exception()
        else:
            fut.set_result(result)

    async def run(self, key: FlightKey, factory: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Lead or join the flight for `key`. Returns (result, joined)."""
        fut, leader = self.begin(key)
        if not leader:
            return await asyncio.shield(fut), True
        try:
            result = await factory()
        except BaseException as e:
            self.settle(key, exc=e)
            raise
        self.settle(key, result=result)
        return result, False

    @property
    def flights(self) -> int:
        return len(self._flights)

    # ---- dedupe ----
    def is_duplicate(self, session_key: SessionKey, fingerprint: str, now: Optional[float] = None) -> bool:
        rec = self._records.get(session_key)
        if rec is None or rec.fingerprint != fingerprint:
            return False
        now = self.clock() if now is None else now
        return (now - rec.observed_at) < self.dedupe_window_s

    def remember(self, session_key: SessionKey, fingerprint: str, now: Optional[float] = None) -> None:
        now = self.clock() if now is None else now
        self._records[session_key] = DedupeRecord(fingerprint, now)

    def forget(self, session_key: SessionKey, fingerprint: str) -> None:
        rec = self._records.get(session_key)
        if rec is not None and rec.fingerprint == fingerprint:
            del self._records[session_key]

    def record(self, session_key: SessionKey) -> Optional[DedupeRecord]:
        return self._records.get(session_key)

    # ---- no-response variant memory ----
    def recent_variants(self, call_key: CallKey, kind: str) -> List[str]:
        mem = self._variants.get(call_key)
        if mem is None:
            return []
        return list(mem.lines.get(kind, ()))

    def remember_variant(self, call_key: CallKey, kind: str, line: str, now: Optional[float] = None) -> None:
        mem = self._variants.setdefault(call_key, _Variants())
        lines = mem.lines.setdefault(kind, deque(maxlen=self.max_variants))
        lines.append(line)
        mem.touched_at = self.clock() if now is None else now

    # ---- eviction ----
    def sweep(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        stale = [k for k, r in self._records.items() if now - r.observed_at > self.record_ttl_s]
        for k in stale:
            del self._records[k]
        idle = [k for k, v in self._variants.items() if now - v.touched_at > self.variant_ttl_s]
        for k in idle:
            del self._variants[k]
        done = [k for k, f in self._flights.items() if f.done()]
        for k in done:
            del self._flights[k]
        return len(stale) + len(idle) + len(done)

    def start_sweeper(self, interval_s: float) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval_s))

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            evicted = self.sweep()
            if evicted:
                print(f"[{RichLogger._format_time()}] {RichLogger.sweep(evicted)}")

    def __len__(self) -> int:
        return len(self._records)
