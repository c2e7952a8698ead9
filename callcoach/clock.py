from __future__ import annotations

import asyncio
import time


class MonotonicClock:
    """Tick source for capture loops and controller delays."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(max(0.0, ms) / 1000.0)
