from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import numpy as np
import orjson

from .logging import RichLogger
from .settings import settings

TURN_EVENT = "turn_metrics"
METRIC_KEYS = ("rt_ms", "retrieval_ms", "llm_ms", "rewrite_ms", "tts_ms")


def latency_stats(values: List[float]) -> Dict[str, int]:
    """count/p50/p95 with linear interpolation between ranks."""
    if not values:
        return {"count": 0, "p50": 0, "p95": 0}
    p50, p95 = np.percentile(np.asarray(values, dtype=np.float64), [50, 95])
    return {"count": len(values), "p50": int(round(float(p50))), "p95": int(round(float(p95)))}


class TurnLog:
    """
    Append-only NDJSON file of per-turn events.

    One line per gateway turn; duplicates are logged with `skipped: 1` so they
    count toward traffic but never toward latency.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def append(self, event: Dict[str, Any]) -> None:
        try:
            with self.path.open("ab") as f:
                f.write(orjson.dumps(event) + b"\n")
        except OSError as e:
            print(f"[{RichLogger._format_time()}] {RichLogger.degraded('metrics', repr(e))}")

    def events(self) -> List[Dict]:
        return list(_turn_events(self.path))

    def clear(self) -> None:
        self.path.write_bytes(b"")

    def summary(self) -> Dict:
        return summarize_file(self.path)


def _turn_events(path: Path) -> Iterator[Dict]:
    try:
        raw = path.read_bytes()
    except OSError:
        return
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            obj = orjson.loads(line)
        except orjson.JSONDecodeError:
            continue
        if isinstance(obj, dict) and obj.get("evt") == TURN_EVENT:
            yield obj


def read_turn_metrics(path: str | Path) -> List[Dict]:
    return list(_turn_events(Path(path)))


def summarize_turns(turns: List[Dict]) -> Dict[str, Dict]:
    return {
        k: latency_stats([t[k] for t in turns if isinstance(t.get(k), (int, float))])
        for k in METRIC_KEYS
    }


def summarize_file(path: Optional[str | Path] = None) -> Dict:
    events = read_turn_metrics(path or settings.metrics_file)
    timed: List[Dict] = []
    skipped = joined = used_knowledge = 0
    for e in events:
        if e.get("skipped"):
            skipped += 1
            continue
        timed.append(e)
        joined += int(e.get("joined") or 0)
        used_knowledge += bool(e.get("used_knowledge"))
    return {
        "turns": len(timed),
        "used_knowledge": used_knowledge,
        "joined": joined,
        "skipped": skipped,
        "metrics": summarize_turns(timed),
    }
