#!/usr/bin/env python3
"""Pipeline counters and stage timers written as JSONL.

Callers pass short identifiers only (repository ids, stage names, codes);
long strings are clipped.
"""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, List

from configs.config import Config

_LOCK = threading.Lock()


def _path() -> Path:
    root = Path(Config.METRICS_ROOT)
    root.mkdir(parents=True, exist_ok=True)
    return root / "metrics.log"


def incr(name: str, value: Any = 1, **kw) -> None:
    if not Config.METRICS_ENABLED:
        return
    rec: Dict[str, Any] = {"ts": int(time.time()), "metric": name, "value": value}
    for k, v in kw.items():
        if isinstance(v, str) and len(v) > 200:
            rec[k] = v[:200] + "..."
        else:
            rec[k] = v
    line = json.dumps(rec, separators=(",", ":"), default=str) + "\n"
    with _LOCK:
        with open(_path(), "a", encoding="utf-8") as f:
            f.write(line)


def read_metrics(name: str = "") -> List[Dict[str, Any]]:
    """Return recorded metric lines, optionally filtered by metric name prefix."""
    p = _path()
    if not p.exists():
        return []
    out = []
    for line in p.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        rec = json.loads(line)
        if rec.get("metric", "").startswith(name):
            out.append(rec)
    return out


class Timer:
    """Context manager recording `<name>.latency_s` and `<name>.error` on exit."""

    def __init__(self, name: str, **kw):
        self.name = name
        self.kw = kw
        self._t0 = 0.0

    def __enter__(self):
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        dt = time.perf_counter() - self._t0
        incr(name=f"{self.name}.latency_s", value=round(dt, 6), **self.kw)
        if exc_type is not None:
            incr(name=f"{self.name}.error", code=getattr(exc, "code", exc_type.__name__), **self.kw)
        return False
