#!/usr/bin/env python3
"""Append-only audit logs for draft approval transitions."""

from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

_LOCK = threading.Lock()


def _audit_path(repository_id: str, root: str) -> Path:
    return Path(root) / f"{repository_id.replace('/', '#')}.audit.log"


def audit_transition(
    repository_id: str,
    draft_id: str,
    action: str,
    result: str,
    *,
    actor: Optional[str] = None,
    details: Optional[Dict] = None,
    root: str = ".cache/release_notes/audit",
) -> None:
    """Append a single JSON line per transition attempt.

    Fields: ts, repository, draft, action, actor, result, details
    """
    path = _audit_path(repository_id, root)
    path.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "ts": int(time.time()),
        "repository": repository_id,
        "draft": draft_id,
        "action": action,
        "actor": actor or "",
        "result": result,
        "details": details or {},
    }
    line = json.dumps(record, separators=(",", ":"), default=str) + "\n"
    with _LOCK:
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())


def read_audit(repository_id: str, root: str = ".cache/release_notes/audit") -> List[Dict]:
    path = _audit_path(repository_id, root)
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
