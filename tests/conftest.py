"""Shared fixtures: temporary store, fake provider, embedder and generator.

Nothing here touches the network or AWS.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any, Dict, List, Optional, Tuple

import pytest

from cache.pipeline_store import PipelineStore
from clients.github_client import ProviderError
from configs.config import Config
from utils.release_notes_models import to_utc

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory version-control provider with page-based JSON cursors."""

    def __init__(self, page_size: int = 2) -> None:
        self.page_size = page_size
        self.events: Dict[str, List[Dict[str, Any]]] = {}
        self.issues: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.failures: List[Exception] = []
        self.fail_at: Dict[int, Exception] = {}
        self.fetch_calls = 0
        self.cursors_seen: List[Optional[str]] = []
        self.issue_lookups: List[Tuple[str, int]] = []

    def add_event(self, repo: str, event_id: str, text: str, *, author: str = "alice", timestamp: str = "2024-05-01T10:00:00Z", kind: str = "commit") -> None:
        self.events.setdefault(repo, []).append(
            {"id": event_id, "kind": kind, "text": text, "author": author, "timestamp": timestamp}
        )

    def add_issue(self, repo: str, number: int, title: str, *, pull: bool = False) -> None:
        self.issues[(repo, number)] = {
            "number": number,
            "title": title,
            "state": "closed",
            "url": f"https://github.com/{repo}/issues/{number}",
            "is_pull_request": pull,
        }

    def start_cursor(self, since=None, until=None) -> str:
        return json.dumps({
            "page": 0,
            "since": to_utc(since).isoformat() if since else None,
            "until": to_utc(until).isoformat() if until else None,
        })

    def fetch_events(self, repo_name: str, cursor: Optional[str]):
        self.fetch_calls += 1
        self.cursors_seen.append(cursor)
        if self.fetch_calls in self.fail_at:
            raise self.fail_at.pop(self.fetch_calls)
        if self.failures:
            raise self.failures.pop(0)
        state = json.loads(cursor) if cursor else json.loads(self.start_cursor())
        since = to_utc(state["since"]) if state.get("since") else None
        until = to_utc(state["until"]) if state.get("until") else None
        events = sorted(self.events.get(repo_name, []), key=lambda e: (to_utc(e["timestamp"]), e["id"]))
        events = [
            e for e in events
            if (since is None or to_utc(e["timestamp"]) >= since) and (until is None or to_utc(e["timestamp"]) <= until)
        ]
        page = int(state["page"])
        chunk = events[page * self.page_size:(page + 1) * self.page_size]
        has_more = (page + 1) * self.page_size < len(events)
        next_cursor = json.dumps({**state, "page": page + 1}) if has_more else None
        return [dict(e) for e in chunk], next_cursor

    def get_issue(self, repo_name: str, number: int) -> Dict[str, Any]:
        self.issue_lookups.append((repo_name, number))
        try:
            return dict(self.issues[(repo_name, number)])
        except KeyError:
            raise ProviderError(f"{repo_name}#{number} not found", code="NOT_FOUND") from None


class FakeEmbedder:
    """Deterministic bag-of-words hashing embedder."""

    def __init__(self, dimension: int = 16) -> None:
        self.dimension = dimension
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        vec = [0.0] * self.dimension
        for token in re.findall(r"[a-z0-9]+", (text or "").lower()):
            h = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16)
            vec[h % self.dimension] += 1.0
        vec[0] += 0.01
        norm = math.sqrt(sum(v * v for v in vec))
        return [v / norm for v in vec]


_RECORD_LINE = re.compile(r"^- (?P<id>[^\s|]+) \| (?P<cat>bugfix|feature|docs|chore|breaking|unknown) \| (?P<rest>.*)$", re.MULTILINE)

EXTERNAL_PHRASES = {
    "bugfix": "Fixed a stability issue",
    "feature": "Added a new capability",
    "docs": "Improved the documentation",
    "chore": "General maintenance and reliability improvements",
    "breaking": "An important change needs attention when upgrading",
    "unknown": "Other improvements",
}


class FakeGenerator:
    """Scripted generator.

    Queued `responses` (strings or exceptions) are consumed first; after that
    it answers summary prompts with a valid summary built from the prompt's
    change list, and classification prompts with `classify_answer`.
    """

    def __init__(self) -> None:
        self.responses: List[Any] = []
        self.prompts: List[str] = []
        self.classify_answer = "chore"

    def generate(self, prompt: str, max_length: int) -> str:
        self.prompts.append(prompt)
        if self.responses:
            nxt = self.responses.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        if prompt.startswith("Classify this software change"):
            return self.classify_answer
        return json.dumps(self.auto_summary(prompt))

    @staticmethod
    def auto_summary(prompt: str) -> Dict[str, Any]:
        external = "EXTERNAL release notes" in prompt
        changes = prompt.split("CHANGES", 1)[1].split("PREVIOUS RELEASE NOTES", 1)[0]
        by_cat: Dict[str, List[Tuple[str, str]]] = {}
        for m in _RECORD_LINE.finditer(changes):
            rest = m.group("rest").split(" | ")
            text = rest[0] if external else rest[1]
            by_cat.setdefault(m.group("cat"), []).append((m.group("id"), text))
        sections = []
        for cat, items in by_cat.items():
            if external:
                sections.append({"category": cat, "items": [{"text": EXTERNAL_PHRASES[cat], "record_ids": [i for i, _ in items]}]})
            else:
                sections.append({"category": cat, "items": [{"text": text, "record_ids": [i]} for i, text in items]})
        return {"schema_version": "v1", "audience": "external" if external else "internal", "sections": sections}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every on-disk root at tmp_path and remove backoff delays."""
    monkeypatch.setattr(Config, "STORE_ROOT", str(tmp_path / "store"))
    monkeypatch.setattr(Config, "METRICS_ROOT", str(tmp_path / "metrics"))
    monkeypatch.setattr(Config, "AUDIT_ROOT", str(tmp_path / "audit"))
    monkeypatch.setattr(Config, "PUBLISH_OUTBOX_ROOT", str(tmp_path / "outbox"))
    monkeypatch.setattr(Config, "RELEASE_BACKUPS_ROOT", str(tmp_path / "backups"))
    monkeypatch.setattr(Config, "SUMMARY_BACKOFF_BASE_S", 0.0)
    monkeypatch.setattr(Config, "EXTRACT_BACKOFF_BASE_S", 0.0)
    monkeypatch.setattr(Config, "PUBLISH_RETRY_BASE_SLEEP", 0.0)
    monkeypatch.setattr(Config, "EMBEDDING_DIM", 16)
    return tmp_path


@pytest.fixture
def store(tmp_path) -> PipelineStore:
    return PipelineStore(root_dir=str(tmp_path / "store"))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def repo(store):
    return store.add_repository("octo/widgets")


@pytest.fixture
def make_pipeline(store, provider, generator, embedder, tmp_path):
    from agents.release_notes_agent import ReleaseNotesPipeline

    def _make(**kw):
        kw.setdefault("index_dir", str(tmp_path / "index"))
        kw.setdefault("audit_root", str(tmp_path / "audit"))
        return ReleaseNotesPipeline(store, provider, generator, embedder, **kw)

    return _make
