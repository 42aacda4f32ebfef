"""Tests for the GitHub event provider with a canned HTTP session."""

from __future__ import annotations

from typing import Any, Dict, List

import pytest
import requests

from clients.github_client import (
    GithubEventProvider,
    ProviderError,
    ProviderRateLimited,
    decode_cursor,
    encode_cursor,
)
from configs.config import Config
from utils.release_notes_models import to_utc


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: Dict[str, str] = None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {})})
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def close(self):
        pass


def _commit(sha: str, msg: str, date: str = "2024-05-01T10:00:00Z") -> Dict[str, Any]:
    return {"sha": sha, "author": {"login": "alice"}, "commit": {"message": msg, "author": {"name": "Alice", "date": date}}}


def _provider(responses, page_size=2) -> GithubEventProvider:
    return GithubEventProvider(session=FakeSession(responses), base_url="https://api.test", page_size=page_size, max_pages=10)


def test_requires_token_without_session(monkeypatch):
    monkeypatch.setattr(Config, "GITHUB_TOKEN", None)
    with pytest.raises(ProviderError) as exc:
        GithubEventProvider(token="", session=None)
    assert exc.value.code == "UNAUTHORIZED"


def test_cursor_round_trip_and_validation():
    c = encode_cursor("pulls", 3, "2024-01-01T00:00:00+00:00", None)
    assert decode_cursor(c)["page"] == 3
    assert decode_cursor(None)["phase"] == "commits"
    with pytest.raises(ValueError):
        decode_cursor('{"phase": "tags", "page": 1}')
    with pytest.raises(ValueError):
        decode_cursor("not json")


def test_commits_then_pulls_phases():
    responses = [
        FakeResponse(payload=[_commit("a" * 40, "fix: one"), _commit("b" * 40, "feat: two")]),
        FakeResponse(payload=[_commit("c" * 40, "docs: three")]),
        FakeResponse(payload=[
            {"number": 42, "title": "Fix parser", "body": "details", "user": {"login": "bob"},
             "merged_at": "2024-05-02T00:00:00Z", "updated_at": "2024-05-02T00:00:00Z"},
            {"number": 43, "title": "Closed unmerged", "merged_at": None, "updated_at": "2024-05-02T00:00:00Z"},
        ]),
        FakeResponse(payload=[]),
    ]
    p = _provider(responses)
    cursor = p.start_cursor(to_utc("2024-04-01T00:00:00Z"))
    events, cursor = p.fetch_events("octo/widgets", cursor)
    assert [e["id"] for e in events] == ["a" * 40, "b" * 40]
    assert p.session.calls[0]["params"]["since"].startswith("2024-04-01")
    events, cursor = p.fetch_events("octo/widgets", cursor)
    assert decode_cursor(cursor)["phase"] == "pulls"
    events, cursor = p.fetch_events("octo/widgets", cursor)
    assert decode_cursor(cursor)["page"] == 2
    assert events == [{
        "id": "pr-42",
        "kind": "pr",
        "text": "Fix parser\n\ndetails",
        "author": "bob",
        "timestamp": "2024-05-02T00:00:00Z",
    }]
    assert p.fetch_events("octo/widgets", cursor) == ([], None)


def test_pulls_outside_window_are_filtered():
    responses = [
        FakeResponse(payload=[
            {"number": 1, "title": "Old", "merged_at": "2023-01-01T00:00:00Z", "updated_at": "2023-01-01T00:00:00Z"},
            {"number": 2, "title": "Older", "merged_at": "2022-01-01T00:00:00Z", "updated_at": "2022-01-01T00:00:00Z"},
        ]),
    ]
    p = _provider(responses)
    cursor = encode_cursor("pulls", 1, "2024-01-01T00:00:00+00:00", None)
    events, nxt = p.fetch_events("octo/widgets", cursor)
    assert events == [] and nxt is None


@pytest.mark.parametrize(
    "response, exc_type, code",
    [
        (FakeResponse(429, headers={"Retry-After": "7"}), ProviderRateLimited, "RATE_LIMIT"),
        (FakeResponse(403, headers={"X-RateLimit-Remaining": "0"}), ProviderRateLimited, "RATE_LIMIT"),
        (FakeResponse(403), ProviderError, "UNAUTHORIZED"),
        (FakeResponse(401), ProviderError, "UNAUTHORIZED"),
        (FakeResponse(404), ProviderError, "NOT_FOUND"),
        (FakeResponse(502), ProviderError, "SERVER"),
        (requests.Timeout("slow"), ProviderError, "TIMEOUT"),
        (requests.ConnectionError("down"), ProviderError, "NETWORK"),
    ],
)
def test_error_mapping(response, exc_type, code):
    p = _provider([response])
    with pytest.raises(exc_type) as exc:
        p.fetch_events("octo/widgets", None)
    assert exc.value.code == code


def test_retry_after_header_is_honored():
    p = _provider([FakeResponse(429, headers={"Retry-After": "7"})])
    with pytest.raises(ProviderRateLimited) as exc:
        p.fetch_events("octo/widgets", None)
    assert exc.value.retry_after_s == 7.0


def test_get_issue():
    p = _provider([FakeResponse(payload={"number": 12, "title": "Crash", "state": "closed",
                                         "html_url": "https://github.com/octo/widgets/pull/12", "pull_request": {}})])
    issue = p.get_issue("octo/widgets", 12)
    assert issue["is_pull_request"] is True
    assert issue["title"] == "Crash"
