"""Tests for the outbox and GitHub Releases publish hooks."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, List

import pytest

from utils.release_notes_models import ApprovalStatus, ReleaseNoteDraft
from utils.release_publisher import GithubReleasePublisher, OutboxPublisher, ReleasePublishError, build_publish_hook


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: Dict[str, str] = None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses: List[FakeResponse]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, headers=None, data=None, timeout=None):
        self.calls.append({"method": method, "url": url, "data": json.loads(data) if data else None})
        return self.responses.pop(0)


@pytest.fixture
def approved(repo) -> ReleaseNoteDraft:
    return ReleaseNoteDraft(
        repository_id=repo.id,
        internal_text="# internal\n- fix parser",
        external_text="# What's new\n- Fixed a stability issue",
        status=ApprovalStatus.APPROVED,
    )


def test_outbox_writes_document(tmp_path, repo, approved):
    pub = OutboxPublisher(root=str(tmp_path / "out"))
    pub.hook(repo, approved)
    path = pub.path_for(repo, approved)
    assert os.path.exists(path)
    with open(path, encoding="utf-8") as f:
        doc = json.load(f)
    assert doc["draft_id"] == approved.id
    assert doc["repository"] == "octo/widgets"
    assert doc["external_text"].endswith("Fixed a stability issue")


def test_github_creates_release_when_tag_missing(repo, approved):
    session = FakeSession([
        FakeResponse(404),
        FakeResponse(201, {"id": 9, "tag_name": "t", "html_url": "https://github.com/r/9"}),
    ])
    pub = GithubReleasePublisher(session, base_url="https://api.test", tag_prefix="rn-", as_draft=True)
    info = pub.hook(repo, approved)
    assert info.id == 9
    create = session.calls[1]
    assert create["method"] == "POST"
    assert create["url"] == "https://api.test/repos/octo/widgets/releases"
    assert create["data"]["tag_name"] == f"rn-{approved.id[:12]}"
    assert create["data"]["body"] == approved.external_text
    assert create["data"]["draft"] is True


def test_github_updates_existing_and_backs_up(tmp_path, repo, approved):
    session = FakeSession([
        FakeResponse(200, {"id": 5, "tag_name": "t"}),
        FakeResponse(200, {"id": 5, "tag_name": "t", "body": "old body"}),
        FakeResponse(200, {"id": 5, "tag_name": "t", "html_url": "u"}),
    ])
    pub = GithubReleasePublisher(session, base_url="https://api.test", backups_root=str(tmp_path / "bk"))
    pub.hook(repo, approved)
    assert [c["method"] for c in session.calls] == ["GET", "GET", "PATCH"]
    backups = os.listdir(tmp_path / "bk")
    assert len(backups) == 1
    with open(tmp_path / "bk" / backups[0], encoding="utf-8") as f:
        assert f.read() == "old body"


def test_github_retries_server_errors(repo, approved):
    session = FakeSession([
        FakeResponse(502),
        FakeResponse(404),
        FakeResponse(201, {"id": 1}),
    ])
    sleeps = []
    pub = GithubReleasePublisher(session, base_url="https://api.test", retry_max=2, sleep=sleeps.append)
    pub.hook(repo, approved)
    assert len(sleeps) == 1


def test_github_unauthorized_is_not_retried(repo, approved):
    session = FakeSession([FakeResponse(401)])
    pub = GithubReleasePublisher(session, base_url="https://api.test", retry_max=3, sleep=lambda s: None)
    with pytest.raises(ReleasePublishError) as exc:
        pub.hook(repo, approved)
    assert exc.value.code == "UNAUTHORIZED"
    assert len(session.calls) == 1


def test_body_validation(repo, approved):
    pub = GithubReleasePublisher(FakeSession([]), base_url="https://api.test", body_max_chars=10)
    with pytest.raises(ReleasePublishError) as exc:
        pub.hook(repo, approved)
    assert exc.value.code == "VALIDATION"


def test_build_publish_hook_modes():
    assert callable(build_publish_hook("outbox"))
    with pytest.raises(ValueError):
        build_publish_hook("carrier-pigeon")
