#!/usr/bin/env python3
"""Publish hooks fired once per approved draft.

`OutboxPublisher` writes the approved texts as a JSON document to a local outbox
directory for downstream delivery. `GithubReleasePublisher` creates or updates a
GitHub Release whose body is the external text, with size validation, backups of
any body it replaces, and typed errors.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import requests

from configs.config import Config
from utils.release_notes_models import ReleaseNoteDraft, Repository, utc_now
from utils.wrap import with_retries

logger = logging.getLogger(__name__)

_RETRY_CODES = {"RATE_LIMIT", "NETWORK", "TIMEOUT"}
_API_HEADERS = {"Accept": "application/vnd.github+json", "Content-Type": "application/json"}


class ReleasePublishError(Exception):
    """Publishing failed; `.code` is RATE_LIMIT, UNAUTHORIZED, NOT_FOUND, VALIDATION, NETWORK or TIMEOUT."""

    def __init__(self, message: str, code: str = "UNKNOWN"):
        super().__init__(message)
        self.code = code


def _status_code(response) -> Optional[str]:
    """Map an HTTP response to an error code, or None when it succeeded."""
    sc = response.status_code
    if sc < 400:
        return None
    if sc == 429 or (sc == 403 and response.headers.get("X-RateLimit-Remaining") == "0"):
        return "RATE_LIMIT"
    if sc in (401, 403):
        return "UNAUTHORIZED"
    if sc == 404:
        return "NOT_FOUND"
    if sc == 422:
        return "VALIDATION"
    return "NETWORK" if sc >= 500 else "UNKNOWN"


def _atomic_write(path: str, text: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp_")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class OutboxPublisher:
    def __init__(self, root: Optional[str] = None) -> None:
        self.root = root or Config.PUBLISH_OUTBOX_ROOT

    def path_for(self, repository: Repository, draft: ReleaseNoteDraft) -> str:
        return os.path.join(self.root, quote(repository.name, safe=""), f"{draft.id}.json")

    def hook(self, repository: Repository, draft: ReleaseNoteDraft) -> None:
        doc = {
            "repository": repository.name,
            "repository_id": repository.id,
            "draft_id": draft.id,
            "template_version": draft.template_version,
            "approved_at": (draft.updated_at or utc_now()).isoformat(),
            "categories": [c.value for c in draft.categories],
            "internal_text": draft.internal_text,
            "external_text": draft.external_text,
        }
        path = self.path_for(repository, draft)
        _atomic_write(path, json.dumps(doc, ensure_ascii=False, indent=2))
        logger.info(f"Draft {draft.id} written to outbox {path}")

    __call__ = hook


@dataclass
class ReleaseInfo:
    id: int
    tag_name: str
    html_url: str = ""
    draft: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any], *, tag: str = "", release_id: Optional[int] = None) -> "ReleaseInfo":
        return cls(
            id=int(data.get("id") or release_id or 0),
            tag_name=data.get("tag_name") or tag,
            html_url=data.get("html_url") or "",
            draft=bool(data.get("draft", False)),
        )


def release_title(repository: Repository, draft: ReleaseNoteDraft) -> str:
    approved = draft.updated_at or draft.created_at
    return f"{repository.name} release notes ({approved:%Y-%m-%d})"


class GithubReleasePublisher:
    """Publishes an approved draft's external text as a GitHub Release body.

    Each draft maps to one tag, so re-publishing the same draft updates the
    release in place after backing up the body it replaces.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        backups_root: Optional[str] = None,
        body_max_chars: Optional[int] = None,
        timeout_s: Optional[int] = None,
        tag_prefix: Optional[str] = None,
        as_draft: Optional[bool] = None,
        retry_max: Optional[int] = None,
        retry_base_sleep: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        gh = Config.get_github_config()
        self.base_url = (base_url or gh["base_url"]).rstrip("/")
        self.backups_root = backups_root or Config.RELEASE_BACKUPS_ROOT
        self.body_max_chars = body_max_chars or Config.RELEASE_BODY_MAX_CHARS
        self.timeout_s = timeout_s or gh["timeout_s"]
        self.tag_prefix = Config.RELEASE_TAG_PREFIX if tag_prefix is None else tag_prefix
        self.as_draft = Config.RELEASE_AS_DRAFT if as_draft is None else as_draft
        self.retry_max = Config.PUBLISH_RETRY_MAX if retry_max is None else retry_max
        self.retry_base_sleep = Config.PUBLISH_RETRY_BASE_SLEEP if retry_base_sleep is None else retry_base_sleep
        self._sleep = sleep
        if session is None:
            token = token or gh["token"]
            if not token:
                raise ReleasePublishError("GitHub token is required to publish releases", code="UNAUTHORIZED")
            session = requests.Session()
            session.headers.update({"Authorization": f"Bearer {token}", "User-Agent": "release-notes-pipeline/1.0"})
        self.session = session

    def tag_for(self, draft: ReleaseNoteDraft) -> str:
        return f"{self.tag_prefix}{draft.id[:12]}"

    def _releases_url(self, repo_name: str, suffix: str = "") -> str:
        return f"{self.base_url}/repos/{repo_name}/releases{suffix}"

    def hook(self, repository: Repository, draft: ReleaseNoteDraft) -> ReleaseInfo:
        """Create the release for this draft, or update it if the tag exists."""
        body = draft.external_text
        self._check_body(body)
        tag = self.tag_for(draft)
        existing = self.find_release(repository.name, tag)
        if existing is None:
            payload = {"tag_name": tag, "name": release_title(repository, draft), "body": body, "draft": self.as_draft}
            data = self._request("POST", self._releases_url(repository.name), payload)
            info = ReleaseInfo.from_api(data or {}, tag=tag)
            logger.info(f"Created release {tag} for {repository.name}: {info.html_url}")
            return info
        current = self._request("GET", self._releases_url(repository.name, f"/{existing.id}"))
        if current is None:
            raise ReleasePublishError(f"Release {existing.id} disappeared during update", code="NOT_FOUND")
        self.backup_body(repository.name, existing, current.get("body") or "")
        data = self._request("PATCH", self._releases_url(repository.name, f"/{existing.id}"), {"body": body})
        info = ReleaseInfo.from_api(data or {}, tag=tag, release_id=existing.id)
        logger.info(f"Updated release {tag} for {repository.name}: {info.html_url}")
        return info

    __call__ = hook

    def find_release(self, repo_name: str, tag: str) -> Optional[ReleaseInfo]:
        data = self._request("GET", self._releases_url(repo_name, f"/tags/{quote(tag, safe='')}"))
        return None if data is None else ReleaseInfo.from_api(data, tag=tag)

    def backup_body(self, repo_name: str, release: ReleaseInfo, body_text: str) -> str:
        """Write the body about to be replaced to a timestamped file; returns its path."""
        fname = f"{quote(repo_name, safe='')}-{release.id}-{quote(release.tag_name or 'untagged', safe='')}-{int(time.time())}.md"
        path = os.path.join(self.backups_root, fname)
        _atomic_write(path, body_text)
        logger.debug(f"Backed up release {release.id} body to {path}")
        return path

    def _check_body(self, body: Optional[str]) -> None:
        if not body or not body.strip():
            raise ReleasePublishError("Approved draft has no external text", code="VALIDATION")
        if len(body) > self.body_max_chars:
            raise ReleasePublishError(
                f"External text is {len(body)} chars; GitHub allows {self.body_max_chars}",
                code="VALIDATION",
            )

    # -------- HTTP helpers --------
    def _request_once(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        try:
            r = self.session.request(
                method,
                url,
                headers=_API_HEADERS,
                data=None if payload is None else json.dumps(payload),
                timeout=self.timeout_s,
            )
        except requests.Timeout as e:
            raise ReleasePublishError(f"{method} {url} timed out", code="TIMEOUT") from e
        except requests.RequestException as e:
            raise ReleasePublishError(f"{method} {url} failed: {e}", code="NETWORK") from e
        if r.status_code == 404 and method == "GET":
            return None
        code = _status_code(r)
        if code is not None:
            raise ReleasePublishError(f"{method} {url} returned HTTP {r.status_code}: {r.text[:200]}", code=code)
        return r.json()

    def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return with_retries(
            lambda: self._request_once(method, url, payload),
            max_attempts=1 + self.retry_max,
            backoff_s=self.retry_base_sleep,
            max_backoff_s=self.retry_base_sleep * 8,
            retry_on=_RETRY_CODES,
            classify_exc=lambda e: getattr(e, "code", "UNKNOWN"),
            sleep=self._sleep,
        )


def build_publish_hook(mode: Optional[str] = None):
    """Return the configured publish hook callable."""
    mode = (mode or Config.PUBLISH_MODE).lower()
    if mode == "github":
        return GithubReleasePublisher().hook
    if mode == "outbox":
        return OutboxPublisher().hook
    raise ValueError(f"Unknown publish mode: {mode}")


__all__ = [
    "ReleasePublishError",
    "ReleaseInfo",
    "OutboxPublisher",
    "GithubReleasePublisher",
    "build_publish_hook",
]
