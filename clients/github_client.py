#!/usr/bin/env python3
"""GitHub REST event provider for the change extractor.

Reads commits and merged pull requests page by page behind an opaque cursor,
and resolves issue/PR numbers for enrichment. Rate limiting is surfaced as
`ProviderRateLimited`, distinct from not-found/unauthorized `ProviderError`s.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from configs.config import Config
from utils.release_notes_models import RawKind, to_utc

# Set up logging
logger = logging.getLogger(__name__)

TRANSIENT_PROVIDER_CODES = {"NETWORK", "TIMEOUT", "SERVER"}

_PHASES = ("commits", "pulls")


class ProviderError(Exception):
    """Raised when provider operations fail with a typed code."""
    def __init__(self, message: str, code: str = "UNKNOWN") -> None:
        super().__init__(message)
        self.code = code


class ProviderRateLimited(ProviderError):
    """Raised when the provider asks us to slow down."""
    def __init__(self, message: str, retry_after_s: float = 0.0) -> None:
        super().__init__(message, code="RATE_LIMIT")
        self.retry_after_s = max(0.0, float(retry_after_s))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_utc(value).isoformat() if value is not None else None


def encode_cursor(phase: str, page: int, since: Optional[str], until: Optional[str]) -> str:
    return json.dumps({"phase": phase, "page": page, "since": since, "until": until}, sort_keys=True)


def decode_cursor(cursor: Optional[str]) -> Dict[str, Any]:
    if not cursor:
        return {"phase": "commits", "page": 1, "since": None, "until": None}
    data = json.loads(cursor)
    if data.get("phase") not in _PHASES or int(data.get("page", 0)) < 1:
        raise ValueError(f"Invalid cursor: {cursor}")
    return data


class GithubEventProvider:
    """Version-control provider backed by the GitHub REST API."""

    def __init__(
        self,
        token: Optional[str] = None,
        timeout_s: Optional[int] = None,
        *,
        base_url: Optional[str] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the provider.

        Args:
            token: GitHub Personal Access Token (defaults to Config.GITHUB_TOKEN)
            timeout_s: Request timeout in seconds (defaults to Config.HTTP_TIMEOUT_S)
            session: Preconfigured session, mainly for tests

        Raises:
            ProviderError: If no token is available and no session is given
        """
        github_config = Config.get_github_config()
        self.token = token or github_config["token"]
        self.timeout_s = timeout_s or github_config["timeout_s"]
        self.base_url = (base_url or github_config["base_url"]).rstrip("/")
        self.page_size = int(page_size or github_config["page_size"])
        self.max_pages = int(max_pages or github_config["max_pages"])

        if session is not None:
            self.session = session
        else:
            if not self.token:
                raise ProviderError("GitHub token is required (GITHUB_TOKEN or GITHUB_PAT env var)", code="UNAUTHORIZED")
            self.session = requests.Session()
            self.session.headers.update({
                'Authorization': f'token {self.token}',
                'Accept': 'application/vnd.github.v3+json',
                'User-Agent': 'release-notes-pipeline/1.0'
            })
            # 429/403 are left to the caller so rate limits stay visible
            retry_strategy = Retry(
                total=2,
                status_forcelist=[502, 503, 504],
                backoff_factor=0.5,
                allowed_methods=["HEAD", "GET", "OPTIONS"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            self.session.mount("https://", adapter)

        logger.info("GitHub event provider initialized")

    # -------- cursor protocol --------
    def start_cursor(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> str:
        return encode_cursor("commits", 1, _iso(since), _iso(until))

    def fetch_events(self, repo_name: str, cursor: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of events.

        Returns:
            (events, next_cursor); next_cursor is None once the window is exhausted.

        Raises:
            ProviderRateLimited: on primary or secondary rate limiting
            ProviderError: for not-found, unauthorized, network and server failures
        """
        state = decode_cursor(cursor)
        phase, page = state["phase"], int(state["page"])
        since, until = state.get("since"), state.get("until")
        if phase == "commits":
            return self._fetch_commits(repo_name, page, since, until)
        return self._fetch_pulls(repo_name, page, since, until)

    def _fetch_commits(self, repo_name: str, page: int, since: Optional[str], until: Optional[str]):
        params: Dict[str, Any] = {"per_page": self.page_size, "page": page}
        if since:
            params["since"] = since
        if until:
            params["until"] = until
        logger.info(f"Fetching commits: {repo_name} page {page}")
        items = self._get(f"{self.base_url}/repos/{repo_name}/commits", params) or []
        events = [self._commit_event(c) for c in items]
        if len(items) < self.page_size or page >= self.max_pages:
            if page >= self.max_pages:
                logger.warning(f"{repo_name} has more than {self.max_pages} commit pages in window, truncating")
            return events, encode_cursor("pulls", 1, since, until)
        return events, encode_cursor("commits", page + 1, since, until)

    def _fetch_pulls(self, repo_name: str, page: int, since: Optional[str], until: Optional[str]):
        params = {"state": "closed", "sort": "updated", "direction": "desc", "per_page": self.page_size, "page": page}
        logger.info(f"Fetching closed pull requests: {repo_name} page {page}")
        items = self._get(f"{self.base_url}/repos/{repo_name}/pulls", params) or []
        lo = to_utc(since) if since else None
        hi = to_utc(until) if until else None
        events = []
        older_than_window = 0
        for pr in items:
            updated = pr.get("updated_at")
            if lo is not None and updated and to_utc(updated) < lo:
                older_than_window += 1
            merged_at = pr.get("merged_at")
            if not merged_at:
                continue
            merged = to_utc(merged_at)
            if (lo is not None and merged < lo) or (hi is not None and merged > hi):
                continue
            events.append(self._pull_event(pr))
        # Sorted by updated desc: once a page reaches past the window, stop.
        exhausted = len(items) < self.page_size or page >= self.max_pages or (items and older_than_window == len(items))
        if exhausted:
            return events, None
        return events, encode_cursor("pulls", page + 1, since, until)

    @staticmethod
    def _commit_event(data: Dict[str, Any]) -> Dict[str, Any]:
        commit = data.get("commit") or {}
        author = (data.get("author") or {}).get("login") or (commit.get("author") or {}).get("name") or "unknown"
        ts = (commit.get("author") or {}).get("date") or (commit.get("committer") or {}).get("date")
        return {
            "id": data.get("sha", ""),
            "kind": RawKind.COMMIT.value,
            "text": commit.get("message", ""),
            "author": author,
            "timestamp": ts,
        }

    @staticmethod
    def _pull_event(data: Dict[str, Any]) -> Dict[str, Any]:
        title = data.get("title") or ""
        body = data.get("body") or ""
        return {
            "id": f"pr-{data.get('number')}",
            "kind": RawKind.PR.value,
            "text": f"{title}\n\n{body}".strip(),
            "author": (data.get("user") or {}).get("login", "unknown"),
            "timestamp": data.get("merged_at"),
        }

    # -------- issue tracker --------
    def get_issue(self, repo_name: str, number: int) -> Dict[str, Any]:
        """Fetch issue or pull request metadata by number.

        Raises:
            ProviderError: NOT_FOUND when the number does not exist
        """
        data = self._get(f"{self.base_url}/repos/{repo_name}/issues/{int(number)}")
        return {
            "number": data.get("number", number),
            "title": data.get("title"),
            "state": data.get("state"),
            "url": data.get("html_url"),
            "is_pull_request": "pull_request" in data,
        }

    # -------- HTTP helpers --------
    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout_s)
        except requests.Timeout as e:
            raise ProviderError(f"Timeout fetching {url}: {e}", code="TIMEOUT") from e
        except requests.RequestException as e:
            raise ProviderError(f"Failed to fetch {url}: {e}", code="NETWORK") from e

        sc = response.status_code
        headers = response.headers or {}
        if sc == 429 or (sc == 403 and str(headers.get("X-RateLimit-Remaining", "")) == "0"):
            raise ProviderRateLimited(f"GitHub rate limit hit for {url}", retry_after_s=self._retry_after(headers))
        if sc == 401 or sc == 403:
            raise ProviderError("Invalid GitHub token or insufficient permissions", code="UNAUTHORIZED")
        if sc == 404:
            raise ProviderError(f"Not found: {url}", code="NOT_FOUND")
        if sc >= 500:
            raise ProviderError(f"GitHub server error: HTTP {sc}", code="SERVER")
        if sc != 200:
            raise ProviderError(f"GitHub API error: HTTP {sc}")
        return response.json()

    @staticmethod
    def _retry_after(headers: Any) -> float:
        retry_after = headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        reset = headers.get("X-RateLimit-Reset")
        if reset:
            try:
                return max(0.0, float(reset) - time.time())
            except ValueError:
                pass
        return 60.0

    def close(self) -> None:
        """Close the HTTP session."""
        if self.session:
            self.session.close()
            logger.debug("GitHub event provider session closed")
