#!/usr/bin/env python3
"""Change extractor: provider events -> normalized ChangeRecord batches.

Batches are produced lazily, one provider page at a time. The persisted
per-repository cursor only moves when the caller confirms a batch was recorded
downstream via `commit()`, so delivery into the pipeline is at-least-once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from cache.pipeline_store import PipelineStore
from clients.github_client import ProviderError, ProviderRateLimited, TRANSIENT_PROVIDER_CODES
from configs.config import Config
from utils.errors import SourceUnavailable
from utils.metrics import Timer, incr
from utils.release_notes_models import ChangeRecord, RawKind, Repository, SourceRef
from utils.wrap import backoff_delay

logger = logging.getLogger(__name__)


class EventProvider(Protocol):
    def start_cursor(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> str: ...

    def fetch_events(self, repo_name: str, cursor: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]: ...

    def get_issue(self, repo_name: str, number: int) -> Dict[str, Any]: ...


@dataclass
class ExtractedBatch:
    """One provider page worth of normalized records."""

    repository_id: str
    records: List[ChangeRecord]
    cursor: Optional[str]
    resume_cursor: Optional[str]
    final: bool
    persist_cursor: bool = True
    skipped: List[str] = field(default_factory=list)


class ChangeExtractor:
    """Pulls events from a provider and normalizes them into ChangeRecords."""

    def __init__(
        self,
        provider: EventProvider,
        store: PipelineStore,
        *,
        max_retries: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
        backoff_max_s: Optional[float] = None,
        rate_limit_max_waits: Optional[int] = None,
        rate_limit_max_wait_s: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        cfg = Config.get_extract_config()
        self.provider = provider
        self.store = store
        self.max_retries = int(cfg["max_retries"] if max_retries is None else max_retries)
        self.backoff_base_s = float(cfg["backoff_base_s"] if backoff_base_s is None else backoff_base_s)
        self.backoff_max_s = float(cfg["backoff_max_s"] if backoff_max_s is None else backoff_max_s)
        self.rate_limit_max_waits = int(cfg["rate_limit_max_waits"] if rate_limit_max_waits is None else rate_limit_max_waits)
        self.rate_limit_max_wait_s = float(cfg["rate_limit_max_wait_s"] if rate_limit_max_wait_s is None else rate_limit_max_wait_s)
        self._sleep = sleep

    def iter_batches(
        self,
        repository: Repository,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Iterator[ExtractedBatch]:
        """Yield normalized batches for a repository.

        With no explicit window the extractor resumes from the persisted cursor.
        An explicit window is a backfill and never moves the persisted cursor.

        Raises:
            SourceUnavailable: if the provider stays unreachable after bounded retries
        """
        explicit = since is not None or until is not None
        if explicit:
            start = self.provider.start_cursor(since, until)
        else:
            start = self.store.get_cursor(repository.id) or self.provider.start_cursor()
        logger.info(f"Extracting {repository.name} ({'window' if explicit else 'cursor'} mode)")

        cursor: Optional[str] = start
        high_water: Optional[datetime] = None
        while True:
            events, next_cursor = self._fetch_with_backoff(repository, cursor)
            records: List[ChangeRecord] = []
            skipped: List[str] = []
            for event in events:
                rec = self.normalize_event(repository.id, event)
                if rec is None:
                    skipped.append(str(event.get("id", "?")))
                    continue
                records.append(rec)
                if high_water is None or rec.timestamp > high_water:
                    high_water = rec.timestamp
            final = next_cursor is None
            if final:
                resume = self.provider.start_cursor(high_water) if high_water is not None else start
            else:
                resume = next_cursor
            incr("extract.batch", value=len(records), repo=repository.id, skipped=len(skipped))
            yield ExtractedBatch(
                repository_id=repository.id,
                records=records,
                cursor=cursor,
                resume_cursor=resume,
                final=final,
                persist_cursor=not explicit,
                skipped=skipped,
            )
            if final:
                return
            cursor = next_cursor

    def commit(self, batch: ExtractedBatch) -> None:
        """Advance the persisted cursor past a batch that is durably recorded."""
        if not batch.persist_cursor:
            return
        self.store.set_cursor(batch.repository_id, batch.resume_cursor)
        logger.debug(f"Cursor advanced for {batch.repository_id} (final={batch.final})")

    def _fetch_with_backoff(self, repository: Repository, cursor: Optional[str]):
        failures = 0
        waits = 0
        while True:
            try:
                with Timer("extract.fetch", repo=repository.id):
                    return self.provider.fetch_events(repository.name, cursor)
            except ProviderRateLimited as e:
                waits += 1
                incr("extract.rate_limited", repo=repository.id)
                if waits > self.rate_limit_max_waits:
                    raise SourceUnavailable(
                        f"Rate limit persisted for {repository.name} after {waits - 1} waits",
                        code="RATE_LIMIT",
                        cursor=cursor,
                    ) from e
                delay = min(e.retry_after_s or self.backoff_base_s, self.rate_limit_max_wait_s)
                logger.warning(f"Rate limited on {repository.name}; resuming same cursor in {delay:.1f}s")
                self._sleep(delay)
            except ProviderError as e:
                if e.code not in TRANSIENT_PROVIDER_CODES:
                    raise SourceUnavailable(f"{repository.name}: {e}", code=e.code, cursor=cursor) from e
                failures += 1
                if failures > self.max_retries:
                    raise SourceUnavailable(
                        f"{repository.name} unreachable after {failures} attempts: {e}",
                        code="UNREACHABLE",
                        cursor=cursor,
                    ) from e
                delay = backoff_delay(failures - 1, base_s=self.backoff_base_s, max_s=self.backoff_max_s)
                logger.warning(f"Transient provider failure ({e.code}) on {repository.name}; retry {failures}/{self.max_retries} in {delay:.2f}s")
                self._sleep(delay)
            except ValueError as e:
                raise SourceUnavailable(f"Unusable cursor for {repository.name}: {e}", code="BAD_CURSOR", cursor=cursor) from e

    @staticmethod
    def normalize_event(repository_id: str, event: Dict[str, Any]) -> Optional[ChangeRecord]:
        """Convert one raw provider event into a ChangeRecord, or None if unusable."""
        event_id = str(event.get("id") or "").strip()
        text = (event.get("text") or "").replace("\r\n", "\n").strip()
        if not event_id or not text or not event.get("timestamp"):
            logger.warning(f"Skipping malformed event {event_id or '?'} for {repository_id}")
            return None
        try:
            kind = RawKind(str(event.get("kind", RawKind.COMMIT.value)).lower())
            return ChangeRecord(
                id=event_id,
                repository_id=repository_id,
                text=text,
                author=(event.get("author") or "unknown").strip() or "unknown",
                timestamp=event["timestamp"],
                kind=kind,
                sources=[SourceRef(id=event_id, kind=kind, text=text)],
            )
        except (ValueError, ValidationError) as e:
            logger.warning(f"Skipping event {event_id} for {repository_id}: {e}")
            return None
