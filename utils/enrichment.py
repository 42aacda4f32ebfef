#!/usr/bin/env python3
"""Cross-reference enrichment for representative records.

Purely additive: category and text of the input are never touched, and an
unresolvable reference becomes a broken-link marker instead of an error.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from clients.github_client import ProviderError
from utils.change_extractor import EventProvider
from utils.metrics import incr
from utils.release_notes_models import ChangeRecord, CrossReference, EnrichedRecord, Repository

logger = logging.getLogger(__name__)

_URL_REF = re.compile(r"https?://github\.com/(?P<repo>[\w.-]+/[\w.-]+)/(?:issues|pull)/(?P<num>\d+)", re.IGNORECASE)
_QUALIFIED_REF = re.compile(r"(?<![\w/.-])(?P<repo>[\w.-]+/[\w.-]+)#(?P<num>\d+)\b")
_GH_REF = re.compile(r"\bGH-(?P<num>\d+)\b", re.IGNORECASE)
_BARE_REF = re.compile(r"(?<![\w/&#])#(?P<num>\d+)\b")


def extract_references(text: str, default_repo: str) -> List[Tuple[str, str, int]]:
    """Return (token, repo, number) for every reference in text, first occurrence order."""
    found: List[Tuple[int, str, str, int]] = []
    remaining = text or ""
    for pattern, has_repo in ((_URL_REF, True), (_QUALIFIED_REF, True), (_GH_REF, False), (_BARE_REF, False)):
        for m in pattern.finditer(remaining):
            repo = m.group("repo") if has_repo else default_repo
            found.append((m.start(), repo, m.group(0), int(m.group("num"))))
        # blank out matched spans so later patterns don't double count
        remaining = pattern.sub(lambda m: " " * len(m.group(0)), remaining)
    out: List[Tuple[str, str, int]] = []
    seen = set()
    for _, repo, _raw, num in sorted(found, key=lambda f: f[0]):
        token = f"#{num}" if repo.lower() == default_repo.lower() else f"{repo}#{num}"
        if token in seen:
            continue
        seen.add(token)
        out.append((token, repo, num))
    return out


class EnrichmentStage:
    """Resolves issue/PR references against the provider's issue tracker."""

    def __init__(self, provider: Optional[EventProvider]) -> None:
        self.provider = provider

    def enrich(
        self,
        repository: Repository,
        record: ChangeRecord,
        *,
        memo: Optional[Dict[Tuple[str, int], CrossReference]] = None,
    ) -> EnrichedRecord:
        memo = {} if memo is None else memo
        texts = [record.text] + [s.text for s in record.sources if s.text]
        refs: List[CrossReference] = []
        seen = set()
        for text in texts:
            for token, repo, num in extract_references(text, repository.name):
                if token in seen:
                    continue
                seen.add(token)
                key = (repo.lower(), num)
                if key not in memo:
                    memo[key] = self._resolve(repo, num)
                refs.append(memo[key].model_copy(update={"ref": token}))
        broken = sum(1 for r in refs if not r.resolved)
        if broken:
            incr("enrich.broken_link", value=broken, repo=repository.id)
        return EnrichedRecord(record=record, cross_refs=refs)

    def enrich_batch(self, repository: Repository, records: Iterable[ChangeRecord]) -> List[EnrichedRecord]:
        memo: Dict[Tuple[str, int], CrossReference] = {}
        out = [self.enrich(repository, r, memo=memo) for r in records]
        total = sum(len(e.cross_refs) for e in out)
        broken = sum(len(e.broken_links) for e in out)
        logger.info(f"Enriched {len(out)} record(s) for {repository.name}: {total} reference(s), {broken} broken")
        return out

    def _resolve(self, repo: str, number: int) -> CrossReference:
        token = f"{repo}#{number}"
        if self.provider is None:
            return CrossReference(ref=token, repo=repo, number=number, broken_reason="NO_PROVIDER")
        try:
            data = self.provider.get_issue(repo, number)
        except ProviderError as e:
            logger.debug(f"Reference {token} unresolved: {e.code}")
            return CrossReference(ref=token, repo=repo, number=number, broken_reason=e.code)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Reference {token} lookup failed: {e}")
            return CrossReference(ref=token, repo=repo, number=number, broken_reason="UNKNOWN")
        return CrossReference(
            ref=token,
            kind="pull" if data.get("is_pull_request") else "issue",
            repo=repo,
            number=number,
            resolved=True,
            title=data.get("title"),
            url=data.get("url"),
            state=data.get("state"),
        )
