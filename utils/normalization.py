#!/usr/bin/env python3
from __future__ import annotations

import hashlib
import logging
import re
from typing import Dict, Iterable, List, Tuple

from configs.config import Config
from utils.release_notes_models import ChangeRecord, SourceRef

logger = logging.getLogger(__name__)

_MERGE_PREFIXES = [
	re.compile(r"^merge\s+(?:pull\s+request|pr)\s*#?\d+(?:\s+from\s+\S+)?\s*:?\s*", re.IGNORECASE),
	re.compile(r"^merge\s+branch\s+'[^']*'(?:\s+of\s+\S+)?(?:\s+into\s+\S+)?\s*:?\s*", re.IGNORECASE),
	re.compile(r"^merge\s+remote-tracking\s+branch\s+'[^']*'(?:\s+into\s+\S+)?\s*:?\s*", re.IGNORECASE),
]
_TRAILING_REF = re.compile(r"\s*\((?:#|gh-)\d+\)\s*$", re.IGNORECASE)
_NON_WORD = re.compile(r"[^a-z0-9]+")


def _collapse_spaces(s: str) -> str:
	if not s:
		return s
	s = s.strip()
	if Config.NORMALIZE_COLLAPSE_SPACES:
		s = re.sub(r"\s+", " ", s)
	return s


def is_merge_text(text: str) -> bool:
	first = (text or "").strip().splitlines()[:1]
	return bool(first) and any(p.match(first[0].strip()) for p in _MERGE_PREFIXES)


def strip_merge_preamble(text: str) -> str:
	"""Return the meaningful subject of a message, skipping merge boilerplate.

	For GitHub merge commits the PR title sits on a later line, so an empty
	subject after stripping falls through to the next non-empty line.
	"""
	lines = [ln.strip() for ln in (text or "").strip().splitlines() if ln.strip()]
	if not lines:
		return ""
	subject = lines[0]
	for pattern in _MERGE_PREFIXES:
		subject = pattern.sub("", subject, count=1)
	subject = _TRAILING_REF.sub("", subject).strip()
	if not subject and len(lines) > 1:
		subject = _TRAILING_REF.sub("", lines[1]).strip()
	return subject


def normalize_subject(text: str) -> str:
	subject = strip_merge_preamble(text).lower()
	return _collapse_spaces(_NON_WORD.sub(" ", subject))


def author_key(author: str) -> str:
	return _collapse_spaces((author or "unknown").lower())


def fingerprint(record: ChangeRecord) -> str:
	"""Stable hash over normalized subject text and authorship."""
	basis = f"{normalize_subject(record.text)}|{author_key(record.author)}"
	return hashlib.sha256(basis.encode("utf-8")).hexdigest()


def _representative_key(rec: ChangeRecord) -> Tuple[bool, object, str]:
	return (is_merge_text(rec.text), rec.timestamp, rec.id)


def _merge_group(items: List[ChangeRecord]) -> ChangeRecord:
	ordered = sorted(items, key=_representative_key)
	base = ordered[0]
	seen: Dict[str, SourceRef] = {}
	for rec in ordered:
		for src in rec.sources or [SourceRef(id=rec.id, kind=rec.kind, text=rec.text)]:
			seen.setdefault(src.id, src)
		if rec.id not in seen:
			seen[rec.id] = SourceRef(id=rec.id, kind=rec.kind, text=rec.text)
	return base.model_copy(update={"sources": list(seen.values())})


def deduplicate(records: Iterable[ChangeRecord]) -> List[ChangeRecord]:
	"""Collapse near-duplicate records to one representative per fingerprint.

	Records whose subject normalizes to nothing are kept as their own group.
	"""
	groups: Dict[str, List[ChangeRecord]] = {}
	for rec in records:
		key = fingerprint(rec) if normalize_subject(rec.text) else f"id:{rec.id}"
		groups.setdefault(key, []).append(rec)
	merged = [_merge_group(v) for v in groups.values()]
	collapsed = sum(len(v) for v in groups.values()) - len(merged)
	if collapsed:
		logger.info(f"Deduplication collapsed {collapsed} record(s) into {len(merged)} representative(s)")
	return sorted(merged, key=lambda r: (r.timestamp, r.id))
