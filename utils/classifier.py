#!/usr/bin/env python3
"""Change classification: deterministic rules first, model fallback second.

Rule results are pure functions of the text. Model results are memoized in the
store by text hash so re-classifying an unchanged record is stable.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Iterable, List, Optional, Protocol, Tuple

from cache.pipeline_store import PipelineStore
from configs.config import Config
from utils.metrics import incr
from utils.normalization import strip_merge_preamble
from utils.release_notes_models import ChangeCategory, ChangeRecord, RawKind

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    def generate(self, prompt: str, max_length: int) -> str: ...


_CONVENTIONAL = re.compile(r"^(?P<type>[A-Za-z]+)(?:\((?P<scope>[^)]*)\))?(?P<bang>!)?\s*:\s*\S")

TYPE_MAP = {
    "feat": ChangeCategory.FEATURE,
    "feature": ChangeCategory.FEATURE,
    "fix": ChangeCategory.BUGFIX,
    "bugfix": ChangeCategory.BUGFIX,
    "hotfix": ChangeCategory.BUGFIX,
    "docs": ChangeCategory.DOCS,
    "doc": ChangeCategory.DOCS,
    "chore": ChangeCategory.CHORE,
    "build": ChangeCategory.CHORE,
    "ci": ChangeCategory.CHORE,
    "refactor": ChangeCategory.CHORE,
    "style": ChangeCategory.CHORE,
    "test": ChangeCategory.CHORE,
    "tests": ChangeCategory.CHORE,
    "perf": ChangeCategory.CHORE,
    "revert": ChangeCategory.CHORE,
    "deps": ChangeCategory.CHORE,
    "breaking": ChangeCategory.BREAKING,
}

KEYWORD_RULES: List[Tuple[re.Pattern, ChangeCategory]] = [
    (re.compile(r"^(?:fix(?:e[sd])?|bug|hotfix|resolve[sd]?|patch(?:ed)?)\b", re.IGNORECASE), ChangeCategory.BUGFIX),
    (re.compile(r"^(?:add(?:s|ed)?|implement(?:s|ed)?|introduce[sd]?|support(?:s)?|new)\b", re.IGNORECASE), ChangeCategory.FEATURE),
    (re.compile(r"^(?:docs?|documentation|readme)\b", re.IGNORECASE), ChangeCategory.DOCS),
    (re.compile(r"^(?:bump|upgrade|chore|refactor|clean\s?up|lint|format)\b", re.IGNORECASE), ChangeCategory.CHORE),
]

_BREAKING_MARKER = re.compile(r"^BREAKING[ -]CHANGE:", re.MULTILINE)

CLASSIFY_PROMPT = """Classify this software change into exactly one category.
Categories: bugfix, feature, docs, chore, breaking, unknown.
Answer with the single category word only.

CHANGE:
{text}
"""


def text_hash(text: str) -> str:
    normalized = re.sub(r"\s+", " ", (text or "").strip())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def match_rules(record: ChangeRecord) -> Optional[ChangeCategory]:
    """Return the rule-based category or None when no rule applies."""
    if _BREAKING_MARKER.search(record.text or ""):
        return ChangeCategory.BREAKING
    subject = strip_merge_preamble(record.text)
    m = _CONVENTIONAL.match(subject)
    if m:
        if m.group("bang"):
            return ChangeCategory.BREAKING
        mapped = TYPE_MAP.get(m.group("type").lower())
        if mapped is not None:
            return mapped
    if record.kind == RawKind.DOC:
        return ChangeCategory.DOCS
    for pattern, category in KEYWORD_RULES:
        if pattern.match(subject):
            return category
    return None


def parse_model_category(raw: str) -> Optional[ChangeCategory]:
    for token in re.findall(r"[a-z]+", (raw or "").lower()):
        try:
            return ChangeCategory(token)
        except ValueError:
            continue
    return None


class ClassificationEngine:
    """Assigns exactly one ChangeCategory to each representative record."""

    def __init__(
        self,
        store: PipelineStore,
        generator: Optional[TextGenerator] = None,
        *,
        use_model: Optional[bool] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.use_model = Config.CLASSIFIER_MODEL_FALLBACK if use_model is None else use_model
        self.max_tokens = int(max_tokens or Config.CLASSIFIER_MAX_TOKENS)

    def classify(self, record: ChangeRecord) -> ChangeRecord:
        category = match_rules(record)
        if category is not None:
            return record.model_copy(update={"category": category, "category_source": "rule"})

        # a record already classified by the model (or its fallback) keeps that answer
        if record.category_source in ("model", "fallback"):
            return record

        key = text_hash(record.text)
        memo = self.store.get_classification(key)
        if memo:
            return record.model_copy(update={"category": ChangeCategory(memo), "category_source": "model"})

        category = self._classify_with_model(record)
        if category is None:
            incr("classify.fallback", repo=record.repository_id)
            return record.model_copy(update={"category": ChangeCategory.UNKNOWN, "category_source": "fallback"})
        self.store.put_classification(key, category.value)
        return record.model_copy(update={"category": category, "category_source": "model"})

    def classify_batch(self, records: Iterable[ChangeRecord]) -> List[ChangeRecord]:
        out = [self.classify(r) for r in records]
        by_source = {}
        for r in out:
            by_source[r.category_source] = by_source.get(r.category_source, 0) + 1
        logger.info(f"Classified {len(out)} record(s): {by_source}")
        return out

    def _classify_with_model(self, record: ChangeRecord) -> Optional[ChangeCategory]:
        if not self.use_model or self.generator is None:
            return None
        prompt = CLASSIFY_PROMPT.format(text=(record.text or "")[:2000])
        try:
            raw = self.generator.generate(prompt, self.max_tokens)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Model classifier failed for {record.id}: {e}")
            return None
        category = parse_model_category(raw)
        if category is None:
            logger.warning(f"Model classifier returned no usable category for {record.id}: {raw[:80]!r}")
        return category
