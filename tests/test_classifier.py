"""Tests for rule-based classification and the memoized model fallback."""

from __future__ import annotations

import pytest

from utils.classifier import ClassificationEngine, match_rules, parse_model_category, text_hash
from utils.release_notes_models import ChangeCategory, ChangeRecord, RawKind


def _rec(text: str, kind: RawKind = RawKind.COMMIT, rid: str = "c1") -> ChangeRecord:
    return ChangeRecord(id=rid, repository_id="r1", text=text, author="alice", timestamp="2024-05-01T00:00:00Z", kind=kind)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("fix: null pointer in parser", ChangeCategory.BUGFIX),
        ("feat(api): add export endpoint", ChangeCategory.FEATURE),
        ("docs: clarify install steps", ChangeCategory.DOCS),
        ("chore(deps): bump requests", ChangeCategory.CHORE),
        ("feat!: drop python 3.7", ChangeCategory.BREAKING),
        ("refactor: simplify loader\n\nBREAKING CHANGE: loader signature changed", ChangeCategory.BREAKING),
        ("Merge PR #42: fix null pointer in parser", ChangeCategory.BUGFIX),
        ("Fixed crash on empty input", ChangeCategory.BUGFIX),
        ("Add dark mode", ChangeCategory.FEATURE),
    ],
)
def test_rules(text, expected):
    assert match_rules(_rec(text)) == expected


def test_doc_kind_is_docs():
    assert match_rules(_rec("Getting started guide", kind=RawKind.DOC)) == ChangeCategory.DOCS


def test_no_rule_returns_none():
    assert match_rules(_rec("Tweak the thing")) is None


def test_parse_model_category():
    assert parse_model_category("Feature.") == ChangeCategory.FEATURE
    assert parse_model_category("I think: bugfix") == ChangeCategory.BUGFIX
    assert parse_model_category("no idea") is None


class TestEngine:
    def test_rule_result_does_not_call_model(self, store, generator):
        engine = ClassificationEngine(store, generator)
        out = engine.classify(_rec("fix: crash"))
        assert out.category == ChangeCategory.BUGFIX
        assert out.category_source == "rule"
        assert generator.prompts == []

    def test_model_fallback_is_memoized(self, store, generator):
        generator.classify_answer = "feature"
        engine = ClassificationEngine(store, generator)
        first = engine.classify(_rec("Tweak the thing"))
        generator.classify_answer = "docs"
        second = engine.classify(_rec("Tweak the thing"))
        assert first.category == second.category == ChangeCategory.FEATURE
        assert len(generator.prompts) == 1
        assert store.get_classification(text_hash("Tweak the thing")) == "feature"

    def test_model_failure_degrades_to_unknown(self, store, generator):
        generator.responses.append(RuntimeError("boom"))
        engine = ClassificationEngine(store, generator)
        out = engine.classify(_rec("Tweak the thing"))
        assert out.category == ChangeCategory.UNKNOWN
        assert out.category_source == "fallback"
        # failures are not memoized
        assert store.get_classification(text_hash("Tweak the thing")) is None

    def test_model_disabled(self, store, generator):
        engine = ClassificationEngine(store, generator, use_model=False)
        assert engine.classify(_rec("Tweak the thing")).category == ChangeCategory.UNKNOWN

    def test_reclassifying_is_idempotent(self, store, generator):
        engine = ClassificationEngine(store, generator)
        rec = _rec("fix: crash")
        once = engine.classify(rec)
        assert engine.classify(once).category == once.category

    def test_reclassifying_after_model_failure_is_idempotent(self, store, generator):
        generator.responses.append(RuntimeError("throttled"))
        generator.classify_answer = "feature"
        engine = ClassificationEngine(store, generator)
        first = engine.classify(_rec("Tweak the thing"))
        assert first.category == ChangeCategory.UNKNOWN
        again = engine.classify(first)
        assert again.category == ChangeCategory.UNKNOWN
        assert again.category_source == "fallback"
        assert len(generator.prompts) == 1
