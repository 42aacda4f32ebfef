#!/usr/bin/env python3
from __future__ import annotations

import textwrap
from typing import Dict, List, Optional

from configs.config import Config
from utils.release_notes_models import Audience, AudienceSummary, ChangeCategory, EnrichedRecord, SummaryItem

SECTION_ORDER = [
	ChangeCategory.BREAKING,
	ChangeCategory.FEATURE,
	ChangeCategory.BUGFIX,
	ChangeCategory.DOCS,
	ChangeCategory.CHORE,
	ChangeCategory.UNKNOWN,
]

INTERNAL_LABELS = {
	ChangeCategory.BREAKING: "Breaking changes",
	ChangeCategory.FEATURE: "Features",
	ChangeCategory.BUGFIX: "Fixes",
	ChangeCategory.DOCS: "Documentation",
	ChangeCategory.CHORE: "Maintenance",
	ChangeCategory.UNKNOWN: "Uncategorized",
}

# plain-language headings for customers
EXTERNAL_LABELS = {
	ChangeCategory.BREAKING: "Important changes",
	ChangeCategory.FEATURE: "New features",
	ChangeCategory.BUGFIX: "Bug fixes",
	ChangeCategory.DOCS: "Documentation updates",
	ChangeCategory.CHORE: "Behind-the-scenes improvements",
	ChangeCategory.UNKNOWN: "Other changes",
}


def escape_md(s: str) -> str:
	if not s:
		return s
	for ch in ["*", "_", "`", "|"]:
		s = s.replace(ch, f"\\{ch}")
	return s


def _wrap(text: str, width: int = 110) -> str:
	return "\n  ".join(textwrap.wrap(text, width=width, replace_whitespace=False, break_long_words=False))


def short_id(record_id: str) -> str:
	# commit shas are shortened, other ids kept as-is
	if len(record_id) >= 12 and all(c in "0123456789abcdef" for c in record_id.lower()):
		return record_id[:7]
	return record_id


def _internal_refs(record_ids: List[str], records: Dict[str, EnrichedRecord]) -> str:
	parts: List[str] = []
	for rid in record_ids:
		parts.append(short_id(rid))
		rec = records.get(rid)
		if rec is None:
			continue
		for ref in rec.cross_refs:
			label = ref.ref if ref.resolved else f"{ref.ref} (broken link)"
			if label not in parts:
				parts.append(label)
	return ", ".join(parts)


def render_summary(
	summary: AudienceSummary,
	*,
	repo_name: str,
	records: Optional[Dict[str, EnrichedRecord]] = None,
) -> str:
	"""Render one audience's summary as Markdown text."""
	records = records or {}
	internal = summary.audience == Audience.INTERNAL
	labels = INTERNAL_LABELS if internal else EXTERNAL_LABELS
	header = f"# Release Notes (internal): {repo_name}" if internal else f"# What's new in {repo_name}"
	out: List[str] = [header, ""]
	if summary.headline:
		out.extend([_wrap(summary.headline), ""])
	# sections repeating a category are merged in order
	by_category: Dict[ChangeCategory, List[SummaryItem]] = {}
	for section in summary.sections:
		if section.items:
			by_category.setdefault(section.category, []).extend(section.items)
	for category in SECTION_ORDER:
		items = by_category.get(category)
		if not items:
			continue
		out.append(f"## {labels[category]}")
		for it in items:
			line = f"- {escape_md(it.text)}"
			if internal and it.record_ids:
				line += f" _(refs: {escape_md(_internal_refs(it.record_ids, records))})_"
			out.append(_wrap(line))
		out.append("")
	if not by_category and Config.RENDER_EMPTY_PLACEHOLDER:
		out.append("No user-facing changes detected.")
	return "\n".join(out).rstrip() + "\n"
