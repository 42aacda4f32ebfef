#!/usr/bin/env python3
from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Sequence, Tuple

from configs.config import Config
from utils.release_notes_models import Audience, AudienceSummary, EnrichedRecord, Repository
from utils.schema_utils import to_json_schema


def _render_template(template: str, mapping: Dict[str, str]) -> str:
	text = template
	for key, value in mapping.items():
		text = text.replace(f"{{{{ {key} }}}}", value)
	return text


def _bulleted(lines: List[str], *, max_lines: int = 200) -> str:
	if not lines:
		return "- none"
	out = []
	for line in lines[:max_lines]:
		line_clean = str(line).replace("\r", " ").replace("\n", " ")
		out.append(f"- {line_clean}")
	return "\n".join(out)


def template_path(audience: Audience, version: str, prompts_dir: str | None = None) -> str:
	return os.path.join(prompts_dir or Config.PROMPTS_DIR, f"{audience.value}.{version}.prompt")


def load_template(audience: Audience, version: str, prompts_dir: str | None = None) -> str:
	path = template_path(audience, version, prompts_dir)
	if not os.path.exists(path):
		raise FileNotFoundError(f"No prompt template for {audience.value}/{version}: {path}")
	with open(path, "r", encoding="utf-8") as f:
		return f.read()


def record_line(rec: EnrichedRecord, audience: Audience, *, max_chars: int = 600) -> str:
	text = " ".join((rec.record.text or "").split())[:max_chars]
	if audience == Audience.EXTERNAL:
		return f"{rec.id} | {rec.category.value} | {text}"
	refs = ", ".join(
		f"{c.ref} ({c.title})" if c.resolved and c.title else f"{c.ref} (unresolved)"
		for c in rec.cross_refs
	) or "none"
	return f"{rec.id} | {rec.category.value} | {rec.record.author} | {text} | {refs}"


def records_text(records: Sequence[EnrichedRecord]) -> str:
	"""Stable text representation of a record set, used as the similarity query."""
	return "\n".join(f"[{r.category.value}] {r.record.subject}" for r in records)


def build_summary_prompt(
	audience: Audience,
	repository: Repository,
	records: Sequence[EnrichedRecord],
	context: Sequence[str],
	*,
	version: str | None = None,
	prompts_dir: str | None = None,
) -> Tuple[str, Dict[str, Any]]:
	"""Build the prompt for one audience.

	Returns the prompt text and meta info for logging.
	"""
	if not records:
		raise ValueError("No records available for prompt")
	version = version or Config.PROMPT_TEMPLATE_VERSION
	template = load_template(audience, version, prompts_dir)
	categories = sorted({r.category.value for r in records})
	schema_json = json.dumps(to_json_schema(AudienceSummary), separators=(",", ":"))
	mapping = {
		"repo": repository.name,
		"template_version": version,
		"audience": audience.value,
		"categories_csv": ", ".join(categories),
		"records_bulleted": _bulleted([record_line(r, audience) for r in records]),
		"context_bulleted": _bulleted([c[: Config.CONTEXT_MAX_CHARS] for c in context], max_lines=10),
		"json_schema": schema_json,
	}
	prompt = _render_template(template, mapping)
	meta = {
		"repo": repository.name,
		"audience": audience.value,
		"template_version": version,
		"records": len(records),
		"context": len(context),
		"prompt_len": len(prompt),
	}
	return prompt, meta
