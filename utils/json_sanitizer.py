#!/usr/bin/env python3
"""Recover one summary object from model output.

Models wrap JSON in prose or code fences, add trailing commas and use smart
quotes. Repairs are limited to those; content is never invented.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterator, List

from pydantic import ValidationError

from utils.release_notes_models import Audience, AudienceSummary


class JSONSanitizerError(Exception):
	"""Model output could not be turned into a valid summary."""
	def __init__(self, message: str, code: str = "SANITIZE_ERROR") -> None:
		super().__init__(message)
		self.code = code


_FENCE = re.compile(r"```(?:json|JSON)?[ \t]*\n?|```")
_CONTROL = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def _clean(raw_text: str) -> str:
	return _CONTROL.sub(" ", _FENCE.sub("", raw_text))


def _top_level_objects(text: str) -> Iterator[str]:
	"""Yield balanced top-level {...} spans, ignoring braces inside strings."""
	depth = 0
	start = -1
	in_string = False
	escaped = False
	for i, ch in enumerate(text):
		if in_string:
			if escaped:
				escaped = False
			elif ch == "\\":
				escaped = True
			elif ch == '"':
				in_string = False
			continue
		if ch == '"' and depth:
			in_string = True
		elif ch == "{":
			if depth == 0:
				start = i
			depth += 1
		elif ch == "}" and depth:
			depth -= 1
			if depth == 0:
				yield text[start:i + 1]


def extract_json_objects(raw_text: str) -> List[str]:
	"""Return candidate JSON object strings, objects mentioning "sections" first."""
	if not raw_text:
		return []
	text = _clean(raw_text)
	spans = sorted(_top_level_objects(text), key=lambda s: ('"sections"' not in s, -len(s)))
	cands: List[str] = []
	for span in spans:
		if span not in cands:
			cands.append(span)
	# unbalanced output: fall back to the widest brace span, then the whole text
	first, last = text.find("{"), text.rfind("}")
	if 0 <= first < last and text[first:last + 1] not in cands:
		cands.append(text[first:last + 1])
	if text.strip() and text.strip() not in cands:
		cands.append(text.strip())
	return cands


def minimal_json_repairs(s: str) -> str:
	"""Normalize quotes and drop trailing commas."""
	return _TRAILING_COMMA.sub(r"\1", s.translate(_QUOTES)).strip()


def _coerce(data: Any, audience: Audience) -> Dict[str, Any]:
	if not isinstance(data, dict):
		raise JSONSanitizerError("Top-level JSON value is not an object", code="STRUCTURE")
	data = dict(data)
	# the audience is decided by the caller, not the model
	data["audience"] = audience.value
	return data


def extract_and_validate_summary(raw_text: str, audience: Audience) -> AudienceSummary:
	"""Parse the first decodable candidate into an AudienceSummary.

	Raises:
		JSONSanitizerError: NO_JSON, JSON_DECODE, STRUCTURE or VALIDATION
	"""
	candidates = extract_json_objects(raw_text)
	if not candidates:
		raise JSONSanitizerError("Model returned no text", code="NO_JSON")
	decode_error: Exception | None = None
	for cand in candidates:
		try:
			data = json.loads(minimal_json_repairs(cand))
		except json.JSONDecodeError as e:
			decode_error = decode_error or e
			continue
		try:
			return AudienceSummary.model_validate(_coerce(data, audience))
		except ValidationError as e:
			raise JSONSanitizerError(str(e), code="VALIDATION") from e
	raise JSONSanitizerError(f"No decodable JSON object: {decode_error}", code="JSON_DECODE")
