#!/usr/bin/env python3
"""Summarization orchestrator: context retrieval plus two audience summaries.

Generation is retried with bounded attempts and jittered backoff. Output that
fails validation counts as malformed and is retried the same way. Nothing is
persisted here; the caller stores the returned draft.
"""

import logging
import re
import time
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from langsmith.run_helpers import traceable

from clients.bedrock_client import TRANSIENT_CODES, BedrockError
from configs.config import Config
from utils.errors import DimensionMismatch, SummarizationFailed
from utils.json_sanitizer import JSONSanitizerError, extract_and_validate_summary
from utils.markdown_renderer import render_summary
from utils.metrics import Timer, incr
from utils.prompt_builder import build_summary_prompt, records_text
from utils.release_notes_models import (
	Audience,
	AudienceSummary,
	EnrichedRecord,
	ReleaseNoteDraft,
	Repository,
	utc_now,
)
from utils.similarity_index import SimilarityIndex
from utils.wrap import with_retries

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
	def generate(self, prompt: str, max_length: int) -> str: ...


class Embedder(Protocol):
	def embed(self, text: str) -> List[float]: ...


# Technical specifics that must not reach customer-facing text
_TECHNICAL_PATTERNS = [
	("backticks", re.compile(r"`")),
	# two or more separators, so "and/or" stays plain English
	("file path", re.compile(r"(?:^|\s)/?(?:[\w.-]+/){2,}[\w.-]*")),
	("file name", re.compile(r"\b\w+\.(?:py|js|ts|tsx|go|java|rb|rs|c|h|cpp|cs|json|ya?ml|toml|ini|sh)\b", re.IGNORECASE)),
	("snake_case identifier", re.compile(r"\b[A-Za-z0-9]+_[A-Za-z0-9_]+\b")),
	("camelCase identifier", re.compile(r"\b[a-z]+[A-Z]\w*\b")),
	("CamelCase identifier", re.compile(r"\b[A-Z][a-z0-9]+[A-Z]\w*\b")),
	("dotted identifier", re.compile(r"\b[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)+\(|\b[a-z_]\w*\.[a-z_]\w*\.[a-z_]\w*\b")),
	("commit hash", re.compile(r"\b(?=[0-9a-f]*[a-f])(?=[0-9a-f]*\d)[0-9a-f]{7,40}\b")),
	("stack trace", re.compile(r"Traceback|\bline \d+\b|\bat [\w.$]+\(")),
]

# product names that look like identifiers
_ALLOWED_WORDS = {"GitHub", "GitLab", "JavaScript", "TypeScript", "iOS", "macOS", "iPadOS", "OAuth", "PostgreSQL", "MySQL"}


def find_technical_specifics(text: str) -> List[str]:
	"""Return the names of technical-specific patterns present in text."""
	cleaned = text
	for word in _ALLOWED_WORDS:
		cleaned = cleaned.replace(word, "")
	return [name for name, rx in _TECHNICAL_PATTERNS if rx.search(cleaned)]


def validate_summary(summary: AudienceSummary, records: Sequence[EnrichedRecord]) -> None:
	"""Check coverage and category agreement; external text must stay non-technical.

	Raises:
		JSONSanitizerError: with code COVERAGE, CATEGORIES or TECHNICAL
	"""
	expected_ids = {r.id for r in records}
	covered = set(summary.covered_record_ids())
	missing = sorted(expected_ids - covered)
	unknown = sorted(covered - expected_ids)
	if missing or unknown:
		raise JSONSanitizerError(
			f"{summary.audience.value} summary coverage mismatch: missing={missing} unknown={unknown}",
			code="COVERAGE",
		)
	expected_categories = {r.category for r in records}
	got_categories = set(summary.categories())
	if got_categories != expected_categories:
		raise JSONSanitizerError(
			f"{summary.audience.value} summary categories {sorted(c.value for c in got_categories)} "
			f"differ from input {sorted(c.value for c in expected_categories)}",
			code="CATEGORIES",
		)
	if summary.audience == Audience.EXTERNAL:
		texts = [summary.headline or ""] + [it.text for s in summary.sections for it in s.items]
		for text in texts:
			found = find_technical_specifics(text)
			if found:
				raise JSONSanitizerError(f"External text carries technical specifics ({', '.join(found)}): {text[:120]}", code="TECHNICAL")


def _classify(exc: Exception) -> str:
	if isinstance(exc, JSONSanitizerError):
		return "MALFORMED"
	return getattr(exc, "code", None) or ("TIMEOUT" if isinstance(exc, TimeoutError) else "UNKNOWN")


class SummarizationOrchestrator:
	"""Builds internal and external summaries for one batch of enriched records."""

	def __init__(
		self,
		generator: TextGenerator,
		embedder: Optional[Embedder] = None,
		summaries_index: Optional[SimilarityIndex] = None,
		*,
		template_version: Optional[str] = None,
		prompts_dir: Optional[str] = None,
		max_length: Optional[int] = None,
		max_attempts: Optional[int] = None,
		backoff_base_s: Optional[float] = None,
		backoff_max_s: Optional[float] = None,
		top_k: Optional[int] = None,
		sleep: Callable[[float], None] = time.sleep,
	) -> None:
		cfg = Config.get_summary_config()
		self.generator = generator
		self.embedder = embedder
		self.summaries_index = summaries_index
		self.template_version = template_version or cfg["template_version"]
		self.prompts_dir = prompts_dir or cfg["prompts_dir"]
		self.max_length = int(max_length or cfg["max_length"])
		self.max_attempts = max(1, int(max_attempts or cfg["max_attempts"]))
		self.backoff_base_s = cfg["backoff_base_s"] if backoff_base_s is None else backoff_base_s
		self.backoff_max_s = cfg["backoff_max_s"] if backoff_max_s is None else backoff_max_s
		self.top_k = cfg["top_k"] if top_k is None else top_k
		self._sleep = sleep

	# -------- historical context --------
	def retrieve_context(self, records: Sequence[EnrichedRecord]) -> List[str]:
		"""Return texts of the top-k most similar approved summaries.

		Context is optional: embedding or index failures are logged and yield [].
		"""
		if not records or self.embedder is None or self.summaries_index is None or self.top_k <= 0:
			return []
		if len(self.summaries_index) == 0:
			return []
		try:
			with Timer("summarize.context"):
				vector = self.embedder.embed(records_text(records))
				hits = self.summaries_index.query(vector, self.top_k)
		except (BedrockError, DimensionMismatch) as e:
			logger.warning(f"Context retrieval skipped ({getattr(e, 'code', 'UNKNOWN')}): {e}")
			incr("summarize.context_skipped", code=getattr(e, "code", "UNKNOWN"))
			return []
		return [h.metadata.get("text", "") for h in hits if h.metadata.get("text")]

	def remember(self, draft: ReleaseNoteDraft) -> bool:
		"""Index an approved draft so later runs can use it as context."""
		if self.embedder is None or self.summaries_index is None:
			return False
		try:
			vector = self.embedder.embed(draft.internal_text)
			self.summaries_index.upsert(
				draft.id,
				vector,
				{
					"repository_id": draft.repository_id,
					"timestamp": (draft.updated_at or draft.created_at).isoformat(),
					"text": draft.internal_text[: Config.CONTEXT_MAX_CHARS],
				},
			)
		except (BedrockError, DimensionMismatch) as e:
			logger.warning(f"Could not index approved draft {draft.id}: {e}")
			return False
		return True

	# -------- generation --------
	@traceable(name="generate_summary")
	def _generate(self, prompt: str, audience: str) -> str:
		return self.generator.generate(prompt, self.max_length)

	def summarize_for_audience(
		self,
		audience: Audience,
		repository: Repository,
		records: Sequence[EnrichedRecord],
		context: Sequence[str] = (),
	) -> AudienceSummary:
		prompt, meta = build_summary_prompt(
			audience,
			repository,
			records,
			context,
			version=self.template_version,
			prompts_dir=self.prompts_dir,
		)
		logger.debug(f"Summary prompt built: {meta}")

		def _attempt() -> AudienceSummary:
			raw = self._generate(prompt, audience.value)
			summary = extract_and_validate_summary(raw, audience)
			validate_summary(summary, records)
			return summary

		def _on_retry(attempt: int, exc: Exception) -> None:
			incr("summarize.retry", audience=audience.value, code=_classify(exc))

		with Timer("summarize.generate", repo=repository.id, audience=audience.value):
			return with_retries(
				_attempt,
				max_attempts=self.max_attempts,
				backoff_s=self.backoff_base_s,
				max_backoff_s=self.backoff_max_s,
				retry_on=TRANSIENT_CODES,
				classify_exc=_classify,
				sleep=self._sleep,
				on_retry=_on_retry,
			)

	def summarize(
		self,
		repository: Repository,
		records: Sequence[EnrichedRecord],
		context: Optional[Sequence[str]] = None,
	) -> ReleaseNoteDraft:
		"""Produce an unsaved draft carrying both audience texts.

		Raises:
			SummarizationFailed: when either audience exhausts its attempts
		"""
		if not records:
			raise ValueError("Cannot summarize an empty record set")
		if context is None:
			context = self.retrieve_context(records)
		by_id: Dict[str, EnrichedRecord] = {r.id: r for r in records}
		texts: Dict[Audience, str] = {}
		for audience in (Audience.INTERNAL, Audience.EXTERNAL):
			try:
				summary = self.summarize_for_audience(audience, repository, records, context)
			except Exception as e:  # noqa: BLE001
				# anything that outlives the retries fails the summary as a whole
				code = _classify(e)
				incr("summarize.failed", repo=repository.id, audience=audience.value, code=code)
				logger.error(f"Summarization failed for {repository.name} ({audience.value}): {e}")
				raise SummarizationFailed(
					f"{audience.value} summary for {repository.name} failed: {e}",
					code=getattr(e, "code", None) or code,
					attempts=self.max_attempts if code in TRANSIENT_CODES else 1,
				) from e
			texts[audience] = render_summary(summary, repo_name=repository.name, records=by_id)
		categories = sorted({r.category for r in records}, key=lambda c: c.value)
		draft = ReleaseNoteDraft(
			repository_id=repository.id,
			internal_text=texts[Audience.INTERNAL],
			external_text=texts[Audience.EXTERNAL],
			created_at=utc_now(),
			source_record_ids=[r.id for r in records],
			categories=categories,
			template_version=self.template_version,
		)
		incr("summarize.ok", repo=repository.id, records=len(records), context=len(context))
		logger.info(f"Summarized {len(records)} record(s) for {repository.name} into draft {draft.id}")
		return draft


__all__ = ["SummarizationOrchestrator", "validate_summary", "find_technical_specifics"]
