#!/usr/bin/env python3
"""Release notes pipeline models.

Records flow Extractor -> Dedup/Classify -> Enrich -> Summarize; drafts flow
through the approval state machine. The `AudienceSummary` family is the JSON
contract the summarization prompts target.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, constr, field_validator

SCHEMA_VERSION = "v1"


class ChangeCategory(str, Enum):
	BUGFIX = "bugfix"
	FEATURE = "feature"
	DOCS = "docs"
	CHORE = "chore"
	BREAKING = "breaking"
	UNKNOWN = "unknown"


class RawKind(str, Enum):
	COMMIT = "commit"
	PR = "pr"
	DOC = "doc"
	ISSUE = "issue"


class ApprovalStatus(str, Enum):
	DRAFT = "draft"
	EDITED = "edited"
	APPROVED = "approved"
	REJECTED = "rejected"

	@property
	def is_terminal(self) -> bool:
		return self in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


class Audience(str, Enum):
	INTERNAL = "internal"
	EXTERNAL = "external"


class RunStatus(str, Enum):
	RUNNING = "running"
	SUCCEEDED = "succeeded"
	FAILED = "failed"


CategorySource = Literal["rule", "model", "fallback", "none"]
CrossRefKind = Literal["issue", "pull", "unknown"]


def utc_now() -> datetime:
	return datetime.now(timezone.utc)


def to_utc(value: Any) -> datetime:
	"""Normalize ISO strings, epoch seconds and datetimes to aware UTC.

	Naive datetimes are taken to already be UTC.
	"""
	if isinstance(value, datetime):
		dt = value
	elif isinstance(value, (int, float)):
		dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
	elif isinstance(value, str) and value.strip():
		raw = value.strip()
		if raw.endswith("Z") or raw.endswith("z"):
			raw = raw[:-1] + "+00:00"
		dt = datetime.fromisoformat(raw)
	else:
		raise ValueError(f"Unsupported timestamp value: {value!r}")
	if dt.tzinfo is None:
		return dt.replace(tzinfo=timezone.utc)
	return dt.astimezone(timezone.utc)


def new_id() -> str:
	return uuid.uuid4().hex


class _StrictModel(BaseModel):
	model_config = ConfigDict(extra="forbid")


class SourceRef(_StrictModel):
	"""One original signal (commit, PR, doc fragment) behind a record."""

	id: constr(min_length=1)
	kind: RawKind
	text: str = ""


class ChangeRecord(_StrictModel):
	"""A normalized unit of version-control activity."""

	id: constr(min_length=1)
	repository_id: constr(min_length=1)
	text: str
	author: str = "unknown"
	timestamp: datetime
	kind: RawKind
	category: ChangeCategory = ChangeCategory.UNKNOWN
	category_source: CategorySource = "none"
	sources: List[SourceRef] = Field(default_factory=list)
	draft_id: Optional[str] = None

	@field_validator("timestamp", mode="before")
	@classmethod
	def _normalize_timestamp(cls, value: Any) -> datetime:
		return to_utc(value)

	@property
	def subject(self) -> str:
		lines = (self.text or "").strip().splitlines()
		return lines[0].strip() if lines else ""

	def source_ids(self) -> List[str]:
		ids = [s.id for s in self.sources]
		if self.id not in ids:
			ids.insert(0, self.id)
		return ids


class CrossReference(_StrictModel):
	"""An issue/PR reference found in record text, resolved or broken."""

	ref: constr(min_length=1)
	kind: CrossRefKind = "unknown"
	repo: Optional[str] = None
	number: Optional[int] = None
	resolved: bool = False
	title: Optional[str] = None
	url: Optional[str] = None
	state: Optional[str] = None
	broken_reason: Optional[str] = None


class EnrichedRecord(_StrictModel):
	"""A classified record plus its cross-references. Read-only downstream."""

	model_config = ConfigDict(extra="forbid", frozen=True)

	record: ChangeRecord
	cross_refs: List[CrossReference] = Field(default_factory=list)
	relevance_score: Optional[float] = None

	@property
	def id(self) -> str:
		return self.record.id

	@property
	def category(self) -> ChangeCategory:
		return self.record.category

	@property
	def broken_links(self) -> List[CrossReference]:
		return [c for c in self.cross_refs if not c.resolved]

	def with_links(self, extra: List[CrossReference]) -> "EnrichedRecord":
		"""Return a copy with additional cross-references; nothing else changes."""
		known = {c.ref for c in self.cross_refs}
		merged = list(self.cross_refs) + [c for c in extra if c.ref not in known]
		return EnrichedRecord(record=self.record, cross_refs=merged, relevance_score=self.relevance_score)


class EmbeddingEntry(_StrictModel):
	id: constr(min_length=1)
	vector: List[float]
	metadata: Dict[str, Any] = Field(default_factory=dict)


class DraftVersion(_StrictModel):
	"""A prior text pair kept in a draft's edit history."""

	internal_text: str
	external_text: str
	status: ApprovalStatus
	recorded_at: datetime = Field(default_factory=utc_now)
	editor: Optional[str] = None


class ReleaseNoteDraft(_StrictModel):
	"""Internal/external text pair awaiting approval."""

	id: str = Field(default_factory=new_id)
	repository_id: constr(min_length=1)
	internal_text: str
	external_text: str
	created_at: datetime = Field(default_factory=utc_now)
	updated_at: Optional[datetime] = None
	status: ApprovalStatus = ApprovalStatus.DRAFT
	edit_history: List[DraftVersion] = Field(default_factory=list)
	source_record_ids: List[str] = Field(default_factory=list)
	categories: List[ChangeCategory] = Field(default_factory=list)
	template_version: str = SCHEMA_VERSION
	active: bool = True
	regenerated_from: Optional[str] = None
	published_at: Optional[datetime] = None
	publish_error: Optional[str] = None


class Repository(_StrictModel):
	id: str = Field(default_factory=new_id)
	name: constr(strip_whitespace=True, min_length=1, max_length=200)
	registered_at: datetime = Field(default_factory=utc_now)


class RunRecord(_StrictModel):
	"""One end-to-end pipeline execution for one repository and one trigger."""

	id: str = Field(default_factory=new_id)
	repository_id: str
	trigger_id: Optional[str] = None
	status: RunStatus = RunStatus.RUNNING
	reason: str = ""
	started_at: datetime = Field(default_factory=utc_now)
	finished_at: Optional[datetime] = None
	draft_id: Optional[str] = None
	stats: Dict[str, int] = Field(default_factory=dict)


# --- Summarization output contract ---

class SummaryItem(_StrictModel):
	text: constr(strip_whitespace=True, min_length=3, max_length=2000)
	record_ids: List[constr(min_length=1)] = Field(default_factory=list)


class SummarySection(_StrictModel):
	category: ChangeCategory
	items: List[SummaryItem] = Field(default_factory=list)


class AudienceSummary(_StrictModel):
	"""Structured summary for one audience, as returned by the model."""

	schema_version: constr(min_length=1, max_length=20) = Field(default=SCHEMA_VERSION)
	audience: Audience
	headline: Optional[constr(max_length=300)] = None
	sections: List[SummarySection] = Field(default_factory=list)

	def categories(self) -> List[ChangeCategory]:
		return [s.category for s in self.sections if s.items]

	def covered_record_ids(self) -> List[str]:
		out: List[str] = []
		for sec in self.sections:
			for it in sec.items:
				out.extend(it.record_ids)
		return sorted(set(out))
