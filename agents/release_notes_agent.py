#!/usr/bin/env python3
"""Release notes pipeline and command-line entry point.

A run extracts new activity for one repository, records it, collapses and
classifies the pending records, enriches them with cross-references, updates
the record index while retrieving historical context, and stores one draft
carrying internal and external release notes. Drafts are then edited,
approved or rejected through the approval state machine.
"""

import json
import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from agents.summarization_agent import SummarizationOrchestrator
from cache.pipeline_store import PipelineStore
from clients.bedrock_client import BedrockError
from configs.config import Config
from utils.approval import ApprovalStateMachine, PublishHook
from utils.change_extractor import ChangeExtractor, EventProvider
from utils.classifier import ClassificationEngine
from utils.enrichment import EnrichmentStage
from utils.errors import DimensionMismatch, InvalidTransition, PipelineError, RepositoryError
from utils.metrics import Timer, incr
from utils.normalization import deduplicate
from utils.release_notes_models import (
	ApprovalStatus,
	ChangeRecord,
	EnrichedRecord,
	ReleaseNoteDraft,
	Repository,
	RunRecord,
	RunStatus,
	to_utc,
	utc_now,
)
from utils.run_coordinator import RunCoordinator, TriggerOutcome
from utils.similarity_index import SimilarityIndex

# Set up logging
logger = logging.getLogger(__name__)

RECORDS_INDEX = "records"
SUMMARIES_INDEX = "summaries"


class ReleaseNotesPipeline:
	"""Wires the pipeline stages together around one persistent store."""

	def __init__(
		self,
		store: PipelineStore,
		provider: EventProvider,
		generator,
		embedder,
		*,
		publish_hook: Optional[PublishHook] = None,
		records_index: Optional[SimilarityIndex] = None,
		summaries_index: Optional[SimilarityIndex] = None,
		extractor: Optional[ChangeExtractor] = None,
		summarizer: Optional[SummarizationOrchestrator] = None,
		embed_workers: Optional[int] = None,
		audit_root: Optional[str] = None,
		index_dir: Optional[str] = None,
	):
		self.store = store
		self.provider = provider
		self.embedder = embedder
		self.index_dir = index_dir or os.path.join(store.root_dir, "index")
		dimension = getattr(embedder, "dimension", None) or Config.EMBEDDING_DIM
		self.records_index = records_index or SimilarityIndex.load(self.index_dir, RECORDS_INDEX, dimension)
		self.summaries_index = summaries_index or SimilarityIndex.load(self.index_dir, SUMMARIES_INDEX, dimension)
		self.extractor = extractor or ChangeExtractor(provider, store)
		self.classifier = ClassificationEngine(store, generator)
		self.enricher = EnrichmentStage(provider)
		self.summarizer = summarizer or SummarizationOrchestrator(generator, embedder, self.summaries_index)
		self.approval = ApprovalStateMachine(store, publish_hook, audit_root=audit_root)
		self.embed_workers = embed_workers or Config.EMBED_MAX_WORKERS
		self._coordinator: Optional[RunCoordinator] = None
		self._repo_locks: Dict[str, threading.Lock] = {}
		self._repo_locks_guard = threading.Lock()
		logger.info("Release notes pipeline initialized")

	# -------- repositories --------
	def add_repository(self, name: str) -> Repository:
		return self.store.add_repository(name)

	def remove_repository(self, repository_id: str) -> int:
		return self.store.delete_repository(repository_id)

	def resolve_repository(self, name_or_id: str) -> Repository:
		repo = self.store.find_repository(name_or_id)
		return repo or self.store.get_repository(name_or_id)

	# -------- runs --------
	def _repository_lock(self, repository_id: str) -> threading.Lock:
		with self._repo_locks_guard:
			return self._repo_locks.setdefault(repository_id, threading.Lock())

	@property
	def coordinator(self) -> RunCoordinator:
		if self._coordinator is None:
			self._coordinator = RunCoordinator(lambda repo_id, trigger_id: self.run(repo_id, trigger_id=trigger_id))
		return self._coordinator

	def trigger(self, repository_id: str) -> TriggerOutcome:
		"""Schedule a run through the per-repository coordinator."""
		self.store.get_repository(repository_id)
		return self.coordinator.trigger(repository_id)

	def run(
		self,
		repository_id: str,
		*,
		since: Optional[datetime] = None,
		until: Optional[datetime] = None,
		trigger_id: Optional[str] = None,
	) -> RunRecord:
		"""Execute one end-to-end run and return its terminal RunRecord.

		Pipeline conditions (unreachable provider, failed summarization) end the
		run as failed with a reason; records already stored stay pending. Runs
		for one repository are serialized however they are started.
		"""
		with self._repository_lock(repository_id):
			return self._run(repository_id, since=since, until=until, trigger_id=trigger_id)

	def _run(
		self,
		repository_id: str,
		*,
		since: Optional[datetime],
		until: Optional[datetime],
		trigger_id: Optional[str],
	) -> RunRecord:
		repository = self.store.get_repository(repository_id)
		run = RunRecord(repository_id=repository.id, trigger_id=trigger_id)
		self.store.save_run(run)
		stats: Dict[str, int] = {
			"extracted": 0,
			"pending": 0,
			"representatives": 0,
			"embedded": 0,
			"embed_skipped": 0,
			"broken_links": 0,
			"context": 0,
		}
		logger.info(f"Run {run.id} started for {repository.name}")
		try:
			with Timer("run", repo=repository.id):
				for batch in self.extractor.iter_batches(repository, since=since, until=until):
					self.store.upsert_records(batch.records)
					self.extractor.commit(batch)
					stats["extracted"] += len(batch.records)

				pending = self.store.list_records(repository.id, pending_only=True)
				stats["pending"] = len(pending)
				if not pending:
					return self._finish(run, RunStatus.SUCCEEDED, "No pending changes", stats)

				enriched = self._prepare(repository, pending)
				stats["representatives"] = len(enriched)
				stats["broken_links"] = sum(len(e.broken_links) for e in enriched)
				draft, context_count, embedded, skipped = self._draft(repository, enriched)
				stats.update({"context": context_count, "embedded": embedded, "embed_skipped": skipped})

				self.store.save_draft(draft)
				self.store.mark_records_drafted(repository.id, self._covered_ids(enriched), draft.id)
				run = run.model_copy(update={"draft_id": draft.id})
				return self._finish(run, RunStatus.SUCCEEDED, f"Draft {draft.id} created from {len(enriched)} change(s)", stats)
		except PipelineError as e:
			return self._finish(run, RunStatus.FAILED, f"{e.code}: {e}", stats)
		except Exception as e:
			self._finish(run, RunStatus.FAILED, f"UNEXPECTED: {e}", stats)
			raise

	def _prepare(self, repository: Repository, records: Sequence[ChangeRecord]) -> List[EnrichedRecord]:
		representatives = deduplicate(records)
		classified = self.classifier.classify_batch(representatives)
		return self.enricher.enrich_batch(repository, classified)

	def _draft(self, repository: Repository, enriched: List[EnrichedRecord]) -> Tuple[ReleaseNoteDraft, int, int, int]:
		# the record index update and the context query are independent
		with ThreadPoolExecutor(max_workers=2, thread_name_prefix="release-notes-stage") as pool:
			context_future = pool.submit(self.summarizer.retrieve_context, enriched)
			index_future = pool.submit(self.index_records, enriched)
			context = context_future.result()
			embedded, skipped = index_future.result()
		self._save_index(self.records_index)
		draft = self.summarizer.summarize(repository, enriched, context)
		return draft, len(context), embedded, skipped

	@staticmethod
	def _covered_ids(enriched: Sequence[EnrichedRecord]) -> List[str]:
		ids: List[str] = []
		for e in enriched:
			ids.extend(e.record.source_ids())
		return sorted(set(ids))

	def _finish(self, run: RunRecord, status: RunStatus, reason: str, stats: Dict[str, int]) -> RunRecord:
		run = run.model_copy(update={"status": status, "reason": reason, "finished_at": utc_now(), "stats": dict(stats)})
		self.store.save_run(run)
		incr("run.finished", repo=run.repository_id, status=status.value)
		if status == RunStatus.FAILED:
			logger.error(f"Run {run.id} failed: {reason}")
		else:
			logger.info(f"Run {run.id} succeeded: {reason}")
		return run

	# -------- record index --------
	def _embed_one(self, enriched: EnrichedRecord) -> bool:
		rec = enriched.record
		try:
			vector = self.embedder.embed(f"[{rec.category.value}] {rec.text}")
			self.records_index.upsert(
				rec.id,
				vector,
				{
					"repository_id": rec.repository_id,
					"timestamp": rec.timestamp.isoformat(),
					"category": rec.category.value,
					"text": rec.subject,
				},
			)
		except (BedrockError, DimensionMismatch) as e:
			logger.warning(f"Embedding skipped for {rec.id} ({getattr(e, 'code', 'UNKNOWN')}): {e}")
			incr("index.skipped", code=getattr(e, "code", "UNKNOWN"))
			return False
		return True

	def index_records(self, enriched: Sequence[EnrichedRecord]) -> Tuple[int, int]:
		"""Embed and upsert records in parallel. Returns (embedded, skipped)."""
		if not enriched:
			return 0, 0
		with Timer("index.records"):
			with ThreadPoolExecutor(max_workers=self.embed_workers, thread_name_prefix="release-notes-embed") as pool:
				results = list(pool.map(self._embed_one, enriched))
		embedded = sum(1 for r in results if r)
		return embedded, len(results) - embedded

	def _save_index(self, index: SimilarityIndex) -> None:
		try:
			index.save(self.index_dir)
		except OSError as e:
			logger.warning(f"Could not persist index {index.name}: {e}")

	# -------- drafts --------
	def regenerate(self, draft_id: str) -> ReleaseNoteDraft:
		"""Summarize a rejected draft's changes again into a new draft."""
		old = self._load_draft(draft_id)
		with self._repository_lock(old.repository_id):
			return self._regenerate(self._load_draft(draft_id))

	def _load_draft(self, draft_id: str) -> ReleaseNoteDraft:
		draft = self.store.get_draft(draft_id)
		if draft is None:
			raise PipelineError(f"Draft {draft_id} not found", code="NOT_FOUND")
		return draft

	def _regenerate(self, old: ReleaseNoteDraft) -> ReleaseNoteDraft:
		draft_id = old.id
		if old.status != ApprovalStatus.REJECTED or not old.active:
			raise InvalidTransition(draft_id, old.status.value, "regenerate")
		repository = self.store.get_repository(old.repository_id)
		records = [r for r in self.store.list_records(repository.id) if r.draft_id == old.id]
		if not records:
			raise PipelineError(f"Draft {draft_id} has no records left to regenerate", code="NO_RECORDS")
		enriched = self._prepare(repository, [r.model_copy(update={"draft_id": None}) for r in records])
		draft, _, _, _ = self._draft(repository, enriched)
		draft = draft.model_copy(update={"regenerated_from": old.id})
		self.store.save_draft(draft)
		self.store.mark_records_drafted(repository.id, [r.id for r in records], draft.id)
		logger.info(f"Draft {old.id} regenerated as {draft.id}")
		return draft

	def edit(self, draft_id: str, **kwargs) -> ReleaseNoteDraft:
		return self.approval.edit(draft_id, **kwargs)

	def reject(self, draft_id: str, **kwargs) -> ReleaseNoteDraft:
		return self.approval.reject(draft_id, **kwargs)

	def approve(self, draft_id: str, *, actor: Optional[str] = None) -> ReleaseNoteDraft:
		"""Approve a draft and add it to the historical summaries index."""
		draft = self.approval.approve(draft_id, actor=actor)
		if self.summarizer.remember(draft):
			self._save_index(self.summaries_index)
		return draft

	def status(self, repository_id: str) -> Dict[str, object]:
		runs = self.store.list_runs(repository_id)
		drafts = self.store.list_drafts(repository_id)
		return {
			"repository": self.store.get_repository(repository_id).model_dump(mode="json"),
			"pending_records": len(self.store.list_records(repository_id, pending_only=True)),
			"last_run": runs[-1].model_dump(mode="json") if runs else None,
			"drafts": [{"id": d.id, "status": d.status.value, "active": d.active, "created_at": d.created_at.isoformat()} for d in drafts],
		}

	def close(self) -> None:
		if self._coordinator is not None:
			self._coordinator.shutdown()
		close = getattr(self.provider, "close", None)
		if callable(close):
			close()
		logger.info("Release notes pipeline closed")


def build_pipeline(publish_mode: Optional[str] = None) -> ReleaseNotesPipeline:
	"""Build a pipeline over the configured GitHub, Bedrock and publish backends."""
	from clients.bedrock_client import BedrockClient
	from clients.embedding_client import EmbeddingClient
	from clients.github_client import GithubEventProvider
	from utils.release_publisher import build_publish_hook

	return ReleaseNotesPipeline(
		PipelineStore(),
		GithubEventProvider(),
		BedrockClient(),
		EmbeddingClient(),
		publish_hook=build_publish_hook(publish_mode),
	)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
	return to_utc(value) if value else None


def _read_text(path: Optional[str]) -> Optional[str]:
	if not path:
		return None
	with open(path, "r", encoding="utf-8") as f:
		return f.read()


def _print_json(data) -> None:
	print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def main(argv: Optional[Sequence[str]] = None, factory: Callable[[], ReleaseNotesPipeline] = build_pipeline):
	"""CLI entry point for the release notes pipeline."""
	import argparse

	load_dotenv()
	parser = argparse.ArgumentParser(
		description="Release Notes Pipeline - Generate internal and external release notes from repository activity",
		formatter_class=argparse.RawDescriptionHelpFormatter,
		epilog="""
Examples:
  release-notes add-repo octo/widgets
  release-notes run octo/widgets
  release-notes run octo/widgets --since 2024-05-01T00:00:00Z --until 2024-06-01T00:00:00Z
  release-notes show-draft <draft-id> --audience external
  release-notes approve <draft-id> --actor alice
		""",
	)
	parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
	sub = parser.add_subparsers(dest="command", required=True)

	add = sub.add_parser("add-repo", help="Register a repository")
	add.add_argument("name", help="Repository full name (owner/repo)")

	rm = sub.add_parser("remove-repo", help="Remove a repository and deactivate its drafts")
	rm.add_argument("repo")

	sub.add_parser("list-repos", help="List registered repositories")

	run = sub.add_parser("run", help="Run the pipeline for a repository")
	run.add_argument("repo", help="Repository name or id")
	run.add_argument("--since", help="Window start (ISO 8601); implies a backfill that keeps the cursor")
	run.add_argument("--until", help="Window end (ISO 8601)")

	st = sub.add_parser("status", help="Show runs and drafts for a repository")
	st.add_argument("repo")

	show = sub.add_parser("show-draft", help="Print a draft")
	show.add_argument("draft_id")
	show.add_argument("--audience", choices=["internal", "external", "both"], default="both")
	show.add_argument("--json", action="store_true", help="Output full JSON")

	ed = sub.add_parser("edit", help="Replace draft text from files")
	ed.add_argument("draft_id")
	ed.add_argument("--internal-file")
	ed.add_argument("--external-file")
	ed.add_argument("--editor")

	ap = sub.add_parser("approve", help="Approve a draft and publish it")
	ap.add_argument("draft_id")
	ap.add_argument("--actor")

	rj = sub.add_parser("reject", help="Reject a draft")
	rj.add_argument("draft_id")
	rj.add_argument("--actor")
	rj.add_argument("--reason")

	rg = sub.add_parser("regenerate", help="Regenerate a rejected draft")
	rg.add_argument("draft_id")

	args = parser.parse_args(argv)

	# Set up logging
	log_level = logging.DEBUG if args.verbose else logging.INFO
	logging.basicConfig(
		level=log_level,
		format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
	)

	# Suppress verbose logs from libraries unless in debug mode
	if not args.verbose:
		for name in ("botocore", "boto3", "urllib3", "langsmith"):
			logging.getLogger(name).setLevel(logging.WARNING)

	pipeline = None
	try:
		pipeline = factory()
		if args.command == "add-repo":
			repo = pipeline.add_repository(args.name)
			_print_json(repo.model_dump(mode="json"))
		elif args.command == "remove-repo":
			repo = pipeline.resolve_repository(args.repo)
			n = pipeline.remove_repository(repo.id)
			_print_json({"removed": repo.name, "drafts_deactivated": n})
		elif args.command == "list-repos":
			_print_json([r.model_dump(mode="json") for r in pipeline.store.list_repositories()])
		elif args.command == "run":
			repo = pipeline.resolve_repository(args.repo)
			record = pipeline.run(repo.id, since=_parse_time(args.since), until=_parse_time(args.until))
			_print_json(record.model_dump(mode="json"))
			if record.status == RunStatus.FAILED:
				sys.exit(1)
		elif args.command == "status":
			repo = pipeline.resolve_repository(args.repo)
			_print_json(pipeline.status(repo.id))
		elif args.command == "show-draft":
			draft = pipeline.store.get_draft(args.draft_id)
			if draft is None:
				print(f"Error: draft {args.draft_id} not found", file=sys.stderr)
				sys.exit(1)
			if args.json:
				_print_json(draft.model_dump(mode="json"))
			else:
				if args.audience in ("internal", "both"):
					print(draft.internal_text)
				if args.audience in ("external", "both"):
					print(draft.external_text)
		elif args.command == "edit":
			draft = pipeline.edit(
				args.draft_id,
				internal_text=_read_text(args.internal_file),
				external_text=_read_text(args.external_file),
				editor=args.editor,
			)
			_print_json({"id": draft.id, "status": draft.status.value, "versions": len(draft.edit_history)})
		elif args.command == "approve":
			draft = pipeline.approve(args.draft_id, actor=args.actor)
			_print_json({"id": draft.id, "status": draft.status.value, "published_at": draft.published_at, "publish_error": draft.publish_error})
		elif args.command == "reject":
			draft = pipeline.reject(args.draft_id, actor=args.actor, reason=args.reason)
			_print_json({"id": draft.id, "status": draft.status.value})
		elif args.command == "regenerate":
			draft = pipeline.regenerate(args.draft_id)
			_print_json({"id": draft.id, "status": draft.status.value, "regenerated_from": draft.regenerated_from})

	except (InvalidTransition, RepositoryError) as e:
		print(f"Error: {e}", file=sys.stderr)
		sys.exit(2)

	except PipelineError as e:
		print(f"Error ({e.code}): {e}", file=sys.stderr)
		if args.verbose:
			logger.exception("Detailed error information:")
		sys.exit(1)

	except KeyboardInterrupt:
		print("\nOperation cancelled by user", file=sys.stderr)
		sys.exit(1)

	except Exception as e:
		# Unexpected error
		print(f"Unexpected error: {e}", file=sys.stderr)
		if args.verbose:
			logger.exception("Detailed error information:")
		else:
			print("Use --verbose for more details", file=sys.stderr)
		sys.exit(1)

	finally:
		if pipeline:
			pipeline.close()


if __name__ == "__main__":
	main()
