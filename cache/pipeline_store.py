#!/usr/bin/env python3
"""File-backed persistence for repositories, records, drafts, cursors and runs.

One JSON document per entity under `<root>/<kind>/`, written atomically via a
temp file and `os.replace`.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Dict, Iterable, List, Optional, Type, TypeVar
from urllib.parse import quote

from pydantic import BaseModel, ValidationError

from configs.config import Config
from utils.errors import RepositoryError
from utils.release_notes_models import ChangeRecord, ReleaseNoteDraft, Repository, RunRecord, utc_now

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _safe_key(key: str) -> str:
	return quote(str(key), safe="")


class PipelineStore:
	def __init__(self, root_dir: Optional[str] = None, atomic: Optional[bool] = None) -> None:
		self.root_dir = root_dir or Config.STORE_ROOT
		os.makedirs(self.root_dir, exist_ok=True)
		self.atomic = bool(Config.STORE_ATOMIC_WRITES if atomic is None else atomic)
		self._lock = threading.RLock()

	# -------- file helpers --------
	def _dir(self, *parts: str) -> str:
		path = os.path.join(self.root_dir, *parts)
		os.makedirs(path, exist_ok=True)
		return path

	def _path(self, kind: str, key: str, *, sub: Optional[str] = None) -> str:
		parts = [kind] + ([_safe_key(sub)] if sub else [])
		return os.path.join(self._dir(*parts), _safe_key(key) + ".json")

	def _write_json(self, path: str, data: Dict) -> None:
		text = json.dumps(data, ensure_ascii=False, sort_keys=True)
		if not self.atomic:
			with open(path, "w", encoding="utf-8") as f:
				f.write(text)
			return
		dirname = os.path.dirname(path)
		tmp_fd, tmp_path = tempfile.mkstemp(dir=dirname, prefix=".tmp_", suffix=".json")
		with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
			f.write(text)
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_path, path)

	def _read_json(self, path: str) -> Optional[Dict]:
		if not os.path.exists(path):
			return None
		try:
			with open(path, "r", encoding="utf-8") as f:
				return json.loads(f.read())
		except (OSError, json.JSONDecodeError) as e:
			logger.warning(f"Unreadable store entry {path}: {e}")
			return None

	def _load(self, model: Type[M], path: str) -> Optional[M]:
		data = self._read_json(path)
		if data is None:
			return None
		try:
			return model.model_validate(data)
		except ValidationError as e:
			logger.warning(f"Invalid {model.__name__} at {path}: {e}")
			return None

	def _save(self, path: str, obj: BaseModel) -> None:
		self._write_json(path, obj.model_dump(mode="json"))

	def _load_all(self, model: Type[M], *parts: str) -> List[M]:
		directory = self._dir(*parts)
		out: List[M] = []
		for name in sorted(os.listdir(directory)):
			if not name.endswith(".json") or name.startswith(".tmp_"):
				continue
			item = self._load(model, os.path.join(directory, name))
			if item is not None:
				out.append(item)
		return out

	# -------- repositories --------
	def add_repository(self, name: str) -> Repository:
		with self._lock:
			if self.find_repository(name) is not None:
				raise RepositoryError(f"Repository '{name}' is already registered", code="DUPLICATE")
			repo = Repository(name=name)
			self._save(self._path("repositories", repo.id), repo)
			logger.info(f"Registered repository {repo.name} ({repo.id})")
			return repo

	def get_repository(self, repository_id: str) -> Repository:
		repo = self._load(Repository, self._path("repositories", repository_id))
		if repo is None:
			raise RepositoryError(f"Unknown repository: {repository_id}", code="NOT_FOUND")
		return repo

	def find_repository(self, name: str) -> Optional[Repository]:
		wanted = name.strip()
		for repo in self.list_repositories():
			if repo.name == wanted:
				return repo
		return None

	def list_repositories(self) -> List[Repository]:
		return self._load_all(Repository, "repositories")

	def delete_repository(self, repository_id: str) -> int:
		"""Remove a repository and deactivate its drafts. Returns drafts deactivated."""
		with self._lock:
			self.get_repository(repository_id)
			deactivated = 0
			for draft in self.list_drafts(repository_id, include_inactive=False):
				self.save_draft(draft.model_copy(update={"active": False, "updated_at": utc_now()}))
				deactivated += 1
			os.remove(self._path("repositories", repository_id))
			logger.info(f"Deleted repository {repository_id}; deactivated {deactivated} draft(s)")
			return deactivated

	# -------- records --------
	def upsert_records(self, records: Iterable[ChangeRecord]) -> int:
		count = 0
		with self._lock:
			for rec in records:
				path = self._path("records", rec.id, sub=rec.repository_id)
				existing = self._load(ChangeRecord, path)
				if existing is not None and existing.draft_id and not rec.draft_id:
					# re-delivered records keep their draft assignment
					rec = rec.model_copy(update={"draft_id": existing.draft_id})
				self._save(path, rec)
				count += 1
		return count

	def get_record(self, repository_id: str, record_id: str) -> Optional[ChangeRecord]:
		return self._load(ChangeRecord, self._path("records", record_id, sub=repository_id))

	def list_records(self, repository_id: str, *, pending_only: bool = False) -> List[ChangeRecord]:
		records = self._load_all(ChangeRecord, "records", _safe_key(repository_id))
		if pending_only:
			records = [r for r in records if not r.draft_id]
		return sorted(records, key=lambda r: (r.timestamp, r.id))

	def mark_records_drafted(self, repository_id: str, record_ids: Iterable[str], draft_id: str) -> None:
		with self._lock:
			for rid in record_ids:
				rec = self.get_record(repository_id, rid)
				if rec is None:
					continue
				self._save(self._path("records", rid, sub=repository_id), rec.model_copy(update={"draft_id": draft_id}))

	# -------- drafts --------
	def save_draft(self, draft: ReleaseNoteDraft) -> None:
		with self._lock:
			self._save(self._path("drafts", draft.id), draft)

	def get_draft(self, draft_id: str) -> Optional[ReleaseNoteDraft]:
		return self._load(ReleaseNoteDraft, self._path("drafts", draft_id))

	def list_drafts(self, repository_id: Optional[str] = None, *, include_inactive: bool = True) -> List[ReleaseNoteDraft]:
		drafts = self._load_all(ReleaseNoteDraft, "drafts")
		if repository_id is not None:
			drafts = [d for d in drafts if d.repository_id == repository_id]
		if not include_inactive:
			drafts = [d for d in drafts if d.active]
		return sorted(drafts, key=lambda d: (d.created_at, d.id))

	# -------- cursors --------
	def get_cursor(self, repository_id: str) -> Optional[str]:
		data = self._read_json(self._path("cursors", repository_id))
		return (data or {}).get("cursor")

	def set_cursor(self, repository_id: str, cursor: Optional[str]) -> None:
		with self._lock:
			self._write_json(
				self._path("cursors", repository_id),
				{"cursor": cursor, "updated_at": utc_now().isoformat()},
			)

	# -------- runs --------
	def save_run(self, run: RunRecord) -> None:
		with self._lock:
			self._save(self._path("runs", run.id), run)

	def get_run(self, run_id: str) -> Optional[RunRecord]:
		return self._load(RunRecord, self._path("runs", run_id))

	def list_runs(self, repository_id: Optional[str] = None) -> List[RunRecord]:
		runs = self._load_all(RunRecord, "runs")
		if repository_id is not None:
			runs = [r for r in runs if r.repository_id == repository_id]
		return sorted(runs, key=lambda r: (r.started_at, r.id))

	# -------- classification memo --------
	def get_classification(self, text_hash: str) -> Optional[str]:
		data = self._read_json(self._path("classifications", text_hash))
		return (data or {}).get("category")

	def put_classification(self, text_hash: str, category: str) -> None:
		with self._lock:
			self._write_json(self._path("classifications", text_hash), {"category": category})
