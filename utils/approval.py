#!/usr/bin/env python3
"""Draft approval lifecycle: draft -> edited -> approved | rejected.

Transitions are enforced here and nowhere else. Each draft has its own lock so
concurrent approve/reject calls resolve to exactly one winner, and every attempt
is appended to the audit log whether it succeeds or not.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from cache.pipeline_store import PipelineStore
from configs.config import Config
from utils.audit_log import audit_transition
from utils.errors import InvalidTransition, PipelineError
from utils.metrics import incr
from utils.release_notes_models import ApprovalStatus, DraftVersion, ReleaseNoteDraft, Repository, utc_now

logger = logging.getLogger(__name__)

PublishHook = Callable[[Repository, ReleaseNoteDraft], None]


class ApprovalStateMachine:
    def __init__(
        self,
        store: PipelineStore,
        publish_hook: Optional[PublishHook] = None,
        *,
        audit_root: Optional[str] = None,
    ) -> None:
        self.store = store
        self.publish_hook = publish_hook
        self.audit_root = audit_root or Config.AUDIT_ROOT
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, draft_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(draft_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[draft_id] = lock
            return lock

    def _forget_lock(self, draft_id: str) -> None:
        # terminal drafts never transition again; callers holding the old lock re-read the saved state
        with self._locks_guard:
            self._locks.pop(draft_id, None)

    def _load(self, draft_id: str) -> ReleaseNoteDraft:
        draft = self.store.get_draft(draft_id)
        if draft is None:
            raise PipelineError(f"Draft {draft_id} not found", code="NOT_FOUND")
        return draft

    def _audit(self, draft: ReleaseNoteDraft, action: str, result: str, actor: Optional[str], **details) -> None:
        audit_transition(
            draft.repository_id,
            draft.id,
            action,
            result,
            actor=actor,
            details=details,
            root=self.audit_root,
        )
        incr("approval.transition", action=action, result=result)

    def _check(self, draft: ReleaseNoteDraft, action: str, actor: Optional[str]) -> None:
        current = draft.status.value if draft.active else f"{draft.status.value} (inactive)"
        if not draft.active or draft.status.is_terminal:
            self._audit(draft, action, "INVALID", actor, current=current)
            logger.info(f"Rejected {action} on draft {draft.id}: state is {current}")
            if draft.status.is_terminal:
                self._forget_lock(draft.id)
            raise InvalidTransition(draft.id, current, action)

    def edit(
        self,
        draft_id: str,
        *,
        internal_text: Optional[str] = None,
        external_text: Optional[str] = None,
        editor: Optional[str] = None,
    ) -> ReleaseNoteDraft:
        """Replace one or both texts; the prior pair goes to the edit history."""
        if internal_text is None and external_text is None:
            raise ValueError("edit requires internal_text or external_text")
        with self._lock_for(draft_id):
            draft = self._load(draft_id)
            self._check(draft, "edit", editor)
            prior = DraftVersion(
                internal_text=draft.internal_text,
                external_text=draft.external_text,
                status=draft.status,
                editor=editor,
            )
            updated = draft.model_copy(
                update={
                    "internal_text": draft.internal_text if internal_text is None else internal_text,
                    "external_text": draft.external_text if external_text is None else external_text,
                    "status": ApprovalStatus.EDITED,
                    "updated_at": utc_now(),
                    "edit_history": list(draft.edit_history) + [prior],
                }
            )
            self.store.save_draft(updated)
            self._audit(updated, "edit", "OK", editor, version=len(updated.edit_history))
            return updated

    def reject(self, draft_id: str, *, actor: Optional[str] = None, reason: Optional[str] = None) -> ReleaseNoteDraft:
        with self._lock_for(draft_id):
            draft = self._load(draft_id)
            self._check(draft, "reject", actor)
            updated = draft.model_copy(update={"status": ApprovalStatus.REJECTED, "updated_at": utc_now()})
            self.store.save_draft(updated)
            self._audit(updated, "reject", "OK", actor, reason=reason or "")
            self._forget_lock(draft_id)
        logger.info(f"Draft {draft_id} rejected")
        return updated

    def approve(self, draft_id: str, *, actor: Optional[str] = None) -> ReleaseNoteDraft:
        """Approve the draft and fire the publish hook exactly once.

        A failing hook is logged and recorded on the draft; approval stands.
        """
        with self._lock_for(draft_id):
            draft = self._load(draft_id)
            self._check(draft, "approve", actor)
            updated = draft.model_copy(update={"status": ApprovalStatus.APPROVED, "updated_at": utc_now()})
            self.store.save_draft(updated)
            self._audit(updated, "approve", "OK", actor)
            if self.publish_hook is None:
                self._forget_lock(draft_id)
                return updated
            try:
                repository = self.store.get_repository(updated.repository_id)
                self.publish_hook(repository, updated)
            except Exception as e:  # noqa: BLE001
                code = getattr(e, "code", type(e).__name__)
                logger.error(f"Publish hook failed for draft {draft_id} ({code}): {e}")
                incr("publish.failure", code=code)
                updated = updated.model_copy(update={"publish_error": f"{code}: {e}"[:500]})
                self._audit(updated, "publish", "FAILED", actor, code=code)
            else:
                incr("publish.ok")
                updated = updated.model_copy(update={"published_at": utc_now(), "publish_error": None})
                self._audit(updated, "publish", "OK", actor)
            self.store.save_draft(updated)
            self._forget_lock(draft_id)
            return updated


__all__ = ["ApprovalStateMachine", "PublishHook"]
