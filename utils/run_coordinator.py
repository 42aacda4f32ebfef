#!/usr/bin/env python3
"""Per-repository run serialization with a bounded coalescing queue.

Different repositories run concurrently on a shared thread pool. A trigger for
a repository with an active run is queued up to `max_queued`; beyond that it is
dropped and the caller gets a `RunCoalesced` notice back (it is not raised).
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from configs.config import Config
from utils.errors import RunCoalesced
from utils.metrics import incr
from utils.release_notes_models import new_id

logger = logging.getLogger(__name__)

RunFn = Callable[[str, str], Any]


@dataclass
class TriggerOutcome:
    repository_id: str
    trigger_id: str
    action: str  # started | queued | dropped
    future: Optional[Future] = None
    notice: Optional[RunCoalesced] = None

    @property
    def accepted(self) -> bool:
        return self.action != "dropped"


@dataclass
class _RepoState:
    active: bool = False
    pending: Deque[Tuple[str, Future]] = field(default_factory=deque)


class RunCoordinator:
    def __init__(self, run_fn: RunFn, *, max_queued: Optional[int] = None, max_workers: Optional[int] = None) -> None:
        self.run_fn = run_fn
        self.max_queued = Config.RUN_QUEUE_MAX_DEPTH if max_queued is None else max(0, int(max_queued))
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or Config.RUN_MAX_WORKERS,
            thread_name_prefix="release-notes-run",
        )
        self._cond = threading.Condition()
        self._states: Dict[str, _RepoState] = {}

    def trigger(self, repository_id: str, trigger_id: Optional[str] = None) -> TriggerOutcome:
        """Start, queue or drop a run for repository_id."""
        trigger_id = trigger_id or new_id()
        with self._cond:
            state = self._states.setdefault(repository_id, _RepoState())
            if not state.active:
                state.active = True
                future: Future = Future()
                self._executor.submit(self._drain, repository_id, trigger_id, future)
                incr("run.trigger", action="started")
                logger.info(f"Run {trigger_id} started for {repository_id}")
                return TriggerOutcome(repository_id, trigger_id, "started", future=future)
            if len(state.pending) < self.max_queued:
                future = Future()
                state.pending.append((trigger_id, future))
                incr("run.trigger", action="queued")
                logger.info(f"Run {trigger_id} queued for {repository_id} ({len(state.pending)} waiting)")
                return TriggerOutcome(repository_id, trigger_id, "queued", future=future)
            notice = RunCoalesced(repository_id, len(state.pending))
        incr("run.trigger", action="dropped")
        logger.warning(str(notice))
        return TriggerOutcome(repository_id, trigger_id, "dropped", notice=notice)

    def is_active(self, repository_id: str) -> bool:
        with self._cond:
            state = self._states.get(repository_id)
            return bool(state and state.active)

    def queued(self, repository_id: str) -> int:
        with self._cond:
            state = self._states.get(repository_id)
            return len(state.pending) if state else 0

    def _execute(self, repository_id: str, trigger_id: str, future: Future) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = self.run_fn(repository_id, trigger_id)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Run {trigger_id} for {repository_id} raised: {e}")
            future.set_exception(e)
        else:
            future.set_result(result)

    def _drain(self, repository_id: str, trigger_id: str, future: Future) -> None:
        while True:
            self._execute(repository_id, trigger_id, future)
            with self._cond:
                state = self._states[repository_id]
                if not state.pending:
                    state.active = False
                    self._cond.notify_all()
                    return
                trigger_id, future = state.pending.popleft()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no repository has an active run. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not any(s.active for s in self._states.values()), timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["RunCoordinator", "TriggerOutcome"]
