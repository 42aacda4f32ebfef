#!/usr/bin/env python3
"""Typed pipeline conditions.

Each error carries a lightweight `.code` so callers and run records can report
a stable reason without parsing messages.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline conditions."""

    def __init__(self, message: str, code: str = "UNKNOWN") -> None:
        super().__init__(message)
        self.code = code


class SourceUnavailable(PipelineError):
    """The version-control provider could not be read after bounded retries."""

    def __init__(self, message: str, code: str = "SOURCE_UNAVAILABLE", cursor: Optional[str] = None) -> None:
        super().__init__(message, code=code)
        self.cursor = cursor


class DimensionMismatch(PipelineError):
    def __init__(self, expected: int, actual: int, record_id: Optional[str] = None) -> None:
        target = f" for {record_id}" if record_id else ""
        super().__init__(f"Vector dimension {actual} does not match index dimension {expected}{target}", code="DIMENSION_MISMATCH")
        self.expected = expected
        self.actual = actual
        self.record_id = record_id


class SummarizationFailed(PipelineError):
    """Generation exhausted its retries; nothing was persisted."""

    def __init__(self, message: str, code: str = "SUMMARIZATION_FAILED", attempts: int = 0) -> None:
        super().__init__(message, code=code)
        self.attempts = attempts


class InvalidTransition(PipelineError):
    def __init__(self, draft_id: str, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} draft {draft_id} in state '{current}'", code="INVALID_TRANSITION")
        self.draft_id = draft_id
        self.current = current
        self.action = action


class RunCoalesced(PipelineError):
    """Informational notice: a trigger was dropped because the queue is full."""

    def __init__(self, repository_id: str, queued: int) -> None:
        super().__init__(
            f"Run for {repository_id} dropped: {queued} run(s) already queued behind the active run",
            code="RUN_COALESCED",
        )
        self.repository_id = repository_id
        self.queued = queued


class RepositoryError(PipelineError):
    """Raised for unknown or duplicate repositories."""
    pass


__all__ = [
    "PipelineError",
    "SourceUnavailable",
    "DimensionMismatch",
    "SummarizationFailed",
    "InvalidTransition",
    "RunCoalesced",
    "RepositoryError",
]
