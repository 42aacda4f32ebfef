#!/usr/bin/env python3
"""Shared wrappers for bounded retries with jittered backoff."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, *, base_s: float, max_s: float, rng: Optional[random.Random] = None) -> float:
    """Full-jitter exponential delay for a zero-based attempt, capped at max_s."""
    ceiling = min(max_s, base_s * (2 ** attempt))
    return (rng or random).uniform(ceiling / 2.0, ceiling) if ceiling > 0 else 0.0


def with_retries(
    fn: Callable[[], Any],
    *,
    max_attempts: int,
    backoff_s: float,
    max_backoff_s: float,
    retry_on: Iterable[str],
    classify_exc: Callable[[Exception], str],
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> Any:
    """Call fn until it succeeds or attempts run out.

    Only exceptions whose classified code is in retry_on are retried; the last
    exception is re-raised unchanged.
    """
    retry_codes = set(retry_on)
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:  # noqa: BLE001
            code = classify_exc(e)
            if code not in retry_codes or attempt + 1 >= max_attempts:
                raise
            delay = backoff_delay(attempt, base_s=backoff_s, max_s=max_backoff_s)
            logger.warning(f"Attempt {attempt + 1}/{max_attempts} failed ({code}); retrying in {delay:.2f}s")
            if on_retry:
                on_retry(attempt, e)
            sleep(delay)
            attempt += 1
