#!/usr/bin/env python3
"""In-memory cosine similarity index with fixed dimensionality.

Vectors come from an external embedding capability; the index does no text
processing. Upserts are linearized under one lock (last writer wins) and a
rejected upsert leaves the index exactly as it was.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from utils.errors import DimensionMismatch
from utils.release_notes_models import EmbeddingEntry, to_utc

logger = logging.getLogger(__name__)

_SCORE_DECIMALS = 9


@dataclass
class QueryResult:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def _recency(metadata: Dict[str, Any]) -> float:
    ts = (metadata or {}).get("timestamp")
    if not ts:
        return float("-inf")
    try:
        return to_utc(ts).timestamp()
    except ValueError:
        return float("-inf")


class SimilarityIndex:
    """Cosine nearest-neighbour index keyed by record id."""

    def __init__(self, dimension: int, name: str = "records") -> None:
        if int(dimension) <= 0:
            raise ValueError("Index dimension must be positive")
        self.dimension = int(dimension)
        self.name = name
        self._lock = threading.RLock()
        self._ids: List[str] = []
        self._rows: Dict[str, int] = {}
        self._matrix = np.zeros((0, self.dimension), dtype=np.float64)
        self._metadata: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._rows

    def _as_vector(self, vector: Sequence[float], record_id: Optional[str] = None) -> np.ndarray:
        v = np.asarray(vector, dtype=np.float64)
        if v.ndim != 1 or v.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, int(v.size) if v.ndim <= 1 else int(v.shape[-1]), record_id)
        if not np.all(np.isfinite(v)):
            raise ValueError(f"Vector for {record_id or 'query'} contains non-finite values")
        return v

    @staticmethod
    def _normalize(v: np.ndarray) -> np.ndarray:
        norm = np.linalg.norm(v)
        return v / norm if norm > 0 else v

    def upsert(self, record_id: str, vector: Sequence[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        """Insert or overwrite the entry for record_id.

        Raises:
            DimensionMismatch: vector length differs from the index dimension
        """
        if not record_id:
            raise ValueError("record_id is required")
        v = self._normalize(self._as_vector(vector, record_id))
        meta = dict(metadata or {})
        with self._lock:
            row = self._rows.get(record_id)
            if row is None:
                self._matrix = np.vstack([self._matrix, v[np.newaxis, :]])
                self._rows[record_id] = len(self._ids)
                self._ids.append(record_id)
            else:
                self._matrix[row] = v
            self._metadata[record_id] = meta

    def upsert_entry(self, entry: EmbeddingEntry) -> None:
        self.upsert(entry.id, entry.vector, entry.metadata)

    def query(self, vector: Sequence[float], k: int) -> List[QueryResult]:
        """Return up to k entries by descending cosine score.

        Ties are broken by the most recent `metadata["timestamp"]`, then id.
        An empty index or a zero query vector yields an empty list.
        """
        if k <= 0:
            return []
        q = self._as_vector(vector)
        norm = np.linalg.norm(q)
        with self._lock:
            if not self._ids or norm == 0:
                return []
            scores = self._matrix @ (q / norm)
            ids = list(self._ids)
            metadata = {rid: dict(self._metadata.get(rid, {})) for rid in ids}
        ranked = sorted(
            range(len(ids)),
            key=lambda i: (-round(float(scores[i]), _SCORE_DECIMALS), -_recency(metadata[ids[i]]), ids[i]),
        )
        return [QueryResult(id=ids[i], score=float(scores[i]), metadata=metadata[ids[i]]) for i in ranked[:k]]

    def get(self, record_id: str) -> Optional[EmbeddingEntry]:
        with self._lock:
            row = self._rows.get(record_id)
            if row is None:
                return None
            return EmbeddingEntry(id=record_id, vector=self._matrix[row].tolist(), metadata=dict(self._metadata[record_id]))

    def delete(self, record_id: str) -> bool:
        with self._lock:
            row = self._rows.pop(record_id, None)
            if row is None:
                return False
            self._matrix = np.delete(self._matrix, row, axis=0)
            self._ids.pop(row)
            self._metadata.pop(record_id, None)
            self._rows = {rid: i for i, rid in enumerate(self._ids)}
            return True

    # -------- persistence --------
    def save(self, directory: str) -> None:
        """Write `<name>.npy` and `<name>.json` atomically under directory."""
        os.makedirs(directory, exist_ok=True)
        with self._lock:
            matrix = self._matrix.copy()
            doc = {
                "name": self.name,
                "dimension": self.dimension,
                "ids": list(self._ids),
                "metadata": {rid: self._metadata[rid] for rid in self._ids},
            }
        vec_path = os.path.join(directory, f"{self.name}.npy")
        meta_path = os.path.join(directory, f"{self.name}.json")
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp_", suffix=".npy")
        with os.fdopen(fd, "wb") as f:
            np.save(f, matrix)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, vec_path)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp_", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(doc, default=str))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, meta_path)

    @classmethod
    def load(cls, directory: str, name: str, dimension: int) -> "SimilarityIndex":
        """Load a saved index, or return an empty one if nothing usable is on disk."""
        index = cls(dimension, name=name)
        vec_path = os.path.join(directory, f"{name}.npy")
        meta_path = os.path.join(directory, f"{name}.json")
        if not (os.path.exists(vec_path) and os.path.exists(meta_path)):
            return index
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                doc = json.load(f)
            matrix = np.load(vec_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable index {name} in {directory}: {e}")
            return index
        if int(doc.get("dimension", -1)) != index.dimension:
            raise DimensionMismatch(index.dimension, int(doc.get("dimension", -1)), name)
        ids = list(doc.get("ids", []))
        if matrix.shape != (len(ids), index.dimension):
            logger.warning(f"Ignoring index {name}: shape {matrix.shape} does not match {len(ids)} ids")
            return index
        index._matrix = matrix.astype(np.float64)
        index._ids = ids
        index._rows = {rid: i for i, rid in enumerate(ids)}
        index._metadata = {rid: dict(doc.get("metadata", {}).get(rid, {})) for rid in ids}
        return index
