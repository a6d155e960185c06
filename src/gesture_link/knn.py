"""Incremental k-nearest-neighbor example store.

Examples are added one at a time while the user holds a gesture, and the
store is queried every frame. There is no training step: the store is the
model.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

logger = logging.getLogger("gesture_link.knn")

DEFAULT_K = 3
_EXACT = 1e-12


class NoLabelsError(LookupError):
    """Raised when classifying against an empty store."""


class ClassifierQueryError(ValueError):
    """Raised when a query vector cannot be compared with the stored examples."""


@dataclass(frozen=True)
class Label:
    """A trained gesture label: opaque id, display name and example count."""
    id: str
    name: str
    count: int

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "count": self.count}


@dataclass
class ClassificationResult:
    """Outcome of a nearest-neighbor query."""
    label: str
    confidences: dict[str, float]
    name: str = ""
    distances: list[float] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        return self.confidences.get(self.label, 0.0)


@dataclass(frozen=True)
class _Snapshot:
    vectors: np.ndarray            # (N, D)
    labels: tuple[str, ...]        # length N
    names: dict[str, str]          # label -> display name, insertion ordered

    @property
    def dim(self) -> Optional[int]:
        return self.vectors.shape[1] if len(self.labels) else None


_EMPTY = _Snapshot(np.zeros((0, 0)), (), {})


def _count(snap: _Snapshot) -> dict[str, int]:
    counts = dict.fromkeys(snap.names, 0)
    for lbl in snap.labels:
        counts[lbl] += 1
    return counts


class ExampleStore:
    """Label → feature-vector index with nearest-neighbor classification.

    Writes (add, clear) build a new immutable snapshot and swap it in under a
    lock. Queries grab the current snapshot and never hold the lock while
    computing, so concurrent queries are allowed and no query sees a store
    halfway through a bulk clear.

    Usage:
        store = ExampleStore()
        store.add_example(features, "fist")
        result = store.classify(features)
        result.label, result.confidence
    """

    def __init__(self, k: int = DEFAULT_K):
        if k < 1:
            raise ValueError("k must be at least 1")
        self.k = k
        self._snapshot = _EMPTY
        self._lock = threading.Lock()

    # --- writes ---

    def add_example(self, vector, label, name: Optional[str] = None):
        """Append one example. No deduplication and no upper bound."""
        label = str(label)
        vec = np.asarray(vector, dtype=np.float64).reshape(-1)
        if not np.all(np.isfinite(vec)):
            raise ValueError("example vector contains non-finite values")

        with self._lock:
            snap = self._snapshot
            if snap.dim is not None and vec.shape[0] != snap.dim:
                raise ValueError(
                    f"example has {vec.shape[0]} features, store expects {snap.dim}"
                )
            vectors = vec[None, :] if snap.dim is None else np.vstack([snap.vectors, vec])
            names = dict(snap.names)
            if name or label not in names:
                names[label] = name or names.get(label, label)
            self._snapshot = _Snapshot(vectors, snap.labels + (label,), names)

    def clear_label(self, label) -> int:
        """Remove every example of `label`. Returns how many were removed."""
        label = str(label)
        with self._lock:
            snap = self._snapshot
            keep = [i for i, lbl in enumerate(snap.labels) if lbl != label]
            removed = len(snap.labels) - len(keep)
            if removed == 0:
                return 0
            if not keep:
                self._snapshot = _EMPTY
            else:
                names = {k: v for k, v in snap.names.items() if k != label}
                self._snapshot = _Snapshot(
                    snap.vectors[keep],
                    tuple(snap.labels[i] for i in keep),
                    names,
                )
        logger.info("Cleared label %s (%d examples)", label, removed)
        return removed

    def clear_all(self):
        """Empty the store. Safe to call repeatedly."""
        with self._lock:
            self._snapshot = _EMPTY

    # --- reads ---

    def classify(self, vector) -> ClassificationResult:
        """Find the k nearest examples and vote by inverse distance.

        Raises:
            NoLabelsError: the store is empty.
            ClassifierQueryError: the vector has the wrong length or bad values.
        """
        snap = self._snapshot
        if not snap.labels:
            raise NoLabelsError("no labels trained")

        query = np.asarray(vector, dtype=np.float64).reshape(-1)
        if query.shape[0] != snap.dim:
            raise ClassifierQueryError(
                f"query has {query.shape[0]} features, store expects {snap.dim}"
            )
        if not np.all(np.isfinite(query)):
            raise ClassifierQueryError("query vector contains non-finite values")

        distances = np.linalg.norm(snap.vectors - query, axis=1)
        k = min(self.k, len(snap.labels))
        # stable sort keeps insertion order among equal distances
        nearest = np.argsort(distances, kind="stable")[:k]
        near_d = distances[nearest]

        if near_d[0] <= _EXACT:
            weights = (near_d <= _EXACT).astype(np.float64)
        else:
            weights = 1.0 / near_d

        votes = dict.fromkeys(snap.names, 0.0)
        for idx, w in zip(nearest, weights):
            votes[snap.labels[idx]] += float(w)

        total = sum(votes.values())
        confidences = {lbl: v / total for lbl, v in votes.items()}

        # arg-max; ties go to the label of the closest neighbor
        best = max(confidences.values())
        winner = next(
            snap.labels[idx] for idx in nearest
            if confidences[snap.labels[idx]] == best
        )
        return ClassificationResult(
            label=winner,
            confidences=confidences,
            name=snap.names.get(winner, winner),
            distances=[float(d) for d in near_d],
        )

    def count_by_label(self) -> dict[str, int]:
        """Number of stored examples per label."""
        return _count(self._snapshot)

    def labels(self) -> list[Label]:
        snap = self._snapshot
        counts = _count(snap)
        return [Label(lbl, snap.names[lbl], counts[lbl]) for lbl in snap.names]

    def get_label(self, label) -> Optional[Label]:
        for entry in self.labels():
            if entry.id == str(label):
                return entry
        return None

    @property
    def num_labels(self) -> int:
        return len(self._snapshot.names)

    @property
    def num_examples(self) -> int:
        return len(self._snapshot.labels)

    @property
    def dim(self) -> Optional[int]:
        return self._snapshot.dim

    def __len__(self) -> int:
        return self.num_examples

    def __contains__(self, label) -> bool:
        return str(label) in self._snapshot.names
