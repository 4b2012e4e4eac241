from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .errors import AlgorithmNotFound, AlreadyOptimizing
from .records import AlgorithmRecord, ArchitectureSpec, ImprovementRecord
from .utils.common import AlgorithmType

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

logger = logging.getLogger(__name__)

_RECORD_FIELDS = {f.name for f in fields(AlgorithmRecord)}




class PerformanceStore(ABC):
    """Durable store of algorithm records and their revisions.

    Readers always receive a copy of the latest committed revision. Writers
    go through :meth:`upsert`, which builds the new revision on a copy and
    commits it in one step under the id's lock, so a reader never observes
    a half-applied update.
    """

    @abstractmethod
    def get(self, algorithm_id: str) -> AlgorithmRecord:
        """Latest revision of a record.

        Raises:
            AlgorithmNotFound: If the id is not registered.
        """

    @abstractmethod
    def register(self, record: AlgorithmRecord) -> AlgorithmRecord:
        """Create a record; fails with ValueError if the id already exists."""

    @abstractmethod
    def upsert(
        self,
        algorithm_id: str,
        delta: Mapping[str, Any] | Callable[[AlgorithmRecord], AlgorithmRecord | None],
    ) -> AlgorithmRecord:
        """Apply ``delta`` and commit the result as a new revision.

        Args:
            algorithm_id: Record to update.
            delta: Field updates, or a callable receiving a private copy of
                the latest revision and returning the updated record (or
                None after mutating the copy in place).

        Returns:
            The committed revision.
        """

    @abstractmethod
    def revisions(self, algorithm_id: str) -> list[AlgorithmRecord]:
        """Every committed revision, oldest first."""

    @abstractmethod
    def ids(self) -> list[str]:
        """Registered algorithm ids in registration order."""

    @abstractmethod
    @contextmanager
    def lease(self, algorithm_id: str) -> Iterator[AlgorithmRecord]:
        """Hold the single optimization slot for ``algorithm_id``.

        Raises:
            AlgorithmNotFound: If the id is not registered.
            AlreadyOptimizing: If another run holds the lease.
        """

    def contains(self, algorithm_id: str) -> bool:
        return algorithm_id in self.ids()

    def __contains__(self, algorithm_id: str) -> bool:
        return self.contains(algorithm_id)

    def append_history(self, algorithm_id: str, event: ImprovementRecord) -> AlgorithmRecord:
        """Record an optimization event without touching the current configuration."""

        def add_event(record: AlgorithmRecord) -> None:
            event.version = record.version + 1
            record.improvement_history.append(event)

        return self.upsert(algorithm_id, add_event)

    def load(self, algorithm_id: str) -> AlgorithmRecord:
        return self.get(algorithm_id)

    def save(self, record: AlgorithmRecord) -> AlgorithmRecord:
        """Register a new record or commit it as the next revision of an existing one."""
        if not self.contains(record.algorithm_id):
            return self.register(record)
        replacement = copy.deepcopy(record)
        return self.upsert(record.algorithm_id, lambda _: replacement)


class InMemoryPerformanceStore(PerformanceStore):
    """Revision lists in a dict, guarded by one lock per algorithm id.

    Per-id locks are created under a registry-wide lock so different ids
    are updated independently.

    Example:
        >>> store = InMemoryPerformanceStore()
        >>> _ = store.register(AlgorithmRecord("nn", AlgorithmType.NEURAL))
        >>> store.upsert("nn", {"parameters": {"learning_rate": 0.01}}).version
        2
    """

    def __init__(self) -> None:
        self._revisions: dict[str, list[AlgorithmRecord]] = {}
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._leases: set[str] = set()

    def _lock_for(self, algorithm_id: str) -> threading.Lock:
        with self._registry_lock:
            if algorithm_id not in self._revisions:
                raise AlgorithmNotFound(algorithm_id)
            return self._locks[algorithm_id]

    def _persist(self) -> None:
        """Hook called after every commit, under the committing id's lock."""

    def get(self, algorithm_id: str) -> AlgorithmRecord:
        with self._lock_for(algorithm_id):
            return copy.deepcopy(self._revisions[algorithm_id][-1])

    def register(self, record: AlgorithmRecord) -> AlgorithmRecord:
        with self._registry_lock:
            if record.algorithm_id in self._revisions:
                msg = f"Algorithm '{record.algorithm_id}' is already registered"
                raise ValueError(msg)
            stored = copy.deepcopy(record)
            self._locks[record.algorithm_id] = threading.Lock()
            self._revisions[record.algorithm_id] = [stored]

        with self._locks[record.algorithm_id]:
            try:
                self._persist()
            except Exception:
                with self._registry_lock:
                    del self._revisions[record.algorithm_id]
                    del self._locks[record.algorithm_id]
                raise
        logger.info("Registered algorithm '%s' (%s)", record.algorithm_id, record.algorithm_type.value)
        return copy.deepcopy(stored)

    def upsert(
        self,
        algorithm_id: str,
        delta: Mapping[str, Any] | Callable[[AlgorithmRecord], AlgorithmRecord | None],
    ) -> AlgorithmRecord:
        with self._lock_for(algorithm_id):
            latest = self._revisions[algorithm_id][-1]
            updated = copy.deepcopy(latest)

            if callable(delta):
                result = delta(updated)
                if result is not None:
                    updated = result
            else:
                unknown = set(delta) - _RECORD_FIELDS
                if unknown:
                    msg = f"Unknown record fields: {sorted(unknown)}"
                    raise ValueError(msg)
                for name, value in delta.items():
                    setattr(updated, name, copy.deepcopy(value))

            if updated.algorithm_id != algorithm_id:
                msg = f"Update may not change algorithm_id ('{algorithm_id}' -> '{updated.algorithm_id}')"
                raise ValueError(msg)

            updated.version = latest.version + 1
            self._revisions[algorithm_id].append(updated)
            try:
                self._persist()
            except Exception:
                self._revisions[algorithm_id].pop()
                raise
            logger.debug("Committed '%s' version %d", algorithm_id, updated.version)
            return copy.deepcopy(updated)

    def revisions(self, algorithm_id: str) -> list[AlgorithmRecord]:
        with self._lock_for(algorithm_id):
            return copy.deepcopy(self._revisions[algorithm_id])

    def ids(self) -> list[str]:
        with self._registry_lock:
            return list(self._revisions)

    def contains(self, algorithm_id: str) -> bool:
        with self._registry_lock:
            return algorithm_id in self._revisions

    @contextmanager
    def lease(self, algorithm_id: str) -> Iterator[AlgorithmRecord]:
        with self._registry_lock:
            if algorithm_id not in self._revisions:
                raise AlgorithmNotFound(algorithm_id)
            if algorithm_id in self._leases:
                raise AlreadyOptimizing(algorithm_id)
            self._leases.add(algorithm_id)
        try:
            yield self.get(algorithm_id)
        finally:
            with self._registry_lock:
                self._leases.discard(algorithm_id)

    def is_leased(self, algorithm_id: str) -> bool:
        with self._registry_lock:
            return algorithm_id in self._leases

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._revisions)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_algorithms={len(self)})"


class JsonPerformanceStore(InMemoryPerformanceStore):
    """In-memory store mirrored to a JSON file.

    Every commit rewrites the file atomically (temporary file in the same
    directory, then ``os.replace``), so the file always holds a complete
    set of revisions.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._write_lock = threading.Lock()
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        data = json.loads(self.path.read_text())
        for algorithm_id, revisions in data.get("algorithms", {}).items():
            self._revisions[algorithm_id] = [AlgorithmRecord.from_dict(r) for r in revisions]
            self._locks[algorithm_id] = threading.Lock()
        logger.info("Loaded %d algorithms from %s", len(self._revisions), self.path)

    def _persist(self) -> None:
        with self._write_lock:
            with self._registry_lock:
                snapshot = {
                    algorithm_id: [r.to_dict() for r in revisions]
                    for algorithm_id, revisions in self._revisions.items()
                }
            payload = json.dumps({"algorithms": snapshot}, indent=2)

            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise




DEFAULT_METRICS: dict[str, float] = {
    "accuracy": 0.85,
    "efficiency": 0.80,
    "convergence_time": 5000.0,
    "resource_utilization": 0.75,
    "success_rate": 0.88,
    "adaptability": 0.70,
    "learning_rate": 0.001,
    "error_rate": 0.12,
}

DEFAULT_PARAMETERS: dict[str, Any] = {
    "learning_rate": 0.001,
    "batch_size": 32,
    "hidden_layers": 2,
    "dropout_rate": 0.2,
}

DEFAULT_ALGORITHMS: dict[str, AlgorithmType] = {
    "genetic_algorithm": AlgorithmType.HEURISTIC,
    "neural_network": AlgorithmType.NEURAL,
    "reinforcement_learning": AlgorithmType.HEURISTIC,
    "pattern_recognition": AlgorithmType.STATISTICAL,
    "ml_models": AlgorithmType.ENSEMBLE,
}


def register_default_algorithms(store: PerformanceStore) -> list[str]:
    """Seed the store with the built-in algorithm catalog.

    Ids that are already registered are left untouched.

    Returns:
        The ids that were newly registered.
    """
    registered = []
    for algorithm_id, algorithm_type in DEFAULT_ALGORITHMS.items():
        if store.contains(algorithm_id):
            continue
        store.register(
            AlgorithmRecord(
                algorithm_id=algorithm_id,
                algorithm_type=algorithm_type,
                performance_metrics=dict(DEFAULT_METRICS),
                parameters=dict(DEFAULT_PARAMETERS),
                architecture=ArchitectureSpec.default() if algorithm_type is AlgorithmType.NEURAL else None,
            )
        )
        registered.append(algorithm_id)
    return registered
