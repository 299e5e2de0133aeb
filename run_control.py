"""
Run Control

Explicit-commit recomputation for the dashboard views. Edited settings stay in
a draft until `apply()` swaps them in; every computation captures a generation
number first and its result is only committed while that generation is still
the latest, so a superseded run is silently discarded.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Generic, Optional, TypeVar


logger = logging.getLogger(__name__)

S = TypeVar("S")
R = TypeVar("R")


@dataclass
class RunController(Generic[S, R]):
    """Draft/applied settings plus a last-writer-wins result slot."""
    applied: S
    pending: Optional[S] = None
    result: Optional[R] = None
    generation: int = 0
    is_calculating: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if self.pending is None:
            self.pending = self.applied

    @property
    def is_dirty(self) -> bool:
        """True when the draft differs from the applied settings."""
        return self.pending != self.applied

    def edit(self, **changes: Any) -> S:
        """Update the draft settings without triggering a recomputation."""
        self.pending = replace(self.pending, **changes)
        return self.pending

    def apply(self) -> int:
        """Commit the draft settings and start a new generation."""
        with self._lock:
            self.applied = self.pending
            return self._next_generation()

    def invalidate(self) -> int:
        """Force a recomputation with unchanged settings (e.g. new uploads)."""
        with self._lock:
            return self._next_generation()

    def start_run(self) -> int:
        """Flip the calculating flag and capture the run id of the current generation."""
        with self._lock:
            self.is_calculating = True
            return self.generation

    def commit(self, run_id: int, result: R) -> bool:
        """
        Store a run's result if no newer generation started meanwhile.

        Returns:
            True if the result was kept, False if it was stale and dropped
        """
        with self._lock:
            if run_id != self.generation:
                logger.debug("Discarding stale run %d (current %d)", run_id, self.generation)
                return False
            self.result = result
            self.is_calculating = False
            return True

    def run(self, compute: Callable[[S], R]) -> Optional[R]:
        """Compute with the applied settings and commit; returns None for a stale run."""
        run_id = self.start_run()
        settings = self.applied
        result = compute(settings)
        if self.commit(run_id, result):
            return result
        return None

    def _next_generation(self) -> int:
        self.generation += 1
        self.result = None
        return self.generation
