"""Run statistics for deduplication batches."""
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class DedupMetrics:
    """Collects counters for a single deduplication run."""

    # Pair pipeline
    candidate_pairs: int = 0
    quick_rejects: int = 0
    stage1_aborts: int = 0
    stage2_aborts: int = 0
    classifier_calls: int = 0
    duplicates_found: int = 0

    # Failures and fallbacks
    classifier_fallbacks: int = 0
    collaborator_timeouts: int = 0
    pair_failures: int = 0

    # Records
    records_indexed: int = 0
    skipped: int = 0

    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, name: str, count: int = 1) -> None:
        """Add ``count`` to a counter.

        Args:
            name: Counter attribute name
            count: Amount to add
        """
        with self._lock:
            setattr(self, name, getattr(self, name) + count)

    def finish(self) -> None:
        self.end_time = time.time()

    @property
    def elapsed(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time

    def get_reject_rate(self) -> float:
        """Share of candidate pairs rejected before the classifier, as a percentage."""
        if self.candidate_pairs == 0:
            return 0.0
        rejected = self.quick_rejects + self.stage1_aborts + self.stage2_aborts
        return rejected / self.candidate_pairs * 100

    def to_dict(self) -> Dict[str, Any]:
        """Get a snapshot of all counters.

        Returns:
            Dictionary containing counters and timing
        """
        with self._lock:
            return {
                "candidate_pairs": self.candidate_pairs,
                "quick_rejects": self.quick_rejects,
                "stage1_aborts": self.stage1_aborts,
                "stage2_aborts": self.stage2_aborts,
                "classifier_calls": self.classifier_calls,
                "duplicates_found": self.duplicates_found,
                "classifier_fallbacks": self.classifier_fallbacks,
                "collaborator_timeouts": self.collaborator_timeouts,
                "pair_failures": self.pair_failures,
                "records_indexed": self.records_indexed,
                "skipped": self.skipped,
                "reject_rate": round(self.get_reject_rate(), 2),
                "elapsed_seconds": round(self.elapsed, 4),
            }
