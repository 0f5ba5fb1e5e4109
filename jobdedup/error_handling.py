"""Error taxonomy and pair-level error handling for deduplication runs."""
import logging
import threading
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class DeduplicationError(Exception):
    """Base class for every error raised by the engine."""


class MalformedInputError(DeduplicationError):
    """A record is missing the fields needed to compare it."""

    def __init__(self, record_id: str, reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Record {record_id!r} skipped: {reason}")


class CollaboratorTimeoutError(DeduplicationError):
    """An external collaborator (geocoder, model) did not answer in time."""

    def __init__(self, collaborator: str, timeout: float):
        self.collaborator = collaborator
        self.timeout = timeout
        super().__init__(f"{collaborator} did not respond within {timeout:.2f}s")


class ClassifierFailureError(DeduplicationError):
    """The learned model raised or returned an unusable probability."""


class IndexBuildError(DeduplicationError):
    """The LSH index could not be built. Fatal for the batch."""


class InvalidStateError(DeduplicationError):
    """A run operation was called out of order."""


# Categories the handler keeps counters for
MALFORMED_INPUT = "malformed_input"
COLLABORATOR_TIMEOUT = "collaborator_timeout"
CLASSIFIER_FAILURE = "classifier_failure"
INDEX_BUILD_FAILURE = "index_build_failure"
PAIR_FAILURE = "pair_failure"


class ErrorHandler:
    """Classifies errors raised during a run and decides whether it can continue."""

    def __init__(self, notification_threshold: int = 25):
        """Initialize the error handler.

        Args:
            notification_threshold: Errors per category before a critical alert is logged
        """
        self.error_counts: Dict[str, int] = {}
        self.notification_threshold = notification_threshold
        self._notified = set()
        self._lock = threading.Lock()

    @staticmethod
    def categorize(error: Exception) -> str:
        """Map an exception onto an error category.

        Args:
            error: The exception that occurred

        Returns:
            Category name
        """
        if isinstance(error, MalformedInputError):
            return MALFORMED_INPUT
        if isinstance(error, CollaboratorTimeoutError):
            return COLLABORATOR_TIMEOUT
        if isinstance(error, ClassifierFailureError):
            return CLASSIFIER_FAILURE
        if isinstance(error, IndexBuildError):
            return INDEX_BUILD_FAILURE
        return PAIR_FAILURE

    def handle_error(self, error: Exception, context: str = "") -> bool:
        """Record an error and determine if the run should continue.

        Args:
            error: The exception that occurred
            context: Where it happened (e.g. the pair of record ids)

        Returns:
            True if the run can continue, False if the error is fatal
        """
        category = self.categorize(error)
        with self._lock:
            self.error_counts[category] = self.error_counts.get(category, 0) + 1

        if category == INDEX_BUILD_FAILURE:
            logger.error(f"Index build failed{self._suffix(context)}: {error}")
            return False

        if category == MALFORMED_INPUT:
            logger.info(f"Skipping malformed input{self._suffix(context)}: {error}")
        elif category in (COLLABORATOR_TIMEOUT, CLASSIFIER_FAILURE):
            logger.warning(f"{category}{self._suffix(context)}: {error}")
        else:
            logger.warning(
                f"Pair comparison failed{self._suffix(context)}: {type(error).__name__}: {error}"
            )

        self.check_notification_threshold(category)
        return True

    def check_notification_threshold(self, category: str, threshold: Optional[int] = None) -> None:
        """Log a critical alert once a category reaches the threshold.

        Args:
            category: Error category
            threshold: Override for the configured threshold
        """
        limit = threshold if threshold is not None else self.notification_threshold
        count = self.error_counts.get(category, 0)
        if count >= limit and category not in self._notified:
            self._notified.add(category)
            logger.critical(f"High error rate detected for {category}: {count} errors")

    def count(self, category: str) -> int:
        return self.error_counts.get(category, 0)

    @staticmethod
    def _suffix(context: str) -> str:
        return f" ({context})" if context else ""


def call_with_timeout(executor: Executor, name: str, timeout: float,
                      fn: Callable[..., Any], *args: Any) -> Any:
    """Call an external collaborator on ``executor`` and wait at most ``timeout``.

    Args:
        executor: Executor the call is submitted to
        name: Collaborator name used in errors and logs
        timeout: Seconds to wait for the result
        fn: Collaborator callable
        *args: Positional arguments for ``fn``

    Returns:
        Whatever ``fn`` returns

    Raises:
        CollaboratorTimeoutError: If no result arrives within ``timeout``
    """
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise CollaboratorTimeoutError(name, timeout) from None
