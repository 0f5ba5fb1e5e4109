"""Bulk duplicate detection for job postings."""
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import threading

from jobdedup.config import DedupConfig
from jobdedup.error_handling import (
    ErrorHandler,
    IndexBuildError,
    InvalidStateError,
    MalformedInputError,
)
from jobdedup.domain.classifier import DuplicateClassifier, ScoringModel
from jobdedup.domain.entities import EntityMatcher, create_entity_matcher
from jobdedup.domain.lsh import LSHIndex
from jobdedup.domain.metrics import jaccard
from jobdedup.domain.scorers import (
    DistanceLookup,
    LocationScorer,
    TextSimilarity,
    extract_job_level,
    salary_overlap,
    title_similarity,
)
from jobdedup.domain.text import normalize_company, normalize_title
from jobdedup.metrics import DedupMetrics
from jobdedup.models import (
    DeduplicationReport,
    DuplicateGroup,
    JobRecord,
    SimilarityResult,
    SkippedRecord,
    parse_datetime,
)

logger = logging.getLogger(__name__)

# Stage 2 blend of the moderately expensive field scores
STAGE2_WEIGHTS = {'title': 0.5, 'company': 0.3, 'location': 0.2}

# Pair outcomes
QUICK_REJECT = "quick_reject"
STAGE1_ABORT = "stage1"
STAGE2_ABORT = "stage2"
NOT_DUPLICATE = "not_duplicate"
DUPLICATE = "duplicate"
FAILED = "failed"

MISSING_TITLE_AND_COMPANY = "missing title and company"


class RunState(Enum):
    EMPTY = "empty"
    INDEXED = "indexed"
    GROUPED = "grouped"


class UnionFind:
    """Disjoint-set union over record positions.

    Writes are serialized with a lock; the orchestrator thread is the only
    writer during a run.
    """

    def __init__(self, size: int):
        if size < 0:
            raise ValueError("Union-find size must be non-negative")
        self.parent = list(range(size))
        self.rank = [0] * size
        self._lock = threading.Lock()

    def find(self, idx: int) -> int:
        parent = self.parent
        while parent[idx] != idx:
            parent[idx] = parent[parent[idx]]
            idx = parent[idx]
        return idx

    def union(self, a: int, b: int) -> None:
        with self._lock:
            root_a = self.find(a)
            root_b = self.find(b)
            if root_a == root_b:
                return
            if self.rank[root_a] < self.rank[root_b]:
                root_a, root_b = root_b, root_a
            self.parent[root_b] = root_a
            if self.rank[root_a] == self.rank[root_b]:
                self.rank[root_a] += 1

    def components(self) -> List[List[int]]:
        """Connected components, each sorted, ordered by their first member."""
        with self._lock:
            clusters: Dict[int, List[int]] = {}
            for idx in range(len(self.parent)):
                clusters.setdefault(self.find(idx), []).append(idx)
        return sorted(clusters.values(), key=lambda members: members[0])


def completeness_score(record: JobRecord, reference_time: Optional[datetime] = None) -> float:
    """Score how complete and fresh a record is.

    Args:
        record: Record to score
        reference_time: "Now" for the freshness bonus (UTC now when None)

    Returns:
        Completeness points plus ``max(0, 10 - days_old)``
    """
    score = 0.0
    if record.title:
        score += 10
    if record.company:
        score += 10
    description = record.description or ''
    if len(description) > 100:
        score += 15
    if len(description) > 500:
        score += 5
    if record.requirements_text:
        score += 10
    if record.salary is not None and record.salary.bounds() is not None:
        score += 5
    if record.location:
        score += 5
    if record.benefits:
        score += 3
    if record.company_size:
        score += 2

    posted = record.posted_date or record.scraped_at
    if posted is not None:
        now = parse_datetime(reference_time) or datetime.now(timezone.utc)
        days_old = (now - posted).total_seconds() / 86400
        score += max(0.0, 10 - days_old)
    return score


def select_representative(records: Sequence[JobRecord], members: Sequence[int],
                          reference_time: Optional[datetime] = None) -> int:
    """Position of the best record in a group; ties go to the earliest position."""
    best = None
    best_score = None
    for position in sorted(members):
        score = completeness_score(records[position], reference_time)
        if best_score is None or score > best_score:
            best = position
            best_score = score
    return best


class DeduplicationEngine:
    """Finds duplicate job postings in a batch.

    The engine holds configuration and collaborators. Each call to
    ``deduplicate`` runs on its own ``DeduplicationRun`` with a fresh LSH
    index, union-find and statistics.
    """

    def __init__(self, config: Optional[DedupConfig] = None,
                 geocoder: Optional[DistanceLookup] = None,
                 model: Optional[ScoringModel] = None,
                 semantic: Optional[TextSimilarity] = None,
                 sentence_similarity: Optional[TextSimilarity] = None):
        """Initialize the engine.

        Args:
            config: Engine configuration (defaults when None)
            geocoder: Optional (location_a, location_b) -> km lookup
            model: Optional scoring model for the learned strategy
            semantic: Optional semantic text similarity
            sentence_similarity: Optional sentence-pair similarity
        """
        self.config = config or DedupConfig()
        self.geocoder = geocoder
        self.model = model
        self.semantic = semantic
        self.sentence_similarity = sentence_similarity
        self.entity_matcher: EntityMatcher = create_entity_matcher(self.config)
        self.metrics = DedupMetrics()
        self.error_handler = ErrorHandler(self.config.engine.error_alert_threshold)
        self.classifier = self.create_classifier(self.metrics, self.error_handler)

    def create_classifier(self, metrics: DedupMetrics, error_handler: ErrorHandler) -> DuplicateClassifier:
        """Classifier wired to the engine's collaborators and the given statistics."""
        location_scorer = LocationScorer(
            distance_lookup=self.geocoder,
            timeout=self.config.engine.collaborator_timeout,
            max_distance_km=self.config.engine.max_distance_km,
            metrics=metrics,
            max_workers=self.config.engine.workers,
        )
        return DuplicateClassifier(
            config=self.config,
            entity_matcher=self.entity_matcher,
            location_scorer=location_scorer,
            model=self.model,
            semantic=self.semantic,
            sentence_similarity=self.sentence_similarity,
            metrics=metrics,
            error_handler=error_handler,
        )

    def classify(self, a: JobRecord, b: JobRecord) -> SimilarityResult:
        """Classify a single pair of records."""
        return self.classifier.classify(a, b)

    # -- staged checks -------------------------------------------------------

    def quick_reject(self, a: JobRecord, b: JobRecord) -> Optional[str]:
        """Cheap checks that rule a pair out before any scoring.

        Args:
            a: First record
            b: Second record

        Returns:
            Reason for rejecting the pair, or None if it should be scored
        """
        staging = self.config.staging

        if a.platform and b.platform and a.platform.strip().lower() != b.platform.strip().lower():
            if a.posted_date and b.posted_date:
                days = abs((a.posted_date - b.posted_date).total_seconds()) / 86400
                if days > staging.max_days_apart:
                    return f"different platforms posted {days:.0f} days apart"

        overlap = salary_overlap(a.salary, b.salary)
        if overlap is not None and overlap < staging.min_salary_overlap:
            return f"salary overlap {overlap:.2f}"

        level_a = extract_job_level(a.title)
        level_b = extract_job_level(b.title)
        if level_a is not None and level_b is not None and abs(level_a - level_b) > staging.max_level_delta:
            return f"job level delta {abs(level_a - level_b)}"

        return None

    @staticmethod
    def stage1(a: JobRecord, b: JobRecord) -> float:
        """Token overlap of normalized titles and companies."""
        scores = []
        if a.title and b.title:
            scores.append(jaccard(normalize_title(a.title).split(), normalize_title(b.title).split()))
        if a.company and b.company:
            scores.append(jaccard(normalize_company(a.company).split(), normalize_company(b.company).split()))
        if not scores:
            return 0.0
        return sum(scores) / len(scores)

    def stage2(self, a: JobRecord, b: JobRecord) -> float:
        """Weighted title, fuzzy company and location string scores."""
        scores = {}
        if a.title and b.title:
            scores['title'], _ = title_similarity(a.title, b.title, self.config.title_weights)
        if a.company and b.company:
            scores['company'] = self.entity_matcher.fuzzy_company_match(a.company, b.company)
        if a.location and b.location:
            scores['location'] = LocationScorer.string_similarity(a.location, b.location)
        total = sum(STAGE2_WEIGHTS[name] for name in scores)
        if total <= 0:
            return 0.0
        return sum(value * STAGE2_WEIGHTS[name] for name, value in scores.items()) / total

    def evaluate_pair(self, a: JobRecord, b: JobRecord, classifier: DuplicateClassifier,
                      metrics: DedupMetrics, error_handler: ErrorHandler) -> Tuple[str, Optional[SimilarityResult]]:
        """Run a candidate pair through quick-reject and the three stages.

        Returns:
            Tuple of (outcome, classifier result if stage 3 was reached)
        """
        metrics.increment("candidate_pairs")
        try:
            reason = self.quick_reject(a, b)
            if reason is not None:
                logger.debug(f"Quick reject {a.id}/{b.id}: {reason}")
                metrics.increment("quick_rejects")
                return QUICK_REJECT, None

            if self.stage1(a, b) < self.config.staging.stage1_min:
                metrics.increment("stage1_aborts")
                return STAGE1_ABORT, None

            if self.stage2(a, b) < self.config.staging.stage2_min:
                metrics.increment("stage2_aborts")
                return STAGE2_ABORT, None
        except Exception as e:
            metrics.increment("pair_failures")
            error_handler.handle_error(e, f"{a.id}/{b.id}")
            return FAILED, None

        result = classifier.classify(a, b)
        if result.is_duplicate:
            metrics.increment("duplicates_found")
            return DUPLICATE, result
        return NOT_DUPLICATE, result

    # -- entry points --------------------------------------------------------

    def start_run(self, records: Sequence[JobRecord],
                  cancel_event: Optional[threading.Event] = None,
                  reference_time: Optional[datetime] = None) -> "DeduplicationRun":
        return DeduplicationRun(self, records, cancel_event, reference_time)

    def deduplicate(self, records: Sequence[JobRecord],
                    cancel_event: Optional[threading.Event] = None,
                    reference_time: Optional[datetime] = None) -> DeduplicationReport:
        """Group a batch of records into duplicate clusters.

        Args:
            records: Batch of records (not modified)
            cancel_event: Set it to stop between pair evaluations
            reference_time: "Now" used for representative freshness

        Returns:
            DeduplicationReport for the batch

        Raises:
            IndexBuildError: If the LSH index cannot be built
        """
        run = self.start_run(records, cancel_event, reference_time)
        run.build_index()
        return run.group()

    def find_matches(self, probe: JobRecord, records: Sequence[JobRecord]) -> List[Tuple[int, SimilarityResult]]:
        """Find known records that duplicate a newly scraped one.

        Args:
            probe: The new record
            records: Known records

        Returns:
            (position, result) for every duplicate, best score first
        """
        if not probe.is_scorable:
            self.error_handler.handle_error(MalformedInputError(probe.id, MISSING_TITLE_AND_COMPANY))
            return []

        index = LSHIndex(self.config.lsh, self.entity_matcher)
        index.build(records, include=[i for i, record in enumerate(records) if record.is_scorable])

        matches = []
        for position in sorted(index.query(probe)):
            outcome, result = self.evaluate_pair(probe, records[position], self.classifier,
                                                 self.metrics, self.error_handler)
            if outcome == DUPLICATE:
                matches.append((position, result))
        matches.sort(key=lambda match: (-match[1].score, match[0]))
        return matches

    def close(self) -> None:
        self.classifier.close()


class DeduplicationRun:
    """One pass over a fixed batch: EMPTY -> INDEXED -> GROUPED.

    The run owns its LSH index and union-find. Worker threads only score
    pairs; every union happens on the thread that calls ``group``.
    """

    def __init__(self, engine: DeduplicationEngine, records: Sequence[JobRecord],
                 cancel_event: Optional[threading.Event] = None,
                 reference_time: Optional[datetime] = None):
        self.engine = engine
        self.config = engine.config
        self.records = list(records)
        self.cancel_event = cancel_event or threading.Event()
        self.reference_time = parse_datetime(reference_time) or datetime.now(timezone.utc)
        self.state = RunState.EMPTY
        self.metrics = DedupMetrics()
        self.error_handler = ErrorHandler(self.config.engine.error_alert_threshold)
        self.index: Optional[LSHIndex] = None
        self.union_find = UnionFind(len(self.records))
        self.skipped: List[SkippedRecord] = []
        self.partial = False
        self.report: Optional[DeduplicationReport] = None

    def _require(self, state: RunState, operation: str) -> None:
        if self.state is not state:
            raise InvalidStateError(
                f"Cannot {operation} in state {self.state.value}; expected {state.value}"
            )

    def cancel(self) -> None:
        """Stop evaluating pairs; the report keeps the groups formed so far."""
        self.cancel_event.set()

    def _executor(self) -> Optional[ThreadPoolExecutor]:
        workers = self.config.engine.workers
        if workers <= 1:
            return None
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix='dedup')

    def build_index(self) -> LSHIndex:
        """Index every scorable record (EMPTY -> INDEXED).

        Raises:
            InvalidStateError: If the index was already built
            IndexBuildError: If the index cannot be built
        """
        self._require(RunState.EMPTY, "build the index")

        scorable = []
        for position, record in enumerate(self.records):
            if record.is_scorable:
                scorable.append(position)
                continue
            error = MalformedInputError(record.id, MISSING_TITLE_AND_COMPANY)
            self.error_handler.handle_error(error, f"position {position}")
            self.skipped.append(SkippedRecord(record_id=record.id, reason=MISSING_TITLE_AND_COMPANY))
            self.metrics.increment("skipped")

        executor = self._executor()
        try:
            index = LSHIndex(self.config.lsh, self.engine.entity_matcher)
            index.build(self.records, include=scorable, executor=executor)
        except IndexBuildError as e:
            self.error_handler.handle_error(e, f"{len(self.records)} records")
            raise
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        self.index = index
        self.metrics.increment("records_indexed", len(index.indexed))
        self.state = RunState.INDEXED
        return index

    def group(self) -> DeduplicationReport:
        """Score candidate pairs and union duplicates (INDEXED -> GROUPED).

        Returns:
            DeduplicationReport, marked partial if the run was cancelled

        Raises:
            InvalidStateError: If the index has not been built or the run
                was already grouped
        """
        self._require(RunState.INDEXED, "group records")

        pairs = self.index.candidate_pairs()
        logger.info(f"Evaluating {len(pairs)} candidate pairs over {len(self.records)} records")
        classifier = self.engine.create_classifier(self.metrics, self.error_handler)
        try:
            if self.config.engine.workers <= 1:
                self._evaluate_inline(pairs, classifier)
            else:
                self._evaluate_parallel(pairs, classifier)
        finally:
            classifier.close()

        self.metrics.finish()
        self.report = self._build_report()
        self.state = RunState.GROUPED
        return self.report

    def _evaluate_inline(self, pairs: List[Tuple[int, int]], classifier: DuplicateClassifier) -> None:
        for i, j in pairs:
            if self.cancel_event.is_set():
                self._mark_partial()
                return
            outcome, _ = self.engine.evaluate_pair(self.records[i], self.records[j], classifier,
                                                   self.metrics, self.error_handler)
            if outcome == DUPLICATE:
                self.union_find.union(i, j)

    def _evaluate_parallel(self, pairs: List[Tuple[int, int]], classifier: DuplicateClassifier) -> None:
        if self.cancel_event.is_set():
            self._mark_partial()
            return

        with ThreadPoolExecutor(max_workers=self.config.engine.workers, thread_name_prefix='dedup') as executor:
            futures = {}
            for i, j in pairs:
                future = executor.submit(self._evaluate_guarded, i, j, classifier)
                futures[future] = (i, j)

            for future in as_completed(futures):
                if self.cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
                    self._mark_partial()
                    break
                if future.cancelled():
                    continue
                i, j = futures[future]
                outcome, _ = future.result()
                if outcome == DUPLICATE:
                    self.union_find.union(i, j)

    def _evaluate_guarded(self, i: int, j: int,
                          classifier: DuplicateClassifier) -> Tuple[str, Optional[SimilarityResult]]:
        if self.cancel_event.is_set():
            return FAILED, None
        return self.engine.evaluate_pair(self.records[i], self.records[j], classifier,
                                         self.metrics, self.error_handler)

    def _mark_partial(self) -> None:
        if not self.partial:
            logger.warning("Deduplication cancelled; returning groups formed so far")
        self.partial = True

    def _build_report(self) -> DeduplicationReport:
        groups = []
        representatives = []
        for members in self.union_find.components():
            rep = select_representative(self.records, members, self.reference_time)
            representatives.append(rep)
            groups.append(DuplicateGroup(
                member_ids=frozenset(self.records[m].id for m in members),
                representative_id=self.records[rep].id,
                member_indices=tuple(members),
            ))

        stats = self.metrics.to_dict()
        stats["errors"] = dict(self.error_handler.error_counts)
        report = DeduplicationReport(
            total_records=len(self.records),
            duplicate_groups=sum(1 for group in groups if len(group.member_indices) > 1),
            unique_record_count=len(groups),
            groups=groups,
            records=[self.records[rep] for rep in sorted(representatives)],
            skipped=list(self.skipped),
            partial=self.partial,
            stats=stats,
        )
        logger.info(
            f"Deduplicated {report.total_records} records into {report.unique_record_count} groups "
            f"({report.duplicate_groups} with duplicates)"
        )
        return report
