"""Tests for bulk duplicate detection."""
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from jobdedup.config import DedupConfig, EngineConfig
from jobdedup.domain.classifier import DuplicateClassifier
from jobdedup.domain.deduplication import (
    DUPLICATE,
    FAILED,
    QUICK_REJECT,
    STAGE1_ABORT,
    DeduplicationEngine,
    RunState,
    UnionFind,
    completeness_score,
    select_representative,
)
from jobdedup.domain.lsh import LSHIndex
from jobdedup.domain.text import normalize_title
from jobdedup.error_handling import ErrorHandler, IndexBuildError, InvalidStateError
from jobdedup.metrics import DedupMetrics
from jobdedup.models import JobRecord, Salary

POSTED = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
NOW = POSTED + timedelta(days=2)

LONG_DESCRIPTION = (
    "TechCorp is hiring a senior software engineer to design, build and operate the services "
    "behind our billing platform. You will work in Python and Go with a small product team."
)


def engine_with(workers: int = 1, **engine) -> DeduplicationEngine:
    return DeduplicationEngine(DedupConfig(engine=EngineConfig(workers=workers, **engine)))


@pytest.fixture
def engine():
    engine = engine_with(workers=1)
    yield engine
    engine.close()


@pytest.fixture
def batch():
    return [
        JobRecord(
            id="a",
            title="Senior Software Engineer",
            company="TechCorp",
            description="Senior role",
            location="Remote",
            url="https://example.com/jobs/1",
            platform="linkedin",
            posted_date=POSTED,
        ),
        JobRecord(
            id="b",
            title="Sr. Software Engineer",
            company="TechCorp Inc",
            description=LONG_DESCRIPTION,
            location="Remote",
            url="https://example.com/jobs/1?utm_source=feed",
            platform="linkedin",
            posted_date=POSTED + timedelta(days=1),
        ),
        JobRecord(id="nurse", title="Registered Nurse", company="Mercy Hospital", location="Boston, MA"),
        JobRecord(id="other", title="Software Engineer", company="StartupCo", location="Remote"),
        JobRecord(id="empty", description="A record with neither title nor company"),
    ]


class TestUnionFind:
    """Disjoint-set grouping."""

    def test_singletons(self):
        assert UnionFind(3).components() == [[0], [1], [2]]

    def test_union_is_transitive(self):
        uf = UnionFind(5)
        uf.union(3, 1)
        uf.union(1, 4)
        assert uf.find(3) == uf.find(4)
        assert uf.components() == [[0], [1, 3, 4], [2]]

    def test_union_is_idempotent(self):
        uf = UnionFind(2)
        uf.union(0, 1)
        uf.union(1, 0)
        assert uf.components() == [[0, 1]]

    def test_negative_size(self):
        with pytest.raises(ValueError):
            UnionFind(-1)


class TestRepresentative:
    """Completeness scoring and representative choice."""

    def test_completeness_points(self):
        record = JobRecord(
            id="x",
            title="Engineer",
            company="Acme",
            description="x" * 600,
            requirements=["Python"],
            salary=Salary(100000, 120000),
            location="Remote",
            benefits=["Health"],
            company_size="51-200",
            posted_date=NOW - timedelta(days=4),
        )
        assert completeness_score(record, NOW) == pytest.approx(10 + 10 + 15 + 5 + 10 + 5 + 5 + 3 + 2 + 6)

    def test_freshness_never_negative(self):
        record = JobRecord(id="x", title="Engineer", posted_date=NOW - timedelta(days=45))
        assert completeness_score(record, NOW) == 10

    def test_scraped_at_used_without_posted_date(self):
        record = JobRecord(id="x", title="Engineer", scraped_at=NOW)
        assert completeness_score(record, NOW) == pytest.approx(20)

    def test_longer_description_wins(self, batch):
        assert select_representative(batch, [0, 1], NOW) == 1

    def test_tie_goes_to_earliest(self):
        records = [JobRecord(id="x", title="Engineer"), JobRecord(id="y", title="Engineer")]
        assert select_representative(records, [1, 0], NOW) == 0


class TestStagedChecks:
    """Quick reject and the cheap similarity stages."""

    @pytest.mark.parametrize("first, second", [
        (
            JobRecord(id="1", title="Engineer", company="Acme", platform="linkedin", posted_date=POSTED),
            JobRecord(id="2", title="Engineer", company="Acme", platform="indeed",
                      posted_date=POSTED + timedelta(days=30)),
        ),
        (
            JobRecord(id="1", title="Engineer", company="Acme", salary=Salary(30000, 40000)),
            JobRecord(id="2", title="Engineer", company="Acme", salary=Salary(200000, 250000)),
        ),
        (
            JobRecord(id="1", title="Software Engineering Intern", company="Acme"),
            JobRecord(id="2", title="Principal Software Engineer", company="Acme"),
        ),
    ])
    def test_quick_reject(self, engine, first, second):
        assert engine.quick_reject(first, second) is not None

    def test_principal_and_senior_stay_apart(self, engine):
        principal = JobRecord(id="1", title="Principal Engineer", company="Acme")
        senior = JobRecord(id="2", title="Senior Engineer", company="Acme")
        assert normalize_title(principal.title) == normalize_title(senior.title)
        assert engine.quick_reject(principal, senior) == "job level delta 3"

    def test_different_platforms_close_in_time_not_rejected(self, engine):
        first = JobRecord(id="1", title="Engineer", platform="linkedin", posted_date=POSTED)
        second = JobRecord(id="2", title="Engineer", platform="indeed", posted_date=POSTED + timedelta(days=2))
        assert engine.quick_reject(first, second) is None

    def test_quick_reject_never_reaches_classifier(self, engine):
        first = JobRecord(id="1", title="Engineer", company="Acme", salary=Salary(30000, 40000),
                          platform="linkedin", posted_date=POSTED)
        second = JobRecord(id="2", title="Engineer", company="Acme", salary=Salary(200000, 250000),
                           platform="indeed", posted_date=POSTED)
        with patch.object(DuplicateClassifier, "classify") as classify:
            report = engine.deduplicate([first, second], reference_time=NOW)
        classify.assert_not_called()
        assert report.stats["quick_rejects"] == 1
        assert report.stats["classifier_calls"] == 0
        assert report.duplicate_groups == 0

    def test_stage1(self, batch):
        assert DeduplicationEngine.stage1(batch[0], batch[1]) == 1.0
        assert DeduplicationEngine.stage1(batch[0], batch[2]) == 0.0

    def test_stage2(self, engine, batch):
        assert engine.stage2(batch[0], batch[1]) == pytest.approx(1.0)
        assert engine.stage2(batch[0], batch[2]) < 0.6

    def test_evaluate_pair_outcomes(self, engine, batch):
        metrics = DedupMetrics()
        handler = ErrorHandler()
        outcome, result = engine.evaluate_pair(batch[0], batch[1], engine.classifier, metrics, handler)
        assert outcome == DUPLICATE
        assert result.is_duplicate
        outcome, result = engine.evaluate_pair(batch[0], batch[2], engine.classifier, metrics, handler)
        assert outcome == STAGE1_ABORT
        assert result is None
        assert metrics.candidate_pairs == 2
        assert metrics.stage1_aborts == 1

    def test_evaluate_pair_failure(self, engine, batch):
        metrics = DedupMetrics()
        handler = ErrorHandler()
        with patch.object(engine, "quick_reject", side_effect=TypeError("bad field")):
            outcome, _ = engine.evaluate_pair(batch[0], batch[1], engine.classifier, metrics, handler)
        assert outcome == FAILED
        assert metrics.pair_failures == 1
        assert handler.count("pair_failure") == 1

    def test_quick_reject_outcome(self, engine):
        first = JobRecord(id="1", title="Engineer", salary=Salary(1, 2))
        second = JobRecord(id="2", title="Engineer", salary=Salary(100, 200))
        outcome, _ = engine.evaluate_pair(first, second, engine.classifier, DedupMetrics(), ErrorHandler())
        assert outcome == QUICK_REJECT


class TestDeduplicate:
    """Batch grouping."""

    def test_groups_and_counts(self, engine, batch):
        report = engine.deduplicate(batch, reference_time=NOW)
        assert report.total_records == 5
        assert report.unique_record_count == 4
        assert report.duplicate_groups == 1
        assert [sorted(group.member_ids) for group in report.groups] == [
            ["a", "b"], ["nurse"], ["other"], ["empty"]]
        assert report.partial is False

    def test_representative_is_most_complete(self, engine, batch):
        report = engine.deduplicate(batch, reference_time=NOW)
        assert report.groups[0].representative_id == "b"
        assert [record.id for record in report.records] == ["b", "nurse", "other", "empty"]

    def test_unscorable_record_is_skipped_singleton(self, engine, batch):
        report = engine.deduplicate(batch, reference_time=NOW)
        assert [skipped.record_id for skipped in report.skipped] == ["empty"]
        assert report.stats["skipped"] == 1
        assert report.stats["errors"]["malformed_input"] == 1

    def test_acme_repost_keeps_longer_description(self, engine):
        records = [
            JobRecord(id="short", title="Software Engineer", company="Acme Inc.",
                      description="Build backend services.",
                      url="https://acme.com/job/123?utm_source=x", platform="linkedin", posted_date=POSTED),
            JobRecord(id="long", title="Software Engineer", company="Acme",
                      description="Build backend services in Python for our logistics platform. You will "
                                  "own APIs end to end and work closely with product and operations.",
                      url="https://acme.com/job/123", platform="linkedin", posted_date=POSTED),
        ]
        report = engine.deduplicate(records, reference_time=NOW)
        assert report.duplicate_groups == 1
        assert report.groups[0].representative_id == "long"

    def test_numbered_title_variant_is_grouped(self, engine):
        records = [
            JobRecord(id="x", title="Software Engineer II", company="Acme", location="Remote",
                      url="https://acme.com/careers/42?utm_source=board", platform="linkedin", posted_date=POSTED),
            JobRecord(id="nurse", title="Registered Nurse", company="Mercy Hospital"),
            JobRecord(id="y", title="Software Engineer", company="Acme", location="Remote",
                      url="https://acme.com/careers/42", platform="linkedin", posted_date=POSTED),
        ]
        assert engine.classify(records[0], records[2]).is_duplicate

        report = engine.deduplicate(records, reference_time=NOW)
        assert report.stats["candidate_pairs"] >= 1
        assert [sorted(group.member_ids) for group in report.groups] == [["x", "y"], ["nurse"]]

    def test_rerun_on_representatives_is_stable(self, engine, batch):
        report = engine.deduplicate(batch, reference_time=NOW)
        again = engine.deduplicate(report.records, reference_time=NOW)
        assert again.duplicate_groups == 0
        assert again.unique_record_count == len(report.records)

    def test_input_not_modified(self, engine, batch):
        snapshot = list(batch)
        engine.deduplicate(batch, reference_time=NOW)
        assert batch == snapshot

    def test_empty_batch(self, engine):
        report = engine.deduplicate([])
        assert report.total_records == 0
        assert report.groups == []

    def test_worker_count_does_not_change_groups(self, batch):
        reports = []
        for workers in (1, 4):
            engine = engine_with(workers=workers)
            try:
                reports.append(engine.deduplicate(batch, reference_time=NOW))
            finally:
                engine.close()
        serial, parallel = reports
        assert [g.member_ids for g in serial.groups] == [g.member_ids for g in parallel.groups]
        assert [g.representative_id for g in serial.groups] == [g.representative_id for g in parallel.groups]

    def test_group_order_does_not_depend_on_input_order(self, engine, batch):
        forward = engine.deduplicate(batch, reference_time=NOW)
        backward = engine.deduplicate(list(reversed(batch)), reference_time=NOW)
        assert {g.member_ids for g in forward.groups} == {g.member_ids for g in backward.groups}

    @pytest.mark.parametrize("workers", [1, 4])
    def test_cancelled_run_is_partial(self, batch, workers):
        engine = engine_with(workers=workers)
        cancel = threading.Event()
        cancel.set()
        try:
            report = engine.deduplicate(batch, cancel_event=cancel, reference_time=NOW)
        finally:
            engine.close()
        assert report.partial is True
        assert report.duplicate_groups == 0
        assert report.unique_record_count == 5

    def test_index_build_failure_is_fatal(self, engine, batch):
        with patch.object(LSHIndex, "build", side_effect=IndexBuildError("out of memory")):
            with pytest.raises(IndexBuildError):
                engine.deduplicate(batch)

    def test_stats(self, engine, batch):
        stats = engine.deduplicate(batch, reference_time=NOW).stats
        assert stats["records_indexed"] == 4
        assert stats["duplicates_found"] == 1
        assert stats["candidate_pairs"] >= 1
        assert stats["classifier_calls"] >= 1
        assert "reject_rate" in stats

    def test_learned_model_used_in_batch(self, batch):
        config = replace(DedupConfig(), engine=EngineConfig(workers=1, strategy="learned"))
        engine = DeduplicationEngine(config, model=lambda features: 0.0)
        try:
            report = engine.deduplicate(batch, reference_time=NOW)
        finally:
            engine.close()
        assert report.duplicate_groups == 0


class TestRunLifecycle:
    """EMPTY -> INDEXED -> GROUPED."""

    def test_lifecycle(self, engine, batch):
        run = engine.start_run(batch, reference_time=NOW)
        assert run.state is RunState.EMPTY
        run.build_index()
        assert run.state is RunState.INDEXED
        run.group()
        assert run.state is RunState.GROUPED

    def test_group_before_index(self, engine, batch):
        with pytest.raises(InvalidStateError):
            engine.start_run(batch).group()

    def test_build_twice(self, engine, batch):
        run = engine.start_run(batch)
        run.build_index()
        with pytest.raises(InvalidStateError):
            run.build_index()

    def test_group_twice(self, engine, batch):
        run = engine.start_run(batch)
        run.build_index()
        run.group()
        with pytest.raises(InvalidStateError):
            run.group()

    def test_cancel_method(self, engine, batch):
        run = engine.start_run(batch)
        run.build_index()
        run.cancel()
        assert run.group().partial is True

    def test_runs_are_independent(self, engine, batch):
        first = engine.start_run(batch)
        second = engine.start_run(batch)
        first.build_index()
        assert second.state is RunState.EMPTY
        assert first.metrics is not second.metrics


class TestFindMatches:
    """Probe lookups against known records."""

    def test_probe_matches_known_duplicates(self, engine, batch):
        probe = JobRecord(id="probe", title="Senior Software Engineer", company="TechCorp",
                          location="Remote", platform="linkedin", posted_date=POSTED)
        matches = engine.find_matches(probe, batch)
        assert {position for position, _ in matches} == {0, 1}
        scores = [result.score for _, result in matches]
        assert scores == sorted(scores, reverse=True)

    def test_unrelated_probe(self, engine, batch):
        probe = JobRecord(id="probe", title="Pastry Chef", company="Le Bistro")
        assert engine.find_matches(probe, batch) == []

    def test_matches_role_variant(self, engine, batch):
        posting = JobRecord(id="new", title="Sr. Software Engineer II", company="TechCorp, Inc.",
                            location="Remote", url="https://example.com/jobs/1", platform="linkedin",
                            posted_date=POSTED)
        assert 0 in {position for position, _ in engine.find_matches(posting, batch)}

    def test_unscorable_probe(self, engine, batch):
        assert engine.find_matches(JobRecord(id="probe"), batch) == []
        assert engine.error_handler.count("malformed_input") == 1


class TestNaiveDatetimes:
    """Dates without a timezone are read as UTC."""

    def test_record_dates_become_utc(self):
        record = JobRecord(id="x", title="Engineer", posted_date=datetime(2024, 3, 1),
                           scraped_at=datetime(2024, 3, 2, 8))
        assert record.posted_date == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert record.scraped_at.tzinfo == timezone.utc

    def test_naive_reference_time(self):
        record = JobRecord(id="x", title="Engineer", posted_date=POSTED)
        assert completeness_score(record, datetime(2024, 3, 3, 12)) == pytest.approx(18)

    @pytest.mark.parametrize("workers", [1, 4])
    def test_batch_with_naive_and_aware_dates(self, workers):
        records = [
            JobRecord(id="a", title="Software Engineer", company="Acme", platform="linkedin",
                      posted_date=datetime(2024, 3, 1)),
            JobRecord(id="b", title="Software Engineer", company="Acme", platform="linkedin",
                      posted_date=datetime(2024, 3, 1, tzinfo=timezone.utc)),
            JobRecord(id="c", title="Software Engineer", company="Acme", platform="indeed",
                      scraped_at=datetime(2024, 3, 2)),
        ]
        engine = engine_with(workers=workers)
        try:
            report = engine.deduplicate(records, reference_time=datetime(2024, 3, 3))
        finally:
            engine.close()
        assert [sorted(group.member_ids) for group in report.groups] == [["a", "b", "c"]]
        assert report.stats["pair_failures"] == 0


def test_geocoder_pool_matches_worker_count():
    engine = DeduplicationEngine(DedupConfig(engine=EngineConfig(workers=6)), geocoder=lambda a, b: 1.0)
    try:
        assert engine.classifier.location_scorer._executor._max_workers == 6
    finally:
        engine.close()
