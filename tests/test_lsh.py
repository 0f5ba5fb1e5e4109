"""Tests for the LSH candidate index."""
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from jobdedup.config import LSHConfig
from jobdedup.domain.entities import EntityMatcher
from jobdedup.domain.lsh import LSHIndex, embed_record, record_tokens
from jobdedup.error_handling import IndexBuildError, InvalidStateError
from jobdedup.models import JobRecord

SMALL = LSHConfig(num_tables=4, hash_bits=16, embedding_dim=32, seed=7)


@pytest.fixture
def records():
    return [
        JobRecord(id="0", title="Senior Backend Engineer", company="Acme Inc."),
        JobRecord(id="1", title="Registered Nurse", company="Mercy Hospital"),
        JobRecord(id="2", title="Sr. Backend Engineer", company="ACME"),
        JobRecord(id="3", description="no title or company"),
        JobRecord(id="4", title="Data Scientist", company="Globex"),
    ]


class TestEmbedding:
    """Record embedding."""

    def test_tokens_are_field_prefixed(self):
        tokens = record_tokens(JobRecord(id="x", title="Data Analyst", company="Acme Inc"))
        assert tokens == ["title:data", "title:analyst", "company:acme"]

    def test_level_words_and_numerals_dropped(self):
        tokens = record_tokens(JobRecord(id="x", title="Sr Engineer III 2", company="Acme Inc"))
        assert tokens == ["title:engineer", "company:acme"]

    def test_level_only_title_keeps_its_words(self):
        assert record_tokens(JobRecord(id="x", title="Intern")) == ["title:intern"]

    def test_matcher_maps_roles_and_aliases(self):
        tokens = record_tokens(JobRecord(id="x", title="Backend Developer", company="Facebook"), EntityMatcher())
        assert tokens == ["title:backend", "title:engineering", "company:meta"]

    @pytest.mark.parametrize("first,second", [
        (("Software Engineer II", "Acme"), ("Software Engineer", "Acme")),
        (("Backend Engineer", "Acme Inc"), ("Backend Developer", "ACME")),
        (("Software Developer", "Facebook"), ("Senior Software Engineer", "Meta Platforms")),
        (("Principal Data Scientist", "Globex"), ("Data Scientist", "Globex LLC")),
    ])
    def test_variants_share_tokens(self, first, second):
        matcher = EntityMatcher()
        a = JobRecord(id="a", title=first[0], company=first[1])
        b = JobRecord(id="b", title=second[0], company=second[1])
        assert record_tokens(a, matcher) == record_tokens(b, matcher)
        assert np.array_equal(embed_record(a, 32, matcher), embed_record(b, 32, matcher))

    def test_unit_length(self, records):
        vector = embed_record(records[0], 32)
        assert vector.shape == (32,)
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    def test_empty_record_embeds_to_zero(self, records):
        assert not embed_record(records[3], 32).any()

    def test_normalized_variants_embed_equally(self, records):
        assert np.array_equal(embed_record(records[0], 32), embed_record(records[2], 32))


class TestLSHIndex:
    """Index construction and lookups."""

    def test_same_seed_same_hyperplanes(self):
        assert np.array_equal(LSHIndex(SMALL).hyperplanes, LSHIndex(SMALL).hyperplanes)

    def test_different_seed_different_hyperplanes(self):
        other = LSHConfig(num_tables=4, hash_bits=16, embedding_dim=32, seed=8)
        assert not np.array_equal(LSHIndex(SMALL).hyperplanes, LSHIndex(other).hyperplanes)

    def test_hyperplane_shape(self):
        assert LSHIndex(SMALL).hyperplanes.shape == (4, 16, 32)

    def test_default_configuration(self):
        index = LSHIndex()
        assert (index.num_tables, index.hash_bits, index.seed) == (20, 128, 42)

    def test_unallocatable_hyperplanes(self):
        with pytest.raises(IndexBuildError):
            LSHIndex(LSHConfig(num_tables=-1))

    def test_identical_records_are_candidates(self, records):
        index = LSHIndex(SMALL)
        index.build(records)
        assert 2 in index.candidates(0)
        assert 0 in index.candidates(2)
        assert (0, 2) in index.candidate_pairs()

    def test_near_duplicates_are_candidates(self):
        batch = [
            JobRecord(id="0", title="Software Engineer II", company="Acme"),
            JobRecord(id="1", title="Registered Nurse", company="Mercy Hospital"),
            JobRecord(id="2", title="Software Developer", company="Acme Inc"),
        ]
        index = LSHIndex()
        index.build(batch)
        assert (0, 2) in index.candidate_pairs()
        assert index.query(JobRecord(id="p", title="Sr. Software Engineer", company="ACME")) == {0, 2}

    def test_candidates_exclude_self(self, records):
        index = LSHIndex(SMALL)
        index.build(records)
        for position in index.indexed:
            assert position not in index.candidates(position)

    def test_tokenless_records_are_not_indexed(self, records):
        index = LSHIndex(SMALL)
        index.build(records)
        assert 3 not in index.indexed
        assert index.candidates(3) == set()
        assert all(3 not in pair for pair in index.candidate_pairs())

    def test_include_restricts_positions(self, records):
        index = LSHIndex(SMALL)
        index.build(records, include=[0, 1, 4])
        assert index.indexed == [0, 1, 4]
        assert 2 not in index.candidates(0)

    def test_candidate_pairs_sorted_and_ordered(self, records):
        index = LSHIndex(SMALL)
        index.build(records)
        pairs = index.candidate_pairs()
        assert pairs == sorted(pairs)
        assert all(i < j for i, j in pairs)
        assert len(pairs) == len(set(pairs))

    def test_parallel_build_matches_serial(self, records):
        serial = LSHIndex(SMALL)
        serial.build(records)
        parallel = LSHIndex(SMALL)
        with ThreadPoolExecutor(max_workers=4) as executor:
            parallel.build(records, executor=executor)
        assert parallel.tables == serial.tables
        assert parallel.candidate_pairs() == serial.candidate_pairs()

    def test_deterministic_across_builds(self, records):
        first = LSHIndex(SMALL)
        first.build(records)
        second = LSHIndex(SMALL)
        second.build(records)
        assert first.candidate_pairs() == second.candidate_pairs()

    def test_query_probe(self, records):
        index = LSHIndex(SMALL)
        index.build(records)
        probe = JobRecord(id="p", title="Senior Backend Engineer", company="Acme")
        assert {0, 2} <= index.query(probe)
        assert index.query(JobRecord(id="q")) == set()

    def test_build_twice_fails(self, records):
        index = LSHIndex(SMALL)
        index.build(records)
        with pytest.raises(InvalidStateError):
            index.build(records)

    @pytest.mark.parametrize("lookup", ["candidates", "query", "candidate_pairs"])
    def test_lookup_before_build_fails(self, records, lookup):
        index = LSHIndex(SMALL)
        args = {"candidates": (0,), "query": (records[0],), "candidate_pairs": ()}[lookup]
        with pytest.raises(InvalidStateError):
            getattr(index, lookup)(*args)

    def test_empty_batch(self):
        index = LSHIndex(SMALL)
        index.build([])
        assert index.candidate_pairs() == []
