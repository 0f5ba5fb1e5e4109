"""Tests for field similarity scorers."""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from jobdedup.config import TitleWeights
from jobdedup.domain.scorers import (
    LocationScorer,
    collapse_bundle,
    description_similarity,
    extract_experience_level,
    extract_job_level,
    extract_skills,
    requirements_similarity,
    salary_overlap,
    title_similarity,
)
from jobdedup.metrics import DedupMetrics
from jobdedup.models import Salary

DESCRIPTION = (
    "We are looking for a backend engineer to build our payments platform. "
    "You will design APIs and own services in production.\n\n"
    "- Python and PostgreSQL\n- Docker and Kubernetes"
)


class TestTitleSimilarity:
    """Title scorer blend."""

    def test_reflexive(self):
        score, breakdown = title_similarity("Software Engineer", "Software Engineer")
        assert score == pytest.approx(1.0)
        assert breakdown["exact"] == 1.0

    def test_seniority_synonyms(self):
        score, _ = title_similarity("Senior Backend Engineer", "Sr Backend Engineer")
        assert score > 0.9

    def test_unrelated(self):
        score, _ = title_similarity("Registered Nurse", "Software Engineer")
        assert score < 0.3

    def test_breakdown_keys(self):
        _, breakdown = title_similarity("Data Engineer", "Data Scientist")
        assert set(breakdown) == {"exact", "jaccard", "cosine", "levenshtein", "ngram", "semantic"}

    def test_default_weights(self):
        weights = TitleWeights()
        assert (weights.exact, weights.jaccard, weights.cosine,
                weights.levenshtein, weights.ngram, weights.semantic) == (0.30, 0.20, 0.20, 0.10, 0.10, 0.10)

    def test_custom_weights(self):
        weights = TitleWeights(exact=1.0, jaccard=0.0, cosine=0.0, levenshtein=0.0, ngram=0.0, semantic=0.0)
        score, _ = title_similarity("Data Engineer", "Data Scientist", weights)
        assert score == 0.0

    def test_semantic_plugin_used(self):
        _, breakdown = title_similarity("Data Engineer", "Data Scientist", semantic=lambda a, b: 0.42)
        assert breakdown["semantic"] == pytest.approx(0.42)

    def test_failing_semantic_plugin_falls_back(self):
        def broken(a, b):
            raise RuntimeError("model offline")

        score, breakdown = title_similarity("Software Engineer", "Software Engineer", semantic=broken)
        assert score == pytest.approx(1.0)
        assert breakdown["semantic"] == 1.0

    @pytest.mark.parametrize("left, right", [(None, "Engineer"), ("", "Engineer"), ("Engineer", None)])
    def test_missing(self, left, right):
        assert title_similarity(left, right) == (0.0, {})


class TestDescriptionSimilarity:
    """Description feature bundle."""

    def test_bundle_keys(self):
        bundle = description_similarity(DESCRIPTION, DESCRIPTION)
        assert set(bundle) == {"tfidf", "keyword_overlap", "sentence_similarity", "structural_similarity"}

    def test_identical(self):
        bundle = description_similarity(DESCRIPTION, DESCRIPTION)
        assert bundle["tfidf"] == pytest.approx(1.0)
        assert bundle["keyword_overlap"] == 1.0
        assert bundle["structural_similarity"] == pytest.approx(1.0)

    def test_sentence_similarity_defaults_to_zero(self):
        assert description_similarity(DESCRIPTION, DESCRIPTION)["sentence_similarity"] == 0.0

    def test_sentence_similarity_plugin(self):
        bundle = description_similarity(DESCRIPTION, DESCRIPTION, sentence_similarity=lambda a, b: 1.0 if a == b else 0.0)
        assert bundle["sentence_similarity"] == pytest.approx(1.0)

    def test_missing_description(self):
        bundle = description_similarity(DESCRIPTION, "")
        assert all(value == 0.0 for value in bundle.values())

    def test_collapse_excludes_and_skips_none(self):
        bundle = {"a": 1.0, "b": 0.0, "c": None, "d": 0.5}
        assert collapse_bundle(bundle) == pytest.approx(0.5)
        assert collapse_bundle(bundle, exclude=("b",)) == pytest.approx(0.75)
        assert collapse_bundle({"c": None}) == 0.0


class TestRequirements:
    """Skill and experience extraction and comparison."""

    def test_extract_skills(self):
        skills = extract_skills("Experience with Python, React, AWS and C++ required; Go is a plus")
        assert {"python", "react", "aws", "c++"} <= skills
        assert "go" not in skills

    def test_extract_skills_c_sharp(self):
        assert "c#" in extract_skills("Strong C# and .NET background")

    @pytest.mark.parametrize("text, expected", [
        ("5+ years of experience with Python", 5.0),
        ("3-5 years experience", 3.75),
        ("Senior engineer wanted", 5.0),
        ("Entry level role", 0.0),
        ("Principal engineer with 2 years experience", 8.0),
        ("", 0.0),
    ])
    def test_extract_experience_level(self, text, expected):
        assert extract_experience_level(text) == pytest.approx(expected)

    def test_requirements_bundle(self):
        first = "5 years experience with Python and Django. Bachelor's degree required."
        second = "5 years experience with Python and Flask. Bachelor's degree in computer science."
        bundle = requirements_similarity(first, second)
        assert bundle["skills_overlap"] == pytest.approx(1 / 3)
        assert bundle["experience_similarity"] == 1.0
        assert 0.0 < bundle["education_similarity"] <= 1.0
        assert bundle["certification_similarity"] is None

    def test_requirements_missing(self):
        bundle = requirements_similarity("", "Python")
        assert bundle["skills_overlap"] == 0.0
        assert bundle["experience_similarity"] == 0.0


class TestSalaryAndLevel:
    """Salary overlap and job level extraction."""

    @pytest.mark.parametrize("first, second, expected", [
        (Salary(30000, 40000), Salary(200000, 250000), 0.0),
        (Salary(100000, 150000), Salary(100000, 150000), 1.0),
        (Salary(100000, 200000), Salary(150000, 250000), 0.5),
        (Salary(120000, None), Salary(100000, 150000), 1.0),
        (Salary(100000, 150000, "USD"), Salary(100000, 150000, "EUR"), None),
        (None, Salary(1, 2), None),
    ])
    def test_salary_overlap(self, first, second, expected):
        result = salary_overlap(first, second)
        if expected is None:
            assert result is None
        else:
            assert result == pytest.approx(expected)
            assert salary_overlap(second, first) == pytest.approx(expected)

    @pytest.mark.parametrize("title, level", [
        ("Software Engineering Intern", 0),
        ("Entry Level Analyst", 0),
        ("Jr. Developer", 1),
        ("Software Engineer", None),
        ("Senior Software Engineer", 5),
        ("Sr. Engineer", 5),
        ("Tech Lead", 7),
        ("Principal Architect", 8),
    ])
    def test_extract_job_level(self, title, level):
        assert extract_job_level(title) == level


class TestLocationScorer:
    """Location comparison with an optional distance lookup."""

    @pytest.mark.parametrize("first, second, expected", [
        ("Remote", "remote", 1.0),
        ("New York", "New York, NY", 0.8),
        ("San Francisco, CA", "Oakland, CA", 0.25),
        ("Berlin", "Tokyo", 0.0),
    ])
    def test_string_similarity(self, first, second, expected):
        scorer = LocationScorer()
        score, km = scorer.compare(first, second)
        assert score == pytest.approx(expected)
        assert km is None

    def test_distance_lookup_raises_score(self):
        scorer = LocationScorer(distance_lookup=lambda a, b: 10.0, max_distance_km=100.0)
        try:
            score, km = scorer.compare("San Francisco", "Oakland")
        finally:
            scorer.close()
        assert km == 10.0
        assert score == pytest.approx(0.9)

    def test_distance_lookup_timeout_degrades_to_string(self):
        metrics = DedupMetrics()

        def slow(a, b):
            time.sleep(0.5)
            return 1.0

        scorer = LocationScorer(distance_lookup=slow, timeout=0.05, metrics=metrics)
        try:
            score, km = scorer.compare("Berlin", "Tokyo")
        finally:
            scorer.close()
        assert km is None
        assert score == 0.0
        assert metrics.collaborator_timeouts == 1

    def test_concurrent_lookups_each_get_a_worker(self):
        metrics = DedupMetrics()
        barrier = threading.Barrier(4, timeout=2.0)

        def lookup(a, b):
            barrier.wait()
            return 5.0

        scorer = LocationScorer(distance_lookup=lookup, timeout=3.0, metrics=metrics, max_workers=4)
        try:
            with ThreadPoolExecutor(max_workers=4) as pool:
                results = list(pool.map(lambda _: scorer.compare("Berlin", "Potsdam"), range(4)))
        finally:
            scorer.close()
        assert [km for _, km in results] == [5.0] * 4
        assert metrics.collaborator_timeouts == 0

    def test_distance_lookup_error_degrades_to_string(self):
        def broken(a, b):
            raise ConnectionError("geocoder down")

        scorer = LocationScorer(distance_lookup=broken)
        try:
            assert scorer.compare("Remote", "Remote") == (1.0, None)
        finally:
            scorer.close()

    def test_missing_location(self):
        assert LocationScorer().compare("", "Remote") == (0.0, None)
