"""Field-level similarity scorers for job records."""
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set, Tuple
import logging
import math
import re

from jobdedup.config import TitleWeights
from jobdedup.error_handling import CollaboratorTimeoutError, call_with_timeout
from jobdedup.domain.metrics import (
    cosine,
    jaccard,
    ngram_similarity,
    normalized_levenshtein,
    phonetic_similarity,
    ratio_similarity,
    text_cosine,
)
from jobdedup.domain.text import (
    analyze_text_structure,
    calculate_tfidf,
    content_terms,
    extract_keywords,
    normalize_title,
    preprocess_text,
    split_sentences,
)
from jobdedup.metrics import DedupMetrics
from jobdedup.models import Salary

logger = logging.getLogger(__name__)

# (text_a, text_b) -> similarity in [0, 1]
TextSimilarity = Callable[[str, str], float]

# (location_a, location_b) -> kilometers, or None when unknown
DistanceLookup = Callable[[str, str], Optional[float]]

SKILL_PATTERNS = [
    # Programming languages
    re.compile(r'(?<![\w+#])(c\+\+|c#)(?![\w+#])', re.IGNORECASE),
    re.compile(r'\b(javascript|typescript|python|java|ruby|golang|rust|scala|kotlin|swift'
               r'|objective-c|php|perl|matlab)\b', re.IGNORECASE),
    # Frameworks and libraries
    re.compile(r'\b(react|angular|vue|svelte|django|flask|fastapi|spring|express|nestjs|nextjs'
               r'|nuxt|gatsby|jquery|bootstrap|tailwind)\b', re.IGNORECASE),
    # Databases
    re.compile(r'\b(mysql|postgresql|postgres|mongodb|redis|elasticsearch|cassandra|dynamodb'
               r'|sqlite|oracle|sql server|sql)\b', re.IGNORECASE),
    # Cloud and DevOps
    re.compile(r'\b(aws|azure|gcp|google cloud|docker|kubernetes|jenkins|gitlab|github actions'
               r'|terraform|ansible|puppet)\b', re.IGNORECASE),
    # Tools
    re.compile(r'\b(git|jira|confluence|figma|sketch|photoshop|illustrator|unity|unreal)\b',
               re.IGNORECASE),
]

YEARS_PATTERN = re.compile(r'\b(\d+)\+?\s*years?\s*(?:of\s*)?experience\b', re.IGNORECASE)
YEARS_RANGE_PATTERN = re.compile(r'\b(\d+)\s*-\s*(\d+)\s*years?\s*(?:of\s*)?experience\b',
                                 re.IGNORECASE)
YEARS_RANGE_MULTIPLIER = 0.75

# Seniority keywords on a 0-8 scale
EXPERIENCE_LEVELS = [
    (re.compile(r'\bentry\s*level\b', re.IGNORECASE), 0),
    (re.compile(r'\bjunior\b', re.IGNORECASE), 1),
    (re.compile(r'\bmid\s*level\b', re.IGNORECASE), 3),
    (re.compile(r'\bsenior\b', re.IGNORECASE), 5),
    (re.compile(r'\blead\b', re.IGNORECASE), 7),
    (re.compile(r'\bprincipal\b', re.IGNORECASE), 8),
    (re.compile(r'\bstaff\b', re.IGNORECASE), 8),
]
MAX_EXPERIENCE_LEVEL = 8

# Level words found in raw titles. These stay finer than the seniority
# synonyms in normalize_title: "principal" and "senior" normalize to the same
# string but are 3 levels apart, so the level check still separates them.
JOB_LEVELS = {
    'intern': 0, 'internship': 0, 'trainee': 0, 'graduate': 0,
    'junior': 1, 'jr': 1, 'associate': 1,
    'mid': 3, 'intermediate': 3,
    'senior': 5, 'sr': 5,
    'lead': 7,
    'staff': 8, 'principal': 8,
}

EDUCATION_PATTERN = re.compile(
    r'\b(high school|bachelor\'?s?|master\'?s?|ba|bs|bsc|ms|msc|mba|ph\.?d|doctorate|degree'
    r'|computer science|engineering degree)\b', re.IGNORECASE)

CERTIFICATION_PATTERN = re.compile(
    r'\b(aws certified|azure certified|gcp certified|pmp|cissp|cpa|ccna|cka|ckad|csm'
    r'|scrum master|comptia|itil|six sigma|certification|certified)\b', re.IGNORECASE)

CONTAINMENT_SCORE = 0.8
MAX_SENTENCES = 50


def title_similarity(title1: Optional[str], title2: Optional[str],
                     weights: Optional[TitleWeights] = None,
                     semantic: Optional[TextSimilarity] = None) -> Tuple[float, Dict[str, float]]:
    """Weighted blend of string metrics over normalized titles.

    Args:
        title1: First job title
        title2: Second job title
        weights: Blend weights (defaults reproduce the standard mix)
        semantic: Optional similarity used for the proxy slot; token-level
            phonetic agreement is used when it is not supplied

    Returns:
        Tuple of (score, per-metric breakdown)
    """
    if not title1 or not title2:
        return 0.0, {}

    weights = weights or TitleWeights()
    norm1 = normalize_title(title1)
    norm2 = normalize_title(title2)
    if not norm1 or not norm2:
        return 0.0, {}

    metrics = {
        'exact': 1.0 if norm1 == norm2 else 0.0,
        'jaccard': jaccard(norm1.split(), norm2.split()),
        'cosine': text_cosine(norm1, norm2),
        'levenshtein': normalized_levenshtein(norm1, norm2),
        'ngram': ngram_similarity(norm1, norm2, 2),
        'semantic': _proxy_similarity(norm1, norm2, semantic),
    }

    score = (
        metrics['exact'] * weights.exact +
        metrics['jaccard'] * weights.jaccard +
        metrics['cosine'] * weights.cosine +
        metrics['levenshtein'] * weights.levenshtein +
        metrics['ngram'] * weights.ngram +
        metrics['semantic'] * weights.semantic
    )
    return _clamp(score), metrics


def _proxy_similarity(norm1: str, norm2: str, semantic: Optional[TextSimilarity]) -> float:
    if semantic is None:
        return phonetic_similarity(norm1, norm2)
    try:
        return _clamp(float(semantic(norm1, norm2)))
    except Exception as e:
        logger.warning(f"Semantic title similarity failed, using phonetic proxy: {e}")
        return phonetic_similarity(norm1, norm2)


def structural_similarity(structure1: Dict[str, float], structure2: Dict[str, float]) -> float:
    """Mean ratio similarity of structural statistics."""
    if not structure1 or not structure2:
        return 0.0
    keys = ('sentence_count', 'paragraph_count', 'list_item_count',
            'punctuation_density', 'avg_sentence_length')
    return sum(ratio_similarity(structure1[k], structure2[k]) for k in keys) / len(keys)


def average_sentence_similarity(sentences1: List[str], sentences2: List[str],
                                similarity: Optional[TextSimilarity]) -> float:
    """Best-match sentence similarity averaged in both directions.

    Returns 0.0 when no sentence similarity function is configured.
    """
    if similarity is None or not sentences1 or not sentences2:
        return 0.0
    sentences1 = sentences1[:MAX_SENTENCES]
    sentences2 = sentences2[:MAX_SENTENCES]
    matrix = [[_clamp(float(similarity(a, b))) for b in sentences2] for a in sentences1]
    forward = sum(max(row) for row in matrix) / len(matrix)
    backward = sum(max(col) for col in zip(*matrix)) / len(sentences2)
    return (forward + backward) / 2


def description_similarity(desc1: Optional[str], desc2: Optional[str],
                           sentence_similarity: Optional[TextSimilarity] = None) -> Dict[str, float]:
    """Feature bundle comparing two job descriptions.

    The bundle is not collapsed into a single score; the classifier decides
    how to weigh it.

    Args:
        desc1: First description
        desc2: Second description
        sentence_similarity: Optional sentence-pair similarity

    Returns:
        Dict with tfidf, keyword_overlap, sentence_similarity and
        structural_similarity
    """
    if not desc1 or not desc2:
        return {
            'tfidf': 0.0,
            'keyword_overlap': 0.0,
            'sentence_similarity': 0.0,
            'structural_similarity': 0.0,
        }

    sentence_score = 0.0
    if sentence_similarity is not None:
        try:
            sentence_score = average_sentence_similarity(
                split_sentences(desc1), split_sentences(desc2), sentence_similarity)
        except Exception as e:
            logger.warning(f"Sentence similarity failed, contributing 0: {e}")

    return {
        'tfidf': cosine(calculate_tfidf(content_terms(desc1)), calculate_tfidf(content_terms(desc2))),
        'keyword_overlap': jaccard(extract_keywords(desc1, 20), extract_keywords(desc2, 20)),
        'sentence_similarity': sentence_score,
        'structural_similarity': structural_similarity(
            analyze_text_structure(desc1), analyze_text_structure(desc2)),
    }


def extract_skills(text: Optional[str]) -> Set[str]:
    """Known technology skills mentioned in a text."""
    skills: Set[str] = set()
    if not text:
        return skills
    for pattern in SKILL_PATTERNS:
        for match in pattern.finditer(text):
            skills.add(match.group(1).lower())
    return skills


def extract_experience_level(text: Optional[str]) -> float:
    """Estimate the required experience from a text.

    Years-of-experience phrases count directly (ranges are discounted);
    seniority keywords map onto a 0-8 level. The maximum signal wins.

    Args:
        text: Requirements or description text

    Returns:
        Experience estimate, 0 if nothing was found
    """
    if not text:
        return 0.0

    level = 0.0
    for match in YEARS_RANGE_PATTERN.finditer(text):
        level = max(level, max(float(match.group(1)), float(match.group(2))) * YEARS_RANGE_MULTIPLIER)
    # Ranges are consumed first so their upper bound is not read as a single figure
    for match in YEARS_PATTERN.finditer(YEARS_RANGE_PATTERN.sub(' ', text)):
        level = max(level, float(match.group(1)))
    for pattern, value in EXPERIENCE_LEVELS:
        if pattern.search(text):
            level = max(level, float(value))
    return level


def experience_similarity(level1: float, level2: float) -> float:
    return 1.0 - min(abs(level1 - level2) / MAX_EXPERIENCE_LEVEL, 1.0)


def _keyword_overlap(pattern: re.Pattern, text1: str, text2: str) -> Optional[float]:
    """Jaccard of pattern matches; None when neither text mentions any."""
    found1 = {m.group(1).lower().replace("'", '').replace('.', '') for m in pattern.finditer(text1)}
    found2 = {m.group(1).lower().replace("'", '').replace('.', '') for m in pattern.finditer(text2)}
    if not found1 and not found2:
        return None
    return jaccard(found1, found2)


def requirements_similarity(req1: Optional[str], req2: Optional[str]) -> Dict[str, Optional[float]]:
    """Feature bundle comparing two requirement texts.

    Args:
        req1: First requirements text
        req2: Second requirements text

    Returns:
        Dict with skills_overlap, experience_similarity,
        education_similarity and certification_similarity. Entries are
        None when neither text carries that kind of signal.
    """
    if not req1 or not req2:
        return {
            'skills_overlap': 0.0,
            'experience_similarity': 0.0,
            'education_similarity': None,
            'certification_similarity': None,
        }

    skills1 = extract_skills(req1)
    skills2 = extract_skills(req2)
    level1 = extract_experience_level(req1)
    level2 = extract_experience_level(req2)

    return {
        'skills_overlap': jaccard(skills1, skills2) if (skills1 or skills2) else None,
        'experience_similarity': experience_similarity(level1, level2) if (level1 or level2) else None,
        'education_similarity': _keyword_overlap(EDUCATION_PATTERN, req1, req2),
        'certification_similarity': _keyword_overlap(CERTIFICATION_PATTERN, req1, req2),
    }


def collapse_bundle(bundle: Dict[str, Optional[float]], exclude: Tuple[str, ...] = ()) -> float:
    """Mean of the applicable (non-None) entries of a feature bundle."""
    values = [value for key, value in bundle.items() if value is not None and key not in exclude]
    if not values:
        return 0.0
    return sum(values) / len(values)


def salary_overlap(salary1: Optional[Salary], salary2: Optional[Salary]) -> Optional[float]:
    """Overlap of two salary ranges relative to the narrower one.

    A point salary inside the other range counts as full overlap.

    Returns:
        Fraction in [0, 1], or None when the salaries cannot be compared
        (missing or different currencies)
    """
    if salary1 is None or salary2 is None:
        return None
    if salary1.currency != salary2.currency:
        return None
    bounds1 = salary1.bounds()
    bounds2 = salary2.bounds()
    if bounds1 is None or bounds2 is None:
        return None

    low = max(bounds1[0], bounds2[0])
    high = min(bounds1[1], bounds2[1])
    if high < low:
        return 0.0
    narrower = min(bounds1[1] - bounds1[0], bounds2[1] - bounds2[0])
    if narrower <= 0:
        return 1.0
    return _clamp((high - low) / narrower)


def extract_job_level(title: Optional[str]) -> Optional[int]:
    """Seniority level (0-8) named in a raw title, or None if it names none."""
    tokens = preprocess_text(title).split()
    levels = [JOB_LEVELS[token] for token in tokens if token in JOB_LEVELS]
    if 'entry' in tokens and 'level' in tokens:
        levels.append(0)
    return max(levels) if levels else None


class LocationScorer:
    """Compares locations by string, optionally refined with a distance lookup.

    The distance lookup is an external collaborator. It is called with a
    bounded timeout; any failure degrades to string-only comparison.
    """

    def __init__(self, distance_lookup: Optional[DistanceLookup] = None,
                 timeout: float = 2.0, max_distance_km: float = 100.0,
                 executor: Optional[ThreadPoolExecutor] = None,
                 metrics: Optional[DedupMetrics] = None,
                 max_workers: int = 2):
        """Initialize the location scorer.

        Args:
            distance_lookup: Optional (location_a, location_b) -> km function
            timeout: Seconds to wait for the lookup
            max_distance_km: Distance at which the distance score reaches 0
            executor: Executor for lookup calls (one is created when a lookup is given)
            metrics: Run statistics to count timeouts in
            max_workers: Size of the created executor; match it to the number
                of threads that score pairs, or queued lookups time out
        """
        self.distance_lookup = distance_lookup
        self.timeout = timeout
        self.max_distance_km = max_distance_km
        if executor is None and distance_lookup is not None:
            executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix='geocoder')
        self._executor = executor
        self.metrics = metrics

    @staticmethod
    def string_similarity(location1: Optional[str], location2: Optional[str]) -> float:
        """Equality, containment or token overlap of two locations."""
        norm1 = preprocess_text(location1)
        norm2 = preprocess_text(location2)
        if not norm1 or not norm2:
            return 0.0
        if norm1 == norm2:
            return 1.0
        padded1 = f' {norm1} '
        padded2 = f' {norm2} '
        if padded1 in padded2 or padded2 in padded1:
            return CONTAINMENT_SCORE
        return jaccard(norm1.split(), norm2.split())

    def distance(self, location1: str, location2: str) -> Optional[float]:
        """Distance in km from the lookup collaborator, None if unavailable."""
        if self.distance_lookup is None:
            return None
        try:
            km = call_with_timeout(self._executor, 'geocoder', self.timeout,
                                   self.distance_lookup, location1, location2)
        except CollaboratorTimeoutError as e:
            if self.metrics is not None:
                self.metrics.increment("collaborator_timeouts")
            logger.warning(f"{e}; falling back to string comparison")
            return None
        except Exception as e:
            logger.warning(f"Distance lookup failed for {location1!r}/{location2!r}: {e}")
            return None
        if km is None:
            return None
        try:
            km = float(km)
        except (TypeError, ValueError):
            return None
        if math.isnan(km) or km < 0:
            return None
        return km

    def compare(self, location1: Optional[str], location2: Optional[str]) -> Tuple[float, Optional[float]]:
        """Score two locations.

        Returns:
            Tuple of (score, distance_km or None)
        """
        if not location1 or not location2:
            return 0.0, None
        score = self.string_similarity(location1, location2)
        km = self.distance(location1, location2)
        if km is not None:
            score = max(score, max(0.0, 1.0 - km / self.max_distance_km))
        return score, km

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
