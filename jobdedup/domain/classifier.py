"""Duplicate classification over pairwise feature vectors."""
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import logging
import math

from jobdedup.config import DedupConfig
from jobdedup.error_handling import (
    ClassifierFailureError,
    CollaboratorTimeoutError,
    ErrorHandler,
    call_with_timeout,
)
from jobdedup.domain.entities import EntityMatcher, create_entity_matcher
from jobdedup.domain.metrics import jaccard
from jobdedup.domain.scorers import (
    LocationScorer,
    TextSimilarity,
    collapse_bundle,
    description_similarity,
    extract_experience_level,
    extract_skills,
    requirements_similarity,
    salary_overlap,
    title_similarity,
)
from jobdedup.domain.text import normalize_company
from jobdedup.domain.urls import url_similarity
from jobdedup.metrics import DedupMetrics
from jobdedup.models import FeatureVector, JobRecord, SimilarityResult

logger = logging.getLogger(__name__)

# FeatureVector -> duplicate probability
ScoringModel = Callable[[FeatureVector], float]

RULE_BASED = "rule_based"
LEARNED = "learned"

TIME_DIFFERENCE_HORIZON_DAYS = 30.0
EXPLANATION_SIZE = 3


@dataclass(frozen=True)
class Prediction:
    probability: float
    confidence: float
    explanation: Tuple[str, ...] = ()


class FeatureExtractor:
    """Builds the named feature vector for a pair of records.

    A feature whose inputs are missing on either side is left out of the
    vector rather than set to zero.
    """

    def __init__(self, config: DedupConfig,
                 entity_matcher: Optional[EntityMatcher] = None,
                 location_scorer: Optional[LocationScorer] = None,
                 semantic: Optional[TextSimilarity] = None,
                 sentence_similarity: Optional[TextSimilarity] = None):
        self.config = config
        self.entity_matcher = entity_matcher or create_entity_matcher(config)
        self.location_scorer = location_scorer or LocationScorer(
            timeout=config.engine.collaborator_timeout,
            max_distance_km=config.engine.max_distance_km,
        )
        self.semantic = semantic
        self.sentence_similarity = sentence_similarity

    def build(self, a: JobRecord, b: JobRecord) -> FeatureVector:
        """Assemble the feature vector for two records.

        Args:
            a: First record
            b: Second record

        Returns:
            Feature name -> value
        """
        features: FeatureVector = {}

        if a.title and b.title:
            score, breakdown = title_similarity(a.title, b.title, self.config.title_weights, self.semantic)
            features['title_similarity'] = score
            features['title_jaccard'] = breakdown.get('jaccard', 0.0)
            features['title_cosine'] = breakdown.get('cosine', 0.0)
            features['title_levenshtein'] = breakdown.get('levenshtein', 0.0)

        if a.company and b.company:
            features['company_exact'] = 1.0 if normalize_company(a.company) == normalize_company(b.company) else 0.0
            features['company_fuzzy'] = self.entity_matcher.fuzzy_company_match(a.company, b.company)
            if a.title and b.title:
                match = self.entity_matcher.fuzzy_company_title_match(a.company, a.title, b.company, b.title)
                features['fuzzy_company_title'] = match['combined_score']

        if a.location and b.location:
            score, km = self.location_scorer.compare(a.location, b.location)
            features['location_match'] = score
            if km is not None:
                features['location_distance_km'] = km

        if a.description and b.description:
            bundle = description_similarity(a.description, b.description, self.sentence_similarity)
            exclude = () if self.sentence_similarity is not None else ('sentence_similarity',)
            features['description_similarity'] = collapse_bundle(bundle, exclude)

        if a.requirements_text and b.requirements_text:
            bundle = requirements_similarity(a.requirements_text, b.requirements_text)
            features['requirements_similarity'] = collapse_bundle(bundle)

        if a.url and b.url:
            features['url_similarity'] = url_similarity(a.url, b.url, self.config.url_weights)

        if a.platform and b.platform:
            features['same_platform'] = 1.0 if a.platform.strip().lower() == b.platform.strip().lower() else 0.0

        if a.posted_date and b.posted_date:
            features['time_difference'] = abs((a.posted_date - b.posted_date).total_seconds()) / 86400

        overlap = salary_overlap(a.salary, b.salary)
        if overlap is not None:
            features['salary_overlap'] = overlap

        skills_a = record_skills(a)
        skills_b = record_skills(b)
        if skills_a and skills_b:
            features['skills_overlap'] = jaccard(skills_a, skills_b)

        experience_a = record_experience(a)
        experience_b = record_experience(b)
        if experience_a is not None and experience_b is not None:
            features['experience_delta'] = abs(experience_a - experience_b)

        semantic = self._semantic_similarity(a, b)
        if semantic is not None:
            features['semantic_similarity'] = semantic

        return features

    def _semantic_similarity(self, a: JobRecord, b: JobRecord) -> Optional[float]:
        if self.semantic is None:
            return None
        text_a = a.description or a.title
        text_b = b.description or b.title
        if not text_a or not text_b:
            return None
        try:
            value = float(self.semantic(text_a, text_b))
        except Exception as e:
            logger.warning(f"Semantic similarity failed for {a.id}/{b.id}: {e}")
            return None
        if math.isnan(value):
            return None
        return max(0.0, min(1.0, value))


def record_skills(record: JobRecord) -> set:
    """Listed skills plus skills mentioned in the requirements and description."""
    skills = {skill.strip().lower() for skill in record.skills if skill and skill.strip()}
    skills |= extract_skills(record.requirements_text)
    skills |= extract_skills(record.description)
    return skills


def record_experience(record: JobRecord) -> Optional[float]:
    """Explicit experience years, else an estimate from the text, else None."""
    if record.experience_years is not None:
        return float(record.experience_years)
    level = extract_experience_level(record.requirements_text or record.description)
    return level if level > 0 else None


class ClassificationStrategy(ABC):
    """Turns a feature vector into a duplicate probability."""

    name: str = ""

    @abstractmethod
    def predict(self, features: FeatureVector) -> Prediction:
        pass


class RuleBasedStrategy(ClassificationStrategy):
    """Weighted sum over a fixed subset of features.

    Only features present in the vector contribute, and the sum is divided
    by the weight actually used. ``time_difference`` contributes
    ``1 - min(days / 30, 1)``.
    """

    name = RULE_BASED

    def __init__(self, weights: Dict[str, float]):
        self.weights = dict(weights)
        self.total_weight = sum(self.weights.values())

    def contributions(self, features: FeatureVector) -> Dict[str, float]:
        result = {}
        for feature, weight in self.weights.items():
            if feature not in features:
                continue
            value = features[feature]
            if feature == 'time_difference':
                value = 1.0 - min(value / TIME_DIFFERENCE_HORIZON_DAYS, 1.0)
            result[feature] = value * weight
        return result

    def predict(self, features: FeatureVector) -> Prediction:
        contributions = self.contributions(features)
        weight_used = sum(self.weights[name] for name in contributions)
        if weight_used <= 0:
            return Prediction(probability=0.0, confidence=0.0, explanation=("no comparable fields",))

        probability = max(0.0, min(1.0, sum(contributions.values()) / weight_used))
        coverage = weight_used / self.total_weight if self.total_weight else 0.0
        confidence = coverage * abs(2 * probability - 1)

        ranked = sorted(contributions.items(), key=lambda item: -item[1])[:EXPLANATION_SIZE]
        explanation = tuple(
            f"{name}={features[name]:.2f} (weight {self.weights[name]:.2f})" for name, _ in ranked
        )
        return Prediction(probability=probability, confidence=confidence, explanation=explanation)


class LearnedModelStrategy(ClassificationStrategy):
    """Delegates to an externally supplied scoring model.

    The model is called with a bounded timeout. Exceptions, timeouts and
    outputs that are not a probability raise ClassifierFailureError so the
    caller can fall back to the rule-based strategy.
    """

    name = LEARNED

    def __init__(self, model: ScoringModel, timeout: float = 2.0,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.model = model
        self.timeout = timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix='model')

    def predict(self, features: FeatureVector) -> Prediction:
        try:
            output = call_with_timeout(self._executor, 'model', self.timeout, self.model, dict(features))
        except CollaboratorTimeoutError:
            raise
        except Exception as e:
            raise ClassifierFailureError(f"Model raised {type(e).__name__}: {e}") from e

        if isinstance(output, bool):
            raise ClassifierFailureError(f"Model returned a boolean, expected a probability: {output!r}")
        try:
            probability = float(output)
        except (TypeError, ValueError):
            raise ClassifierFailureError(f"Model returned a non-numeric value: {output!r}") from None
        if math.isnan(probability) or not 0.0 <= probability <= 1.0:
            raise ClassifierFailureError(f"Model returned an out-of-range probability: {output!r}")

        return Prediction(
            probability=probability,
            confidence=abs(2 * probability - 1),
            explanation=(f"model probability {probability:.2f}",),
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)


class DuplicateClassifier:
    """Decides whether two records describe the same posting.

    The strategy is chosen from ``config.engine.strategy``. The learned
    strategy falls back to the rule-based one for any pair it cannot score.
    """

    def __init__(self, config: Optional[DedupConfig] = None,
                 entity_matcher: Optional[EntityMatcher] = None,
                 location_scorer: Optional[LocationScorer] = None,
                 model: Optional[ScoringModel] = None,
                 semantic: Optional[TextSimilarity] = None,
                 sentence_similarity: Optional[TextSimilarity] = None,
                 metrics: Optional[DedupMetrics] = None,
                 error_handler: Optional[ErrorHandler] = None):
        """Initialize the classifier.

        Args:
            config: Engine configuration (defaults when None)
            entity_matcher: Company/title matcher
            location_scorer: Location scorer (string-only when None)
            model: Optional scoring model for the learned strategy
            semantic: Optional semantic text similarity
            sentence_similarity: Optional sentence-pair similarity
            metrics: Run statistics to update
            error_handler: Error handler for pair failures
        """
        self.config = config or DedupConfig()
        self.extractor = FeatureExtractor(self.config, entity_matcher, location_scorer,
                                          semantic, sentence_similarity)
        self.rule_based = RuleBasedStrategy(self.config.rule_weights)
        self.metrics = metrics or DedupMetrics()
        self.error_handler = error_handler or ErrorHandler(self.config.engine.error_alert_threshold)
        self.strategy: ClassificationStrategy = self._select_strategy(model)

    def _select_strategy(self, model: Optional[ScoringModel]) -> ClassificationStrategy:
        if self.config.engine.strategy == LEARNED:
            if model is None:
                logger.warning("Learned strategy configured without a model; using rule-based scoring")
                return self.rule_based
            return LearnedModelStrategy(model, self.config.engine.collaborator_timeout)
        return self.rule_based

    @property
    def entity_matcher(self) -> EntityMatcher:
        return self.extractor.entity_matcher

    def predict(self, features: FeatureVector) -> Tuple[Prediction, str]:
        """Score a feature vector with the configured strategy.

        Returns:
            Tuple of (prediction, name of the strategy that produced it)
        """
        if self.strategy is self.rule_based:
            return self.rule_based.predict(features), RULE_BASED
        try:
            return self.strategy.predict(features), self.strategy.name
        except (ClassifierFailureError, CollaboratorTimeoutError) as e:
            self.error_handler.handle_error(e, "learned model")
            if isinstance(e, CollaboratorTimeoutError):
                self.metrics.increment("collaborator_timeouts")
            self.metrics.increment("classifier_fallbacks")
            return self.rule_based.predict(features), RULE_BASED

    def classify(self, a: JobRecord, b: JobRecord) -> SimilarityResult:
        """Classify a pair of records.

        Any unexpected error while scoring the pair yields a non-duplicate
        result with zero confidence.

        Args:
            a: First record
            b: Second record

        Returns:
            SimilarityResult for the pair
        """
        self.metrics.increment("classifier_calls")
        try:
            features = self.extractor.build(a, b)
            prediction, strategy = self.predict(features)
        except Exception as e:
            self.metrics.increment("pair_failures")
            self.error_handler.handle_error(e, f"{a.id}/{b.id}")
            return SimilarityResult.not_duplicate()

        return SimilarityResult(
            score=prediction.probability,
            is_duplicate=prediction.probability > self.config.thresholds.ml_confidence,
            features=features,
            confidence=prediction.confidence,
            strategy=strategy,
            explanation=prediction.explanation,
        )

    def analyze_content_similarity(self, a: JobRecord, b: JobRecord) -> Dict[str, object]:
        """Content-only comparison of title, description and requirements.

        Returns:
            Dict with the individual scores, the combined score and whether
            it clears the content similarity threshold
        """
        title, _ = title_similarity(a.title, b.title, self.config.title_weights, self.extractor.semantic)
        description = description_similarity(a.description, b.description,
                                             self.extractor.sentence_similarity)
        exclude = () if self.extractor.sentence_similarity is not None else ('sentence_similarity',)
        description_score = collapse_bundle(description, exclude) if a.description and b.description else None
        requirements_score = None
        if a.requirements_text and b.requirements_text:
            requirements_score = collapse_bundle(requirements_similarity(a.requirements_text,
                                                                         b.requirements_text))

        scores: List[float] = [title]
        if description_score is not None:
            scores.append(description_score)
        if requirements_score is not None:
            scores.append(requirements_score)
        combined = sum(scores) / len(scores)
        return {
            'title_similarity': title,
            'description_similarity': description_score,
            'description_breakdown': description,
            'requirements_similarity': requirements_score,
            'similarity': combined,
            'is_duplicate': combined > self.config.thresholds.similarity,
        }

    def close(self) -> None:
        if isinstance(self.strategy, LearnedModelStrategy):
            self.strategy.close()
        self.extractor.location_scorer.close()
