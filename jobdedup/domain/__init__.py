"""Domain module for duplicate detection logic."""

from .classifier import DuplicateClassifier, FeatureExtractor, LearnedModelStrategy, RuleBasedStrategy
from .deduplication import DeduplicationEngine, DeduplicationRun, RunState
from .entities import EntityMatcher, create_entity_matcher
from .lsh import LSHIndex

__all__ = [
    'DuplicateClassifier', 'FeatureExtractor', 'LearnedModelStrategy', 'RuleBasedStrategy',
    'DeduplicationEngine', 'DeduplicationRun', 'RunState',
    'EntityMatcher', 'create_entity_matcher', 'LSHIndex',
]
