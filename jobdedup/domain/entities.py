"""Fuzzy company and job title matching."""
from typing import List, Dict, Optional, Mapping
import math
import re
import logging

from jobdedup.config import CompanyWeights, MembershipConfig
from jobdedup.domain.metrics import (
    jaccard,
    metaphone_match,
    normalized_levenshtein,
    partial_ratio,
    soundex_match,
    token_set_ratio,
    token_sort_ratio,
    weighted_average,
)
from jobdedup.domain.text import normalize_company, normalize_title

logger = logging.getLogger(__name__)

ALIAS_MATCH_SCORE = 0.95
HIERARCHY_MATCH_SCORE = 0.95
SYNONYM_MATCH_SCORE = 0.9


def gaussian_membership(x: float, center: float, sigma: float) -> float:
    """Gaussian fuzzy membership of ``x`` around ``center``."""
    return math.exp(-0.5 * ((x - center) / sigma) ** 2)


class EntityMatcher:
    """Matches company names and job titles that are written differently.

    Company names go through normalization, an alias table and a blend of
    phonetic and edit-based ratios. Titles go through role families,
    synonyms and a generic fuzzy match.
    """

    # Canonical company -> known alternative names (normalized form)
    COMPANY_ALIASES = {
        'meta': ['facebook', 'meta platforms'],
        'alphabet': ['google'],
        'amazon': ['amazon com', 'amazon web services', 'aws'],
        'microsoft': ['msft'],
        'ibm': ['international business machines'],
        'jpmorgan chase': ['jp morgan', 'jpmorgan', 'j p morgan', 'chase'],
        'pwc': ['pricewaterhousecoopers', 'price waterhouse coopers'],
        'ey': ['ernst young', 'ernst and young'],
        'x': ['twitter'],
    }

    # Role family -> head nouns that name the same kind of role
    ROLE_FAMILIES = {
        'engineering': ['engineer', 'developer', 'programmer', 'coder'],
        'management': ['manager', 'head', 'supervisor'],
        'analysis': ['analyst'],
        'design': ['designer'],
        'science': ['scientist', 'researcher'],
        'administration': ['administrator'],
        'architecture': ['architect'],
        'consulting': ['consultant', 'advisor', 'adviser'],
        'representation': ['representative', 'rep', 'agent'],
    }

    # Canonical phrase -> variants
    TITLE_SYNONYMS = {
        'software engineer': ['software developer', 'software development engineer', 'swe', 'sde'],
        'frontend': ['front end'],
        'backend': ['back end'],
        'full stack': ['fullstack'],
        'machine learning': ['ml'],
        'artificial intelligence': ['ai'],
        'quality assurance': ['qa'],
        'site reliability engineer': ['sre'],
        'user experience': ['ux'],
        'user interface': ['ui'],
        'human resources': ['hr'],
        'customer support': ['customer service', 'customer care'],
    }

    def __init__(self,
                 aliases: Optional[Mapping[str, List[str]]] = None,
                 title_synonyms: Optional[Mapping[str, List[str]]] = None,
                 weights: Optional[CompanyWeights] = None,
                 membership: Optional[MembershipConfig] = None,
                 fuzzy_match_threshold: float = 0.8):
        """Initialize the entity matcher.

        Args:
            aliases: Extra company aliases, merged over the built-in table
            title_synonyms: Extra title synonyms, merged over the built-in table
            weights: Company fuzzy blend weights
            membership: Gaussian membership parameters for the fuzzy-logic blend
            fuzzy_match_threshold: Combined score above which a pair is a match
        """
        self.weights = weights or CompanyWeights()
        self.membership = membership or MembershipConfig()
        self.fuzzy_match_threshold = fuzzy_match_threshold
        self.alias_index = self._build_alias_index(aliases or {})
        self.synonym_patterns = self._compile_synonyms(title_synonyms or {})
        self.role_index = {
            word: family for family, words in self.ROLE_FAMILIES.items() for word in words
        }

    def _build_alias_index(self, extra: Mapping[str, List[str]]) -> Dict[str, str]:
        """Map every normalized name or alias to its canonical company."""
        index: Dict[str, str] = {}
        merged: Dict[str, List[str]] = {k: list(v) for k, v in self.COMPANY_ALIASES.items()}
        for canonical, names in extra.items():
            merged.setdefault(canonical, []).extend(names)

        for canonical, names in merged.items():
            key = normalize_company(canonical)
            index[key] = key
            for name in names:
                index[normalize_company(name)] = key
        return index

    def _compile_synonyms(self, extra: Mapping[str, List[str]]) -> List[tuple]:
        """Compile variant patterns, longest variant first."""
        merged: Dict[str, List[str]] = {k: list(v) for k, v in self.TITLE_SYNONYMS.items()}
        for canonical, variants in extra.items():
            merged.setdefault(normalize_title(canonical), []).extend(variants)

        pairs = []
        for canonical, variants in merged.items():
            for variant in variants:
                variant = normalize_title(variant)
                if variant and variant != canonical:
                    pairs.append((variant, canonical))
        pairs.sort(key=lambda pair: -len(pair[0]))
        return [(re.compile(rf'\b{re.escape(v)}\b'), c) for v, c in pairs]

    # -- companies -----------------------------------------------------------

    def resolve_company(self, name: str) -> Optional[str]:
        """Canonical company for a normalized name, if it is a known alias."""
        return self.alias_index.get(name)

    def check_company_aliases(self, norm1: str, norm2: str) -> float:
        canonical = self.resolve_company(norm1)
        if canonical is not None and canonical == self.resolve_company(norm2):
            return ALIAS_MATCH_SCORE
        return 0.0

    def company_fuzzy_metrics(self, norm1: str, norm2: str) -> Dict[str, float]:
        """Individual fuzzy signals between two normalized company names."""
        compact1 = norm1.replace(' ', '')
        compact2 = norm2.replace(' ', '')
        return {
            'soundex': soundex_match(compact1, compact2),
            'metaphone': metaphone_match(compact1, compact2),
            'edit_distance': normalized_levenshtein(norm1, norm2),
            'token_sort': token_sort_ratio(norm1, norm2),
            'token_set': token_set_ratio(norm1, norm2),
            'partial': partial_ratio(norm1, norm2),
        }

    def fuzzy_company_match(self, company1: Optional[str], company2: Optional[str]) -> float:
        """Fuzzy similarity of two company names.

        Args:
            company1: First company name
            company2: Second company name

        Returns:
            Score in [0, 1]; 1.0 for names equal after normalization
        """
        if not company1 or not company2:
            return 0.0

        norm1 = normalize_company(company1)
        norm2 = normalize_company(company2)
        if not norm1 or not norm2:
            return 0.0
        if norm1 == norm2:
            return 1.0

        alias_match = self.check_company_aliases(norm1, norm2)
        if alias_match > 0.9:
            return alias_match

        metrics = self.company_fuzzy_metrics(norm1, norm2)
        weights = {
            'soundex': self.weights.soundex,
            'metaphone': self.weights.metaphone,
            'edit_distance': self.weights.edit_distance,
            'token_sort': self.weights.token_sort,
            'token_set': self.weights.token_set,
            'partial': self.weights.partial,
        }
        return weighted_average(metrics, weights)

    # -- titles --------------------------------------------------------------

    def role_hierarchy_match(self, norm1: str, norm2: str) -> float:
        """Compare titles after mapping head nouns onto role families.

        "backend engineer" and "backend developer" both become
        "backend engineering"; titles with no known role noun score 0.
        """
        tokens1 = norm1.split()
        tokens2 = norm2.split()
        families1 = {self.role_index[t] for t in tokens1 if t in self.role_index}
        families2 = {self.role_index[t] for t in tokens2 if t in self.role_index}
        if not families1 or families1 != families2:
            return 0.0

        rewritten1 = {self.role_index.get(t, t) for t in tokens1}
        rewritten2 = {self.role_index.get(t, t) for t in tokens2}
        return HIERARCHY_MATCH_SCORE * jaccard(rewritten1, rewritten2)

    def canonical_title(self, normalized: str) -> str:
        """Rewrite synonym variants to their canonical phrase."""
        for pattern, canonical in self.synonym_patterns:
            normalized = pattern.sub(canonical, normalized)
        return normalized

    def title_synonym_match(self, norm1: str, norm2: str) -> float:
        canon1 = self.canonical_title(norm1)
        canon2 = self.canonical_title(norm2)
        if canon1 == canon2:
            return SYNONYM_MATCH_SCORE
        return SYNONYM_MATCH_SCORE * jaccard(canon1.split(), canon2.split())

    @staticmethod
    def fuzzy_string_match(str1: str, str2: str) -> float:
        return 0.5 * token_sort_ratio(str1, str2) + 0.5 * normalized_levenshtein(str1, str2)

    def fuzzy_title_match(self, title1: Optional[str], title2: Optional[str]) -> float:
        """Fuzzy similarity of two job titles.

        Args:
            title1: First job title
            title2: Second job title

        Returns:
            Maximum of role-hierarchy, synonym and fuzzy string scores
        """
        if not title1 or not title2:
            return 0.0

        norm1 = normalize_title(title1)
        norm2 = normalize_title(title2)
        if not norm1 or not norm2:
            return 0.0
        if norm1 == norm2:
            return 1.0

        hierarchy = self.role_hierarchy_match(norm1, norm2)
        if hierarchy > 0.9:
            return hierarchy

        synonym = self.title_synonym_match(norm1, norm2)
        fuzzy = self.fuzzy_string_match(norm1, norm2)
        return max(hierarchy, synonym, fuzzy)

    # -- fuzzy logic ---------------------------------------------------------

    def fuzzy_logic_combination(self, company_score: float, title_score: float) -> float:
        """Blend company and title scores with a fuzzy AND/OR.

        ``0.6 * min(mu_company, mu_title) + 0.4 * max(mu_company, mu_title)``.
        The result is order-independent here only because both inputs come
        from symmetric similarity functions.
        """
        company = self.membership.company
        title = self.membership.title
        company_membership = gaussian_membership(company_score, company.center, company.sigma)
        title_membership = gaussian_membership(title_score, title.center, title.sigma)

        fuzzy_and = min(company_membership, title_membership)
        fuzzy_or = max(company_membership, title_membership)
        return fuzzy_and * 0.6 + fuzzy_or * 0.4

    def fuzzy_company_title_match(self, company1: Optional[str], title1: Optional[str],
                                  company2: Optional[str], title2: Optional[str]) -> Dict[str, float]:
        """Company + title match through the fuzzy-logic blend.

        Returns:
            Dict with company_match, title_match, combined_score,
            is_duplicate and confidence
        """
        company_match = self.fuzzy_company_match(company1, company2)
        title_match = self.fuzzy_title_match(title1, title2)
        combined = self.fuzzy_logic_combination(company_match, title_match)
        return {
            'company_match': company_match,
            'title_match': title_match,
            'combined_score': combined,
            'is_duplicate': combined > self.fuzzy_match_threshold,
            'confidence': 1.0 - abs(company_match - title_match),
        }


def create_entity_matcher(config=None) -> EntityMatcher:
    """Factory function to create an entity matcher from configuration.

    Args:
        config: DedupConfig (None for defaults)

    Returns:
        EntityMatcher: Configured matcher instance
    """
    if config is None:
        return EntityMatcher()
    return EntityMatcher(
        aliases=config.company_aliases,
        title_synonyms=config.title_synonyms,
        weights=config.company_weights,
        membership=config.membership,
        fuzzy_match_threshold=config.thresholds.fuzzy_match,
    )
