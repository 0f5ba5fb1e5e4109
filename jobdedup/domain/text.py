"""Text normalization and light-weight NLP helpers.

Everything here is a pure function over strings: no I/O, no shared state.
"""
import math
import re
from collections import Counter
from typing import Dict, List, Optional, Sequence

# Heuristic document count used for IDF. There is no reference corpus, so
# TF-IDF weights are an approximation rather than calibrated statistics.
ASSUMED_CORPUS_SIZE = 1000

STOPWORDS = frozenset([
    'a', 'an', 'and', 'are', 'as', 'at', 'be', 'by', 'for', 'from',
    'has', 'he', 'in', 'is', 'it', 'its', 'of', 'on', 'that', 'the',
    'to', 'was', 'were', 'will', 'with', 'this', 'but', 'they',
    'have', 'had', 'what', 'said', 'each', 'which', 'she', 'do', 'how',
    'their', 'if', 'up', 'out', 'many', 'then', 'them', 'these', 'so',
    'some', 'her', 'would', 'make', 'like', 'into', 'him', 'two',
    'more', 'very', 'after', 'words', 'first', 'where', 'much', 'through',
])

# Seniority synonyms, rewritten to a canonical level word. Only string
# similarity sees this merge; extract_job_level reads the raw title.
SENIORITY_SYNONYMS = [
    (r'\bentry level\b', 'junior'),
    (r'\bsr\b', 'senior'),
    (r'\bjr\b', 'junior'),
    (r'\blead\b', 'senior'),
    (r'\bprincipal\b', 'senior'),
    (r'\bstaff\b', 'senior'),
    (r'\bassociate\b', 'junior'),
]

# Common abbreviations and their expansions
TITLE_ABBREVIATIONS = [
    (r'\bmgr\b', 'manager'),
    (r'\bengr\b', 'engineer'),
    (r'\beng\b', 'engineer'),
    (r'\bdev\b', 'developer'),
    (r'\badmin\b', 'administrator'),
    (r'\bsw\b', 'software'),
]

LEGAL_SUFFIXES = frozenset(['inc', 'corp', 'corporation', 'ltd', 'limited', 'llc', 'co', 'company'])

# Porter-style suffix rules; the first matching rule wins
STEM_RULES = [
    (re.compile(r'sses$'), 'ss'),
    (re.compile(r'ies$'), 'i'),
    (re.compile(r'ss$'), 'ss'),
    (re.compile(r's$'), ''),
    (re.compile(r'eed$'), 'ee'),
    (re.compile(r'(ed|ing)$'), ''),
    (re.compile(r'ational$'), 'ate'),
    (re.compile(r'tional$'), 'tion'),
    (re.compile(r'enci$'), 'ence'),
    (re.compile(r'anci$'), 'ance'),
    (re.compile(r'izer$'), 'ize'),
    (re.compile(r'alli$'), 'al'),
    (re.compile(r'entli$'), 'ent'),
    (re.compile(r'eli$'), 'e'),
    (re.compile(r'ousli$'), 'ous'),
    (re.compile(r'ization$'), 'ize'),
    (re.compile(r'ation$'), 'ate'),
    (re.compile(r'ator$'), 'ate'),
    (re.compile(r'alism$'), 'al'),
    (re.compile(r'iveness$'), 'ive'),
    (re.compile(r'fulness$'), 'ful'),
    (re.compile(r'ousness$'), 'ous'),
    (re.compile(r'aliti$'), 'al'),
    (re.compile(r'iviti$'), 'ive'),
    (re.compile(r'biliti$'), 'ble'),
    (re.compile(r'icate$'), 'ic'),
    (re.compile(r'ative$'), ''),
    (re.compile(r'alize$'), 'al'),
    (re.compile(r'iciti$'), 'ic'),
    (re.compile(r'ical$'), 'ic'),
    (re.compile(r'ful$'), ''),
    (re.compile(r'ness$'), ''),
]

_PUNCTUATION = re.compile(r'[^\w\s]')
_WHITESPACE = re.compile(r'\s+')
_SENTENCE_SPLIT = re.compile(r'[.!?]+')
_PARAGRAPH_SPLIT = re.compile(r'\n\s*\n')
_LIST_ITEM = re.compile(r'^\s*(?:[•\-\*]|\d+[.)])', re.MULTILINE)


def preprocess_text(text: Optional[str]) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""
    if not text:
        return ''
    text = _PUNCTUATION.sub(' ', text.lower())
    return _WHITESPACE.sub(' ', text).strip()


def normalize_title(title: Optional[str]) -> str:
    """Normalize a job title for comparison.

    Seniority synonyms collapse to "senior"/"junior" and common
    abbreviations are expanded. Applying it twice gives the same result.

    Args:
        title: Original job title

    Returns:
        Normalized title string
    """
    normalized = preprocess_text(title)
    if not normalized:
        return ''

    for pattern, replacement in SENIORITY_SYNONYMS:
        normalized = re.sub(pattern, replacement, normalized)
    for pattern, replacement in TITLE_ABBREVIATIONS:
        normalized = re.sub(pattern, replacement, normalized)

    return _WHITESPACE.sub(' ', normalized).strip()


def normalize_company(name: Optional[str]) -> str:
    """Normalize a company name for comparison.

    Trailing legal suffixes ("Inc.", "LLC", "Company", ...) are removed. A
    name that consists only of suffix words is kept as is.

    Args:
        name: Original company name

    Returns:
        Normalized company name
    """
    tokens = preprocess_text(name).split()
    stripped = list(tokens)
    while stripped and stripped[-1] in LEGAL_SUFFIXES:
        stripped.pop()
    return ' '.join(stripped or tokens)


def tokenize(text: Optional[str]) -> List[str]:
    """Split text into lowercase word tokens."""
    return preprocess_text(text).split()


def stem_word(word: str) -> str:
    """Reduce a word to its stem with a fixed suffix rule table."""
    if not word or len(word) < 3:
        return word
    word = word.lower()
    for pattern, replacement in STEM_RULES:
        if pattern.search(word):
            return pattern.sub(replacement, word)
    return word


def remove_stopwords(words: Sequence[str]) -> List[str]:
    return [word for word in words if word.lower() not in STOPWORDS]


def content_terms(text: Optional[str]) -> List[str]:
    """Tokenize, drop stopwords and stem."""
    return [stem_word(word) for word in remove_stopwords(tokenize(text))]


def ngrams(text: Optional[str], n: int = 2) -> List[str]:
    """Word n-grams of a text.

    Args:
        text: Input text
        n: Gram size

    Returns:
        List of space-joined n-grams, in order
    """
    if not text or n < 1:
        return []
    words = tokenize(text)
    return [' '.join(words[i:i + n]) for i in range(len(words) - n + 1)]


def char_ngrams(text: Optional[str], n: int = 2) -> List[str]:
    """Character n-grams of a text; a text shorter than n is its own gram."""
    if not text or n < 1:
        return []
    compact = preprocess_text(text)
    if not compact:
        return []
    if len(compact) < n:
        return [compact]
    return [compact[i:i + n] for i in range(len(compact) - n + 1)]


def term_frequencies(words: Sequence[str]) -> Dict[str, int]:
    return dict(Counter(words))


def extract_keywords(text: Optional[str], top_n: int = 10) -> List[str]:
    """Extract the most frequent content words of a text.

    Words shorter than three characters and stopwords are ignored. Ties
    keep first-occurrence order.

    Args:
        text: Input text
        top_n: Number of keywords to return

    Returns:
        Keywords, most frequent first
    """
    if not text:
        return []
    words = [word for word in tokenize(text) if len(word) > 2]
    counts = Counter(remove_stopwords(words))
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [word for word, _ in ranked[:top_n]]


def calculate_tfidf(words: Sequence[str]) -> Dict[str, float]:
    """TF-IDF weights for a bag of words.

    TF is normalized by the most frequent term; IDF uses the fixed
    ASSUMED_CORPUS_SIZE heuristic.
    """
    if not words:
        return {}
    counts = Counter(words)
    max_freq = max(counts.values())
    return {
        term: (freq / max_freq) * math.log(ASSUMED_CORPUS_SIZE / (freq + 1))
        for term, freq in counts.items()
    }


def split_sentences(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]


def analyze_text_structure(text: Optional[str]) -> Dict[str, float]:
    """Structural statistics of a text (sentences, paragraphs, lists, punctuation)."""
    if not text:
        return {}

    sentences = split_sentences(text)
    paragraphs = [p for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]
    words = text.split()
    list_items = _LIST_ITEM.findall(text)
    punctuation = sum(text.count(ch) for ch in '!?:;')

    return {
        'sentence_count': float(len(sentences)),
        'paragraph_count': float(len(paragraphs)),
        'word_count': float(len(words)),
        'avg_sentence_length': len(words) / len(sentences) if sentences else 0.0,
        'avg_paragraph_length': len(sentences) / len(paragraphs) if paragraphs else 0.0,
        'list_item_count': float(len(list_items)),
        'punctuation_density': punctuation / len(words) if words else 0.0,
    }


def _count_syllables(text: str) -> int:
    count = 0
    for word in re.findall(r'[a-z]+', text.lower()):
        groups = re.findall(r'[aeiouy]+', word)
        if word.endswith('e') and groups:
            groups.pop()
        count += max(1, len(groups))
    return count


def readability_score(text: Optional[str]) -> float:
    """Simplified Flesch reading ease, clamped to [0, 100]."""
    if not text:
        return 0.0
    sentences = len(split_sentences(text))
    words = len(text.split())
    if sentences == 0 or words == 0:
        return 0.0
    score = 206.835 - 1.015 * (words / sentences) - 84.6 * (_count_syllables(text) / words)
    return max(0.0, min(100.0, score))


_ENTITY_PATTERNS = {
    'companies': re.compile(r'\b[A-Z][a-z]+ (?:Inc|Corp|Corporation|Ltd|Limited|LLC|Company|Co)\b'),
    'skills': re.compile(
        r'\b(javascript|python|java|react|angular|vue|node\.?js|sql|mongodb|postgresql|aws|azure'
        r'|docker|kubernetes|git|machine learning|artificial intelligence)\b', re.IGNORECASE),
    'locations': re.compile(
        r'\b(new york|san francisco|los angeles|chicago|boston|seattle|austin|denver|remote|onsite)\b',
        re.IGNORECASE),
}


def extract_named_entities(text: Optional[str]) -> Dict[str, List[str]]:
    """Pattern-based entity extraction (companies, skills, locations)."""
    entities: Dict[str, List[str]] = {name: [] for name in _ENTITY_PATTERNS}
    if not text:
        return entities
    for name, pattern in _ENTITY_PATTERNS.items():
        seen = []
        for match in pattern.finditer(text):
            value = match.group(0).lower()
            if value not in seen:
                seen.append(value)
        entities[name] = seen
    return entities
