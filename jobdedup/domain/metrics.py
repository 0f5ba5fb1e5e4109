"""Similarity metrics over strings, token sets and term vectors.

Every similarity returns a float in [0, 1]. Empty or missing input on
either side gives 0.0. ``levenshtein_distance`` is the only function that
returns a raw distance.
"""
import math
from collections import Counter
from typing import Dict, Iterable, Mapping, Optional

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from jobdedup.domain.text import char_ngrams, tokenize

SOUNDEX_CODES = {
    **dict.fromkeys('BFPV', '1'),
    **dict.fromkeys('CGJKQSXZ', '2'),
    **dict.fromkeys('DT', '3'),
    'L': '4',
    **dict.fromkeys('MN', '5'),
    'R': '6',
}


def jaccard(set1: Optional[Iterable], set2: Optional[Iterable]) -> float:
    """Intersection over union of two collections."""
    first = set(set1 or ())
    second = set(set2 or ())
    if not first or not second:
        return 0.0
    return len(first & second) / len(first | second)


def cosine(vec1: Optional[Mapping[str, float]], vec2: Optional[Mapping[str, float]]) -> float:
    """Cosine similarity of two sparse vectors."""
    if not vec1 or not vec2:
        return 0.0
    # Shared keys in sorted order so that cosine(a, b) == cosine(b, a) exactly
    dot = sum(vec1[key] * vec2[key] for key in sorted(vec1.keys() & vec2.keys()))
    norm1 = math.sqrt(sum(value * value for value in vec1.values()))
    norm2 = math.sqrt(sum(value * value for value in vec2.values()))
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm1 * norm2)))


def text_cosine(text1: Optional[str], text2: Optional[str]) -> float:
    """Cosine similarity of term-frequency vectors of two texts."""
    if not text1 or not text2:
        return 0.0
    return cosine(Counter(tokenize(text1)), Counter(tokenize(text2)))


def levenshtein_distance(str1: str, str2: str) -> int:
    """Raw edit distance (not a similarity)."""
    return Levenshtein.distance(str1 or '', str2 or '')


def normalized_levenshtein(str1: Optional[str], str2: Optional[str]) -> float:
    """1 - edit_distance / max(len1, len2)."""
    if not str1 or not str2:
        return 0.0
    return 1.0 - levenshtein_distance(str1, str2) / max(len(str1), len(str2))


def ngram_similarity(str1: Optional[str], str2: Optional[str], n: int = 2) -> float:
    """Jaccard overlap of character n-grams."""
    if not str1 or not str2:
        return 0.0
    return jaccard(char_ngrams(str1, n), char_ngrams(str2, n))


def token_sort_ratio(str1: Optional[str], str2: Optional[str]) -> float:
    if not str1 or not str2:
        return 0.0
    return fuzz.token_sort_ratio(str1, str2) / 100.0


def token_set_ratio(str1: Optional[str], str2: Optional[str]) -> float:
    if not str1 or not str2:
        return 0.0
    return fuzz.token_set_ratio(str1, str2) / 100.0


def partial_ratio(str1: Optional[str], str2: Optional[str]) -> float:
    """Best substring alignment score, evaluated in both directions."""
    if not str1 or not str2:
        return 0.0
    return max(fuzz.partial_ratio(str1, str2), fuzz.partial_ratio(str2, str1)) / 100.0


def soundex(text: Optional[str]) -> str:
    """Four-character Soundex code of the letters in a string."""
    letters = [ch for ch in (text or '').upper() if 'A' <= ch <= 'Z']
    if not letters:
        return ''

    result = letters[0]
    previous = SOUNDEX_CODES.get(letters[0], '')
    for ch in letters[1:]:
        code = SOUNDEX_CODES.get(ch, '')
        if code and code != previous:
            result += code
            if len(result) == 4:
                break
        if ch not in 'HW':
            previous = code
    return (result + '000')[:4]


def metaphone(text: Optional[str], max_length: int = 4) -> str:
    """Simplified Metaphone code.

    Covers silent initial letters, the common C/G/PH/SH/TH digraphs and
    vowel dropping after the first letter. Not a full Metaphone
    implementation.
    """
    word = ''.join(ch for ch in (text or '').upper() if 'A' <= ch <= 'Z')
    if not word:
        return ''

    pos = 0
    result = ''
    if word[:2] in ('KN', 'GN', 'PN', 'AE', 'WR'):
        pos = 1
    if word[0] == 'X':
        result = 'S'
        pos = 1

    def at(index: int) -> str:
        return word[index] if 0 <= index < len(word) else ''

    while pos < len(word) and len(result) < max_length:
        ch = word[pos]
        nxt = at(pos + 1)
        if ch == at(pos - 1) and ch != 'C':
            pos += 1
            continue
        if ch in 'AEIOU':
            if pos == 0:
                result += ch
        elif ch == 'B':
            if not (pos == len(word) - 1 and at(pos - 1) == 'M'):
                result += 'B'
        elif ch == 'C':
            if at(pos - 1) == 'S' and nxt in ('E', 'I', 'Y'):
                pass
            elif nxt == 'H':
                result += 'X'
                pos += 1
            elif nxt in ('I', 'E', 'Y'):
                result += 'S'
            else:
                result += 'K'
        elif ch == 'D':
            result += 'J' if nxt == 'G' and at(pos + 2) in ('E', 'I', 'Y') else 'T'
        elif ch == 'G':
            if nxt == 'H' and at(pos + 2) not in ('', 'A', 'E', 'I', 'O', 'U'):
                pass
            elif nxt == 'N':
                pass
            else:
                result += 'J' if nxt in ('I', 'E', 'Y') else 'K'
        elif ch == 'H':
            if at(pos - 1) not in ('C', 'S', 'P', 'T', 'G') and nxt in ('A', 'E', 'I', 'O', 'U'):
                result += 'H'
        elif ch == 'K':
            if at(pos - 1) != 'C':
                result += 'K'
        elif ch == 'P':
            if nxt == 'H':
                result += 'F'
                pos += 1
            else:
                result += 'P'
        elif ch == 'Q':
            result += 'K'
        elif ch == 'S':
            if nxt == 'H':
                result += 'X'
                pos += 1
            else:
                result += 'S'
        elif ch == 'T':
            if nxt == 'H':
                result += '0'
                pos += 1
            else:
                result += 'T'
        elif ch == 'V':
            result += 'F'
        elif ch in ('W', 'Y'):
            if nxt in ('A', 'E', 'I', 'O', 'U'):
                result += ch
        elif ch == 'X':
            result += 'KS'
        elif ch == 'Z':
            result += 'S'
        else:
            result += ch
        pos += 1

    return result[:max_length]


def phonetic_similarity(str1: Optional[str], str2: Optional[str]) -> float:
    """Agreement of per-token Metaphone codes (Jaccard over code sets)."""
    if not str1 or not str2:
        return 0.0
    codes1 = {metaphone(token) for token in tokenize(str1)} - {''}
    codes2 = {metaphone(token) for token in tokenize(str2)} - {''}
    return jaccard(codes1, codes2)


def soundex_match(str1: Optional[str], str2: Optional[str]) -> float:
    if not str1 or not str2:
        return 0.0
    code1 = soundex(str1)
    return 1.0 if code1 and code1 == soundex(str2) else 0.0


def metaphone_match(str1: Optional[str], str2: Optional[str]) -> float:
    if not str1 or not str2:
        return 0.0
    code1 = metaphone(str1)
    return 1.0 if code1 and code1 == metaphone(str2) else 0.0


def ratio_similarity(value1: float, value2: float) -> float:
    """min/max ratio of two non-negative magnitudes; two zeros are identical."""
    if value1 == value2:
        return 1.0
    high = max(abs(value1), abs(value2))
    return min(abs(value1), abs(value2)) / high if high else 1.0


def weighted_average(scores: Dict[str, float], weights: Mapping[str, float]) -> float:
    """Weighted mean over the keys present in ``scores``."""
    total = sum(weights.get(name, 0.0) for name in scores)
    if total <= 0:
        return 0.0
    return sum(value * weights.get(name, 0.0) for name, value in scores.items()) / total
