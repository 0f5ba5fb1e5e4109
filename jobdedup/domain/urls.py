"""URL canonicalization and comparison for job postings."""
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse
import logging
import re

from jobdedup.config import UrlWeights
from jobdedup.domain.metrics import jaccard

logger = logging.getLogger(__name__)

TRACKING_PARAMS = frozenset([
    'ref', 'refid', 'source', 'src', 'trk', 'trackingid', 'gclid', 'fbclid',
    'mc_cid', 'mc_eid', 'campaign', 'lipi', 'originalsubdomain',
])
TRACKING_PREFIXES = ('utm_',)

# Query parameters that identify a posting on common job boards
JOB_PARAMS = frozenset([
    'id', 'jobid', 'job_id', 'jk', 'vjk', 'gh_jid', 'currentjobid', 'jobkey',
    'req', 'reqid', 'requisition', 'posting_id',
])

_NUMERIC_SEGMENT = re.compile(r'^\d+$')
_UUID_SEGMENT = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)
_HASH_SEGMENT = re.compile(r'^[0-9a-f]{32,}$', re.IGNORECASE)
_DUPLICATE_SLASHES = re.compile(r'/{2,}')


def _is_tracking(key: str) -> bool:
    key = key.lower()
    return key in TRACKING_PARAMS or key.startswith(TRACKING_PREFIXES)


def _split(url: str) -> Optional[Tuple[str, str, str, List[Tuple[str, str]]]]:
    """Parse a URL into (scheme, host, path, query pairs), or None if it is malformed."""
    try:
        parsed = urlparse(url.strip())
        if not parsed.scheme or not parsed.netloc:
            return None
        host = (parsed.hostname or '').lower()
        if parsed.port:
            host = f'{host}:{parsed.port}'
        pairs = parse_qsl(parsed.query, keep_blank_values=True)
    except ValueError:
        return None
    if host.startswith('www.'):
        host = host[4:]
    path = _DUPLICATE_SLASHES.sub('/', parsed.path.lower())
    if path.endswith('/'):
        path = path.rstrip('/')
    return parsed.scheme.lower(), host, path, pairs


def normalize_url(url: Optional[str]) -> str:
    """Canonical form of a job URL.

    Host and path are lowercased, duplicate slashes collapsed, the trailing
    slash dropped and tracking parameters removed. Remaining parameters are
    kept, sorted. A URL that cannot be parsed is compared as its lowercase
    raw text.

    Args:
        url: Original URL

    Returns:
        Normalized URL string
    """
    if not url:
        return ''
    parts = _split(url)
    if parts is None:
        return url.lower().strip()

    scheme, host, path, pairs = parts
    kept = sorted((key, value) for key, value in pairs if not _is_tracking(key))
    normalized = f'{scheme}://{host}{path}'
    if kept:
        normalized += '?' + urlencode(kept)
    return normalized


def extract_pattern(url: Optional[str]) -> str:
    """Host + path template with ids, UUIDs and hashes replaced by placeholders.

    ``https://x.com/jobs/123`` and ``https://x.com/jobs/456`` share the
    pattern ``x.com/jobs/{id}``.
    """
    if not url:
        return ''
    parts = _split(url)
    if parts is None:
        return url.lower().strip()

    _, host, path, _ = parts
    segments = []
    for segment in path.split('/'):
        if _NUMERIC_SEGMENT.match(segment):
            segment = '{id}'
        elif _UUID_SEGMENT.match(segment):
            segment = '{uuid}'
        elif _HASH_SEGMENT.match(segment):
            segment = '{hash}'
        segments.append(segment)
    return host + '/'.join(segments)


def job_parameters(url: Optional[str]) -> Dict[str, str]:
    """Job-identifying query parameters of a URL."""
    if not url:
        return {}
    parts = _split(url)
    if parts is None:
        return {}
    return {key.lower(): value for key, value in parts[3] if key.lower() in JOB_PARAMS}


def parameter_similarity(url1: Optional[str], url2: Optional[str]) -> float:
    """Overlap of job-identifying (name, value) parameters."""
    params1 = job_parameters(url1)
    params2 = job_parameters(url2)
    return jaccard(params1.items(), params2.items())


def domain_similarity(url1: Optional[str], url2: Optional[str]) -> float:
    """1.0 for the same host, 0.8 for the same registered domain, else 0."""
    parts1 = _split(url1) if url1 else None
    parts2 = _split(url2) if url2 else None
    if parts1 is None or parts2 is None:
        return 0.0
    host1 = parts1[1]
    host2 = parts2[1]
    if host1 == host2:
        return 1.0
    if host1.split('.')[-2:] == host2.split('.')[-2:]:
        return 0.8
    return 0.0


def path_similarity(url1: Optional[str], url2: Optional[str]) -> float:
    """Sequence similarity of path segments, averaged over both directions."""
    parts1 = _split(url1) if url1 else None
    parts2 = _split(url2) if url2 else None
    if parts1 is None or parts2 is None:
        return 0.0
    segments1 = [s for s in parts1[2].split('/') if s]
    segments2 = [s for s in parts2[2].split('/') if s]
    if not segments1 and not segments2:
        return 1.0
    forward = SequenceMatcher(None, segments1, segments2).ratio()
    backward = SequenceMatcher(None, segments2, segments1).ratio()
    return (forward + backward) / 2


def url_components(url1: str, url2: str) -> Dict[str, float]:
    """Individual URL signals; ``parameter`` only when either URL has job parameters."""
    normalized1 = normalize_url(url1)
    normalized2 = normalize_url(url2)
    pattern1 = extract_pattern(url1)
    components = {
        'exact': 1.0 if url1.strip() == url2.strip() else 0.0,
        'normalized': 1.0 if normalized1 == normalized2 else 0.0,
        'pattern': 1.0 if pattern1 and pattern1 == extract_pattern(url2) else 0.0,
        'domain': domain_similarity(url1, url2),
        'path': path_similarity(url1, url2),
    }
    if job_parameters(url1) or job_parameters(url2):
        components['parameter'] = parameter_similarity(url1, url2)
    return components


def url_similarity(url1: Optional[str], url2: Optional[str],
                   weights: Optional[UrlWeights] = None) -> float:
    """Weighted similarity of two posting URLs.

    Args:
        url1: First URL
        url2: Second URL
        weights: Component weights

    Returns:
        Score in [0, 1]; 0.0 if either URL is missing
    """
    if not url1 or not url2:
        return 0.0
    if url1.strip() == url2.strip():
        return 1.0

    weights = weights or UrlWeights()
    components = url_components(url1, url2)
    total = sum(getattr(weights, name) for name in components)
    if total <= 0:
        return 0.0
    score = sum(value * getattr(weights, name) for name, value in components.items()) / total
    return max(0.0, min(1.0, score))


def detect_url_duplicate(url1: Optional[str], url2: Optional[str], threshold: float = 0.9,
                         weights: Optional[UrlWeights] = None) -> Dict[str, object]:
    """Decide whether two URLs point at the same posting.

    Returns:
        Dict with similarity, is_duplicate, analysis and confidence
    """
    similarity = url_similarity(url1, url2, weights)
    analysis = url_components(url1, url2) if url1 and url2 else {}
    analysis.update({
        'normalized_url1': normalize_url(url1),
        'normalized_url2': normalize_url(url2),
        'pattern1': extract_pattern(url1),
        'pattern2': extract_pattern(url2),
    })
    return {
        'similarity': similarity,
        'is_duplicate': similarity > threshold,
        'analysis': analysis,
        'confidence': abs(similarity - threshold) / max(threshold, 1.0 - threshold),
    }
