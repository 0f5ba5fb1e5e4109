"""Locality-sensitive hashing index over job records.

Records are embedded as fixed-length feature-hashed vectors of coarse
title and company tokens, then bucketed by the signs of their projections
onto random hyperplanes. Records that share a bucket in any table are
candidate duplicates.

The tokens are deliberately coarser than what the classifier compares:
companies are alias-resolved, titles are reduced to their synonym-canonical
form with role nouns mapped to their family, and level words and numerals
are dropped. "Sr. Backend Developer II" at Facebook and "Backend Engineer"
at Meta therefore embed identically and always meet in the classifier.
"""
from concurrent.futures import Executor
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
import hashlib
import logging

import numpy as np

from jobdedup.config import LSHConfig
from jobdedup.error_handling import IndexBuildError, InvalidStateError
from jobdedup.domain.entities import EntityMatcher
from jobdedup.domain.scorers import JOB_LEVELS
from jobdedup.domain.text import normalize_company, normalize_title
from jobdedup.models import JobRecord

logger = logging.getLogger(__name__)

HashTable = Dict[int, List[int]]

# Title words that only say how senior a role is
LEVEL_TOKENS = frozenset(JOB_LEVELS) | {'level', 'i', 'ii', 'iii', 'iv', 'v'}


def _feature_hash(token: str) -> Tuple[int, float]:
    """Stable (bucket, sign) for a token, independent of PYTHONHASHSEED."""
    digest = hashlib.md5(token.encode('utf-8')).digest()
    bucket = int.from_bytes(digest[:4], 'big')
    sign = 1.0 if digest[4] & 1 else -1.0
    return bucket, sign


def title_tokens(title: str, matcher: Optional[EntityMatcher] = None) -> List[str]:
    """Title words without level words or numerals, role nouns as families."""
    normalized = normalize_title(title)
    if matcher is not None:
        normalized = matcher.canonical_title(normalized)
    words = normalized.split()
    kept = [word for word in words if word not in LEVEL_TOKENS and not word.isdigit()]
    # A title made only of level words ("Intern") keeps them
    kept = kept or words
    if matcher is not None:
        kept = [matcher.role_index.get(word, word) for word in kept]
    return kept


def company_tokens(company: str, matcher: Optional[EntityMatcher] = None) -> List[str]:
    normalized = normalize_company(company)
    if matcher is not None and normalized:
        normalized = matcher.resolve_company(normalized) or normalized
    return normalized.split()


def record_tokens(record: JobRecord, matcher: Optional[EntityMatcher] = None) -> List[str]:
    """Coarse title and company tokens, prefixed by field.

    Args:
        record: Record to tokenize
        matcher: Entity matcher supplying aliases, title synonyms and role
            families; without one only level words and numerals are dropped

    Returns:
        Tokens such as ``title:software`` and ``company:acme``
    """
    tokens = [f'title:{token}' for token in title_tokens(record.title, matcher)]
    tokens.extend(f'company:{token}' for token in company_tokens(record.company, matcher))
    return tokens


def embed_record(record: JobRecord, dim: int, matcher: Optional[EntityMatcher] = None) -> np.ndarray:
    """Unit-length embedding of a record's title and company.

    Args:
        record: Record to embed
        dim: Embedding dimension
        matcher: Entity matcher used for canonical tokens

    Returns:
        Vector of length ``dim``; all zeros if the record has no tokens
    """
    vector = np.zeros(dim, dtype=np.float64)
    for token in record_tokens(record, matcher):
        bucket, sign = _feature_hash(token)
        vector[bucket % dim] += sign
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector /= norm
    return vector


class LSHIndex:
    """Random-hyperplane LSH index, built once per batch.

    The index is written only by ``build``; lookups afterwards are
    read-only and safe to run from several threads.
    """

    def __init__(self, config: Optional[LSHConfig] = None, matcher: Optional[EntityMatcher] = None):
        """Initialize the index and draw its hyperplanes.

        Args:
            config: Table count, bits per table, embedding size and seed
            matcher: Entity matcher for canonical tokens (built-in tables when None)

        Raises:
            IndexBuildError: If the hyperplanes cannot be allocated
        """
        config = config or LSHConfig()
        self.num_tables = config.num_tables
        self.hash_bits = config.hash_bits
        self.embedding_dim = config.embedding_dim
        self.seed = config.seed
        self.matcher = matcher or EntityMatcher()
        rng = np.random.default_rng(self.seed)
        try:
            self.hyperplanes = rng.standard_normal((self.num_tables, self.hash_bits, self.embedding_dim))
        except (MemoryError, ValueError) as e:
            raise IndexBuildError(
                f"Cannot allocate {self.num_tables}x{self.hash_bits}x{self.embedding_dim} hyperplanes: {e}"
            ) from e
        self.tables: List[HashTable] = []
        self.embeddings: Optional[np.ndarray] = None
        self.indexed: List[int] = []
        self._bucket_keys: List[Dict[int, int]] = []
        self.built = False

    def _bucket_keys_for(self, table: int, embeddings: np.ndarray) -> List[int]:
        """Sign-bit bucket key of every embedding row for one table."""
        projections = embeddings @ self.hyperplanes[table].T
        packed = np.packbits(projections >= 0, axis=1)
        return [int.from_bytes(row.tobytes(), 'big') for row in packed]

    def _hash_table(self, table: int, embeddings: np.ndarray, positions: Sequence[int]) -> Tuple[HashTable, Dict[int, int]]:
        buckets: HashTable = {}
        keys: Dict[int, int] = {}
        for position, key in zip(positions, self._bucket_keys_for(table, embeddings)):
            buckets.setdefault(key, []).append(position)
            keys[position] = key
        return buckets, keys

    def build(self, records: Sequence[JobRecord], include: Optional[Iterable[int]] = None,
              executor: Optional[Executor] = None) -> None:
        """Hash records into every table.

        Tables are hashed independently (in parallel when an executor is
        given); only this method writes them.

        Args:
            records: Batch of records
            include: Positions to index (all when None)
            executor: Optional executor for per-table hashing

        Raises:
            InvalidStateError: If the index was already built
            IndexBuildError: If the tables cannot be built
        """
        if self.built:
            raise InvalidStateError("LSH index is already built; create a new index for a new batch")

        positions = list(range(len(records))) if include is None else sorted(include)
        try:
            embeddings = np.zeros((len(positions), self.embedding_dim), dtype=np.float64)
            for row, position in enumerate(positions):
                embeddings[row] = embed_record(records[position], self.embedding_dim, self.matcher)

            # Records without tokens would all share one bucket
            nonzero = np.any(embeddings != 0, axis=1)
            kept = [position for position, keep in zip(positions, nonzero) if keep]
            embeddings = embeddings[nonzero]

            if executor is not None and self.num_tables > 1:
                results = list(executor.map(
                    lambda table: self._hash_table(table, embeddings, kept), range(self.num_tables)))
            else:
                results = [self._hash_table(table, embeddings, kept) for table in range(self.num_tables)]
        except (MemoryError, ValueError) as e:
            raise IndexBuildError(f"Failed to build LSH index over {len(positions)} records: {e}") from e

        self.tables = [buckets for buckets, _ in results]
        self._bucket_keys = [keys for _, keys in results]
        self.embeddings = embeddings
        self.indexed = kept
        self.built = True
        logger.info(f"Built LSH index: {len(kept)} records, {self.num_tables} tables, {self.hash_bits} bits")

    def _require_built(self) -> None:
        if not self.built:
            raise InvalidStateError("LSH index has not been built")

    def candidates(self, position: int) -> Set[int]:
        """Indexed records sharing at least one bucket with ``position``.

        Args:
            position: Input position of an indexed record

        Returns:
            Candidate positions, excluding ``position`` itself
        """
        self._require_built()
        result: Set[int] = set()
        for buckets, keys in zip(self.tables, self._bucket_keys):
            key = keys.get(position)
            if key is not None:
                result.update(buckets[key])
        result.discard(position)
        return result

    def query(self, record: JobRecord) -> Set[int]:
        """Indexed records sharing a bucket with a record outside the batch."""
        self._require_built()
        embedding = embed_record(record, self.embedding_dim, self.matcher)
        if not embedding.any():
            return set()
        matrix = embedding.reshape(1, -1)
        result: Set[int] = set()
        for table, buckets in enumerate(self.tables):
            key = self._bucket_keys_for(table, matrix)[0]
            result.update(buckets.get(key, ()))
        return result

    def candidate_pairs(self) -> List[Tuple[int, int]]:
        """Every distinct (i, j) with i < j that shares a bucket, sorted."""
        self._require_built()
        pairs: Set[Tuple[int, int]] = set()
        for buckets in self.tables:
            for members in buckets.values():
                if len(members) < 2:
                    continue
                for x, i in enumerate(members):
                    for j in members[x + 1:]:
                        pairs.add((i, j) if i < j else (j, i))
        return sorted(pairs)
