"""Data models for the job deduplication engine."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple, FrozenSet

# Feature name -> value, built fresh for every comparison
FeatureVector = Dict[str, float]


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime).

    Naive datetimes are taken to be UTC so that deltas between records
    scraped from different sources stay comparable.

    Args:
        value: datetime, ISO-8601 string, or None

    Returns:
        Timezone-aware datetime or None
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Salary:
    """Salary range of a posting.

    Attributes:
        min: Lower bound (None if only an upper bound is known)
        max: Upper bound (None if only a lower bound is known)
        currency: ISO currency code
    """
    min: Optional[float] = None
    max: Optional[float] = None
    currency: str = "USD"

    def bounds(self) -> Optional[Tuple[float, float]]:
        """Return (low, high), treating a one-sided range as a point."""
        low = self.min if self.min is not None else self.max
        high = self.max if self.max is not None else self.min
        if low is None or high is None:
            return None
        return (min(low, high), max(low, high))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Salary"]:
        if not data:
            return None
        low = data.get("min")
        high = data.get("max")
        return cls(
            min=float(low) if low is not None else None,
            max=float(high) if high is not None else None,
            currency=str(data.get("currency") or "USD").upper(),
        )


@dataclass(frozen=True)
class JobRecord:
    """A scraped job posting. Owned by the caller, never mutated.

    Attributes:
        id: Unique identifier for the record
        title: Job title
        company: Company name
        description: Free-text job description
        requirements: Requirement lines
        location: Job location (e.g., "Remote", "New York, NY")
        salary: Salary range, if published
        url: URL of the posting
        platform: Site the posting was scraped from (e.g., "linkedin")
        posted_date: When the job was posted
        scraped_at: When the posting was scraped
        skills: Skills listed on the posting
        experience_years: Required years of experience
        benefits: Listed benefits
        company_size: Company size bucket, if the site exposes it
    """
    id: str
    title: str = ""
    company: str = ""
    description: str = ""
    requirements: Tuple[str, ...] = ()
    location: str = ""
    salary: Optional[Salary] = None
    url: str = ""
    platform: str = ""
    posted_date: Optional[datetime] = None
    scraped_at: Optional[datetime] = None
    skills: Tuple[str, ...] = ()
    experience_years: Optional[float] = None
    benefits: Tuple[str, ...] = ()
    company_size: Optional[str] = None

    def __post_init__(self):
        """Validate the identifier, make dates UTC-aware and freeze sequence fields."""
        if self.id is None or not str(self.id).strip():
            raise ValueError("Job record id is required and must be non-empty")
        for name in ("posted_date", "scraped_at"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, parse_datetime(value))
        for name in ("requirements", "skills", "benefits"):
            value = getattr(self, name)
            if value is None:
                object.__setattr__(self, name, ())
            elif isinstance(value, str):
                object.__setattr__(self, name, (value,))
            elif not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    @property
    def is_scorable(self) -> bool:
        """A record needs a title or a company to be compared at all."""
        return bool((self.title or "").strip() or (self.company or "").strip())

    @property
    def requirements_text(self) -> str:
        return "\n".join(r for r in self.requirements if r)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        """Build a record from a scraper payload.

        Both camelCase keys (``postedDate``) and snake_case keys
        (``posted_date``) are accepted.

        Args:
            data: Raw record mapping

        Returns:
            JobRecord instance

        Raises:
            ValueError: If the record has no id
        """
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        experience = pick("experience_years", "experienceYears")
        record_id = pick("id", "job_id", "jobId")
        return cls(
            id=str(record_id) if record_id is not None else "",
            title=pick("title", default=""),
            company=pick("company", default=""),
            description=pick("description", default=""),
            requirements=pick("requirements", default=()),
            location=pick("location", default=""),
            salary=Salary.from_dict(pick("salary")),
            url=pick("url", default=""),
            platform=pick("platform", "source", default=""),
            posted_date=parse_datetime(pick("posted_date", "postedDate")),
            scraped_at=parse_datetime(pick("scraped_at", "scrapedAt")),
            skills=pick("skills", default=()),
            experience_years=float(experience) if experience is not None else None,
            benefits=pick("benefits", default=()),
            company_size=pick("company_size", "companySize"),
        )


@dataclass(frozen=True)
class SimilarityResult:
    """Outcome of a pairwise comparison.

    Attributes:
        score: Duplicate probability in [0, 1]
        is_duplicate: Whether the score cleared the decision threshold
        features: Feature vector the decision was made from
        confidence: How much the decision can be trusted, in [0, 1]
        strategy: Name of the strategy that produced the score
        explanation: Human-readable top contributing signals
    """
    score: float
    is_duplicate: bool
    features: FeatureVector = field(default_factory=dict)
    confidence: float = 0.0
    strategy: str = "rule_based"
    explanation: Tuple[str, ...] = ()

    @classmethod
    def not_duplicate(cls, strategy: str = "none") -> "SimilarityResult":
        """Neutral result for pairs that could not be scored."""
        return cls(score=0.0, is_duplicate=False, features={}, confidence=0.0, strategy=strategy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "is_duplicate": self.is_duplicate,
            "features": dict(self.features),
            "confidence": self.confidence,
            "strategy": self.strategy,
            "explanation": list(self.explanation),
        }


@dataclass(frozen=True)
class DuplicateGroup:
    """A cluster of records describing the same posting.

    Attributes:
        member_ids: Ids of every record in the group
        representative_id: Id of the record chosen to stand for the group
        member_indices: Positions of the members in the input batch
    """
    member_ids: FrozenSet[str]
    representative_id: str
    member_indices: Tuple[int, ...] = ()

    def __post_init__(self):
        if self.representative_id not in self.member_ids:
            raise ValueError("Representative must be a member of its group")

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_ids": sorted(self.member_ids),
            "representative_id": self.representative_id,
            "member_indices": list(self.member_indices),
        }


@dataclass(frozen=True)
class SkippedRecord:
    """A record excluded from pairwise scoring."""
    record_id: str
    reason: str


@dataclass
class DeduplicationReport:
    """Result of a deduplication run.

    Attributes:
        total_records: Number of records in the batch
        duplicate_groups: Number of groups holding more than one record
        unique_record_count: Number of groups (one representative each)
        groups: Every group, singletons included, ordered by first member
        records: Representative records in input order
        skipped: Records excluded from scoring and why
        partial: True when the run was cancelled before all pairs were seen
        stats: Run statistics
    """
    total_records: int
    duplicate_groups: int
    unique_record_count: int
    groups: List[DuplicateGroup]
    records: List[JobRecord] = field(default_factory=list)
    skipped: List[SkippedRecord] = field(default_factory=list)
    partial: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "duplicate_groups": self.duplicate_groups,
            "unique_record_count": self.unique_record_count,
            "groups": [group.to_dict() for group in self.groups],
            "representative_ids": [record.id for record in self.records],
            "skipped": [{"record_id": s.record_id, "reason": s.reason} for s in self.skipped],
            "partial": self.partial,
            "stats": dict(self.stats),
        }
