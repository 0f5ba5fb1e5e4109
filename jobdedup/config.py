"""Configuration loader for the deduplication engine."""
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import os

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

VALID_STRATEGIES = {"rule_based", "learned"}

DEFAULT_CONFIG_FILES = ["dedup.yml", "dedup.yaml"]

ENV_PREFIX = "JOBDEDUP_"


@dataclass(frozen=True)
class Thresholds:
    """Decision thresholds.

    Attributes:
        similarity: Content-only comparisons
        fuzzy_match: Company/title fuzzy-logic blend
        url_similarity: URL-only comparisons
        ml_confidence: Duplicate probability required by the classifier
    """
    similarity: float = 0.85
    fuzzy_match: float = 0.8
    url_similarity: float = 0.9
    ml_confidence: float = 0.75


@dataclass(frozen=True)
class TitleWeights:
    """Blend used by the title scorer."""
    exact: float = 0.30
    jaccard: float = 0.20
    cosine: float = 0.20
    levenshtein: float = 0.10
    ngram: float = 0.10
    semantic: float = 0.10


@dataclass(frozen=True)
class CompanyWeights:
    """Blend used by fuzzy company matching once exact and alias checks fail."""
    soundex: float = 0.10
    metaphone: float = 0.10
    edit_distance: float = 0.20
    token_sort: float = 0.20
    token_set: float = 0.25
    partial: float = 0.15


@dataclass(frozen=True)
class UrlWeights:
    """Blend used by URL similarity."""
    exact: float = 0.10
    normalized: float = 0.40
    pattern: float = 0.15
    parameter: float = 0.10
    domain: float = 0.10
    path: float = 0.15


@dataclass(frozen=True)
class Membership:
    """Gaussian membership function parameters."""
    center: float
    sigma: float


@dataclass(frozen=True)
class MembershipConfig:
    company: Membership = Membership(center=0.8, sigma=0.1)
    title: Membership = Membership(center=0.7, sigma=0.15)


@dataclass(frozen=True)
class LSHConfig:
    """Locality-sensitive hashing index settings."""
    num_tables: int = 20
    hash_bits: int = 128
    embedding_dim: int = 64
    seed: int = 42


@dataclass(frozen=True)
class StagingConfig:
    """Quick-reject rules and staged-similarity cut-offs."""
    max_days_apart: float = 7.0
    min_salary_overlap: float = 0.1
    max_level_delta: int = 2
    stage1_min: float = 0.3
    stage2_min: float = 0.6


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings.

    Attributes:
        workers: Worker threads for pair evaluation (1 runs inline)
        collaborator_timeout: Seconds to wait for a geocoder or model call
        strategy: "rule_based" or "learned"
        max_distance_km: Distance at which the location distance score reaches 0
        error_alert_threshold: Errors per category before a critical log
    """
    workers: int = 4
    collaborator_timeout: float = 2.0
    strategy: str = "rule_based"
    max_distance_km: float = 100.0
    error_alert_threshold: int = 25


@dataclass(frozen=True)
class DedupConfig:
    """Top-level validated configuration."""
    thresholds: Thresholds = Thresholds()
    title_weights: TitleWeights = TitleWeights()
    rule_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RULE_WEIGHTS))
    url_weights: UrlWeights = UrlWeights()
    company_weights: CompanyWeights = CompanyWeights()
    membership: MembershipConfig = MembershipConfig()
    lsh: LSHConfig = LSHConfig()
    staging: StagingConfig = StagingConfig()
    engine: EngineConfig = EngineConfig()
    company_aliases: Dict[str, List[str]] = field(default_factory=dict)
    title_synonyms: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        validate_config(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DedupConfig":
        """Build a configuration from a parsed YAML mapping.

        Unknown sections are ignored with a warning; missing sections take
        their defaults.

        Args:
            data: Parsed configuration mapping

        Returns:
            DedupConfig instance

        Raises:
            ValueError: If a section has an unknown key or a value is out of range
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a mapping")

        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                logger.warning(f"Ignoring unknown configuration section '{key}'")

        membership = _mapping(data.get("membership"), "membership")
        rule_weights = dict(DEFAULT_RULE_WEIGHTS)
        for key, value in _mapping(data.get("rule_weights"), "rule_weights").items():
            rule_weights[key] = _coerce(0.0, value, key, "rule_weights")

        return cls(
            thresholds=_section(Thresholds, data.get("thresholds"), "thresholds"),
            title_weights=_section(TitleWeights, data.get("title_weights"), "title_weights"),
            rule_weights=rule_weights,
            url_weights=_section(UrlWeights, data.get("url_weights"), "url_weights"),
            company_weights=_section(CompanyWeights, data.get("company_weights"), "company_weights"),
            membership=MembershipConfig(
                company=_section(Membership, membership.get("company"), "membership.company",
                                 base=MembershipConfig.company),
                title=_section(Membership, membership.get("title"), "membership.title",
                               base=MembershipConfig.title),
            ),
            lsh=_section(LSHConfig, data.get("lsh"), "lsh"),
            staging=_section(StagingConfig, data.get("staging"), "staging"),
            engine=_section(EngineConfig, data.get("engine"), "engine"),
            company_aliases=_string_lists(data.get("company_aliases"), "company_aliases"),
            title_synonyms=_string_lists(data.get("title_synonyms"), "title_synonyms"),
        )


DEFAULT_RULE_WEIGHTS: Dict[str, float] = {
    "title_similarity": 0.25,
    "company_exact": 0.20,
    "company_fuzzy": 0.15,
    "url_similarity": 0.15,
    "location_match": 0.10,
    "description_similarity": 0.10,
    "time_difference": 0.05,
}


def _mapping(raw: Any, name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    return raw


def _coerce(current: Any, value: Any, key: str, name: str) -> Any:
    """Convert a YAML value to the type of the field default."""
    if isinstance(current, str):
        return str(value)
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value {value!r} for '{key}' in configuration section '{name}'") from e
    if isinstance(current, int):
        if not number.is_integer():
            raise ValueError(f"'{key}' in configuration section '{name}' must be a whole number, got {value!r}")
        return int(number)
    return number


def _section(cls, raw: Optional[Dict[str, Any]], name: str, base=None):
    """Overlay a YAML mapping onto a dataclass section."""
    instance = base if base is not None else cls()
    raw = _mapping(raw, name)
    if not raw:
        return instance
    allowed = {f.name: f for f in fields(cls)}
    updates = {}
    for key, value in raw.items():
        if key not in allowed:
            raise ValueError(f"Unknown key '{key}' in configuration section '{name}'")
        updates[key] = _coerce(getattr(instance, key), value, key, name)
    return replace(instance, **updates)


def _string_lists(raw: Optional[Dict[str, Any]], name: str) -> Dict[str, List[str]]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    result = {}
    for key, values in raw.items():
        if isinstance(values, str):
            values = [values]
        result[str(key)] = [str(v) for v in values or []]
    return result


def validate_config(config: DedupConfig) -> None:
    """Validate value ranges.

    Raises:
        ValueError: If a value is out of range
    """
    for name in ("similarity", "fuzzy_match", "url_similarity", "ml_confidence"):
        value = getattr(config.thresholds, name)
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"Threshold '{name}' must be within [0, 1], got {value}")
    for section in (config.title_weights, config.url_weights, config.company_weights):
        for f in fields(section):
            if getattr(section, f.name) < 0:
                raise ValueError(f"Weight '{f.name}' must not be negative")
    if any(weight < 0 for weight in config.rule_weights.values()):
        raise ValueError("Rule weights must not be negative")
    for membership in (config.membership.company, config.membership.title):
        if membership.sigma <= 0:
            raise ValueError("Membership sigma must be positive")
    if config.lsh.num_tables < 1 or config.lsh.hash_bits < 1 or config.lsh.embedding_dim < 1:
        raise ValueError("LSH num_tables, hash_bits and embedding_dim must be positive")
    if config.engine.workers < 1:
        raise ValueError("Engine workers must be at least 1")
    if config.engine.collaborator_timeout <= 0:
        raise ValueError("Collaborator timeout must be positive")
    if config.engine.strategy not in VALID_STRATEGIES:
        raise ValueError(f"Invalid classifier strategy '{config.engine.strategy}'")


def load_config(path: Optional[Path] = None, env_file: Optional[str] = None) -> DedupConfig:
    """Load configuration from YAML, then apply environment overrides.

    Args:
        path: Path to the YAML file. When None, dedup.yml / dedup.yaml in
            the working directory are tried and defaults are used if neither
            exists.
        env_file: Optional .env file with JOBDEDUP_* overrides

    Returns:
        Validated DedupConfig

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ValueError: If the file contents are invalid
    """
    data: Dict[str, Any] = {}
    if path is None:
        for fname in DEFAULT_CONFIG_FILES:
            if Path(fname).exists():
                path = Path(fname)
                break
    else:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

    if path is not None:
        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Failed to parse config {path}: {e}") from e
        logger.info(f"Loaded configuration from {path}")

    config = DedupConfig.from_dict(data)
    return apply_env_overrides(config, Config(env_file))


class Config:
    """Environment variable access with .env file support."""

    def __init__(self, env_file: Optional[str] = None):
        """Initialize configuration.

        Args:
            env_file: Optional path to .env file
        """
        if env_file and os.path.exists(env_file):
            load_dotenv(env_file)
            logger.info(f"Loaded environment from {env_file}")
        elif os.path.exists(".env"):
            load_dotenv(".env")
            logger.debug("Loaded environment from .env file")

    def get(self, key: str, default: Any = None, required: bool = False) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found
            required: Whether the key is required

        Returns:
            Configuration value

        Raises:
            ValueError: If required key is missing
        """
        value = os.getenv(key, default)

        if required and value is None:
            raise ValueError(f"Required configuration key '{key}' is missing")

        return value

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key, str(default))
        try:
            return int(value)
        except (ValueError, TypeError):
            logger.warning(f"Invalid integer value for {key}: {value}, using default {default}")
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key, str(default))
        try:
            return float(value)
        except (ValueError, TypeError):
            logger.warning(f"Invalid float value for {key}: {value}, using default {default}")
            return default


def apply_env_overrides(config: DedupConfig, env: Config) -> DedupConfig:
    """Apply JOBDEDUP_* environment variables on top of a configuration.

    Args:
        config: Configuration loaded from file
        env: Environment accessor

    Returns:
        New configuration with overrides applied
    """
    engine = config.engine
    lsh = config.lsh
    engine = replace(
        engine,
        workers=env.get_int(f"{ENV_PREFIX}WORKERS", engine.workers),
        collaborator_timeout=env.get_float(f"{ENV_PREFIX}COLLABORATOR_TIMEOUT",
                                           engine.collaborator_timeout),
        strategy=env.get(f"{ENV_PREFIX}STRATEGY", engine.strategy),
    )
    lsh = replace(
        lsh,
        seed=env.get_int(f"{ENV_PREFIX}SEED", lsh.seed),
        num_tables=env.get_int(f"{ENV_PREFIX}NUM_TABLES", lsh.num_tables),
        hash_bits=env.get_int(f"{ENV_PREFIX}HASH_BITS", lsh.hash_bits),
    )
    if engine == config.engine and lsh == config.lsh:
        return config
    return replace(config, engine=engine, lsh=lsh)
