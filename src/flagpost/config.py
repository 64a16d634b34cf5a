"""Configuration for the flagpost service.

`ModeratorConfig` is built once at process start, usually through
`ModeratorConfig.from_env()`, and handed to every component. Nothing in the
scoring or hashing code reads the environment on its own.
"""

from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

NLP_PROVIDERS = ("openai", "anthropic", "perspective", "none")
MATCH_POLICIES = ("best", "first")


@dataclass(frozen=True)
class Thresholds:
    block: float = 70
    review: float = 30
    duplicate: float = 0.15  # normalized Hamming distance


@dataclass(frozen=True)
class SourceWeights:
    rule: float = 1.0
    ml: float = 0.8
    vision: float = 0.9
    metadata: float = 0.3

    def for_source(self, source: str) -> float:
        return getattr(self, source, 1.0)


@dataclass(frozen=True)
class TemporalConfig:
    burst_hour: int = 10
    burst_day: int = 50


@dataclass(frozen=True)
class AccountConfig:
    new_account_days: int = 7
    max_violations: int = 5


@dataclass(frozen=True)
class ProviderConfig:
    nlp_provider: str = "anthropic"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 1000
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-5-haiku-20241022"
    anthropic_max_tokens: int = 1000
    perspective_api_key: Optional[str] = None
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    rekognition_min_confidence: float = 50
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class StorageConfig:
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    recent_hash_limit: int = 500
    known_hashes: Tuple[str, ...] = ()
    max_memory_hashes: int = 10_000
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class MediaConfig:
    max_download_bytes: int = 20_000_000
    fetch_timeout: Tuple[float, float] = (5.0, 15.0)
    allowed_image_types: Tuple[str, ...] = (
        "image/png",
        "image/jpeg",
        "image/webp",
        "image/gif",
    )
    max_keyframes: int = 9
    ffmpeg_path: str = "ffmpeg"
    match_policy: str = "best"


@dataclass(frozen=True)
class PlatformConfig:
    """Per-platform overrides.

    Attributes:
        weights: Category multipliers applied to `adjusted_weight`.
        review: Review threshold override, or None for the global default.
        block: Block threshold override, or None for the global default.
    """

    weights: Mapping[str, float] = field(default_factory=dict)
    review: Optional[float] = None
    block: Optional[float] = None


PLATFORMS: Dict[str, PlatformConfig] = {
    "generic": PlatformConfig(),
    "x": PlatformConfig(weights={"links": 1.1, "spam": 1.2}),
    "instagram": PlatformConfig(weights={"sexual": 1.2}, review=25, block=65),
    "tiktok": PlatformConfig(review=25, block=65),
}


@dataclass(frozen=True)
class ModeratorConfig:
    """Immutable settings for one moderator process."""

    enable_llm: bool = False
    enable_rekognition: bool = False
    enable_storage: bool = False
    debug: bool = False
    thresholds: Thresholds = field(default_factory=Thresholds)
    weights: SourceWeights = field(default_factory=SourceWeights)
    temporal: TemporalConfig = field(default_factory=TemporalConfig)
    account: AccountConfig = field(default_factory=AccountConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    platforms: Mapping[str, PlatformConfig] = field(
        default_factory=lambda: dict(PLATFORMS)
    )
    log_path: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Validates cross-field constraints.

        Raises:
            ValueError: If the configuration is inconsistent.
        """
        errors: List[str] = []
        if self.thresholds.review > self.thresholds.block:
            errors.append("thresholds.review must not exceed thresholds.block")
        if not 0 <= self.thresholds.duplicate <= 1:
            errors.append("thresholds.duplicate must be within [0, 1]")
        if self.providers.nlp_provider not in NLP_PROVIDERS:
            errors.append(f"unknown nlp_provider: {self.providers.nlp_provider}")
        if self.media.match_policy not in MATCH_POLICIES:
            errors.append(f"unknown match_policy: {self.media.match_policy}")
        if self.media.max_keyframes < 1:
            errors.append("media.max_keyframes must be positive")
        for name, platform in self.platforms.items():
            review = self.thresholds.review if platform.review is None else platform.review
            block = self.thresholds.block if platform.block is None else platform.block
            if review > block:
                errors.append(f"platform {name}: review threshold exceeds block")
        if errors:
            raise ValueError(f"Invalid config: {errors}")

    def platform(self, name: Optional[str]) -> PlatformConfig:
        """Returns the platform entry, falling back to `generic`."""
        return self.platforms.get(name or "generic") or self.platforms.get(
            "generic", PlatformConfig()
        )

    def thresholds_for(self, name: Optional[str]) -> Tuple[float, float]:
        """Returns the `(review, block)` thresholds in effect for a platform."""
        platform = self.platform(name)
        review = self.thresholds.review if platform.review is None else platform.review
        block = self.thresholds.block if platform.block is None else platform.block
        return review, block

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ModeratorConfig":
        """Builds the configuration from environment variables.

        Args:
            environ: Mapping to read from. Defaults to `os.environ`.

        Returns:
            A validated `ModeratorConfig`.
        """
        env = os.environ if environ is None else environ

        def flag(name: str) -> bool:
            return env.get(name, "").strip().lower() in ("1", "true", "yes")

        def num(name: str, default: float) -> float:
            return float(env.get(name) or default)

        def integer(name: str, default: int) -> int:
            return int(env.get(name) or default)

        supabase_url = env.get("SUPABASE_URL") or None
        supabase_key = env.get("SUPABASE_ANON_KEY") or None
        return cls(
            enable_llm=flag("ENABLE_LLM"),
            enable_rekognition=flag("ENABLE_REKOGNITION"),
            enable_storage=bool(supabase_url and supabase_key),
            debug=flag("DEBUG"),
            thresholds=Thresholds(
                block=num("THRESHOLD_BLOCK", 70),
                review=num("THRESHOLD_REVIEW", 30),
                duplicate=num("THRESHOLD_DUPLICATE", 0.15),
            ),
            weights=SourceWeights(
                rule=num("WEIGHT_RULE", 1.0),
                ml=num("WEIGHT_ML", 0.8),
                vision=num("WEIGHT_VISION", 0.9),
                metadata=num("WEIGHT_METADATA", 0.3),
            ),
            temporal=TemporalConfig(
                burst_hour=integer("TEMPORAL_BURST_HOUR", 10),
                burst_day=integer("TEMPORAL_BURST_DAY", 50),
            ),
            account=AccountConfig(
                new_account_days=integer("ACCOUNT_NEW_DAYS", 7),
                max_violations=integer("ACCOUNT_MAX_VIOLATIONS", 5),
            ),
            providers=ProviderConfig(
                nlp_provider=env.get("NLP_PROVIDER", "anthropic").lower(),
                openai_api_key=env.get("OPENAI_API_KEY") or None,
                openai_model=env.get("OPENAI_MODEL", "gpt-4o-mini"),
                openai_max_tokens=integer("OPENAI_MAX_TOKENS", 1000),
                anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
                anthropic_model=env.get("ANTHROPIC_MODEL", "claude-3-5-haiku-20241022"),
                anthropic_max_tokens=integer("ANTHROPIC_MAX_TOKENS", 1000),
                perspective_api_key=env.get("PERSPECTIVE_API_KEY") or None,
                aws_region=env.get("AWS_REGION", "us-east-1"),
                aws_access_key_id=env.get("AWS_ACCESS_KEY_ID") or None,
                aws_secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or None,
                timeout_seconds=num("PROVIDER_TIMEOUT", 15.0),
            ),
            storage=StorageConfig(
                supabase_url=supabase_url,
                supabase_anon_key=supabase_key,
                recent_hash_limit=integer("RECENT_HASH_LIMIT", 500),
                known_hashes=tuple(load_hash_list(env.get("HASH_LIST_PATH"))),
                max_memory_hashes=integer("MEMORY_HASH_LIMIT", 10_000),
            ),
            media=MediaConfig(
                max_download_bytes=integer("MAX_DOWNLOAD_BYTES", 20_000_000),
                max_keyframes=integer("MAX_KEYFRAMES", 9),
                ffmpeg_path=env.get("FFMPEG_PATH", "ffmpeg"),
                match_policy=env.get("DUPLICATE_MATCH_POLICY", "best").lower(),
            ),
            log_path=env.get("MODERATION_LOG_PATH") or None,
        )


def load_hash_list(path: Optional[str]) -> List[str]:
    """Reads a JSON list of known hashes.

    The file holds either a plain list or an object with a `known_hashes`
    list. A missing or unreadable file yields an empty list.

    Args:
        path: Path to the JSON file, or None.

    Returns:
        The list of hash strings.
    """
    if not path or not os.path.exists(path):
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data: Any = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read hash list {path}: {e}")
        return []
    if isinstance(data, dict):
        data = data.get("known_hashes", [])
    if not isinstance(data, list):
        logger.warning(f"Hash list {path} is not a list; ignoring")
        return []
    return [str(h) for h in data]
