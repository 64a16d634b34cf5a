"""Data structures shared by the flagpost moderation pipeline.

It defines the `Flag` evidence record, the optional context sub-objects that
describe the author and the post's surroundings, the media hash records, the
provider result shape and the terminal `ModerationResult`.
"""

from __future__ import annotations
import json
import math
from dataclasses import dataclass, asdict, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

SOURCES = ("rule", "ml", "vision", "metadata")
LABELS = ("allow", "review", "block")
MEDIA_TYPES = ("image", "video")

# Flag attribute name -> wire name
_WIRE_NAMES = {
    "adjusted_weight": "adjustedWeight",
    "frame_index": "frameIndex",
    "media_hash": "mediaHash",
}


class FlagpostError(Exception):
    """Base class for errors raised by flagpost."""


class ValidationError(FlagpostError):
    """Raised when a moderation request has an invalid shape."""


def round_half_up(value: float) -> int:
    """Rounds to the nearest integer with halves going up (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Flag:
    """An atomic finding that contributes to the risk score.

    Attributes:
        source: Origin of the flag, one of `SOURCES`.
        category: Open category name (e.g. "links", "new_account").
        weight: Signed contribution. Negative weights are trust boosts.
        message: Human-readable description.
        confidence: Probability in 0..1 for probabilistic sources.
        indices: Half-open `(start, end)` span in the original text.
        snippet: The text covered by `indices`.
        provider: Name of the provider that produced the flag.
        frame_index: Video keyframe the flag belongs to.
        media_hash: Perceptual hash of the media the flag belongs to.
        adjusted_weight: Weight after source and platform multipliers.
        whitelisted: Set when the weight was reduced by a whitelist rule.
    """

    source: str
    category: str
    weight: float
    message: str
    confidence: Optional[float] = None
    indices: Optional[Tuple[int, int]] = None
    snippet: Optional[str] = None
    provider: Optional[str] = None
    frame_index: Optional[int] = None
    media_hash: Optional[str] = None
    adjusted_weight: Optional[float] = None
    whitelisted: bool = False

    def with_adjusted_weight(self, adjusted_weight: float) -> "Flag":
        return replace(self, adjusted_weight=adjusted_weight)

    def to_dict(self) -> Dict[str, Any]:
        """Serializes the flag using the camelCase wire names, dropping unset fields."""
        out: Dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "whitelisted" and not value:
                continue
            if key == "indices":
                value = list(value)
            out[_WIRE_NAMES.get(key, key)] = value
        return out


@dataclass(frozen=True)
class AccountContext:
    id: Optional[str] = None
    created_at: Optional[str] = None  # ISO-8601
    is_verified: Optional[bool] = None
    prior_violations: Optional[int] = None


@dataclass(frozen=True)
class PostingHistory:
    last_24h_count: Optional[int] = None
    last_hour_count: Optional[int] = None


@dataclass(frozen=True)
class NetworkContext:
    similar_text_cluster_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CrossPlatformContext:
    similar_post_hashes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class EngagementContext:
    replies: Optional[int] = None
    likes: Optional[int] = None
    unique_repliers: Optional[int] = None


@dataclass(frozen=True)
class Context:
    """Optional metadata about the author, cadence, network and engagement.

    A missing sub-object means its analyzer contributes no flags and a
    neutral multiplier.
    """

    account: Optional[AccountContext] = None
    posting_history: Optional[PostingHistory] = None
    network: Optional[NetworkContext] = None
    cross_platform: Optional[CrossPlatformContext] = None
    engagement: Optional[EngagementContext] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Context"]:
        """Builds a context from its JSON form (camelCase or snake_case keys).

        Args:
            data: The decoded JSON object, or None.

        Returns:
            The context, or None when `data` is empty.

        Raises:
            ValidationError: If a sub-object is not a JSON object or a field
                has the wrong type.
        """
        if not data:
            return None
        if not isinstance(data, dict):
            raise ValidationError("context must be an object")

        def section(camel: str, snake: str) -> Optional[Dict[str, Any]]:
            value = _pick(data, camel, snake)
            if value is None:
                return None
            if not isinstance(value, dict):
                raise ValidationError(f"context.{camel} must be an object")
            return value

        account = section("account", "account")
        history = section("postingHistory", "posting_history")
        network = section("network", "network")
        cross = section("crossPlatform", "cross_platform")
        engagement = section("engagement", "engagement")
        return cls(
            account=AccountContext(
                id=_string(account, "account", "id", "id"),
                created_at=_timestamp(account, "account", "createdAt", "created_at"),
                is_verified=_boolean(account, "account", "isVerified", "is_verified"),
                prior_violations=_count(
                    account, "account", "priorViolations", "prior_violations"
                ),
            )
            if account is not None
            else None,
            posting_history=PostingHistory(
                last_24h_count=_count(
                    history, "postingHistory", "last24hCount", "last_24h_count"
                ),
                last_hour_count=_count(
                    history, "postingHistory", "lastHourCount", "last_hour_count"
                ),
            )
            if history is not None
            else None,
            network=NetworkContext(
                similar_text_cluster_ids=_string_list(
                    network, "network", "similarTextClusterIds", "similar_text_cluster_ids"
                )
            )
            if network is not None
            else None,
            cross_platform=CrossPlatformContext(
                similar_post_hashes=_string_list(
                    cross, "crossPlatform", "similarPostHashes", "similar_post_hashes"
                )
            )
            if cross is not None
            else None,
            engagement=EngagementContext(
                replies=_count(engagement, "engagement", "replies", "replies"),
                likes=_count(engagement, "engagement", "likes", "likes"),
                unique_repliers=_count(
                    engagement, "engagement", "uniqueRepliers", "unique_repliers"
                ),
            )
            if engagement is not None
            else None,
        )


def _pick(obj: Dict[str, Any], camel: str, snake: str) -> Any:
    return obj.get(camel, obj.get(snake))


def _count(obj: Dict[str, Any], where: str, camel: str, snake: str) -> Optional[int]:
    value = _pick(obj, camel, snake)
    if value is None:
        return None
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"context.{where}.{camel} must be a non-negative integer")
    return value


def _boolean(obj: Dict[str, Any], where: str, camel: str, snake: str) -> Optional[bool]:
    value = _pick(obj, camel, snake)
    if value is not None and not isinstance(value, bool):
        raise ValidationError(f"context.{where}.{camel} must be a boolean")
    return value


def _string(obj: Dict[str, Any], where: str, camel: str, snake: str) -> Optional[str]:
    value = _pick(obj, camel, snake)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"context.{where}.{camel} must be a string")
    return value


def _timestamp(obj: Dict[str, Any], where: str, camel: str, snake: str) -> Optional[str]:
    value = _string(obj, where, camel, snake)
    if value is None:
        return None
    try:
        parse_timestamp(value)
    except ValueError as e:
        raise ValidationError(
            f"context.{where}.{camel} must be an ISO-8601 timestamp"
        ) from e
    return value


def _string_list(obj: Dict[str, Any], where: str, camel: str, snake: str) -> List[str]:
    value = _pick(obj, camel, snake)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"context.{where}.{camel} must be a list of strings")
    return list(value)


@dataclass(frozen=True)
class Media:
    url: str
    type: str = "image"

    def __post_init__(self):
        if self.type not in MEDIA_TYPES:
            raise ValidationError(f"Unsupported media type: {self.type}")


@dataclass(frozen=True)
class HashResult:
    """Perceptual and difference hashes of one image or keyframe."""

    phash: str
    dhash: str
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class HashComparison:
    phash_distance: float
    dhash_distance: float
    min_distance: float
    is_duplicate: bool


@dataclass(frozen=True)
class DuplicateMatch:
    candidate: str
    distance: int
    normalized_distance: float

    @property
    def confidence(self) -> float:
        return 1.0 - self.normalized_distance


@dataclass(frozen=True)
class MediaHash:
    hash: str
    type: str
    url: Optional[str] = None
    platform: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class CategoryScore:
    confidence: float
    label: str


@dataclass
class ProviderResult:
    """What a text or vision provider returns for one call.

    `enabled` is False both when the provider is not configured and when the
    call failed; `error` tells the two apart.
    """

    enabled: bool
    categories: Dict[str, CategoryScore] = field(default_factory=dict)
    error: Optional[str] = None
    provider: str = "none"

    @classmethod
    def disabled(cls, provider: str, error: Optional[str] = None) -> "ProviderResult":
        return cls(enabled=False, categories={}, error=error, provider=provider)


@dataclass
class ModerationResult:
    """The terminal output of the moderation pipeline."""

    score: int
    label: str
    platform: str
    flags: List[Flag] = field(default_factory=list)
    debug: Optional[Dict[str, Any]] = None
    explanation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "score": self.score,
            "label": self.label,
            "platform": self.platform,
            "flags": [f.to_dict() for f in self.flags],
        }
        if self.debug is not None:
            out["debug"] = self.debug
        if self.explanation is not None:
            out["explanation"] = self.explanation
        return out

    def to_json(self, indent: Optional[int] = None) -> str:
        """Serializes the result to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)


def parse_timestamp(value: str) -> datetime:
    """Parses an ISO-8601 timestamp, accepting a trailing "Z"."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)
