"""Context feature analyzers.

Four independent analyzers turn the optional context sub-objects into
metadata flags and a risk multiplier each:

- account: age, prior violations and verification status
- temporal: posting bursts and time of day
- network: near-duplicate text clusters and cross-platform reposts
- engagement: reply/like ratios and replier diversity

Every analyzer is a pure function of its sub-object, the relevant config
section and, where time matters, an explicit `now`.
"""

from __future__ import annotations
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .config import AccountConfig, TemporalConfig
from .schema import (
    AccountContext,
    Context,
    CrossPlatformContext,
    EngagementContext,
    Flag,
    NetworkContext,
    PostingHistory,
    parse_timestamp,
)

ACCOUNT_MULTIPLIER_CAP = 3.0
TEMPORAL_MULTIPLIER_CAP = 2.0
NETWORK_MULTIPLIER_CAP = 2.5
ENGAGEMENT_MULTIPLIER_FLOOR = 0.5

DIMENSIONS = ("account", "temporal", "network", "engagement")


def _metadata_flag(
    category: str, weight: float, message: str, confidence: float = 1.0
) -> Flag:
    return Flag(
        source="metadata",
        category=category,
        weight=weight,
        message=message,
        confidence=confidence,
    )


@dataclass
class AccountFeatures:
    is_new_account: bool = False
    account_age_days: int = 0
    has_prior_violations: bool = False
    violation_count: int = 0


@dataclass
class TemporalFeatures:
    is_bursting: bool = False
    burst_hour: bool = False
    burst_day: bool = False
    post_frequency: float = 0.0  # posts per hour
    time_of_day: int = 0


@dataclass
class NetworkFeatures:
    has_similar_content: bool = False
    similar_cluster_count: int = 0
    has_cross_platform_matches: bool = False
    cross_platform_match_count: int = 0


@dataclass
class EngagementFeatures:
    has_engagement: bool = False
    engagement_ratio: float = 0.0  # replies / likes
    unique_replier_ratio: float = 0.0  # unique repliers / replies
    is_low_quality: bool = False
    is_high_quality: bool = False


def analyze_account(
    account: AccountContext, cfg: AccountConfig, now: datetime
) -> Tuple[AccountFeatures, List[Flag]]:
    """Flags new accounts, repeat violators and verification status.

    Args:
        account: The account context.
        cfg: Account thresholds.
        now: The reference time for the account age.

    Returns:
        The derived features and the metadata flags.
    """
    features = AccountFeatures()
    flags: List[Flag] = []

    if account.created_at:
        created = parse_timestamp(account.created_at)
        if created.tzinfo is None and now.tzinfo is not None:
            created = created.replace(tzinfo=timezone.utc)
        elif created.tzinfo is not None and now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        features.account_age_days = (now - created).days
        if features.account_age_days <= cfg.new_account_days:
            features.is_new_account = True
            flags.append(
                _metadata_flag(
                    "new_account",
                    15,
                    f"New account ({features.account_age_days} days old)",
                )
            )

    violations = account.prior_violations or 0
    if violations > 0:
        features.has_prior_violations = True
        features.violation_count = violations
        if violations >= cfg.max_violations:
            flags.append(
                _metadata_flag(
                    "repeat_violator", 25, f"Account has {violations} prior violations"
                )
            )
        elif violations > 2:
            flags.append(
                _metadata_flag(
                    "prior_violations", 10, f"Account has {violations} prior violations"
                )
            )

    if account.is_verified is False:
        flags.append(_metadata_flag("unverified_account", 5, "Unverified account"))
    elif account.is_verified is True:
        flags.append(_metadata_flag("verified_account", -5, "Verified account"))

    return features, flags


def account_multiplier(features: AccountFeatures) -> float:
    multiplier = 1.0
    if features.is_new_account:
        multiplier *= 1.5
    if features.has_prior_violations:
        multiplier *= 1 + features.violation_count * 0.2
    return min(multiplier, ACCOUNT_MULTIPLIER_CAP)


def analyze_temporal(
    history: PostingHistory, cfg: TemporalConfig, now: datetime
) -> Tuple[TemporalFeatures, List[Flag]]:
    """Flags burst posting, high daily volume and night-time posting.

    Each count is checked on its own when present. Posting frequency is the
    24-hour average when the daily count is known, otherwise the last-hour
    count.

    Args:
        history: The posting history.
        cfg: Burst thresholds.
        now: The reference time for the hour of day.

    Returns:
        The derived features and the metadata flags.
    """
    features = TemporalFeatures(time_of_day=now.hour)
    flags: List[Flag] = []

    last_hour = history.last_hour_count
    last_day = history.last_24h_count

    if last_hour is not None:
        features.post_frequency = float(last_hour)
        if last_hour > cfg.burst_hour:
            features.burst_hour = True
            features.is_bursting = True
            flags.append(
                _metadata_flag(
                    "burst_posting",
                    20,
                    f"High posting frequency: {last_hour} posts in the last hour",
                )
            )

    if last_day is not None:
        features.post_frequency = last_day / 24
        if last_day > cfg.burst_day:
            features.burst_day = True
            features.is_bursting = True
            flags.append(
                _metadata_flag(
                    "high_volume",
                    15,
                    f"High volume posting: {last_day} posts in the last 24 hours",
                )
            )

    if 0 <= features.time_of_day <= 5:
        flags.append(
            _metadata_flag(
                "unusual_timing",
                5,
                f"Unusual posting time: {features.time_of_day}:00",
                confidence=0.7,
            )
        )

    return features, flags


def temporal_multiplier(features: TemporalFeatures) -> float:
    multiplier = 1.0
    if features.burst_hour:
        multiplier *= 1.3
    if features.burst_day:
        multiplier *= 1.2
    if features.post_frequency > 10:
        multiplier *= 1.1
    return min(multiplier, TEMPORAL_MULTIPLIER_CAP)


def analyze_network(
    network: Optional[NetworkContext], cross_platform: Optional[CrossPlatformContext]
) -> Tuple[NetworkFeatures, List[Flag]]:
    """Flags content that clusters with similar posts or reappears across platforms."""
    features = NetworkFeatures()
    flags: List[Flag] = []

    clusters = network.similar_text_cluster_ids if network else []
    if clusters:
        features.has_similar_content = True
        features.similar_cluster_count = len(clusters)
        count = features.similar_cluster_count
        if count > 5:
            weight = 25
        elif count > 2:
            weight = 15
        else:
            weight = 0
        if weight:
            flags.append(
                _metadata_flag(
                    "content_clustering",
                    weight,
                    f"Content appears in {count} similar clusters",
                )
            )

    matches = cross_platform.similar_post_hashes if cross_platform else []
    if matches:
        features.has_cross_platform_matches = True
        features.cross_platform_match_count = len(matches)
        count = features.cross_platform_match_count
        if count > 3:
            weight = 30
        elif count > 1:
            weight = 20
        else:
            weight = 0
        if weight:
            flags.append(
                _metadata_flag(
                    "cross_platform_spam",
                    weight,
                    f"Content detected across {count} platforms",
                )
            )

    return features, flags


def network_multiplier(features: NetworkFeatures) -> float:
    multiplier = 1.0
    if features.has_similar_content:
        multiplier *= 1 + features.similar_cluster_count * 0.1
    if features.has_cross_platform_matches:
        multiplier *= 1 + features.cross_platform_match_count * 0.2
    return min(multiplier, NETWORK_MULTIPLIER_CAP)


def analyze_engagement(
    engagement: EngagementContext,
) -> Tuple[EngagementFeatures, List[Flag]]:
    """Looks for fake, coordinated or organic engagement patterns.

    Args:
        engagement: Reply, like and unique-replier counts.

    Returns:
        The derived features and the metadata flags. High-quality
        engagement yields a negative-weight trust flag.
    """
    features = EngagementFeatures()
    flags: List[Flag] = []
    replies = engagement.replies
    likes = engagement.likes
    unique = engagement.unique_repliers

    if not replies and not likes:
        return features, flags
    features.has_engagement = True

    if replies and likes:
        features.engagement_ratio = replies / likes
        if features.engagement_ratio < 0.01 and likes > 100:
            features.is_low_quality = True
            flags.append(
                _metadata_flag(
                    "low_engagement",
                    15,
                    f"Low engagement ratio: {features.engagement_ratio * 100:.2f}% "
                    "replies/likes",
                    confidence=0.8,
                )
            )

    if replies and unique:
        features.unique_replier_ratio = unique / replies
        ratio = features.unique_replier_ratio
        if ratio > 0.8 and replies > 10:
            features.is_high_quality = True
            flags.append(
                _metadata_flag(
                    "high_quality_engagement",
                    -10,
                    f"High quality engagement: {ratio * 100:.1f}% unique repliers",
                    confidence=0.9,
                )
            )
        if ratio < 0.3 and replies > 5:
            flags.append(
                _metadata_flag(
                    "coordinated_engagement",
                    20,
                    f"Low unique replier ratio: {ratio * 100:.1f}% unique repliers",
                    confidence=0.7,
                )
            )

    if likes and likes > 1000 and replies == 0:
        flags.append(
            _metadata_flag(
                "suspicious_engagement",
                25,
                "High likes with no replies (possible fake engagement)",
                confidence=0.8,
            )
        )

    if replies and replies > 50 and likes is not None and likes < 10:
        flags.append(
            _metadata_flag(
                "coordinated_engagement",
                20,
                "High replies with low likes (possible coordinated activity)",
                confidence=0.7,
            )
        )

    return features, flags


def engagement_multiplier(features: EngagementFeatures) -> float:
    multiplier = 1.0
    if features.is_low_quality:
        multiplier *= 1.3
    if features.is_high_quality:
        multiplier *= 0.8
    return max(multiplier, ENGAGEMENT_MULTIPLIER_FLOOR)


def is_automated_posting(features: TemporalFeatures) -> bool:
    return features.burst_hour and features.post_frequency > 5


def is_organic_engagement(features: EngagementFeatures) -> bool:
    return features.is_high_quality and not features.is_low_quality


def is_bot_engagement(features: EngagementFeatures) -> bool:
    return features.is_low_quality and features.engagement_ratio < 0.001


def is_coordinated_activity(features: NetworkFeatures) -> bool:
    return features.has_similar_content and features.has_cross_platform_matches


TEXT_HASH_LENGTH = 20
_TEXT_HASH_CHARS = re.compile(r"[a-z0-9]")


def compute_text_hash(text: str) -> str:
    """Builds a short fingerprint of a text from its most frequent characters.

    Only ASCII letters and digits count, case-insensitively. The ten most
    frequent characters are written as `<char><count>` in descending order
    of count (ties keep first-seen order) and the result is padded with "0"
    to at least 20 characters.
    """
    counts = Counter(_TEXT_HASH_CHARS.findall(text.lower()))
    top = counts.most_common(10)
    return "".join(f"{char}{count}" for char, count in top).ljust(
        TEXT_HASH_LENGTH, "0"
    )


def are_text_hashes_similar(hash1: str, hash2: str, threshold: float = 0.7) -> bool:
    """Compares two text fingerprints position by position over the shorter one."""
    length = min(len(hash1), len(hash2))
    if length == 0:
        return False
    matches = sum(1 for a, b in zip(hash1, hash2) if a == b)
    return matches / length >= threshold


@dataclass
class ContextAnalysis:
    """Combined output of the four analyzers."""

    flags: List[Flag] = field(default_factory=list)
    multipliers: Dict[str, float] = field(
        default_factory=lambda: {name: 1.0 for name in DIMENSIONS}
    )
    signals: Dict[str, bool] = field(default_factory=dict)

    @property
    def combined_multiplier(self) -> float:
        combined = 1.0
        for name in DIMENSIONS:
            combined *= self.multipliers[name]
        return combined


def analyze_context(
    context: Optional[Context],
    account_cfg: AccountConfig,
    temporal_cfg: TemporalConfig,
    now: datetime,
) -> ContextAnalysis:
    """Runs every analyzer whose context sub-object is present.

    Absent sub-objects contribute no flags and a multiplier of 1.0.
    """
    result = ContextAnalysis()
    if context is None:
        return result

    if context.account is not None:
        features, flags = analyze_account(context.account, account_cfg, now)
        result.flags.extend(flags)
        result.multipliers["account"] = account_multiplier(features)

    if context.posting_history is not None:
        features, flags = analyze_temporal(context.posting_history, temporal_cfg, now)
        result.flags.extend(flags)
        result.multipliers["temporal"] = temporal_multiplier(features)
        result.signals["automatedPosting"] = is_automated_posting(features)

    if context.network is not None or context.cross_platform is not None:
        features, flags = analyze_network(context.network, context.cross_platform)
        result.flags.extend(flags)
        result.multipliers["network"] = network_multiplier(features)
        result.signals["coordinatedActivity"] = is_coordinated_activity(features)

    if context.engagement is not None:
        features, flags = analyze_engagement(context.engagement)
        result.flags.extend(flags)
        result.multipliers["engagement"] = engagement_multiplier(features)
        result.signals["organicEngagement"] = is_organic_engagement(features)
        result.signals["botEngagement"] = is_bot_engagement(features)

    return result
