"""Aggregation and scoring of moderation flags.

`ScoringEngine.score` turns a complete flag list plus optional context into
a `ModerationResult`:

1. Context analyzers add metadata flags and four risk multipliers.
2. Each flag gets `adjusted_weight = weight x source weight x platform
   category weight`.
3. The base score is the sum of adjusted weights, trust boosts included.
4. The base score is multiplied by the four context multipliers.
5. The result is clamped to [0, 100]. The label compares the clamped value
   against the platform thresholds before rounding; the reported score is
   rounded half-up.
"""

from __future__ import annotations
import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .config import ModeratorConfig
from .features import DIMENSIONS, analyze_context
from .schema import Context, Flag, ModerationResult, round_half_up


def _format_weight(weight: float) -> str:
    if isinstance(weight, float) and weight.is_integer():
        return str(int(weight))
    return str(weight)


def generate_explanation(result: ModerationResult) -> str:
    """Renders a result as a human-readable justification grouped by source.

    Args:
        result: The moderation result.

    Returns:
        A multi-line string. Sources appear in the order of their first flag.
    """
    header = f"Moderation result: {result.label.upper()} (Score: {result.score}/100)\n\n"
    if not result.flags:
        return header + "No issues detected."

    by_source: "OrderedDict[str, List[Flag]]" = OrderedDict()
    for flag in result.flags:
        by_source.setdefault(flag.source, []).append(flag)

    lines = [header.rstrip("\n"), ""]
    for source, flags in by_source.items():
        lines.append(f"{source.upper()} DETECTIONS:")
        for flag in flags:
            confidence = (
                f" ({flag.confidence * 100:.1f}% confidence)" if flag.confidence else ""
            )
            lines.append(
                f"• {flag.message}{confidence} [Weight: {_format_weight(flag.weight)}]"
            )
        lines.append("")
    return "\n".join(lines).strip()


class ScoringEngine:
    """Scores flag lists against a `ModeratorConfig`."""

    def __init__(
        self,
        config: ModeratorConfig,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initializes the engine.

        Args:
            config: The moderator configuration.
            clock: Returns the current time for the time-dependent context
                analyzers. Defaults to UTC now.
        """
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(self.__class__.__name__)

    def adjust(self, flag: Flag, platform: Optional[str] = None) -> Flag:
        """Returns a copy of `flag` with `adjusted_weight` populated."""
        category_weight = self.config.platform(platform).weights.get(flag.category, 1.0)
        source_weight = self.config.weights.for_source(flag.source)
        return flag.with_adjusted_weight(flag.weight * source_weight * category_weight)

    def label_for(self, value: float, platform: Optional[str] = None) -> str:
        review, block = self.config.thresholds_for(platform)
        if value >= block:
            return "block"
        if value >= review:
            return "review"
        return "allow"

    def score(
        self,
        flags: List[Flag],
        context: Optional[Context] = None,
        platform: Optional[str] = None,
        providers: Optional[Dict[str, str]] = None,
        warnings: Optional[List[str]] = None,
        debug: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> ModerationResult:
        """Scores a complete flag list.

        Args:
            flags: Flags from detectors, providers and media analysis.
            context: Optional author and post context.
            platform: Platform name; unknown names fall back to "generic".
            providers: Provider statuses to record in the debug trace.
            warnings: Pipeline warnings to record in the debug trace.
            debug: Overrides `config.debug` for this call.
            now: Reference time for the context analyzers.

        Returns:
            The `ModerationResult`.
        """
        start = time.perf_counter()
        platform = platform if platform in self.config.platforms else "generic"

        analysis = analyze_context(
            context,
            self.config.account,
            self.config.temporal,
            now or self.clock(),
        )
        adjusted = [self.adjust(f, platform) for f in list(flags) + analysis.flags]

        base_score = sum(f.adjusted_weight for f in adjusted)
        final_score = base_score * analysis.combined_multiplier
        clamped = min(max(final_score, 0.0), 100.0)
        label = self.label_for(clamped, platform)

        result = ModerationResult(
            score=round_half_up(clamped),
            label=label,
            platform=platform,
            flags=adjusted,
        )
        if self.config.debug if debug is None else debug:
            result.debug = self._trace(
                start, analysis.multipliers, base_score, providers, warnings
            )
            if analysis.signals:
                result.debug["behaviorSignals"] = dict(analysis.signals)
        return result

    def _trace(
        self,
        start: float,
        multipliers: Dict[str, float],
        base_score: float,
        providers: Optional[Dict[str, str]],
        warnings: Optional[List[str]],
    ) -> Dict[str, Any]:
        trace: Dict[str, Any] = {
            "providers": dict(providers or {}),
            "timings": {"scoring": round((time.perf_counter() - start) * 1000, 3)},
            "featureMultipliers": {name: multipliers[name] for name in DIMENSIONS},
            "baseScore": base_score,
        }
        if warnings:
            trace["warnings"] = list(warnings)
        return trace
