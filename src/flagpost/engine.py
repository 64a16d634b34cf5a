"""The moderation pipeline.

`ModerationEngine.moderate` validates a request, fans out to the rule
detectors, the ML text provider and the media analyzers, merges their flags,
applies the whitelist pass, scores the result and records it. Any unexpected
failure after validation produces a fail-closed `block` result.
"""

from __future__ import annotations
import hashlib
import json
import logging
import re
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple, Union

from .config import ModeratorConfig
from .detectors import RuleDetector
from .hashing import DuplicateMatcher
from .media import (
    ImageAnalyzer,
    KeyframeExtractor,
    MediaAnalysis,
    VideoAnalyzer,
    analyze_media,
)
from .metrics import Metrics, count_provider_error, count_request
from .providers import (
    TextProvider,
    VisionProvider,
    build_text_provider,
    build_vision_provider,
)
from .schema import (
    Context,
    Flag,
    Media,
    ModerationResult,
    ValidationError,
    round_half_up,
)
from .scoring import ScoringEngine, generate_explanation
from .storage import MediaHashStore, build_store, moderation_record

ML_CONFIDENCE_THRESHOLD = 0.6
ML_WEIGHT_SCALE = 40
REINFORCED_FACTOR = 0.7
WHITELIST_FACTOR = 0.5
ERROR_WEIGHT = 100

# Context markers that soften specific categories
WHITELIST_RULES: List[Tuple[Pattern, Tuple[str, ...]]] = [
    (
        re.compile(r"\b(discuss|discussion|warning|awareness|education|learn)\b", re.I),
        ("scam",),
    ),
    (
        re.compile(r"\b(news|report|article|coverage|investigation)\b", re.I),
        ("violence", "hate"),
    ),
    (
        re.compile(r"\b(research|study|analysis|paper|academic|university)\b", re.I),
        ("sexual", "violence"),
    ),
]


@dataclass
class MLTextResult:
    flags: List[Flag] = field(default_factory=list)
    provider: str = "none"
    status: str = "disabled"
    error: Optional[str] = None


def moderate_text_with_ml(provider: TextProvider, text: str) -> MLTextResult:
    """Runs the text provider and keeps the confident categories as `ml` flags.

    Args:
        provider: The configured text provider.
        text: The text to classify.

    Returns:
        The ML flags and the provider status ("enabled", "disabled" or
        "error").
    """
    if not provider.is_enabled():
        return MLTextResult(provider=provider.name, status="disabled")
    result = provider.moderate_text(text)
    if not result.enabled:
        return MLTextResult(provider=provider.name, status="error", error=result.error)
    flags = []
    for category, score in result.categories.items():
        if score.confidence <= ML_CONFIDENCE_THRESHOLD:
            continue
        flags.append(
            Flag(
                source="ml",
                category=category,
                weight=round_half_up(score.confidence * ML_WEIGHT_SCALE),
                message=f"ML detection: {score.label} ({score.confidence * 100:.1f}%)",
                confidence=score.confidence,
                provider=provider.name,
            )
        )
    return MLTextResult(flags=flags, provider=provider.name, status="enabled")


def merge_ml_flags(ml_flags: List[Flag], rule_flags: List[Flag]) -> List[Flag]:
    """Appends ML flags to the rule flags.

    An ML flag whose category a rule already flagged keeps 70% of its weight
    and is annotated "(reinforced by rules)".
    """
    merged = list(rule_flags)
    rule_categories = {f.category for f in rule_flags}
    for flag in ml_flags:
        if flag.category in rule_categories:
            merged.append(
                replace(
                    flag,
                    weight=round_half_up(flag.weight * REINFORCED_FACTOR),
                    message=f"{flag.message} (reinforced by rules)",
                )
            )
        else:
            merged.append(flag)
    return merged


def apply_whitelist(flags: List[Flag], text: Optional[str]) -> List[Flag]:
    """Halves the weight of flags whose category the text puts in a benign context.

    Matching flags are replaced by new records marked `whitelisted=True`;
    no flag is dropped.
    """
    if not text:
        return list(flags)
    softened = set()
    for pattern, categories in WHITELIST_RULES:
        if pattern.search(text):
            softened.update(categories)
    out = []
    for flag in flags:
        if flag.category in softened and not flag.whitelisted:
            flag = replace(
                flag,
                weight=round_half_up(flag.weight * WHITELIST_FACTOR),
                message=f"{flag.message} (whitelisted context)",
                whitelisted=True,
            )
        out.append(flag)
    return out


def log_entry(
    ts: str,
    request_id: str,
    text: Optional[str],
    media_url: Optional[str],
    result: ModerationResult,
    log_path: Optional[str],
    logger: logging.Logger,
):
    """Logs a decision to a file and the console.

    Only SHA-256 digests of the content are written, never the content.

    Args:
        ts: The timestamp of the request.
        request_id: The unique ID of the request.
        text: The moderated text.
        media_url: The moderated media URL.
        result: The decision.
        log_path: An optional path to a JSON-lines log file.
        logger: The logger instance.
    """
    try:
        log_data = {
            "timestamp": ts,
            "request_id": request_id,
            "platform": result.platform,
            "label": result.label,
            "score": result.score,
            "categories": sorted({f.category for f in result.flags}),
            "text_hash": hashlib.sha256((text or "").encode()).hexdigest(),
            "media_hash": hashlib.sha256((media_url or "").encode()).hexdigest(),
        }
        logger.info(json.dumps(log_data))
        if log_path:
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_data) + "\n")
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Log fail: {e}")


def _hash_list(existing_hashes) -> Optional[List[str]]:
    if existing_hashes is None:
        return None
    if not isinstance(existing_hashes, (list, tuple)) or not all(
        isinstance(h, str) for h in existing_hashes
    ):
        raise ValidationError("existingHashes must be a list of strings")
    return list(existing_hashes)


class ModerationEngine:
    """Runs the full moderation pipeline for one request."""

    def __init__(
        self,
        config: Optional[ModeratorConfig] = None,
        detector: Optional[RuleDetector] = None,
        text_provider: Optional[TextProvider] = None,
        vision_provider: Optional[VisionProvider] = None,
        store: Optional[MediaHashStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        keyframe_extractor: Optional[KeyframeExtractor] = None,
        fetcher: Optional[Callable[[str], bytes]] = None,
    ):
        """Initializes the engine and its collaborators.

        Args:
            config: The moderator configuration. Defaults to `ModeratorConfig()`.
            detector: The rule detector set.
            text_provider: The ML text provider. Built from `config` when None.
            vision_provider: The vision provider. Built from `config` when None.
            store: The media hash store. Built from `config` when None.
            clock: Returns the current time for context analysis.
            keyframe_extractor: Replaces ffmpeg keyframe extraction.
            fetcher: Replaces HTTP media download.
        """
        self.config = config or ModeratorConfig()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.detector = detector or RuleDetector()
        self.text_provider = text_provider or build_text_provider(self.config)
        self.vision_provider = vision_provider or build_vision_provider(self.config)
        self.store = store or build_store(self.config)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.scorer = ScoringEngine(self.config, clock=self.clock)
        self.metrics = Metrics()

        matcher = DuplicateMatcher(
            self.config.thresholds.duplicate, self.config.media.match_policy
        )
        limit = self.config.storage.recent_hash_limit
        self.images = ImageAnalyzer(
            self.config.media,
            matcher,
            store=self.store,
            vision=self.vision_provider,
            recent_limit=limit,
            fetcher=fetcher,
        )
        self.videos = VideoAnalyzer(
            self.config.media,
            matcher,
            store=self.store,
            vision=self.vision_provider,
            recent_limit=limit,
            extractor=keyframe_extractor,
        )

    def provider_status(self) -> Dict[str, bool]:
        return {
            "ml": self.text_provider.is_enabled(),
            "vision": self.vision_provider.is_enabled(),
            "storage": self.store.is_enabled(),
        }

    def moderate(
        self,
        text: Optional[str] = None,
        media: Optional[Union[Media, Dict[str, Any]]] = None,
        platform: Optional[str] = "generic",
        context: Optional[Union[Context, Dict[str, Any]]] = None,
        explain: bool = False,
        debug: Optional[bool] = None,
        existing_hashes: Optional[List[str]] = None,
    ) -> ModerationResult:
        """Moderates a piece of text and/or media.

        Args:
            text: The post text.
            media: A `Media` or a `{"url", "type"}` mapping.
            platform: Platform name for thresholds and category weights.
            context: A `Context` or its JSON form.
            explain: Attach a human-readable explanation.
            debug: Overrides `config.debug` for the debug trace.
            existing_hashes: Extra perceptual hashes to check the media
                against, in addition to the stored ones.

        Returns:
            The `ModerationResult`.

        Raises:
            ValidationError: If neither text nor media is given, or the media
                or context has an invalid shape.
        """
        media, context = self._validate(text, media, context)
        existing_hashes = _hash_list(existing_hashes)
        count_request("moderate")
        return self._run(
            text, media, None, platform, context, explain, debug, existing_hashes
        )

    def moderate_media_bytes(
        self,
        data: bytes,
        platform: Optional[str] = "generic",
        context: Optional[Union[Context, Dict[str, Any]]] = None,
        text: Optional[str] = None,
        explain: bool = False,
        debug: Optional[bool] = None,
        existing_hashes: Optional[List[str]] = None,
    ) -> ModerationResult:
        """Moderates an uploaded image given as bytes."""
        if not data:
            raise ValidationError("Empty image upload")
        _, context = self._validate(text, None, context, media_required=False)
        existing_hashes = _hash_list(existing_hashes)
        count_request("moderate_image")
        return self._run(
            text, None, data, platform, context, explain, debug, existing_hashes
        )

    def _validate(self, text, media, context, media_required: bool = True):
        if isinstance(media, dict):
            if not media.get("url"):
                raise ValidationError("media.url is required")
            media = Media(url=media["url"], type=media.get("type", "image"))
        if media_required and not text and media is None:
            raise ValidationError("Either text or media must be provided")
        if isinstance(context, dict):
            context = Context.from_dict(context)
        return media, context

    def _run(
        self,
        text: Optional[str],
        media: Optional[Media],
        image_data: Optional[bytes],
        platform: Optional[str],
        context: Optional[Context],
        explain: bool,
        debug: Optional[bool],
        existing_hashes: Optional[List[str]] = None,
    ) -> ModerationResult:
        start = time.perf_counter()
        request_id = str(uuid.uuid4())
        platform = platform or "generic"
        failed = False
        media_hash = None
        try:
            result, media_hash = self._pipeline(
                text,
                media,
                image_data,
                platform,
                context,
                debug,
                start,
                existing_hashes,
            )
        except Exception as e:
            self.logger.exception(f"Moderation engine error: {e}")
            result = self._fail_closed(e, platform, debug)
            failed = True

        if explain:
            result.explanation = generate_explanation(result)
        self.metrics.record(result, failed=failed)
        log_entry(
            self.clock().isoformat(),
            request_id,
            text,
            media.url if media else None,
            result,
            self.config.log_path,
            self.logger,
        )
        if self.store.is_enabled() and not failed:
            account_id = context.account.id if context and context.account else None
            try:
                self.store.save_moderation_result(
                    moderation_record(result, account_id, media_hash)
                )
            except Exception as e:
                self.logger.warning(f"Failed to save moderation result: {e}")
        return result

    def _pipeline(
        self, text, media, image_data, platform, context, debug, start, existing_hashes=None
    ):
        providers: Dict[str, str] = {}
        warnings: List[str] = []
        timings: Dict[str, float] = {}

        def timed(name, fn, *args, **kwargs):
            t0 = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                timings[name] = round((time.perf_counter() - t0) * 1000, 3)

        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="flagpost") as pool:
            rules_f = pool.submit(timed, "rules", self.detector.run_all, text or "")
            ml_f = (
                pool.submit(timed, "ml", moderate_text_with_ml, self.text_provider, text)
                if text
                else None
            )
            media_f = None
            if image_data is not None:
                media_f = pool.submit(
                    timed,
                    "media",
                    self.images.analyze,
                    image_data,
                    None,
                    platform,
                    existing_hashes,
                )
            elif media is not None:
                media_f = pool.submit(
                    timed,
                    "media",
                    analyze_media,
                    media,
                    self.images,
                    self.videos,
                    platform,
                    existing_hashes,
                )
            rule_flags = rules_f.result()
            ml = ml_f.result() if ml_f else None
            media_result: Optional[MediaAnalysis] = media_f.result() if media_f else None

        flags = list(rule_flags)
        providers["rules"] = "enabled"
        if ml is not None:
            providers["ml"] = ml.status
            if ml.status == "error":
                count_provider_error(ml.provider)
                warnings.append(f"{ml.provider} provider error: {ml.error}")
            flags = merge_ml_flags(ml.flags, flags)

        media_hash = None
        if media_result is not None:
            flags.extend(media_result.flags)
            warnings.extend(media_result.warnings)
            media_hash = media_result.media_hash
            # vision never ran when the media could not be fetched or decoded
            status = media_result.vision_status or (
                "skipped" if self.vision_provider.is_enabled() else "disabled"
            )
            providers["vision"] = status
            if status == "error":
                count_provider_error(self.vision_provider.name)
        providers["storage"] = "enabled" if self.store.is_enabled() else "disabled"

        flags = apply_whitelist(flags, text)

        result = self.scorer.score(
            flags,
            context=context,
            platform=platform,
            providers=providers,
            warnings=warnings,
            debug=debug,
        )
        if result.debug is not None:
            result.debug["timings"].update(timings)
            result.debug["timings"]["total"] = round(
                (time.perf_counter() - start) * 1000, 3
            )
        return result, media_hash

    def _fail_closed(
        self, error: Exception, platform: str, debug: Optional[bool]
    ) -> ModerationResult:
        flag = Flag(
            source="rule",
            category="error",
            weight=ERROR_WEIGHT,
            message=f"Moderation engine error: {error}",
            adjusted_weight=ERROR_WEIGHT,
        )
        result = ModerationResult(
            score=100,
            label="block",
            platform=platform if platform in self.config.platforms else "generic",
            flags=[flag],
        )
        if self.config.debug if debug is None else debug:
            result.debug = {"error": str(error), "providers": {}, "timings": {}}
        return result
