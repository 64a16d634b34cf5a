"""Tests for the end-to-end moderation pipeline."""

import json
import logging
from datetime import timedelta

import pytest

from conftest import NOW, make_gradient
from flagpost.config import ModeratorConfig
from flagpost.engine import (
    ModerationEngine,
    apply_whitelist,
    log_entry,
    merge_ml_flags,
    moderate_text_with_ml,
)
from flagpost.hashing import compute_image_hashes
from flagpost.media import Keyframe, MediaFetchError
from flagpost.providers import (
    NullTextProvider,
    NullVisionProvider,
    TextProvider,
    VisionProvider,
)
from flagpost.schema import (
    CategoryScore,
    Flag,
    Media,
    ModerationResult,
    ProviderResult,
    ValidationError,
)
from flagpost.storage import InMemoryHashStore, NullHashStore

SCAM_TEXT = "FREE money!!! Click https://bit.ly/abc now"
BENIGN_TEXT = "Lovely day at the beach with friends. See you soon!"


class FakeTextProvider(TextProvider):
    name = "fake"

    def __init__(self, categories=None, error=None):
        self.categories = categories or {}
        self.error = error
        self.calls = []

    def is_enabled(self):
        return True

    def moderate_text(self, text):
        self.calls.append(text)
        if self.error:
            return ProviderResult.disabled(self.name, self.error)
        return ProviderResult(
            enabled=True,
            categories={
                k: CategoryScore(confidence=c, label=k.title())
                for k, c in self.categories.items()
            },
            provider=self.name,
        )


class CountingVision(VisionProvider):
    name = "counting"

    def __init__(self):
        self.calls = 0

    def is_enabled(self):
        return True

    def moderate_image(self, data):
        self.calls += 1
        return ProviderResult(enabled=True, categories={}, provider=self.name)


class BrokenDetector:
    def run_all(self, text):
        raise RuntimeError("detector exploded")


def make_engine(**kwargs):
    kwargs.setdefault("text_provider", NullTextProvider())
    kwargs.setdefault("vision_provider", NullVisionProvider())
    kwargs.setdefault("store", NullHashStore())
    return ModerationEngine(
        kwargs.pop("config", ModeratorConfig()), clock=lambda: NOW, **kwargs
    )


def categories(result):
    return [f.category for f in result.flags]


class TestTextModeration:
    """Tests for rule-only text moderation."""

    def test_scam_text_is_not_allowed(self, engine):
        result = engine.moderate(text=SCAM_TEXT)
        assert "links" in categories(result)
        assert "spam" in categories(result)
        assert result.label != "allow"

    def test_pii(self, engine):
        result = engine.moderate(text="Contact john@example.com or 555-123-4567")
        assert "pii" in categories(result)

    def test_benign_text(self, engine):
        result = engine.moderate(text=BENIGN_TEXT)
        assert result.label == "allow"
        assert result.flags == []

    def test_threats_block(self, engine):
        result = engine.moderate(text="I want to die, I will kill you")
        assert result.score == 70
        assert result.label == "block"

    def test_every_flag_has_adjusted_weight(self, engine):
        result = engine.moderate(text=SCAM_TEXT)
        assert all(f.adjusted_weight is not None for f in result.flags)

    def test_idempotent(self, engine):
        first = engine.moderate(text=SCAM_TEXT, platform="x")
        second = engine.moderate(text=SCAM_TEXT, platform="x")
        assert first.to_dict() == second.to_dict()

    def test_explanation(self, engine):
        result = engine.moderate(text=SCAM_TEXT, explain=True)
        assert result.explanation.startswith("Moderation result: REVIEW")
        assert "RULE DETECTIONS:" in result.explanation

    def test_metrics_recorded(self, engine):
        engine.moderate(text=SCAM_TEXT)
        engine.moderate(text=BENIGN_TEXT)
        summary = engine.metrics.summary()
        assert summary["total"] == 2
        assert summary["labels"] == {"review": 1, "allow": 1}
        assert summary["block_rate"] == 0
        assert summary["failures"] == 0


class TestValidation:
    """Tests for request validation."""

    def test_requires_text_or_media(self, engine):
        with pytest.raises(ValidationError):
            engine.moderate()
        with pytest.raises(ValidationError):
            engine.moderate(text="")

    def test_media_requires_url(self, engine):
        with pytest.raises(ValidationError):
            engine.moderate(media={"type": "image"})

    def test_bad_context_shape(self, engine):
        with pytest.raises(ValidationError):
            engine.moderate(text="hi", context={"account": "nope"})

    @pytest.mark.parametrize(
        "context",
        [
            {"account": {"priorViolations": "5"}},
            {"account": {"priorViolations": True}},
            {"account": {"createdAt": "yesterday"}},
            {"account": {"isVerified": "no"}},
            {"postingHistory": {"lastHourCount": -3}},
            {"network": {"similarTextClusterIds": "abc"}},
            {"crossPlatform": {"similarPostHashes": [1, 2]}},
            {"engagement": {"likes": 2.5}},
        ],
    )
    def test_bad_context_field_types(self, engine, context):
        with pytest.raises(ValidationError, match=r"context\."):
            engine.moderate(text="hi", context=context)

    def test_snake_case_context(self, engine):
        result = engine.moderate(
            text=BENIGN_TEXT, context={"posting_history": {"last_hour_count": 20}}
        )
        assert "burst_posting" in categories(result)

    def test_existing_hashes_must_be_strings(self, engine):
        with pytest.raises(ValidationError, match="existingHashes"):
            engine.moderate(
                media={"url": "https://cdn.example.com/a.png"}, existing_hashes="abc"
            )

    def test_empty_upload(self, engine):
        with pytest.raises(ValidationError):
            engine.moderate_media_bytes(b"")


class TestContext:
    """Tests for context-driven scoring."""

    def test_behavior_signals_in_debug(self, engine):
        context = {
            "postingHistory": {"lastHourCount": 20},
            "network": {"similarTextClusterIds": ["c1"]},
            "crossPlatform": {"similarPostHashes": ["h1"]},
        }
        result = engine.moderate(text=BENIGN_TEXT, context=context, debug=True)
        assert result.debug["behaviorSignals"] == {
            "automatedPosting": True,
            "coordinatedActivity": True,
        }

    def test_no_signals_without_context(self, engine):
        result = engine.moderate(text=BENIGN_TEXT, debug=True)
        assert "behaviorSignals" not in result.debug

    def test_risky_context(self, engine):
        context = {
            "account": {
                "createdAt": (NOW - timedelta(days=1)).isoformat(),
                "priorViolations": 0,
            },
            "postingHistory": {"lastHourCount": 20, "last24hCount": 100},
            "engagement": {"likes": 2000, "replies": 0},
        }
        result = engine.moderate(text=BENIGN_TEXT, context=context, debug=True)
        metadata = [f.category for f in result.flags if f.source == "metadata"]
        assert {"new_account", "burst_posting", "suspicious_engagement"} <= set(metadata)
        multipliers = result.debug["featureMultipliers"]
        combined = 1.0
        for value in multipliers.values():
            combined *= value
        assert combined > 1.0

    def test_debug_trace(self, engine):
        result = engine.moderate(text=SCAM_TEXT, debug=True)
        assert result.debug["providers"] == {
            "rules": "enabled",
            "ml": "disabled",
            "storage": "disabled",
        }
        assert {"rules", "ml", "scoring", "total"} <= set(result.debug["timings"])


class TestMLMerge:
    """Tests for combining ML flags with rule flags."""

    def test_confident_categories_become_flags(self):
        provider = FakeTextProvider({"sexual": 0.75, "hate": 0.5})
        ml = moderate_text_with_ml(provider, "text")
        assert ml.status == "enabled"
        assert [(f.category, f.weight) for f in ml.flags] == [("sexual", 30)]
        assert ml.flags[0].source == "ml"
        assert ml.flags[0].provider == "fake"

    def test_disabled_provider(self):
        ml = moderate_text_with_ml(NullTextProvider(), "text")
        assert ml.status == "disabled"
        assert ml.flags == []

    def test_reinforced_by_rules(self):
        rule_flags = [Flag(source="rule", category="spam", weight=18, message="Scam")]
        ml_flags = [
            Flag(source="ml", category="spam", weight=36, message="ML spam"),
            Flag(source="ml", category="sexual", weight=30, message="ML sexual"),
        ]
        merged = merge_ml_flags(ml_flags, rule_flags)
        assert merged[0] is rule_flags[0]
        assert merged[1].weight == 25
        assert merged[1].message == "ML spam (reinforced by rules)"
        assert merged[2].weight == 30

    def test_engine_merges_provider_flags(self):
        provider = FakeTextProvider({"spam": 0.9, "sexual": 0.75, "hate": 0.5})
        result = make_engine(text_provider=provider).moderate(text=SCAM_TEXT)
        ml = {f.category: f for f in result.flags if f.source == "ml"}
        assert set(ml) == {"spam", "sexual"}
        assert ml["spam"].weight == 25
        assert "reinforced by rules" in ml["spam"].message
        assert provider.calls == [SCAM_TEXT]

    def test_provider_error_is_reported(self):
        provider = FakeTextProvider(error="timeout")
        result = make_engine(text_provider=provider).moderate(text=SCAM_TEXT, debug=True)
        assert result.debug["providers"]["ml"] == "error"
        assert "fake provider error: timeout" in result.debug["warnings"]
        assert "links" in categories(result)


class TestWhitelist:
    """Tests for whitelist softening."""

    def test_news_softens_violence(self, engine):
        result = engine.moderate(text="News report: he said I will kill you")
        violence = [f for f in result.flags if f.category == "violence"][0]
        assert violence.whitelisted
        assert violence.weight == 15
        assert violence.message.endswith("(whitelisted context)")
        assert result.label == "allow"

    def test_half_weight_rounds_up(self):
        flags = [Flag(source="ml", category="scam", weight=25, message="ML scam")]
        out = apply_whitelist(flags, "a warning about scams")
        assert out[0].weight == 13
        assert flags[0].weight == 25

    def test_unrelated_categories_untouched(self):
        flags = [Flag(source="rule", category="pii", weight=15, message="Email")]
        assert apply_whitelist(flags, "news report") == flags

    def test_no_text(self):
        flags = [Flag(source="rule", category="violence", weight=30, message="x")]
        assert apply_whitelist(flags, None) == flags


class TestFailClosed:
    """Tests for the fail-closed behavior on internal errors."""

    def test_detector_failure_blocks(self):
        engine = make_engine(detector=BrokenDetector())
        result = engine.moderate(text="anything", debug=True)
        assert result.score == 100
        assert result.label == "block"
        assert len(result.flags) == 1
        flag = result.flags[0]
        assert flag.category == "error"
        assert flag.weight == 100
        assert "detector exploded" in flag.message
        assert result.debug["error"] == "detector exploded"
        assert engine.metrics.summary()["failures"] == 1

    def test_failure_is_not_persisted(self):
        store = InMemoryHashStore()
        make_engine(detector=BrokenDetector(), store=store).moderate(text="anything")
        assert not store.results


class TestMedia:
    """Tests for image and video moderation through the engine."""

    def test_reposted_image_is_flagged(self, gradient_png):
        known = compute_image_hashes(gradient_png).phash
        store = InMemoryHashStore([known])
        engine = make_engine(store=store, fetcher=lambda url: gradient_png)
        result = engine.moderate(
            media={"url": "https://cdn.example.com/a.png", "type": "image"},
            context={"account": {"id": "acct-1"}},
        )
        dup = [f for f in result.flags if f.category == "duplicate"]
        assert len(dup) == 1
        assert dup[0].media_hash == known
        assert dup[0].adjusted_weight == pytest.approx(6)
        assert result.score == 6

        saved = store.list_recent_media_hashes("image")
        assert saved[0].url == "https://cdn.example.com/a.png"
        assert len(saved) == 2
        record = store.results[0]
        assert record["media_hash"] == known
        assert record["account_id"] == "acct-1"
        assert record["categories"]["duplicate"] == pytest.approx(6)

    def test_fresh_image_is_not_flagged(self, gradient_png, reverse_png):
        store = InMemoryHashStore([compute_image_hashes(reverse_png).phash])
        engine = make_engine(store=store, fetcher=lambda url: gradient_png)
        result = engine.moderate(media=Media(url="https://cdn.example.com/b.png"))
        assert result.flags == []

    def test_uploaded_bytes(self, gradient_png):
        store = InMemoryHashStore([compute_image_hashes(gradient_png).phash])
        result = make_engine(store=store).moderate_media_bytes(gradient_png)
        assert categories(result) == ["duplicate"]

    def test_video_keyframe_duplicate(self, gradient_png, reverse_png):
        store = InMemoryHashStore(
            [compute_image_hashes(reverse_png).phash], known_type="video"
        )
        frames = [Keyframe(0, gradient_png), Keyframe(1, reverse_png)]
        engine = make_engine(store=store, keyframe_extractor=lambda url: frames)
        result = engine.moderate(media={"url": "https://cdn.example.com/v.mp4", "type": "video"})
        dup = [f for f in result.flags if f.category == "duplicate"]
        assert [f.frame_index for f in dup] == [1]
        assert "video frame" in dup[0].message
        assert len(store.list_recent_media_hashes("video")) == 3

    def test_fetch_failure_degrades_to_warning(self):
        def fetcher(url):
            raise MediaFetchError("connection refused")

        result = make_engine(fetcher=fetcher).moderate(
            text=BENIGN_TEXT,
            media={"url": "https://cdn.example.com/gone.png"},
            debug=True,
        )
        assert result.label == "allow"
        assert any("connection refused" in w for w in result.debug["warnings"])
        assert result.debug["providers"]["vision"] == "disabled"

    def test_fetch_failure_with_vision_enabled_reports_skipped(self):
        def fetcher(url):
            raise MediaFetchError("connection refused")

        vision = CountingVision()
        result = make_engine(vision_provider=vision, fetcher=fetcher).moderate(
            media={"url": "https://cdn.example.com/gone.png"}, debug=True
        )
        assert vision.calls == 0
        assert result.debug["providers"]["vision"] == "skipped"

    def test_vision_enabled_after_successful_fetch(self, gradient_png):
        vision = CountingVision()
        engine = make_engine(vision_provider=vision, fetcher=lambda url: gradient_png)
        result = engine.moderate(
            media={"url": "https://cdn.example.com/a.png"}, debug=True
        )
        assert vision.calls == 1
        assert result.debug["providers"]["vision"] == "enabled"

    def test_local_video_path_is_not_extracted(self):
        seen = []
        engine = make_engine(keyframe_extractor=lambda url: seen.append(url) or [])
        result = engine.moderate(
            text=BENIGN_TEXT, media={"url": "/etc/passwd", "type": "video"}, debug=True
        )
        assert seen == []
        assert result.label == "allow"
        assert "video analysis skipped: Unsupported media URL: /etc/passwd" in (
            result.debug["warnings"]
        )

    def test_existing_hashes(self, gradient_png):
        engine = make_engine(fetcher=lambda url: gradient_png)
        known = compute_image_hashes(gradient_png).phash
        result = engine.moderate(
            media={"url": "https://cdn.example.com/a.png"}, existing_hashes=[known]
        )
        assert categories(result) == ["duplicate"]

    def test_existing_hashes_for_uploads(self, gradient_png):
        known = compute_image_hashes(gradient_png).phash
        result = make_engine().moderate_media_bytes(gradient_png, existing_hashes=[known])
        assert categories(result) == ["duplicate"]

    def test_jpeg_repost_with_different_size(self, gradient_png):
        store = InMemoryHashStore([compute_image_hashes(gradient_png).phash])
        jpeg = make_gradient(size=200, fmt="JPEG")
        engine = make_engine(store=store, fetcher=lambda url: jpeg)
        result = engine.moderate(media={"url": "https://cdn.example.com/c.jpg"})
        assert "duplicate" in categories(result)


class TestProviderStatus:
    def test_all_disabled(self, engine):
        assert engine.provider_status() == {
            "ml": False,
            "vision": False,
            "storage": False,
        }

    def test_enabled_collaborators(self):
        engine = make_engine(text_provider=FakeTextProvider(), store=InMemoryHashStore())
        assert engine.provider_status() == {"ml": True, "vision": False, "storage": True}


class TestLogEntry:
    """Tests for the decision log."""

    def test_writes_hashes_not_content(self, tmp_path):
        path = tmp_path / "decisions.jsonl"
        result = ModerationResult(score=42, label="review", platform="x")
        log_entry(
            "2024-06-15T12:00:00",
            "req-1",
            "secret text",
            None,
            result,
            str(path),
            logging.getLogger("test"),
        )
        line = json.loads(path.read_text().strip())
        assert line["request_id"] == "req-1"
        assert line["label"] == "review"
        assert "secret text" not in path.read_text()
        assert len(line["text_hash"]) == 64

    def test_engine_appends_to_log(self, tmp_path):
        path = tmp_path / "decisions.jsonl"
        engine = make_engine(config=ModeratorConfig(log_path=str(path)))
        engine.moderate(text=SCAM_TEXT)
        engine.moderate(text=BENIGN_TEXT)
        assert len(path.read_text().splitlines()) == 2
