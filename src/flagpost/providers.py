"""Text and vision provider adapters.

Every provider exposes `name`, `is_enabled()` and either `moderate_text(text)`
or `moderate_image(data)`, returning a `ProviderResult`. A provider that is
not configured returns `enabled=False`; a provider whose call fails returns
`enabled=False` with an `error`. Providers never raise past this boundary.
"""

from __future__ import annotations
import json
import logging
import re
from typing import Any, Dict, Optional

import boto3
import requests
from anthropic import Anthropic
from botocore.config import Config as BotoConfig
from openai import OpenAI

from .config import ModeratorConfig, ProviderConfig
from .schema import CategoryScore, ProviderResult

logger = logging.getLogger(__name__)

TEXT_CATEGORY_MAPS: Dict[str, Dict[str, str]] = {
    "openai": {
        "hate": "hate",
        "harassment": "harassment",
        "sexual": "sexual",
        "violence": "violence",
        "self_harm": "self_harm",
        "scam": "scam",
        "spam": "spam",
    },
    "anthropic": {
        "hate": "hate",
        "harassment": "harassment",
        "sexual": "sexual",
        "violence": "violence",
        "self_harm": "self_harm",
        "scam": "scam",
        "spam": "spam",
    },
    "perspective": {
        "TOXICITY": "toxic",
        "SEVERE_TOXICITY": "toxic",
        "IDENTITY_ATTACK": "harassment",
        "INSULT": "harassment",
        "PROFANITY": "toxic",
        "THREAT": "violence",
        "SEXUALLY_EXPLICIT": "sexual",
    },
}

VISION_CATEGORY_MAPS: Dict[str, Dict[str, str]] = {
    "aws-rekognition": {
        "Explicit Nudity": "nsfw",
        "Violence": "violence",
        "Hate Symbols": "hate",
        "Drugs": "drugs",
        "Gambling": "gambling",
        "Tobacco": "tobacco",
        "Rude Gestures": "profanity",
        "Visually Disturbing": "disturbing",
        "Weapons": "weapons",
        "Blood": "blood",
    }
}

PERSPECTIVE_URL = "https://commentanalyzer.googleapis.com/v1alpha1/comments:analyze"
PERSPECTIVE_ATTRIBUTES = (
    "TOXICITY",
    "SEVERE_TOXICITY",
    "IDENTITY_ATTACK",
    "INSULT",
    "PROFANITY",
    "THREAT",
    "SEXUALLY_EXPLICIT",
    "FLIRTATION",
)
PERSPECTIVE_LABELS = {
    "TOXICITY": "Toxic content",
    "SEVERE_TOXICITY": "Severely toxic content",
    "IDENTITY_ATTACK": "Identity attack",
    "INSULT": "Insulting content",
    "PROFANITY": "Profane language",
    "THREAT": "Threatening content",
    "SEXUALLY_EXPLICIT": "Sexually explicit content",
    "FLIRTATION": "Flirtatious content",
}

MODERATION_PROMPT = """You are a content moderation expert. Analyze the following text and identify any concerning content categories.

Text to analyze: "{text}"

Please respond with a JSON object where each key is a content category and the value is an object with:
- "confidence": a number between 0 and 1 indicating your confidence
- "label": a brief description of what you detected

Categories to check for:
- hate: hate speech, discrimination, bigotry
- harassment: bullying, intimidation, targeted abuse
- sexual: explicit sexual content, inappropriate sexual language
- violence: threats of violence, graphic violence, incitement
- self_harm: promotion of self-harm, suicide content
- scam: fraudulent schemes, phishing attempts
- spam: unwanted commercial content, repetitive posting
- misinformation: false claims, conspiracy theories

If no concerning content is found, return an empty object {{}}.

Response (JSON only):"""

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def map_text_category(category: str, provider: str) -> str:
    """Maps a provider-specific text category to a standard one.

    Unknown categories are lower-cased and passed through.
    """
    return TEXT_CATEGORY_MAPS.get(provider, {}).get(category) or category.lower()


def map_vision_category(category: str, provider: str) -> str:
    """Maps a provider-specific vision label to a standard category."""
    return VISION_CATEGORY_MAPS.get(provider, {}).get(category) or category.lower()


def parse_llm_categories(content: str, provider: str) -> Dict[str, CategoryScore]:
    """Parses the JSON object an LLM returned for the moderation prompt.

    The first `{...}` block in the reply is decoded. Entries whose confidence
    is not numeric are dropped; the rest are clamped to [0, 1].

    Args:
        content: The raw completion text.
        provider: The provider name used for category mapping.

    Returns:
        A mapping of standard category to `CategoryScore`.

    Raises:
        ValueError: If the reply holds no decodable JSON object.
    """
    match = JSON_OBJECT_RE.search(content or "")
    if not match:
        return {}
    parsed = json.loads(match.group(0))
    categories: Dict[str, CategoryScore] = {}
    if not isinstance(parsed, dict):
        return categories
    for category, value in parsed.items():
        if not isinstance(value, dict):
            continue
        try:
            confidence = float(value.get("confidence", 0) or 0)
        except (TypeError, ValueError):
            continue
        if confidence != confidence:  # NaN
            continue
        label = value.get("label")
        categories[map_text_category(category, provider)] = CategoryScore(
            confidence=min(max(confidence, 0.0), 1.0),
            label=str(label) if label is not None else category,
        )
    return categories


class TextProvider:
    """Base class of the text (NLP) providers."""

    name = "none"

    def is_enabled(self) -> bool:
        return False

    def moderate_text(self, text: str) -> ProviderResult:
        return ProviderResult.disabled(self.name)


class VisionProvider:
    """Base class of the vision providers."""

    name = "none"

    def is_enabled(self) -> bool:
        return False

    def moderate_image(self, data: bytes) -> ProviderResult:
        return ProviderResult.disabled(self.name)


class NullTextProvider(TextProvider):
    """Used when ML text moderation is switched off."""


class NullVisionProvider(VisionProvider):
    """Used when vision moderation is switched off."""


class OpenAIProvider(TextProvider):
    """Text moderation through an OpenAI chat model."""

    name = "openai"

    def __init__(self, config: ProviderConfig, client: Optional[Any] = None):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self.client = client
        if self.client is None and config.openai_api_key:
            self.client = OpenAI(
                api_key=config.openai_api_key, timeout=config.timeout_seconds
            )

    def is_enabled(self) -> bool:
        return self.client is not None

    def moderate_text(self, text: str) -> ProviderResult:
        if not self.is_enabled():
            return ProviderResult.disabled(self.name, "OpenAI API key not configured")
        try:
            response = self.client.chat.completions.create(
                model=self.config.openai_model,
                max_tokens=self.config.openai_max_tokens,
                temperature=0.1,
                messages=[
                    {"role": "user", "content": MODERATION_PROMPT.format(text=text)}
                ],
            )
            content = response.choices[0].message.content
            if not content:
                raise ValueError("No content in OpenAI response")
            categories = parse_llm_categories(content, self.name)
        except Exception as e:
            self.logger.warning(f"OpenAI moderation failed: {e}")
            return ProviderResult.disabled(self.name, str(e))
        return ProviderResult(enabled=True, categories=categories, provider=self.name)


class AnthropicProvider(TextProvider):
    """Text moderation through an Anthropic Claude model."""

    name = "anthropic"

    def __init__(self, config: ProviderConfig, client: Optional[Any] = None):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self.client = client
        if self.client is None and config.anthropic_api_key:
            self.client = Anthropic(
                api_key=config.anthropic_api_key, timeout=config.timeout_seconds
            )

    def is_enabled(self) -> bool:
        return self.client is not None

    def moderate_text(self, text: str) -> ProviderResult:
        if not self.is_enabled():
            return ProviderResult.disabled(
                self.name, "Anthropic API key not configured"
            )
        try:
            response = self.client.messages.create(
                model=self.config.anthropic_model,
                max_tokens=self.config.anthropic_max_tokens,
                temperature=0.1,
                messages=[
                    {"role": "user", "content": MODERATION_PROMPT.format(text=text)}
                ],
            )
            content = ""
            for block in response.content:
                if block.type == "text":
                    content += block.text
            if not content:
                raise ValueError("No content in Anthropic response")
            categories = parse_llm_categories(content, self.name)
        except Exception as e:
            self.logger.warning(f"Anthropic moderation failed: {e}")
            return ProviderResult.disabled(self.name, str(e))
        return ProviderResult(enabled=True, categories=categories, provider=self.name)


class PerspectiveProvider(TextProvider):
    """Text moderation through Google's Perspective API."""

    name = "perspective"

    def __init__(self, config: ProviderConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.logger = logging.getLogger(self.__class__.__name__)

    def is_enabled(self) -> bool:
        return bool(self.config.perspective_api_key)

    def moderate_text(self, text: str) -> ProviderResult:
        if not self.is_enabled():
            return ProviderResult.disabled(
                self.name, "Perspective API key not configured"
            )
        body = {
            "comment": {"text": text},
            "languages": ["en"],
            "requestedAttributes": {attr: {} for attr in PERSPECTIVE_ATTRIBUTES},
        }
        try:
            response = self.session.post(
                PERSPECTIVE_URL,
                params={"key": self.config.perspective_api_key},
                json=body,
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            self.logger.warning(f"Perspective request failed: {e}")
            return ProviderResult.disabled(self.name, str(e))
        return ProviderResult(
            enabled=True, categories=self.parse_response(data), provider=self.name
        )

    def parse_response(self, data: Any) -> Dict[str, CategoryScore]:
        """Reads `attributeScores[attr].summaryScore.value` for each attribute.

        When several attributes map to the same category the last one wins.
        """
        categories: Dict[str, CategoryScore] = {}
        scores = data.get("attributeScores") if isinstance(data, dict) else None
        if not isinstance(scores, dict):
            return categories
        for attribute, score in scores.items():
            summary = score.get("summaryScore") if isinstance(score, dict) else None
            value = summary.get("value") if isinstance(summary, dict) else None
            if not isinstance(value, (int, float)):
                continue
            categories[map_text_category(attribute, self.name)] = CategoryScore(
                confidence=float(value),
                label=PERSPECTIVE_LABELS.get(attribute, attribute),
            )
        return categories


class RekognitionProvider(VisionProvider):
    """Image moderation through AWS Rekognition `detect_moderation_labels`."""

    name = "aws-rekognition"

    def __init__(self, config: ProviderConfig, client: Optional[Any] = None):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self.client = client
        if self.client is None and self._has_credentials():
            self.client = boto3.client(
                "rekognition",
                region_name=config.aws_region,
                aws_access_key_id=config.aws_access_key_id,
                aws_secret_access_key=config.aws_secret_access_key,
                config=BotoConfig(
                    connect_timeout=config.timeout_seconds,
                    read_timeout=config.timeout_seconds,
                    retries={"max_attempts": 2, "mode": "standard"},
                ),
            )

    def _has_credentials(self) -> bool:
        c = self.config
        return bool(c.aws_access_key_id and c.aws_secret_access_key and c.aws_region)

    def is_enabled(self) -> bool:
        return self.client is not None

    def moderate_image(self, data: bytes) -> ProviderResult:
        if not self.is_enabled():
            return ProviderResult.disabled(self.name, "AWS Rekognition not configured")
        try:
            response = self.client.detect_moderation_labels(
                Image={"Bytes": data},
                MinConfidence=self.config.rekognition_min_confidence,
            )
        except Exception as e:
            self.logger.warning(f"Rekognition request failed: {e}")
            return ProviderResult.disabled(self.name, str(e))
        categories: Dict[str, CategoryScore] = {}
        for label in response.get("ModerationLabels", []):
            name = label.get("Name")
            confidence = label.get("Confidence")
            if not name or not confidence:
                continue
            categories[map_vision_category(name, self.name)] = CategoryScore(
                confidence=confidence / 100, label=name
            )
        return ProviderResult(enabled=True, categories=categories, provider=self.name)


def build_text_provider(config: ModeratorConfig) -> TextProvider:
    """Returns the configured text provider, or the null provider when ML is off."""
    if not config.enable_llm:
        return NullTextProvider()
    name = config.providers.nlp_provider
    if name == "openai":
        return OpenAIProvider(config.providers)
    if name == "anthropic":
        return AnthropicProvider(config.providers)
    if name == "perspective":
        return PerspectiveProvider(config.providers)
    return NullTextProvider()


def build_vision_provider(config: ModeratorConfig) -> VisionProvider:
    """Returns the Rekognition provider when enabled, else the null provider."""
    if not config.enable_rekognition:
        return NullVisionProvider()
    return RekognitionProvider(config.providers)
