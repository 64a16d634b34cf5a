"""Shared fixtures for the flagpost tests."""

import io
from datetime import datetime, timezone

import numpy as np
import pytest
from PIL import Image

from flagpost.config import ModeratorConfig
from flagpost.engine import ModerationEngine
from flagpost.providers import NullTextProvider, NullVisionProvider
from flagpost.storage import NullHashStore

NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_gradient(size=64, reverse=False, fmt="PNG"):
    """Encodes a horizontal grayscale gradient image."""
    row = np.linspace(0, 255, size).astype("uint8")
    if reverse:
        row = row[::-1]
    arr = np.tile(row, (size, 1))
    img = Image.fromarray(arr).convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def gradient_png():
    return make_gradient()


@pytest.fixture
def reverse_png():
    return make_gradient(reverse=True)


@pytest.fixture
def engine():
    """An engine with every external collaborator switched off and a fixed clock."""
    return ModerationEngine(
        ModeratorConfig(),
        text_provider=NullTextProvider(),
        vision_provider=NullVisionProvider(),
        store=NullHashStore(),
        clock=lambda: NOW,
    )
