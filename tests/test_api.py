"""Tests for the FastAPI application endpoints."""

import pytest
from fastapi.testclient import TestClient

from flagpost.app import RateLimiter, __version__, app
from flagpost.hashing import compute_image_hashes
from flagpost.storage import InMemoryHashStore


@pytest.fixture
def test_client(engine, monkeypatch):
    """Create a test client around the offline engine."""
    monkeypatch.setattr(app.state, "engine", engine)
    monkeypatch.setattr(app.state, "limiter", RateLimiter(1000, 60))
    monkeypatch.setattr(app.state, "max_upload_size", 10_000_000)
    with TestClient(app) as client:
        yield client


def test_health_endpoint(test_client):
    """Test the health check endpoint."""
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "providers": {"ml": False, "vision": False, "storage": False},
    }


def test_version_endpoint(test_client):
    """Test the version endpoint."""
    response = test_client.get("/version")
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == __version__
    assert data["nlp_provider"] == "none"
    assert data["vision_provider"] == "none"
    assert data["store"] == "none"


def test_moderate_scam_text(test_client):
    """Test that scam text is sent for review."""
    response = test_client.post(
        "/moderate", json={"text": "FREE money!!! Click https://bit.ly/abc now"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["label"] == "review"
    assert data["platform"] == "generic"
    categories = {f["category"] for f in data["flags"]}
    assert {"links", "spam"} <= categories
    assert all("adjustedWeight" in f for f in data["flags"])


def test_moderate_benign_text(test_client):
    """Test that benign text is allowed."""
    response = test_client.post(
        "/moderate",
        json={"text": "Lovely day at the beach with friends. See you soon!", "platform": "x"},
    )
    assert response.status_code == 200
    assert response.json() == {"score": 0, "label": "allow", "platform": "x", "flags": []}


def test_moderate_explain_and_debug(test_client):
    """Test the explanation and debug trace options."""
    response = test_client.post(
        "/moderate",
        json={
            "text": "I will kill you",
            "explain": True,
            "debug": True,
            "context": {"account": {"priorViolations": 3}},
        },
    )
    data = response.json()
    assert data["explanation"].startswith("Moderation result:")
    assert data["debug"]["featureMultipliers"]["account"] == pytest.approx(1.6)
    assert "prior_violations" in {f["category"] for f in data["flags"]}


def test_moderate_requires_content(test_client):
    """Test that a request without text or media is rejected."""
    response = test_client.post("/moderate", json={"platform": "x"})
    assert response.status_code == 422


def test_moderate_unknown_platform(test_client):
    """Test that unsupported platform names are rejected."""
    response = test_client.post("/moderate", json={"text": "hi", "platform": "myspace"})
    assert response.status_code == 422


def test_moderate_bad_context(test_client):
    """Test that a malformed context object is rejected."""
    response = test_client.post(
        "/moderate", json={"text": "hi", "context": {"account": "nope"}}
    )
    assert response.status_code == 422
    assert response.json()["detail"][0]["loc"][:3] == ["body", "context", "account"]


@pytest.mark.parametrize(
    "context, field",
    [
        ({"account": {"priorViolations": "5"}}, "priorViolations"),
        ({"account": {"createdAt": "yesterday"}}, "createdAt"),
        ({"network": {"similarTextClusterIds": "abc"}}, "similarTextClusterIds"),
        ({"engagement": {"likes": -1}}, "likes"),
        ({"account": {"isVerified": "yes"}}, "isVerified"),
    ],
)
def test_moderate_context_field_types(test_client, context, field):
    """Test that context fields of the wrong type are rejected, not scored."""
    response = test_client.post("/moderate", json={"text": "hi", "context": context})
    assert response.status_code == 422
    assert field in response.json()["detail"][0]["loc"]


def test_moderate_context_is_scored(test_client):
    """Test that a well-typed context reaches the feature analyzers."""
    response = test_client.post(
        "/moderate",
        json={
            "text": "hello",
            "context": {
                "account": {"createdAt": "2020-01-01T00:00:00Z", "isVerified": True},
                "network": {"similarTextClusterIds": ["c1", "c2", "c3"]},
            },
            "debug": True,
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["debug"]["featureMultipliers"]["network"] == pytest.approx(1.3)
    assert "content_clustering" in {f["category"] for f in data["flags"]}


def test_moderate_existing_hashes(test_client, engine, gradient_png, monkeypatch):
    """Test that caller-supplied hashes are matched like stored ones."""
    monkeypatch.setattr(engine.images, "fetcher", lambda url: gradient_png)
    known = compute_image_hashes(gradient_png).phash
    response = test_client.post(
        "/moderate",
        json={"media": {"url": "https://cdn.example.com/a.png"}, "existingHashes": [known]},
    )
    assert response.status_code == 200
    assert [f["category"] for f in response.json()["flags"]] == ["duplicate"]


def test_moderate_image_upload(test_client, engine, gradient_png, monkeypatch):
    """Test that an uploaded re-post is flagged as a duplicate."""
    store = InMemoryHashStore([compute_image_hashes(gradient_png).phash])
    monkeypatch.setattr(engine, "store", store)
    monkeypatch.setattr(engine.images, "store", store)
    response = test_client.post(
        "/moderate_image",
        files={"file": ("a.png", gradient_png, "image/png")},
        data={"platform": "instagram", "explain": "true"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["platform"] == "instagram"
    assert [f["category"] for f in data["flags"]] == ["duplicate"]
    assert "mediaHash" in data["flags"][0]
    assert "METADATA DETECTIONS:" in data["explanation"]


def test_moderate_image_unsupported_type(test_client):
    """Test that non-image uploads are rejected."""
    response = test_client.post(
        "/moderate_image", files={"file": ("a.txt", b"hello", "text/plain")}
    )
    assert response.status_code == 415


def test_moderate_image_too_large(test_client, gradient_png, monkeypatch):
    """Test that oversized uploads are rejected."""
    monkeypatch.setattr(app.state, "max_upload_size", 10)
    response = test_client.post(
        "/moderate_image", files={"file": ("a.png", gradient_png, "image/png")}
    )
    assert response.status_code == 413


def test_rate_limit(test_client, monkeypatch):
    """Test that requests beyond the limit are refused."""
    monkeypatch.setattr(app.state, "limiter", RateLimiter(2, 60))
    for _ in range(2):
        assert test_client.post("/moderate", json={"text": "hi"}).status_code == 200
    response = test_client.post("/moderate", json={"text": "hi"})
    assert response.status_code == 429


class TestRateLimiter:
    def test_window(self, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr("flagpost.app.time", lambda: clock[0])
        limiter = RateLimiter(1, 10)
        assert limiter.check("a")
        assert not limiter.check("a")
        assert limiter.check("b")
        clock[0] += 11
        assert limiter.check("a")

    def test_cleanup(self):
        limiter = RateLimiter(5, 10)
        limiter.requests["idle"] = [0.0]
        limiter._cleanup_old_entries(100.0)
        assert "idle" not in limiter.requests
