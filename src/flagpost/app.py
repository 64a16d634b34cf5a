"""FastAPI application for the flagpost moderation service.

It exposes `/moderate` for text and media URLs, `/moderate_image` for image
uploads, and `/health` and `/version`. The engine is built once at startup
from the environment.
"""
from __future__ import annotations
import os
from collections import defaultdict
from threading import Lock
from time import time
from typing import List, Literal, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from prometheus_client import make_asgi_app
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)

from .config import ModeratorConfig
from .engine import ModerationEngine
from .metrics import PROMETHEUS_ENABLED
from .schema import ValidationError, parse_timestamp

__version__ = "1.0.0"

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", "10000000"))
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "60"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))


class RateLimiter:
    """A thread-safe in-memory rate limiter."""

    def __init__(self, max_requests: int, window: int):
        """Initializes the RateLimiter.

        Args:
            max_requests: The maximum number of requests allowed in the window.
            window: The time window in seconds.
        """
        self.requests = defaultdict(list)
        self.max_requests = max_requests
        self.window = window
        self.lock = Lock()

    def check(self, client_id: str) -> bool:
        """Records a request and reports whether it is within the limit.

        Args:
            client_id: The identifier for the client.

        Returns:
            True if the request is allowed, False otherwise.
        """
        with self.lock:
            now = time()
            self.requests[client_id] = [
                t for t in self.requests[client_id] if now - t < self.window
            ]
            if len(self.requests[client_id]) >= self.max_requests:
                return False
            self.requests[client_id].append(now)
            if len(self.requests) > 10000:
                self._cleanup_old_entries(now)
            return True

    def _cleanup_old_entries(self, now: float):
        """Drops clients that have been idle for two windows."""
        to_remove = [
            cid
            for cid, times in self.requests.items()
            if not times or now - times[-1] > self.window * 2
        ]
        for cid in to_remove:
            del self.requests[cid]


app = FastAPI(title="flagpost moderation API", version=__version__)
app.state.limiter = RateLimiter(RATE_LIMIT_MAX, RATE_LIMIT_WINDOW)
app.state.max_upload_size = MAX_UPLOAD_BYTES
app.state.engine = None

if PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


@app.on_event("startup")
async def startup_event():
    """Builds the moderation engine from the environment at application startup."""
    if app.state.engine is None:
        app.state.engine = ModerationEngine(ModeratorConfig.from_env())


def get_engine() -> ModerationEngine:
    if app.state.engine is None:
        app.state.engine = ModerationEngine(ModeratorConfig.from_env())
    return app.state.engine


def check_rate_limit(request: Request):
    """Checks if the client has exceeded the rate limit.

    Args:
        request: The incoming request.

    Raises:
        HTTPException: If the rate limit is exceeded.
    """
    trust_proxy = os.getenv("TRUST_XFF", "0") == "1"
    client_id = request.client.host if request.client else "unknown"
    if trust_proxy:
        fwd = request.headers.get("x-forwarded-for")
        if fwd:
            client_id = fwd.split(",")[0].strip()
    if not app.state.limiter.check(client_id):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


class MediaModel(BaseModel):
    url: str
    type: Literal["image", "video"] = "image"


class ContextSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AccountModel(ContextSection):
    id: Optional[StrictStr] = None
    created_at: Optional[StrictStr] = Field(None, alias="createdAt")
    is_verified: Optional[StrictBool] = Field(None, alias="isVerified")
    prior_violations: Optional[StrictInt] = Field(None, alias="priorViolations", ge=0)

    @field_validator("created_at")
    @classmethod
    def iso_timestamp(cls, value):
        if value is not None:
            try:
                parse_timestamp(value)
            except ValueError:
                raise ValueError("createdAt must be an ISO-8601 timestamp")
        return value


class PostingHistoryModel(ContextSection):
    last_24h_count: Optional[StrictInt] = Field(None, alias="last24hCount", ge=0)
    last_hour_count: Optional[StrictInt] = Field(None, alias="lastHourCount", ge=0)


class NetworkModel(ContextSection):
    similar_text_cluster_ids: List[StrictStr] = Field(
        default_factory=list, alias="similarTextClusterIds"
    )


class CrossPlatformModel(ContextSection):
    similar_post_hashes: List[StrictStr] = Field(
        default_factory=list, alias="similarPostHashes"
    )


class EngagementModel(ContextSection):
    replies: Optional[StrictInt] = Field(None, ge=0)
    likes: Optional[StrictInt] = Field(None, ge=0)
    unique_repliers: Optional[StrictInt] = Field(None, alias="uniqueRepliers", ge=0)


class ContextModel(ContextSection):
    """Author and post context. Every section is optional."""

    account: Optional[AccountModel] = None
    posting_history: Optional[PostingHistoryModel] = Field(None, alias="postingHistory")
    network: Optional[NetworkModel] = None
    cross_platform: Optional[CrossPlatformModel] = Field(None, alias="crossPlatform")
    engagement: Optional[EngagementModel] = None


class ModerateRequest(BaseModel):
    """The request model for the /moderate endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    media: Optional[MediaModel] = None
    platform: Literal["generic", "x", "instagram", "tiktok"] = "generic"
    context: Optional[ContextModel] = None
    existing_hashes: Optional[List[StrictStr]] = Field(None, alias="existingHashes")
    explain: bool = False
    debug: Optional[bool] = None

    @model_validator(mode="after")
    def require_content(self):
        if not self.text and self.media is None:
            raise ValueError("Either text or media must be provided")
        return self


@app.get("/health")
def health():
    """Returns the health status of the service and its providers."""
    engine = get_engine()
    return {"status": "ok", "providers": engine.provider_status()}


@app.get("/version")
def version():
    """Returns the version of the service and the configured providers."""
    engine = get_engine()
    return {
        "version": __version__,
        "nlp_provider": engine.text_provider.name,
        "vision_provider": engine.vision_provider.name,
        "store": engine.store.name,
    }


@app.post("/moderate", dependencies=[Depends(check_rate_limit)])
def moderate(req: ModerateRequest):
    """Moderates text and/or a media URL."""
    engine = get_engine()
    try:
        result = engine.moderate(
            text=req.text,
            media=req.media.model_dump() if req.media else None,
            platform=req.platform,
            context=(
                req.context.model_dump(by_alias=True, exclude_none=True)
                if req.context
                else None
            ),
            explain=req.explain,
            debug=req.debug,
            existing_hashes=req.existing_hashes,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return result.to_dict()


@app.post("/moderate_image", dependencies=[Depends(check_rate_limit)])
async def moderate_image(
    request: Request,
    file: UploadFile = File(...),
    platform: str = Form("generic"),
    text: Optional[str] = Form(None),
    explain: bool = Form(False),
):
    """Moderates an uploaded image."""
    engine = get_engine()
    if file.content_type not in engine.config.media.allowed_image_types:
        raise HTTPException(status_code=415, detail="Unsupported media type")
    cl = request.headers.get("content-length")
    if cl is not None and cl.isdigit() and int(cl) > app.state.max_upload_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large"
        )
    cap = app.state.max_upload_size + 1
    content = await file.read(cap)
    if len(content) > app.state.max_upload_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large"
        )
    try:
        result = engine.moderate_media_bytes(
            content, platform=platform, text=text, explain=explain
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return result.to_dict()
