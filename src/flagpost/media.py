"""Media fetching and analysis.

`ImageAnalyzer` and `VideoAnalyzer` hash the media, look for re-posts among
previously stored hashes and run the vision provider. Neither raises for
fetch, decode or extraction failures: the analysis degrades to no flags and
a warning string that ends up in the debug trace.
"""

from __future__ import annotations
import glob
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import requests

from .config import MediaConfig
from .hashing import DuplicateMatcher, HashingError, compute_image_hashes
from .providers import NullVisionProvider, VisionProvider
from .schema import Flag, FlagpostError, HashResult, Media, round_half_up
from .storage import MediaHashStore, NullHashStore

VISION_CONFIDENCE_THRESHOLD = 0.5
VISION_WEIGHT_SCALE = 50
USER_AGENT = "flagpost/1.0"
HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

logger = logging.getLogger(__name__)


class MediaFetchError(FlagpostError):
    """Raised when media cannot be downloaded."""


@dataclass
class Keyframe:
    index: int
    data: bytes


KeyframeExtractor = Callable[[str], List[Keyframe]]


@dataclass
class MediaAnalysis:
    """Flags and diagnostics for one media item."""

    flags: List[Flag] = field(default_factory=list)
    hashes: List[HashResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    vision_status: Optional[str] = None

    @property
    def media_hash(self) -> Optional[str]:
        return self.hashes[0].phash if self.hashes else None


def fetch_media(
    url: str,
    max_bytes: int = 20_000_000,
    timeout=(5, 15),
    allowed_types: Optional[tuple] = None,
) -> bytes:
    """Downloads media with a size cap.

    Args:
        url: The http(s) URL to fetch.
        max_bytes: Maximum accepted body size.
        timeout: The `requests` (connect, read) timeout.
        allowed_types: Accepted content types, or None to accept any.

    Returns:
        The response body.

    Raises:
        MediaFetchError: On network errors, non-2xx status, a disallowed
            content type or an oversized body.
    """
    if not HTTP_URL_RE.match(url or ""):
        raise MediaFetchError(f"Unsupported media URL: {url}")
    try:
        with requests.get(
            url, timeout=timeout, stream=True, headers={"User-Agent": USER_AGENT}
        ) as response:
            response.raise_for_status()
            content_type = (response.headers.get("content-type") or "").split(";")[0]
            if allowed_types and content_type and content_type not in allowed_types:
                raise MediaFetchError(f"Unsupported content type: {content_type}")
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise MediaFetchError("Media exceeds size limit")
            chunks = []
            total = 0
            for chunk in response.iter_content(chunk_size=65536):
                total += len(chunk)
                if total > max_bytes:
                    raise MediaFetchError("Media exceeds size limit")
                chunks.append(chunk)
    except requests.RequestException as e:
        raise MediaFetchError(f"Failed to fetch media from {url}: {e}") from e
    return b"".join(chunks)


def vision_flags(
    provider: VisionProvider,
    data: bytes,
    frame_index: Optional[int] = None,
) -> Tuple[List[Flag], str]:
    """Runs the vision provider and converts confident categories to flags.

    Returns:
        A `(flags, status)` tuple where status is "enabled", "disabled" or
        "error".
    """
    result = provider.moderate_image(data)
    if not result.enabled:
        return [], "error" if result.error and provider.is_enabled() else "disabled"
    flags = []
    for category, score in result.categories.items():
        if score.confidence <= VISION_CONFIDENCE_THRESHOLD:
            continue
        where = f" in frame {frame_index}" if frame_index is not None else ""
        flags.append(
            Flag(
                source="vision",
                category=category,
                weight=round_half_up(score.confidence * VISION_WEIGHT_SCALE),
                message=(
                    f"Vision detection{where}: {score.label} "
                    f"({score.confidence * 100:.1f}%)"
                ),
                confidence=score.confidence,
                provider=result.provider,
                frame_index=frame_index,
            )
        )
    return flags, "enabled"


class ImageAnalyzer:
    """Hashes an image, checks it for re-posts and runs vision moderation."""

    def __init__(
        self,
        config: MediaConfig,
        matcher: DuplicateMatcher,
        store: Optional[MediaHashStore] = None,
        vision: Optional[VisionProvider] = None,
        recent_limit: int = 500,
        fetcher: Optional[Callable[[str], bytes]] = None,
    ):
        self.config = config
        self.matcher = matcher
        self.store = store or NullHashStore()
        self.vision = vision or NullVisionProvider()
        self.recent_limit = recent_limit
        self.fetcher = fetcher or self._fetch
        self.logger = logging.getLogger(self.__class__.__name__)

    def _fetch(self, url: str) -> bytes:
        return fetch_media(
            url,
            max_bytes=self.config.max_download_bytes,
            timeout=self.config.fetch_timeout,
            allowed_types=self.config.allowed_image_types,
        )

    def _candidates(self, media_type: str) -> List[str]:
        try:
            rows = self.store.list_recent_media_hashes(media_type, self.recent_limit)
        except Exception as e:
            self.logger.warning(f"Hash store lookup failed, using no candidates: {e}")
            return []
        return [row.hash for row in rows]

    def _save(self, media_hash: str, media_type: str, url, platform) -> None:
        try:
            self.store.save_media_hash(media_hash, media_type, url=url, platform=platform)
        except Exception as e:
            self.logger.warning(f"Failed to save media hash: {e}")

    def analyze(
        self,
        data: Optional[bytes] = None,
        url: Optional[str] = None,
        platform: Optional[str] = None,
        existing_hashes: Optional[List[str]] = None,
    ) -> MediaAnalysis:
        """Analyzes one image given either its bytes or its URL.

        Args:
            data: Encoded image bytes.
            url: Where to fetch the image from when `data` is None.
            platform: Stored alongside the hash.
            existing_hashes: Caller-supplied hashes checked alongside the
                stored ones.

        Returns:
            A `MediaAnalysis`.
        """
        analysis = MediaAnalysis()
        try:
            if data is None:
                data = self.fetcher(url)
            hashes = compute_image_hashes(data)
        except (MediaFetchError, HashingError) as e:
            self.logger.warning(f"Image analysis skipped: {e}")
            analysis.warnings.append(f"image analysis skipped: {e}")
            return analysis
        analysis.hashes.append(hashes)

        match = self.matcher.find_match(
            hashes.phash, self._candidates("image") + list(existing_hashes or [])
        )
        if match is not None:
            analysis.flags.append(self.matcher.duplicate_flag(match, hashes.phash))
        if self.store.is_enabled():
            self._save(hashes.phash, "image", url, platform)

        flags, analysis.vision_status = vision_flags(self.vision, data)
        analysis.flags.extend(flags)
        return analysis


def _ffmpeg_keyframes(url: str, ffmpeg_path: str, max_frames: int) -> List[Keyframe]:
    with tempfile.TemporaryDirectory(prefix="flagpost-") as tmp:
        pattern = os.path.join(tmp, "frame_%d.jpg")
        cmd = [
            ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            url,
            "-vf",
            r"select=eq(pict_type\,I)",
            "-vsync",
            "vfr",
            "-q:v",
            "2",
            "-frames:v",
            str(max_frames),
            pattern,
        ]
        try:
            subprocess.run(cmd, check=True, capture_output=True, timeout=120)
        except FileNotFoundError as e:
            raise MediaFetchError(f"ffmpeg not found: {ffmpeg_path}") from e
        except subprocess.TimeoutExpired as e:
            raise MediaFetchError("ffmpeg timed out") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode("utf-8", "replace").strip()
            raise MediaFetchError(f"ffmpeg failed: {stderr[:200]}") from e

        def frame_number(path: str) -> int:
            m = re.search(r"frame_(\d+)\.jpg$", path)
            return int(m.group(1)) if m else 0

        frames = []
        paths = sorted(glob.glob(os.path.join(tmp, "frame_*.jpg")), key=frame_number)
        for i, path in enumerate(paths):
            with open(path, "rb") as f:
                frames.append(Keyframe(index=i, data=f.read()))
        return frames


class VideoAnalyzer:
    """Checks every keyframe of a video for re-posts and runs vision on a sample.

    Keyframes come from `extractor(url)`; by default ffmpeg selects up to
    `max_keyframes` I-frames.
    """

    def __init__(
        self,
        config: MediaConfig,
        matcher: DuplicateMatcher,
        store: Optional[MediaHashStore] = None,
        vision: Optional[VisionProvider] = None,
        recent_limit: int = 500,
        extractor: Optional[KeyframeExtractor] = None,
    ):
        self.config = config
        self.matcher = matcher
        self.store = store or NullHashStore()
        self.vision = vision or NullVisionProvider()
        self.recent_limit = recent_limit
        self.extractor = extractor or (
            lambda url: _ffmpeg_keyframes(url, config.ffmpeg_path, config.max_keyframes)
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    def _sample(self, frames: List[Keyframe]) -> List[Keyframe]:
        size = min(len(frames), self.config.max_keyframes)
        if size == 0:
            return []
        step = max(1, len(frames) // size)
        return frames[: size * step : step]

    def analyze(
        self,
        url: str,
        platform: Optional[str] = None,
        existing_hashes: Optional[List[str]] = None,
    ) -> MediaAnalysis:
        analysis = MediaAnalysis()
        try:
            if not HTTP_URL_RE.match(url or ""):
                raise MediaFetchError(f"Unsupported media URL: {url}")
            frames = self.extractor(url)[: self.config.max_keyframes]
        except MediaFetchError as e:
            self.logger.warning(f"Video analysis skipped: {e}")
            analysis.warnings.append(f"video analysis skipped: {e}")
            return analysis

        try:
            rows = self.store.list_recent_media_hashes("video", self.recent_limit)
            candidates = [row.hash for row in rows]
        except Exception as e:
            self.logger.warning(f"Hash store lookup failed, using no candidates: {e}")
            candidates = []
        candidates.extend(existing_hashes or [])

        for frame in frames:
            try:
                hashes = compute_image_hashes(frame.data)
            except HashingError as e:
                analysis.warnings.append(f"keyframe {frame.index} skipped: {e}")
                continue
            analysis.hashes.append(hashes)
            match = self.matcher.find_match(hashes.phash, candidates)
            if match is not None:
                analysis.flags.append(
                    self.matcher.duplicate_flag(match, hashes.phash, frame.index)
                )
            if self.store.is_enabled():
                try:
                    self.store.save_media_hash(
                        hashes.phash, "video", url=url, platform=platform
                    )
                except Exception as e:
                    self.logger.warning(f"Failed to save media hash: {e}")

        statuses = []
        for frame in self._sample(frames):
            flags, status = vision_flags(self.vision, frame.data, frame.index)
            analysis.flags.extend(flags)
            statuses.append(status)
        if statuses:
            analysis.vision_status = "error" if "error" in statuses else statuses[0]
        return analysis


def analyze_media(
    media: Media,
    images: ImageAnalyzer,
    videos: VideoAnalyzer,
    platform: Optional[str] = None,
    existing_hashes: Optional[List[str]] = None,
) -> MediaAnalysis:
    """Dispatches a `Media` reference to the right analyzer."""
    if media.type == "video":
        return videos.analyze(
            media.url, platform=platform, existing_hashes=existing_hashes
        )
    return images.analyze(
        url=media.url, platform=platform, existing_hashes=existing_hashes
    )
