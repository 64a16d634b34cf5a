"""Perceptual hashing and duplicate matching for images and video keyframes.

Images are reduced to an 8x8 grayscale grid. The perceptual hash (pHash)
thresholds every sample against the grid mean; the difference hash (dHash)
compares each sample with its right-hand neighbour. Both are emitted as
64-character strings of "0"/"1" so that they can be stored and compared as
plain text.
"""

from __future__ import annotations
import logging
from io import BytesIO
from typing import Iterable, Optional, Union

import numpy as np
from PIL import Image, ImageFile, ImageOps

from .schema import (
    DuplicateMatch,
    Flag,
    FlagpostError,
    HashComparison,
    HashResult,
)

# Safety settings for Pillow
ImageFile.LOAD_TRUNCATED_IMAGES = True
Image.MAX_IMAGE_PIXELS = 64_000_000

HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE
DUPLICATE_WEIGHT = 20

logger = logging.getLogger(__name__)


class HashingError(FlagpostError):
    """Raised when an image cannot be decoded or hashed."""


def _open_image(source: Union[Image.Image, bytes]) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    try:
        img = Image.open(BytesIO(source))
        img.load()
        return img
    except Image.DecompressionBombError as e:
        raise HashingError(f"Image exceeds decompression limits: {e}") from e
    except Exception as e:
        raise HashingError(f"Failed to decode image: {e}") from e


def grayscale_grid(source: Union[Image.Image, bytes]) -> np.ndarray:
    """Downsamples an image to the 8x8 grayscale grid used by both hashes.

    Args:
        source: A PIL image or encoded image bytes.

    Returns:
        A flat array of 64 intensity samples.

    Raises:
        HashingError: If the image cannot be decoded or resized.
    """
    img = _open_image(source)
    try:
        if getattr(img, "is_animated", False):
            img.seek(0)
        img = ImageOps.exif_transpose(img).convert("L")
        img = img.resize((HASH_SIZE, HASH_SIZE), Image.Resampling.LANCZOS)
    except Exception as e:
        logger.error(f"Image processing failed: {e}")
        raise HashingError(f"Image processing failed: {e}") from e
    return np.asarray(img, dtype="float32").flatten()


def _bits_to_string(bits: np.ndarray) -> str:
    return "".join("1" if b else "0" for b in bits)


def compute_image_hashes(source: Union[Image.Image, bytes]) -> HashResult:
    """Computes the pHash and dHash of an image.

    Args:
        source: A PIL image or encoded image bytes.

    Returns:
        A `HashResult` with two 64-character binary strings and the
        original image dimensions.

    Raises:
        HashingError: If the image cannot be decoded.
    """
    img = _open_image(source)
    width, height = img.size
    samples = grayscale_grid(img)

    phash = _bits_to_string(samples > samples.mean())

    grid = samples.reshape(HASH_SIZE, HASH_SIZE)
    diff = (grid[:, :-1] > grid[:, 1:]).flatten()
    dhash = _bits_to_string(diff).ljust(HASH_BITS, "0")

    return HashResult(phash=phash, dhash=dhash, width=width, height=height)


def hamming_distance(hash1: str, hash2: str) -> int:
    """Counts the positions at which two equal-length hash strings differ.

    Raises:
        ValueError: If the hashes have different lengths.
    """
    if len(hash1) != len(hash2):
        raise ValueError("Hash lengths must be equal")
    return sum(1 for a, b in zip(hash1, hash2) if a != b)


def normalized_distance(hash1: str, hash2: str) -> float:
    """Returns the Hamming distance divided by the hash length (0..1)."""
    if not hash1:
        raise ValueError("Cannot compare empty hashes")
    return hamming_distance(hash1, hash2) / len(hash1)


def compute_similarity(hash1: str, hash2: str) -> float:
    """Returns the similarity of two hashes as a percentage."""
    return (1.0 - normalized_distance(hash1, hash2)) * 100


def compare_hashes(
    hash1: HashResult, hash2: HashResult, threshold: float = 0.15
) -> HashComparison:
    """Compares two hash results and decides whether they are duplicates.

    The closer of the two normalized distances (pHash or dHash) decides.

    Args:
        hash1: The first hash result.
        hash2: The second hash result.
        threshold: The maximum normalized distance for a duplicate.

    Returns:
        A `HashComparison`.
    """
    phash_distance = normalized_distance(hash1.phash, hash2.phash)
    dhash_distance = normalized_distance(hash1.dhash, hash2.dhash)
    min_distance = min(phash_distance, dhash_distance)
    return HashComparison(
        phash_distance=phash_distance,
        dhash_distance=dhash_distance,
        min_distance=min_distance,
        is_duplicate=min_distance <= threshold,
    )


class DuplicateMatcher:
    """Matches a hash against a pool of previously seen hashes.

    With the "first" policy the scan stops at the first candidate within the
    threshold. With the "best" policy every candidate is scanned and the
    closest one within the threshold wins; ties keep the earlier candidate.
    """

    def __init__(self, threshold: float = 0.15, policy: str = "best"):
        if policy not in ("best", "first"):
            raise ValueError(f"Unknown match policy: {policy}")
        self.threshold = threshold
        self.policy = policy

    def find_match(
        self, media_hash: str, candidates: Iterable[str]
    ) -> Optional[DuplicateMatch]:
        """Finds a duplicate of `media_hash` among `candidates`.

        Candidates whose length differs from `media_hash` are skipped.

        Args:
            media_hash: The hash of the media being moderated.
            candidates: Previously stored hashes.

        Returns:
            The matching candidate, or None.
        """
        if not media_hash:
            return None
        best: Optional[DuplicateMatch] = None
        for candidate in candidates:
            if len(candidate) != len(media_hash):
                logger.debug(f"Skipping candidate hash of length {len(candidate)}")
                continue
            distance = hamming_distance(media_hash, candidate)
            normalized = distance / len(media_hash)
            if normalized > self.threshold:
                continue
            match = DuplicateMatch(
                candidate=candidate, distance=distance, normalized_distance=normalized
            )
            if self.policy == "first":
                return match
            if best is None or distance < best.distance:
                best = match
        return best

    def duplicate_flag(
        self,
        match: DuplicateMatch,
        media_hash: str,
        frame_index: Optional[int] = None,
    ) -> Flag:
        """Builds the `duplicate` flag for a match."""
        what = "video frame" if frame_index is not None else "image"
        return Flag(
            source="metadata",
            category="duplicate",
            weight=DUPLICATE_WEIGHT,
            message=(
                f"Duplicate {what} detected "
                f"({match.confidence * 100:.1f}% similarity)"
            ),
            confidence=match.confidence,
            media_hash=media_hash,
            frame_index=frame_index,
        )
