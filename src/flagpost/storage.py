"""Media hash storage.

The store keeps the perceptual hashes of previously seen media so that
re-posts can be recognized, and optionally records moderation outcomes.
Storage is auxiliary: every implementation logs failures and carries on,
so moderation stays available when the backend is down.
"""

from __future__ import annotations
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from itertools import chain
from typing import Any, Deque, Dict, List, Optional

import requests

from .config import ModeratorConfig, StorageConfig
from .schema import MediaHash, ModerationResult

logger = logging.getLogger(__name__)

MEDIA_HASHES_TABLE = "media_hashes"
MODERATION_RESULTS_TABLE = "moderation_results"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def moderation_record(
    result: ModerationResult,
    account_id: Optional[str] = None,
    media_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Builds the row persisted for one moderation decision.

    `categories` maps each flagged category to the summed adjusted weight
    of its flags.
    """
    categories: Dict[str, float] = {}
    for flag in result.flags:
        weight = flag.adjusted_weight if flag.adjusted_weight is not None else flag.weight
        categories[flag.category] = categories.get(flag.category, 0) + weight
    record: Dict[str, Any] = {
        "score": result.score,
        "label": result.label,
        "platform": result.platform,
        "categories": categories,
    }
    if account_id:
        record["account_id"] = account_id
    if media_hash:
        record["media_hash"] = media_hash
    return record


class MediaHashStore:
    """Interface of the media hash store. The base class is a disabled no-op."""

    name = "none"

    def is_enabled(self) -> bool:
        return False

    def save_media_hash(
        self,
        hash: str,
        type: str,
        url: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> None:
        return None

    def list_recent_media_hashes(self, type: str, limit: int = 500) -> List[MediaHash]:
        return []

    def save_moderation_result(self, record: Dict[str, Any]) -> None:
        return None


class NullHashStore(MediaHashStore):
    """Used when storage is not configured."""


class InMemoryHashStore(MediaHashStore):
    """Keeps hashes in process memory, newest first on lookup.

    Saved hashes and moderation results are kept in bounded queues so a
    long-running process does not grow without limit; the oldest entries are
    dropped first. Known hashes given at construction are never evicted and
    are returned after the saved ones. Thread-safe so that one instance can
    serve concurrent API requests.
    """

    name = "memory"

    def __init__(
        self,
        known_hashes: Optional[List[str]] = None,
        known_type: str = "image",
        max_hashes: int = 10_000,
        max_results: int = 1_000,
    ):
        self._lock = threading.Lock()
        self._known: List[MediaHash] = [
            MediaHash(hash=h, type=known_type, created_at=_utcnow_iso())
            for h in (known_hashes or [])
        ]
        self._hashes: Deque[MediaHash] = deque(maxlen=max_hashes)
        self.results: Deque[Dict[str, Any]] = deque(maxlen=max_results)

    def is_enabled(self) -> bool:
        return True

    def save_media_hash(self, hash, type, url=None, platform=None):
        with self._lock:
            self._hashes.append(
                MediaHash(
                    hash=hash,
                    type=type,
                    url=url,
                    platform=platform,
                    created_at=_utcnow_iso(),
                )
            )

    def list_recent_media_hashes(self, type, limit=500):
        with self._lock:
            matching = [
                h
                for h in chain(reversed(self._hashes), reversed(self._known))
                if h.type == type
            ]
        return matching[:limit]

    def save_moderation_result(self, record):
        with self._lock:
            self.results.append(dict(record, created_at=_utcnow_iso()))


class SupabaseHashStore(MediaHashStore):
    """Stores hashes in Supabase through its PostgREST endpoint.

    Expects a `media_hashes` table (`hash`, `type`, `url`, `platform`,
    `created_at`) and a `moderation_results` table.
    """

    name = "supabase"

    def __init__(
        self,
        url: str,
        anon_key: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        """Initializes the store.

        Args:
            url: The Supabase project URL.
            anon_key: The anon (or service) API key.
            timeout: Per-request timeout in seconds.
            session: An optional `requests.Session` to reuse.
        """
        self.base_url = url.rstrip("/") + "/rest/v1"
        self.anon_key = anon_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logging.getLogger(self.__class__.__name__)

    def is_enabled(self) -> bool:
        return bool(self.base_url and self.anon_key)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.anon_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def save_media_hash(self, hash, type, url=None, platform=None):
        row: Dict[str, Any] = {"hash": hash, "type": type, "created_at": _utcnow_iso()}
        if url:
            row["url"] = url
        if platform:
            row["platform"] = platform
        try:
            response = self.session.post(
                f"{self.base_url}/{MEDIA_HASHES_TABLE}",
                json=row,
                headers=self._headers("resolution=merge-duplicates,return=minimal"),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.warning(f"Failed to save media hash: {e}")

    def list_recent_media_hashes(self, type, limit=500):
        params = {
            "select": "hash,type,created_at,url,platform",
            "type": f"eq.{type}",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        try:
            response = self.session.get(
                f"{self.base_url}/{MEDIA_HASHES_TABLE}",
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            rows = response.json()
        except (requests.RequestException, ValueError) as e:
            self.logger.warning(f"Failed to list recent media hashes: {e}")
            return []
        if not isinstance(rows, list):
            self.logger.warning("Unexpected media hash response shape")
            return []
        return [
            MediaHash(
                hash=row["hash"],
                type=row.get("type", type),
                url=row.get("url"),
                platform=row.get("platform"),
                created_at=row.get("created_at"),
            )
            for row in rows
            if isinstance(row, dict) and row.get("hash")
        ]

    def save_moderation_result(self, record):
        try:
            response = self.session.post(
                f"{self.base_url}/{MODERATION_RESULTS_TABLE}",
                json=dict(record, created_at=_utcnow_iso()),
                headers=self._headers("return=minimal"),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.warning(f"Failed to save moderation result: {e}")


def build_store(config: ModeratorConfig) -> MediaHashStore:
    """Selects the hash store for a configuration.

    Supabase when credentials are configured, an in-memory store when only a
    known-hash list is configured, otherwise the no-op store.
    """
    storage: StorageConfig = config.storage
    if config.enable_storage and storage.supabase_url and storage.supabase_anon_key:
        return SupabaseHashStore(
            storage.supabase_url,
            storage.supabase_anon_key,
            timeout=storage.timeout_seconds,
        )
    if storage.known_hashes:
        return InMemoryHashStore(
            list(storage.known_hashes), max_hashes=storage.max_memory_hashes
        )
    return NullHashStore()
