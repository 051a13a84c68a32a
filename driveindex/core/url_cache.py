"""
URL Cache
TTL cache of signed download URLs with refresh-before-expiry and durable fallback
"""
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..models.cached_url import CachedUrlEntry, EntityKey
from .errors import EntityNotFoundError, IndexClientError, UrlUnavailableError

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = ("movie", "episode")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UrlCache:
    """
    Signed URLs per (kind, entity_id).

    Reads are a dict lookup under a lock. A miss or near-expiry entry is
    refreshed on the caller's thread; the first caller pays the fetch.
    """

    def __init__(
        self,
        store,
        client,
        endpoint_manager=None,
        ttl_seconds: float = 1800.0,
        refresh_margin_seconds: float = 300.0,
        sweep_interval_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.client = client
        self.endpoint_manager = endpoint_manager
        self.ttl_seconds = float(ttl_seconds)
        self.refresh_margin_seconds = float(refresh_margin_seconds)
        self.sweep_interval_seconds = max(1.0, float(sweep_interval_seconds))
        self._clock = clock
        self._wallclock = wallclock

        self._entries: Dict[EntityKey, CachedUrlEntry] = {}
        self._lock = threading.RLock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    @classmethod
    def from_settings(cls, settings, store, client, endpoint_manager=None, **kwargs) -> "UrlCache":
        return cls(
            store,
            client,
            endpoint_manager=endpoint_manager,
            ttl_seconds=settings.get("url_cache_ttl_seconds", 1800.0),
            refresh_margin_seconds=settings.get("url_cache_refresh_margin_seconds", 300.0),
            sweep_interval_seconds=settings.get("url_cache_sweep_seconds", 600.0),
            **kwargs,
        )

    @staticmethod
    def _key(entity_id: int, kind: str) -> EntityKey:
        if kind not in SUPPORTED_KINDS:
            raise ValueError(f"Unsupported kind: {kind}")
        return kind, int(entity_id)

    def get(self, entity_id: int, kind: str = "movie") -> str:
        """
        Signed URL for an entity.

        Raises EntityNotFoundError for unknown ids and UrlUnavailableError when
        the fetch fails and no durable URL exists.
        """
        key = self._key(entity_id, kind)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(now, self.refresh_margin_seconds):
            return entry.signed_url

        remote_path = self.store.get_remote_path(kind, key[1])
        if remote_path is None:
            raise EntityNotFoundError(kind, key[1])

        if entry is None:
            restored = self._restore_durable(key)
            if restored is not None:
                return restored

        endpoint = self.endpoint_manager.select() if self.endpoint_manager is not None else None
        try:
            url = self.client.get_download_url(endpoint, remote_path)
        except IndexClientError as e:
            return self._fallback(key, entry, e)

        expires_wallclock = self._wallclock() + timedelta(seconds=self.ttl_seconds)
        with self._lock:
            self._entries[key] = CachedUrlEntry(
                entity_key=key,
                signed_url=url,
                expires_at_monotonic=self._clock() + self.ttl_seconds,
                expires_at_wallclock=expires_wallclock,
            )
        self.store.save_signed_url(kind, key[1], url, expires_wallclock)
        logger.debug("Cached signed URL for %s %s", kind, key[1])
        return url

    def _restore_durable(self, key: EntityKey) -> Optional[str]:
        """Reuse a persisted URL that is still comfortably valid (after a restart)"""
        durable = self.store.get_signed_url(*key)
        if not durable or durable[1] is None:
            return None
        url, expires_wallclock = durable
        remaining = (expires_wallclock - self._wallclock()).total_seconds()
        if remaining <= self.refresh_margin_seconds:
            return None
        with self._lock:
            self._entries[key] = CachedUrlEntry(
                entity_key=key,
                signed_url=url,
                expires_at_monotonic=self._clock() + remaining,
                expires_at_wallclock=expires_wallclock,
            )
        return url

    def _fallback(self, key: EntityKey, entry: Optional[CachedUrlEntry], error: Exception) -> str:
        kind, entity_id = key
        if entry is not None and not entry.is_expired(self._clock()):
            logger.warning("Refresh failed for %s %s, serving cached URL: %s", kind, entity_id, error)
            return entry.signed_url
        durable = self.store.get_signed_url(kind, entity_id)
        if durable:
            logger.warning("Fetch failed for %s %s, serving last known URL: %s", kind, entity_id, error)
            return durable[0]
        raise UrlUnavailableError(kind, entity_id, str(error)) from error

    def invalidate(self, entity_id: int, kind: str = "movie") -> bool:
        """Drop the memory and durable URL so the next get() fetches a fresh one"""
        key = self._key(entity_id, kind)
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if self.store.get_signed_url(*key) is not None:
                self.store.clear_signed_url(*key)
                removed = True
        return removed

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self.store.clear_all_signed_urls()
        logger.info("Cleared %d cached URLs", count)
        return count

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Swept %d expired URLs", len(expired))
        return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def start(self):
        """Start the periodic sweeper thread"""
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop_sweeper.clear()

        def sweep_loop():
            while not self._stop_sweeper.wait(self.sweep_interval_seconds):
                try:
                    self.sweep_expired()
                except Exception as e:
                    logger.error("URL cache sweep failed: %s", e)

        self._sweeper = threading.Thread(target=sweep_loop, name="url-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop(self, timeout: float = 5.0):
        self._stop_sweeper.set()
        if self._sweeper:
            self._sweeper.join(timeout)
            self._sweeper = None
