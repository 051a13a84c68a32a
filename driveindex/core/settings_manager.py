"""
Settings Manager
Handles persistent settings in the data directory and resolves the mirror list
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List
import threading

from ..models.endpoint import EndpointConfig

logger = logging.getLogger(__name__)


def default_data_dir() -> Path:
    data_dir = str(os.environ.get("DRIVEINDEX_DATA_DIR", "") or "").strip()
    return Path(data_dir).expanduser() if data_dir else (Path.home() / ".driveindex")


class SettingsManager:
    """Manages settings with persistence"""

    DEFAULT_SETTINGS = {
        # Mirrors, highest priority first. Accepts URLs or {"id", "url", "priority"} dicts.
        "endpoints": [],
        # Appended after a single DRIVEINDEX_URL.
        "endpoint_fallbacks": [],

        # Circuit breaker
        "circuit_error_threshold": 3,
        "circuit_recovery_seconds": 300.0,
        "circuit_half_open_probes": 2,

        # Client retry policy
        "request_timeout_seconds": 30.0,
        "transport_retries": 3,
        "transport_retry_delay_seconds": 2.0,
        "rate_limit_retries": 4,
        "rate_limit_backoff_seconds": 2.0,
        "rate_limit_jitter_seconds": 1.0,
        "server_error_retries": 2,
        "server_error_backoff_seconds": 2.0,
        "user_agent": "Mozilla/5.0 (compatible; driveindex/1.0)",

        # Pacing
        "request_base_delay_seconds": 10.0,
        "request_jitter_seconds": 5.0,
        "page_delay_seconds": 1.0,
        "page_jitter_seconds": 0.5,

        # Signed URL cache
        "url_cache_ttl_seconds": 1800.0,
        "url_cache_refresh_margin_seconds": 300.0,
        "url_cache_sweep_seconds": 600.0,

        # Sync
        "sync_batch_size": 100,
        "series_details_chunk_size": 100,
        "series_details_workers": 10,
        "series_details_timeout_seconds": 60.0,

        # Category roots
        "movies_path": "/1:/Filmes/",
        "series_paths": ["/1:/Séries/Séries WEB-DL/", "/1:/Séries/Séries Misturado/"],
        "anime_paths": ["/0:/Animes/"],
    }

    def __init__(self, data_dir=None):
        self.settings_dir = Path(data_dir).expanduser() if data_dir else default_data_dir()
        self.settings_dir.mkdir(parents=True, exist_ok=True)
        self.settings_file = self.settings_dir / "settings.json"

        self._lock = threading.RLock()
        self._settings: Dict[str, Any] = {}
        self._load()

    def _load(self):
        """Load settings from file"""
        with self._lock:
            if self.settings_file.exists():
                try:
                    with open(self.settings_file, "r", encoding="utf-8") as f:
                        loaded = json.load(f)
                    if not isinstance(loaded, dict):
                        raise ValueError("settings root must be an object")
                    # Merge with defaults (adds new keys if they don't exist)
                    self._settings = {**self.DEFAULT_SETTINGS, **loaded}
                except (OSError, ValueError) as e:
                    logger.error("Error loading settings from %s: %s", self.settings_file, e)
                    self._settings = dict(self.DEFAULT_SETTINGS)
            else:
                self._settings = dict(self.DEFAULT_SETTINGS)

    def _save(self):
        """Save settings to file"""
        with self._lock:
            try:
                with open(self.settings_file, "w", encoding="utf-8") as f:
                    json.dump(self._settings, f, indent=2, ensure_ascii=False)
            except OSError as e:
                logger.error("Error saving settings: %s", e)

    def get(self, key: str, default=None) -> Any:
        with self._lock:
            return self._settings.get(key, default)

    def set(self, key: str, value: Any):
        """Set a setting value and save"""
        with self._lock:
            self._settings[str(key)] = value
            self._save()

    def update(self, settings_dict: Dict[str, Any]):
        """Update multiple settings at once"""
        with self._lock:
            self._settings.update(dict(settings_dict or {}))
            self._save()

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._settings)

    def reset(self):
        """Reset to default settings"""
        with self._lock:
            self._settings = dict(self.DEFAULT_SETTINGS)
            self._save()

    def get_endpoint_configs(self) -> List[EndpointConfig]:
        """
        Resolve the ordered mirror list.

        DRIVEINDEX_ENDPOINTS (comma-separated) wins, then DRIVEINDEX_URL plus
        the configured fallbacks, then the "endpoints" setting.
        """
        raw_list = str(os.environ.get("DRIVEINDEX_ENDPOINTS", "") or "").strip()
        single = str(os.environ.get("DRIVEINDEX_URL", "") or "").strip()

        if raw_list:
            entries: List[Any] = [u.strip() for u in raw_list.split(",") if u.strip()]
        elif single:
            entries = [single] + list(self.get("endpoint_fallbacks", []) or [])
        else:
            entries = list(self.get("endpoints", []) or [])

        return build_endpoint_configs(entries)


def build_endpoint_configs(entries: List[Any]) -> List[EndpointConfig]:
    """Turn URLs or {"id", "url", "priority"} dicts into configs; duplicates dropped"""
    configs: List[EndpointConfig] = []
    seen = set()
    for idx, entry in enumerate(entries, start=1):
        if isinstance(entry, dict):
            url = str(entry.get("url") or entry.get("base_url") or "").strip()
            endpoint_id = str(entry.get("id") or "").strip()
            priority = int(entry.get("priority", idx))
        else:
            url = str(entry or "").strip()
            endpoint_id = ""
            priority = idx
        url = url.rstrip("/")
        if not url or url in seen:
            continue
        seen.add(url)
        configs.append(EndpointConfig(
            id=endpoint_id or ("primary" if not configs else f"mirror_{len(configs)}"),
            base_url=url,
            priority=priority,
        ))
    return configs
