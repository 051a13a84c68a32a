"""Runtime bootstrap for the driveindex web API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..core.endpoint_manager import EndpointManager
from ..core.event_bus import EventBus
from ..core.pacing import RequestPacer
from ..core.settings_manager import SettingsManager
from ..core.sqlite_store import SqliteStore
from ..core.sync_manager import SyncManager
from ..core.url_cache import UrlCache
from ..services.index_client import IndexClient
from ..sources.index_scraper import IndexScraper


@dataclass
class DriveIndexRuntime:
    """Shared service graph used by web endpoints."""

    settings: SettingsManager
    event_bus: EventBus
    store: SqliteStore
    endpoint_manager: EndpointManager
    client: IndexClient
    scraper: IndexScraper
    url_cache: UrlCache
    sync_manager: SyncManager

    def close(self) -> None:
        self.url_cache.stop()
        self.store.close()


def build_runtime(data_dir: Optional[str] = None, start_sweeper: bool = True) -> DriveIndexRuntime:
    """Create and wire core services."""

    settings = SettingsManager(data_dir)
    event_bus = EventBus()
    store = SqliteStore(settings.settings_dir)
    endpoint_manager = EndpointManager.from_settings(settings, event_bus=event_bus)
    client = IndexClient(endpoint_manager, settings=settings)
    scraper = IndexScraper(client, pacer=RequestPacer.from_settings(settings), settings=settings)
    url_cache = UrlCache.from_settings(settings, store, client, endpoint_manager=endpoint_manager)
    sync_manager = SyncManager(store, scraper, settings=settings, event_bus=event_bus)

    if start_sweeper:
        url_cache.start()

    return DriveIndexRuntime(
        settings=settings,
        event_bus=event_bus,
        store=store,
        endpoint_manager=endpoint_manager,
        client=client,
        scraper=scraper,
        url_cache=url_cache,
        sync_manager=sync_manager,
    )
