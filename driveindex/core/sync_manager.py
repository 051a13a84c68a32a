"""
Sync Manager
Streams scraped titles into the catalog store with stable identity

A pass upserts in fixed batches, removes orphans once the pass is complete,
rebuilds category links by diff and fills series details through a bounded
worker pool with a per-item timeout.
"""
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
import logging
import threading
import time

from ..models.catalog import CategoryRecord, ContentKind, MovieRecord, SeriesRecord, SyncStats
from ..sources.index_scraper import IndexScraper, ScrapeReport, clean_category_name
from ..utils.name_parser import stable_id
from .errors import EntityNotFoundError, IndexClientError
from .event_bus import EventBus, Events

logger = logging.getLogger(__name__)


class SyncAlreadyRunning(RuntimeError):
    pass


class SyncManager:
    """Orchestrates scrape passes into the store"""

    def __init__(
        self,
        store,
        scraper: IndexScraper,
        settings=None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.scraper = scraper
        self.settings = settings if settings is not None else {}
        self.event_bus = event_bus
        self._clock = clock
        self._pass_lock = threading.Lock()
        self._current_scope = ""

    def _setting_int(self, key: str, default: int) -> int:
        try:
            return max(1, int(self.settings.get(key, default)))
        except (TypeError, ValueError):
            return default

    def _emit(self, event_type: str, data=None):
        if self.event_bus:
            self.event_bus.emit(event_type, data)

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    def get_status(self) -> Dict:
        last = self.store.get_sync_status("last") or {}
        return {
            "running": self.is_running,
            "scope": self._current_scope if self.is_running else "",
            "last": last,
            "counts": self.store.counts(),
        }

    def _tracked(self, scope: str, fn: Callable[[], SyncStats]) -> SyncStats:
        """Run one pass with status checkpoints; only one pass at a time"""
        if not self._pass_lock.acquire(blocking=False):
            raise SyncAlreadyRunning(f"A sync pass ({self._current_scope}) is already running")
        self._current_scope = scope
        try:
            logger.info("Sync %s started", scope)
            self.store.set_sync_status("last", "running", {"scope": scope})
            self._emit(Events.SYNC_STARTED, {"scope": scope})
            try:
                stats = fn()
            except Exception as e:
                logger.error("Sync %s failed: %s", scope, e)
                self.store.set_sync_status("last", "failed", {"scope": scope}, error=str(e))
                self._emit(Events.SYNC_FAILED, {"scope": scope, "error": str(e)})
                raise
            payload = {"scope": scope, **stats.to_dict()}
            self.store.set_sync_status("last", "completed", payload)
            self._emit(Events.SYNC_COMPLETED, payload)
            logger.info(
                "Sync %s completed: %d movies, %d series, %d seasons, %d episodes, %d deleted, %d failed",
                scope, stats.movies, stats.series, stats.seasons, stats.episodes, stats.deleted, stats.failed_items,
            )
            return stats
        finally:
            self._current_scope = ""
            self._pass_lock.release()

    # =========================================================================
    # Public passes
    # =========================================================================

    def sync_all(self) -> SyncStats:
        def run():
            stats = SyncStats()
            stats.merge(self._sync_movies())
            stats.merge(self._sync_titles(ContentKind.SERIES))
            stats.merge(self._sync_titles(ContentKind.ANIME))
            return stats
        return self._tracked("all", run)

    def sync_movies(self, root: Optional[str] = None) -> SyncStats:
        return self._tracked("movies", lambda: self._sync_movies(root))

    def sync_series(self, paths=None, details: bool = True) -> SyncStats:
        return self._tracked("series", lambda: self._sync_titles(ContentKind.SERIES, paths, details))

    def sync_animes(self, paths=None, details: bool = True) -> SyncStats:
        return self._tracked("animes", lambda: self._sync_titles(ContentKind.ANIME, paths, details))

    def sync_category(self, category_path: str) -> SyncStats:
        """Upsert the movies of one category; no orphan cleanup"""
        def run():
            stats = SyncStats()
            movies = self.scraper.scrape_category(category_path)
            category = CategoryRecord(
                category_id=stable_id(category_path),
                name=clean_category_name(category_path.rstrip("/").rsplit("/", 1)[-1]),
                path=category_path,
                kind=ContentKind.MOVIE,
            )
            self.store.upsert_categories([category])
            stats.categories = 1
            batch_size = self._setting_int("sync_batch_size", 100)
            for batch in _chunks(movies, batch_size):
                self._flush_movies(batch, stats)
            stats.failed_items += self.scraper.last_report.failed_branches
            return stats
        return self._tracked("category", run)

    def list_categories(self, root: Optional[str] = None) -> List[CategoryRecord]:
        categories = self.scraper.list_categories(root)
        self.store.upsert_categories(categories)
        return categories

    def sync_series_details(self, series_id: int) -> SyncStats:
        """Seasons and episodes of one stored series"""
        for sid, path, content_type in self.store.list_series_for_details():
            if sid == int(series_id):
                return self._tracked("series_details", lambda: self._details_for(sid, path, content_type))
        raise EntityNotFoundError("series", int(series_id))

    def sync_all_series_details(self, content_type: Optional[str] = None) -> SyncStats:
        return self._tracked(
            "series_details",
            lambda: self._run_details(self.store.list_series_for_details(content_type)),
        )

    # =========================================================================
    # Movies
    # =========================================================================

    def _sync_movies(self, root: Optional[str] = None) -> SyncStats:
        stats = SyncStats()
        report = ScrapeReport()
        seen: Set[int] = set()
        batch: List[MovieRecord] = []
        batch_size = self._setting_int("sync_batch_size", 100)
        categories_stored = 0

        for movie in self.scraper.scrape_movies(root, report=report):
            batch.append(movie)
            seen.add(movie.stream_id)
            if len(batch) >= batch_size:
                categories_stored = self._store_new_categories(report, categories_stored)
                self._flush_movies(batch, stats)
                batch = []
        categories_stored = self._store_new_categories(report, categories_stored)
        if batch:
            self._flush_movies(batch, stats)

        stats.categories += len(report.categories)
        stats.failed_items += report.failed_branches
        stats.aborted_categories.extend(report.failed_categories)

        if report.complete:
            stats.deleted += self.store.delete_movies_not_in(seen)
            stats.deleted += self.store.delete_categories_not_in(
                ContentKind.MOVIE, [c.category_id for c in report.categories]
            )
        else:
            logger.warning(
                "Skipping movie orphan cleanup, %d categor(ies) aborted: %s",
                len(report.failed_categories), ", ".join(report.failed_categories),
            )
        return stats

    def _store_new_categories(self, report: ScrapeReport, already_stored: int) -> int:
        pending = report.categories[already_stored:]
        if pending:
            self.store.upsert_categories(pending)
        return len(report.categories)

    def _flush_movies(self, batch: List[MovieRecord], stats: SyncStats):
        stats.movies += self.store.upsert_movies(batch)
        links = {m.stream_id: {m.category_id} for m in batch if m.category_id is not None}
        self.store.sync_category_links("movie", links)
        logger.debug("Upserted %d movies", len(batch))
        self._emit(Events.SYNC_PROGRESS, {"kind": ContentKind.MOVIE, "movies": stats.movies})

    # =========================================================================
    # Series / anime
    # =========================================================================

    def _sync_titles(self, content_type: str, paths=None, details: bool = True) -> SyncStats:
        stats = SyncStats()
        report = ScrapeReport()
        seen: Set[int] = set()
        batch: List[SeriesRecord] = []
        batch_size = self._setting_int("sync_batch_size", 100)
        categories_stored = 0

        if content_type == ContentKind.ANIME:
            titles = self.scraper.scrape_animes(paths, details=False, report=report)
        else:
            titles = self.scraper.scrape_series(paths, details=False, report=report)

        for record in titles:
            batch.append(record)
            seen.add(record.series_id)
            if len(batch) >= batch_size:
                categories_stored = self._store_new_categories(report, categories_stored)
                self._flush_series(batch, stats, content_type)
                batch = []
        categories_stored = self._store_new_categories(report, categories_stored)
        if batch:
            self._flush_series(batch, stats, content_type)

        stats.categories += len(report.categories)
        stats.failed_items += report.failed_branches
        stats.aborted_categories.extend(report.failed_categories)

        if report.complete:
            stats.deleted += self.store.delete_series_not_in(content_type, seen)
            stats.deleted += self.store.delete_categories_not_in(
                content_type, [c.category_id for c in report.categories]
            )
        else:
            logger.warning(
                "Skipping %s orphan cleanup, %d categor(ies) aborted: %s",
                content_type, len(report.failed_categories), ", ".join(report.failed_categories),
            )

        if details and seen:
            items = [item for item in self.store.list_series_for_details(content_type) if item[0] in seen]
            stats.merge(self._run_details(items))
        return stats

    def _flush_series(self, batch: List[SeriesRecord], stats: SyncStats, content_type: str):
        stats.series += self.store.upsert_series(batch)
        links = {s.series_id: {s.category_id} for s in batch if s.category_id is not None}
        self.store.sync_category_links("series", links)
        self._emit(Events.SYNC_PROGRESS, {"kind": content_type, "series": stats.series})

    # =========================================================================
    # Series details worker pool
    # =========================================================================

    def _details_for(self, series_id: int, remote_path: str, content_type: str) -> SyncStats:
        """Scrape and store one series' seasons on an independent scrape stream"""
        stats = SyncStats()
        scraper = self.scraper.fork()
        seasons = scraper.scrape_series_details(remote_path, content_type)
        partial = scraper.last_report.failed_branches > 0
        if partial and not seasons:
            logger.warning("Every season of %s failed to list, keeping stored seasons", remote_path)
            stats.failed_items += 1
            return stats

        season_count, episode_count, deleted = self.store.replace_series_details(
            series_id, seasons, prune=not partial
        )
        stats.seasons += season_count
        stats.episodes += episode_count
        stats.deleted += deleted
        stats.failed_items += scraper.last_report.failed_branches
        return stats

    def _run_details(self, items: List[Tuple[int, str, str]]) -> SyncStats:
        """
        Fan series details out to a bounded pool, chunk by chunk.

        A failure or timeout is counted and never aborts its chunk. Workers
        that timed out while running cannot be stopped; until they return they
        are subtracted from the next chunk's pool, which keeps at least one
        worker so the pass always makes progress.
        """
        stats = SyncStats()
        chunk_size = self._setting_int("series_details_chunk_size", 100)
        workers = self._setting_int("series_details_workers", 10)
        try:
            item_timeout = max(0.1, float(self.settings.get("series_details_timeout_seconds", 60.0)))
        except (TypeError, ValueError):
            item_timeout = 60.0

        done_count = 0
        abandoned: List[Future] = []
        for chunk in _chunks(items, chunk_size):
            abandoned[:] = [f for f in abandoned if not f.done()]
            chunk_workers = max(1, workers - len(abandoned))
            chunk_stats = self._run_details_chunk(chunk, chunk_workers, item_timeout, abandoned)
            stats.merge(chunk_stats)
            done_count += len(chunk)
            self._emit(Events.SYNC_PROGRESS, {
                "kind": "series_details",
                "completed": done_count,
                "total": len(items),
                "failed": stats.failed_items,
            })
        return stats

    def _run_details_chunk(
        self,
        chunk: List[Tuple[int, str, str]],
        workers: int,
        item_timeout: float,
        abandoned: List[Future],
    ) -> SyncStats:
        stats = SyncStats()
        started_at: Dict[int, float] = {}
        started_lock = threading.Lock()

        def task(series_id: int, remote_path: str, content_type: str) -> SyncStats:
            with started_lock:
                started_at[series_id] = self._clock()
            return self._details_for(series_id, remote_path, content_type)

        executor = ThreadPoolExecutor(max_workers=workers)
        futures = {}
        try:
            for series_id, remote_path, content_type in chunk:
                futures[executor.submit(task, series_id, remote_path, content_type)] = series_id

            pending = set(futures.keys())
            while pending:
                done, not_done = wait(pending, timeout=0.25, return_when=FIRST_COMPLETED)
                pending = set(not_done)

                for future in done:
                    series_id = futures[future]
                    try:
                        stats.merge(future.result())
                    except IndexClientError as e:
                        logger.warning("Series details failed for %s: %s", series_id, e)
                        stats.failed_items += 1
                    except Exception as e:
                        logger.error("Unexpected error syncing series %s: %s", series_id, e)
                        stats.failed_items += 1

                now = self._clock()
                for future in list(pending):
                    series_id = futures[future]
                    with started_lock:
                        started = started_at.get(series_id)
                    if started is not None and now - started >= item_timeout:
                        if not future.cancel():
                            abandoned.append(future)
                        pending.discard(future)
                        logger.warning("Series details for %s timed out after %ds", series_id, int(item_timeout))
                        stats.failed_items += 1
        finally:
            # Timed-out workers are abandoned, not joined.
            executor.shutdown(wait=False)
        return stats


def _chunks(items: Iterable, size: int):
    chunk = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
