import itertools
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest import mock

from driveindex.core.errors import EntityNotFoundError, ServerError
from driveindex.core.event_bus import EventBus, Events
from driveindex.core.pacing import RequestPacer
from driveindex.core.sqlite_store import SqliteStore
from driveindex.core.sync_manager import SyncAlreadyRunning, SyncManager
from driveindex.models.catalog import ContentKind, SeriesRecord
from driveindex.models.remote_entry import EntryKind, RemoteEntry
from driveindex.sources.index_scraper import IndexScraper
from driveindex.utils.name_parser import stable_id

MOVIES = "/1:/Filmes/"
SERIES = "/1:/Séries/WEB-DL/"


class FakeIndex:
    def __init__(self):
        self.tree = {}
        self.failures = set()
        self.blocks = {}
        self.entered = set()

    def folder(self, parent, name):
        path = parent + name + "/"
        self.tree.setdefault(parent, []).append(RemoteEntry(name=name, kind=EntryKind.FOLDER, path=path))
        self.tree.setdefault(path, [])
        return path

    def file(self, parent, name):
        path = parent + name
        self.tree.setdefault(parent, []).append(RemoteEntry(name=name, kind=EntryKind.FILE, path=path, size=10))
        return path

    def remove(self, parent, name):
        self.tree[parent] = [e for e in self.tree.get(parent, []) if e.name != name]

    def list_folder_all(self, endpoint, path):
        self.entered.add(path)
        if path in self.blocks:
            self.blocks[path].wait(5)
        if path in self.failures:
            raise ServerError("boom", path=path)
        return list(self.tree.get(path, []))


class SyncTestCase(unittest.TestCase):
    settings = {
        "movies_path": MOVIES,
        "series_paths": [SERIES],
        "anime_paths": [],
        "sync_batch_size": 2,
        "series_details_workers": 2,
    }

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = SqliteStore(Path(self._tmp.name))
        self.index = FakeIndex()
        self.bus = EventBus()
        self.manager = self._manager()

    def tearDown(self):
        for event in self.index.blocks.values():
            event.set()
        self.store.close()
        self._tmp.cleanup()

    def _manager(self, clock=None, **overrides):
        settings = dict(self.settings, **overrides)
        pacer = RequestPacer(base_delay=0, jitter=0, sleep=lambda _: None)
        scraper = IndexScraper(self.index, pacer=pacer, settings=settings)
        kwargs = {"clock": clock} if clock else {}
        return SyncManager(self.store, scraper, settings=settings, event_bus=self.bus, **kwargs)


class TestMovieSync(SyncTestCase):
    def setUp(self):
        super().setUp()
        self.hd = self.index.folder(MOVIES, "Filmes (2)")
        for name, filename in (("A (2001)", "A.2001.mkv"), ("B (2002)", "B.2002.mkv")):
            self.index.file(self.index.folder(self.hd, name), filename)
        self.uhd = self.index.folder(MOVIES, "4K")
        self.index.file(self.index.folder(self.uhd, "C (2003)"), "C.2003.2160p.mkv")

    def test_sync_stores_movies_categories_and_links(self):
        stats = self.manager.sync_movies()
        self.assertEqual(stats.movies, 3)
        self.assertEqual(stats.categories, 2)
        self.assertEqual(stats.deleted, 0)
        counts = self.store.counts()
        self.assertEqual(counts["movies"], 3)
        self.assertEqual(counts["categories"], 2)
        self.assertEqual(counts["movie_categories"], 3)

        c_id = stable_id(self.uhd + "C (2003)/C.2003.2160p.mkv")
        self.assertEqual(self.store.category_links("movie")[c_id], {stable_id(self.uhd)})

    def test_resync_is_idempotent(self):
        self.manager.sync_movies()
        ids = self.store.movie_ids()
        counts = self.store.counts()
        stats = self.manager.sync_movies()
        self.assertEqual(self.store.movie_ids(), ids)
        self.assertEqual(self.store.counts(), counts)
        self.assertEqual(stats.deleted, 0)

    def test_orphans_removed_with_their_links(self):
        self.manager.sync_movies()
        self.index.remove(self.hd, "B (2002)")
        self.index.remove(MOVIES, "4K")

        stats = self.manager.sync_movies()
        counts = self.store.counts()
        self.assertEqual(counts["movies"], 1)
        self.assertEqual(counts["categories"], 1)
        self.assertEqual(counts["movie_categories"], 1)
        self.assertEqual(stats.deleted, 3)

    def test_aborted_category_skips_orphan_cleanup(self):
        self.manager.sync_movies()
        self.index.failures.add(self.uhd)
        self.index.remove(self.hd, "B (2002)")

        stats = self.manager.sync_movies()
        self.assertEqual(stats.aborted_categories, [self.uhd])
        self.assertEqual(stats.deleted, 0)
        self.assertEqual(self.store.counts()["movies"], 3)

    def test_single_category_sync_never_deletes(self):
        self.manager.sync_movies()
        self.index.remove(self.hd, "B (2002)")
        stats = self.manager.sync_category(self.hd)
        self.assertEqual(stats.movies, 1)
        self.assertEqual(self.store.counts()["movies"], 3)

    def test_list_categories_are_stored(self):
        categories = self.manager.list_categories()
        self.assertEqual({c.name for c in categories}, {"Filmes", "4K"})
        self.assertEqual(len(self.store.list_categories(ContentKind.MOVIE)), 2)

    def test_status_and_events(self):
        seen = []
        for event in (Events.SYNC_STARTED, Events.SYNC_COMPLETED, Events.SYNC_FAILED):
            self.bus.subscribe(event, lambda data, event=event: seen.append(event))
        self.manager.sync_movies()
        self.assertEqual(seen, [Events.SYNC_STARTED, Events.SYNC_COMPLETED])

        status = self.manager.get_status()
        self.assertFalse(status["running"])
        self.assertEqual(status["last"]["status"], "completed")
        self.assertEqual(status["last"]["stats"]["movies"], 3)

    def test_failed_pass_is_recorded(self):
        self.index.failures.add(self.hd)
        with self.assertRaises(ServerError):
            self.manager.sync_category(self.hd)
        self.assertEqual(self.manager.get_status()["last"]["status"], "failed")
        self.assertFalse(self.manager.is_running)

    def test_only_one_pass_at_a_time(self):
        rejected = []

        def start_another(_):
            try:
                self.manager.sync_movies()
            except SyncAlreadyRunning as e:
                rejected.append(e)

        self.bus.subscribe(Events.SYNC_STARTED, start_another)
        self.manager.sync_movies()
        self.assertEqual(len(rejected), 1)


class TestSeriesSync(SyncTestCase):
    def setUp(self):
        super().setUp()
        self.show = self.index.folder(SERIES, "Show (2020)")
        self.s1 = self.index.folder(self.show, "S01")
        self.index.file(self.s1, "Show.S01E01.mkv")
        self.index.file(self.s1, "Show.S01E02.mkv")
        self.s2 = self.index.folder(self.show, "S02")
        self.index.file(self.s2, "Show.S02E01.mkv")
        self.show_id = stable_id(self.show)

    def test_series_with_details(self):
        stats = self.manager.sync_series()
        self.assertEqual(stats.series, 1)
        self.assertEqual(stats.seasons, 2)
        self.assertEqual(stats.episodes, 3)
        series = self.store.get_series(self.show_id)
        self.assertEqual([s.season_number for s in series.seasons], [1, 2])
        self.assertEqual(self.store.category_links("series"), {self.show_id: {stable_id(SERIES)}})

    def test_partial_details_keep_stored_seasons(self):
        self.manager.sync_series()
        self.index.failures.add(self.s2)
        stats = self.manager.sync_series()
        self.assertEqual(stats.failed_items, 1)
        self.assertEqual(len(self.store.get_series(self.show_id).seasons), 2)

        self.index.failures.add(self.s1)
        stats = self.manager.sync_series()
        self.assertEqual(stats.failed_items, 1)
        self.assertEqual(self.store.counts()["episodes"], 3)

    def test_removed_season_is_pruned(self):
        self.manager.sync_series()
        self.index.remove(self.show, "S02")
        stats = self.manager.sync_series()
        self.assertEqual(stats.deleted, 2)
        self.assertEqual(len(self.store.get_series(self.show_id).seasons), 1)

    def test_removed_series_cascades(self):
        self.manager.sync_series()
        self.index.remove(SERIES, "Show (2020)")
        self.manager.sync_series()
        counts = self.store.counts()
        self.assertEqual(counts["series"], 0)
        self.assertEqual(counts["seasons"], 0)
        self.assertEqual(counts["episodes"], 0)

    def test_single_series_details(self):
        self.manager.sync_series(details=False)
        self.assertEqual(self.store.counts()["seasons"], 0)
        stats = self.manager.sync_series_details(self.show_id)
        self.assertEqual(stats.episodes, 3)
        with self.assertRaises(EntityNotFoundError):
            self.manager.sync_series_details(12345)


class TestDetailsPool(SyncTestCase):
    def test_failures_and_timeouts_are_counted_per_item(self):
        failing = "/1:/S/Fail/"
        blocking = "/1:/S/Block/"
        self.index.failures.add(failing)
        self.index.blocks[blocking] = threading.Event()
        self.store.upsert_series([
            SeriesRecord(series_id=1, name="Fail", remote_path=failing),
            SeriesRecord(series_id=2, name="Block", remote_path=blocking),
        ])

        ticks = itertools.count(0, 1000)
        manager = self._manager(clock=lambda: next(ticks), series_details_timeout_seconds=1)
        stats = manager.sync_all_series_details(ContentKind.SERIES)
        self.assertEqual(stats.failed_items, 2)
        self.assertEqual(stats.seasons, 0)
        self.assertFalse(manager.is_running)

    def test_stuck_worker_shrinks_later_chunks(self):
        blocking = "/1:/S/Block/"
        self.index.blocks[blocking] = threading.Event()
        items = [(1, blocking, ContentKind.SERIES), (2, "/1:/S/A/", ContentKind.SERIES), (3, "/1:/S/B/", ContentKind.SERIES)]
        self.store.upsert_series([
            SeriesRecord(series_id=series_id, name=str(series_id), remote_path=path)
            for series_id, path, _ in items
        ])

        def clock():
            return 1000.0 if blocking in self.index.entered else 0.0

        pool_sizes = []

        def make_executor(max_workers):
            pool_sizes.append(max_workers)
            return ThreadPoolExecutor(max_workers=max_workers)

        manager = self._manager(clock=clock, series_details_timeout_seconds=1, series_details_chunk_size=1)
        with mock.patch("driveindex.core.sync_manager.ThreadPoolExecutor", side_effect=make_executor):
            stats = manager._run_details(items)

        self.assertEqual(pool_sizes, [2, 1, 1])
        self.assertGreaterEqual(stats.failed_items, 1)


if __name__ == "__main__":
    unittest.main()
