import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from driveindex.core.endpoint_manager import EndpointManager
from driveindex.core.errors import EntityNotFoundError, TransportError, UrlUnavailableError
from driveindex.core.sqlite_store import SqliteStore
from driveindex.core.url_cache import UrlCache
from driveindex.models.catalog import MovieRecord

PRIMARY = "https://primary.example"
MOVIE_PATH = "/1:/Filmes/Avatar (2009)/Avatar.2009.mkv"


class FakeClocks:
    def __init__(self):
        self.now = 0.0
        self.base = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def monotonic(self):
        return self.now

    def wallclock(self):
        return self.base + timedelta(seconds=self.now)

    def advance(self, seconds):
        self.now += seconds


class FakeClient:
    def __init__(self):
        self.calls = []
        self.fail = False

    def get_download_url(self, endpoint, path):
        self.calls.append((endpoint, path))
        if self.fail:
            raise TransportError("index down", endpoint=PRIMARY, path=path)
        return f"https://cdn.example/dl?file={len(self.calls)}"


class TestUrlCache(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = SqliteStore(Path(self._tmp.name))
        self.store.upsert_movies([MovieRecord(
            stream_id=1, name="Avatar", remote_path=MOVIE_PATH, folder_path="/1:/Filmes/Avatar (2009)/",
        )])
        self.clocks = FakeClocks()
        self.client = FakeClient()
        self.cache = self._new_cache()

    def tearDown(self):
        self.cache.stop()
        self.store.close()
        self._tmp.cleanup()

    def _new_cache(self, endpoint_manager=None):
        return UrlCache(
            self.store,
            self.client,
            endpoint_manager=endpoint_manager,
            ttl_seconds=1800,
            refresh_margin_seconds=300,
            clock=self.clocks.monotonic,
            wallclock=self.clocks.wallclock,
        )

    def test_second_read_is_served_from_memory(self):
        first = self.cache.get(1, "movie")
        second = self.cache.get(1, "movie")
        self.assertEqual(first, second)
        self.assertEqual(len(self.client.calls), 1)
        self.assertEqual(self.client.calls[0][1], MOVIE_PATH)

        url, expires = self.store.get_signed_url("movie", 1)
        self.assertEqual(url, first)
        self.assertEqual(expires, self.clocks.base + timedelta(seconds=1800))

    def test_refreshes_inside_the_margin(self):
        self.cache.get(1)
        self.clocks.advance(1499)
        self.cache.get(1)
        self.assertEqual(len(self.client.calls), 1)

        self.clocks.advance(2)
        refreshed = self.cache.get(1)
        self.assertEqual(len(self.client.calls), 2)
        self.assertEqual(refreshed, "https://cdn.example/dl?file=2")

    def test_failed_refresh_serves_unexpired_entry(self):
        cached = self.cache.get(1)
        self.clocks.advance(1600)
        self.client.fail = True
        self.assertEqual(self.cache.get(1), cached)

    def test_failed_fetch_falls_back_to_expired_durable_url(self):
        cached = self.cache.get(1)
        self.clocks.advance(4000)
        self.client.fail = True
        self.assertEqual(self.cache.get(1), cached)
        self.assertEqual(len(self.client.calls), 2)

    def test_restart_restores_durable_url_without_fetch(self):
        self.store.save_signed_url("movie", 1, "https://cdn.example/persisted", self.clocks.wallclock() + timedelta(hours=1))
        self.assertEqual(self.cache.get(1), "https://cdn.example/persisted")
        self.assertEqual(self.client.calls, [])
        self.assertEqual(self.cache.size(), 1)

    def test_restart_with_nearly_expired_durable_url_fetches(self):
        self.store.save_signed_url("movie", 1, "https://cdn.example/old", self.clocks.wallclock() + timedelta(seconds=60))
        self.assertEqual(self.cache.get(1), "https://cdn.example/dl?file=1")

    def test_unknown_entity(self):
        with self.assertRaises(EntityNotFoundError):
            self.cache.get(999, "movie")
        with self.assertRaises(EntityNotFoundError):
            self.cache.get(1, "episode")
        self.assertEqual(self.client.calls, [])

    def test_unavailable_without_any_url(self):
        self.client.fail = True
        with self.assertRaises(UrlUnavailableError):
            self.cache.get(1)

    def test_unsupported_kind(self):
        with self.assertRaises(ValueError):
            self.cache.get(1, "series")

    def test_invalidate_forces_refetch(self):
        self.cache.get(1)
        self.assertTrue(self.cache.invalidate(1))
        self.assertFalse(self.cache.invalidate(1))
        second = self.cache.get(1)
        self.assertEqual(len(self.client.calls), 2)
        self.assertEqual(second, "https://cdn.example/dl?file=2")

    def test_invalidate_after_restart_drops_durable_url(self):
        self.cache.get(1)
        restarted = self._new_cache()
        self.assertTrue(restarted.invalidate(1))
        self.assertIsNone(self.store.get_signed_url("movie", 1))
        restarted.get(1)
        self.assertEqual(len(self.client.calls), 2)

    def test_sweep_evicts_expired_entries(self):
        self.cache.get(1)
        self.assertEqual(self.cache.sweep_expired(), 0)
        self.clocks.advance(1800)
        self.assertEqual(self.cache.sweep_expired(), 1)
        self.assertEqual(self.cache.size(), 0)

    def test_clear_all(self):
        self.cache.get(1)
        self.assertEqual(self.cache.clear_all(), 1)
        self.assertEqual(self.cache.size(), 0)
        self.assertIsNone(self.store.get_signed_url("movie", 1))
        self.cache.get(1)
        self.assertEqual(len(self.client.calls), 2)

    def test_fetch_goes_to_selected_endpoint(self):
        cache = self._new_cache(endpoint_manager=EndpointManager([PRIMARY]))
        cache.get(1)
        endpoint, _ = self.client.calls[0]
        self.assertEqual(endpoint.base_url, PRIMARY)

    def test_sweeper_thread_starts_and_stops(self):
        self.cache.start()
        self.assertTrue(self.cache._sweeper.is_alive())
        self.cache.stop()
        self.assertIsNone(self.cache._sweeper)


if __name__ == "__main__":
    unittest.main()
