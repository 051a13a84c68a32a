import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from driveindex.core.sqlite_store import SqliteStore
from driveindex.models.catalog import (
    CategoryRecord,
    ContentKind,
    EpisodeRecord,
    MovieRecord,
    SeasonRecord,
    SeriesRecord,
)


def _movie(stream_id, name="Avatar", category_id=None):
    return MovieRecord(
        stream_id=stream_id,
        name=name,
        remote_path=f"/1:/Filmes/{name}/{name}.mkv",
        folder_path=f"/1:/Filmes/{name}/",
        year=2009,
        category_id=category_id,
    )


def _season(season_id, number, episode_ids):
    return SeasonRecord(
        season_id=season_id,
        season_number=number,
        name=f"S{number:02d}",
        remote_path=f"/1:/Show/S{number:02d}/",
        episodes=[
            EpisodeRecord(
                episode_id=eid,
                episode_num=idx,
                season_number=number,
                name=f"Show.S{number:02d}E{idx:02d}.mkv",
                remote_path=f"/1:/Show/S{number:02d}/Show.S{number:02d}E{idx:02d}.mkv",
            )
            for idx, eid in enumerate(episode_ids, start=1)
        ],
    )


class TestSqliteStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = SqliteStore(Path(self._tmp.name))

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()

    def test_movie_upsert_keeps_identity(self):
        self.store.upsert_movies([_movie(1)])
        self.store.upsert_movies([MovieRecord(
            stream_id=1, name="Avatar Remastered", remote_path="/1:/Filmes/Avatar/new.mkv",
            folder_path="/1:/Filmes/Avatar/",
        )])
        movie = self.store.get_movie(1)
        self.assertEqual(movie.name, "Avatar Remastered")
        self.assertEqual(movie.remote_path, "/1:/Filmes/Avatar/new.mkv")
        self.assertEqual(self.store.movie_ids(), {1})
        self.assertIsNone(self.store.get_movie(2))

    def test_delete_not_in_removes_orphans_and_links(self):
        self.store.upsert_categories([CategoryRecord(category_id=10, name="Filmes", path="/1:/Filmes/F/")])
        self.store.upsert_movies([_movie(1, "A"), _movie(2, "B")])
        self.store.sync_category_links("movie", {1: {10}, 2: {10}})

        self.assertEqual(self.store.delete_movies_not_in({1}), 1)
        self.assertEqual(self.store.movie_ids(), {1})
        self.assertEqual(self.store.category_links("movie"), {1: {10}})

        self.assertEqual(self.store.delete_categories_not_in(ContentKind.MOVIE, []), 1)
        self.assertEqual(self.store.category_links("movie"), {})

    def test_category_links_are_diffed(self):
        self.store.upsert_categories([
            CategoryRecord(category_id=10, name="A", path="/a/"),
            CategoryRecord(category_id=11, name="B", path="/b/"),
        ])
        self.store.upsert_movies([_movie(1)])

        self.assertEqual(self.store.sync_category_links("movie", {1: {10}}), (1, 0))
        self.assertEqual(self.store.sync_category_links("movie", {1: {10}}), (0, 0))
        self.assertEqual(self.store.sync_category_links("movie", {1: {11}}), (1, 1))
        self.assertEqual(self.store.category_links("movie"), {1: {11}})

    def test_categories_filtered_by_kind(self):
        self.store.upsert_categories([
            CategoryRecord(category_id=1, name="Filmes", path="/m/", kind=ContentKind.MOVIE, advertised_count=5),
            CategoryRecord(category_id=2, name="Animes", path="/a/", kind=ContentKind.ANIME),
        ])
        movies = self.store.list_categories(ContentKind.MOVIE)
        self.assertEqual([c.category_id for c in movies], [1])
        self.assertEqual(movies[0].advertised_count, 5)
        self.assertEqual(len(self.store.list_categories()), 2)

    def test_series_details_replace_and_prune(self):
        self.store.upsert_series([SeriesRecord(series_id=100, name="Show", remote_path="/1:/Show/")])
        self.assertEqual(
            self.store.replace_series_details(100, [_season(1, 1, [11, 12]), _season(2, 2, [21])]),
            (2, 3, 0),
        )

        seasons, episodes, deleted = self.store.replace_series_details(100, [_season(1, 1, [11])])
        self.assertEqual((seasons, episodes), (1, 1))
        # Episodes 12 and 21, then season 2.
        self.assertEqual(deleted, 3)

        series = self.store.get_series(100)
        self.assertEqual([s.season_number for s in series.seasons], [1])
        self.assertEqual([e.episode_id for e in series.seasons[0].episodes], [11])
        self.assertEqual(self.store.counts()["episodes"], 1)

    def test_series_details_without_prune_keeps_rows(self):
        self.store.upsert_series([SeriesRecord(series_id=100, name="Show", remote_path="/1:/Show/")])
        self.store.replace_series_details(100, [_season(1, 1, [11]), _season(2, 2, [21])])
        self.store.replace_series_details(100, [_season(1, 1, [11])], prune=False)
        self.assertEqual(len(self.store.get_series(100).seasons), 2)

    def test_deleting_series_cascades(self):
        self.store.upsert_series([
            SeriesRecord(series_id=100, name="Show", remote_path="/1:/Show/"),
            SeriesRecord(series_id=200, name="Anime", remote_path="/0:/Anime/", content_type=ContentKind.ANIME),
        ])
        self.store.replace_series_details(100, [_season(1, 1, [11, 12])])
        self.assertEqual(self.store.delete_series_not_in(ContentKind.SERIES, []), 1)
        counts = self.store.counts()
        self.assertEqual(counts["seasons"], 0)
        self.assertEqual(counts["episodes"], 0)
        self.assertEqual(self.store.series_ids(), {200})

    def test_details_queue_oldest_first(self):
        self.store.upsert_series([
            SeriesRecord(series_id=1, name="A", remote_path="/a/"),
            SeriesRecord(series_id=2, name="B", remote_path="/b/"),
        ])
        self.store.replace_series_details(1, [_season(5, 1, [51])])
        queue = self.store.list_series_for_details(ContentKind.SERIES)
        self.assertEqual([item[0] for item in queue], [2, 1])

    def test_signed_url_round_trip(self):
        self.store.upsert_movies([_movie(1)])
        expires = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.store.save_signed_url("movie", 1, "https://cdn.example/a", expires)

        url, stored_expiry = self.store.get_signed_url("movie", 1)
        self.assertEqual(url, "https://cdn.example/a")
        self.assertEqual(stored_expiry, expires)

        self.store.clear_signed_url("movie", 1)
        self.assertIsNone(self.store.get_signed_url("movie", 1))
        self.assertEqual(self.store.get_remote_path("movie", 1), "/1:/Filmes/Avatar/Avatar.mkv")
        self.assertIsNone(self.store.get_remote_path("episode", 1))

    def test_sync_status(self):
        self.assertIsNone(self.store.get_sync_status("last"))
        self.store.set_sync_status("last", "completed", {"movies": 3})
        status = self.store.get_sync_status("last")
        self.assertEqual(status["status"], "completed")
        self.assertEqual(status["stats"], {"movies": 3})

    def test_reopen_keeps_data(self):
        self.store.upsert_movies([_movie(1)])
        self.store.save_signed_url("movie", 1, "https://cdn.example/a", datetime.now(timezone.utc) + timedelta(hours=1))
        self.store.close()
        self.store = SqliteStore(Path(self._tmp.name))
        self.assertEqual(self.store.movie_ids(), {1})
        self.assertEqual(self.store.get_signed_url("movie", 1)[0], "https://cdn.example/a")


if __name__ == "__main__":
    unittest.main()
