"""
SQLite-backed catalog store for categories, movies, series, seasons and episodes.

Design goals:
- Identity comes from the remote path (stable ids), never from the database.
- Upserts replace mutable fields and keep the row; deletes cascade to dependents.
- Signed download URLs are persisted next to their entity as the durable fallback.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..models.catalog import (
    CategoryRecord,
    EpisodeRecord,
    MovieRecord,
    SeasonRecord,
    SeriesRecord,
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    try:
        if ts.endswith("Z"):
            ts = ts[:-1] + "+00:00"
        return datetime.fromisoformat(ts)
    except ValueError:
        return None


# kind -> (table, id column)
_URL_TABLES = {
    "movie": ("movies", "stream_id"),
    "episode": ("episodes", "episode_id"),
}

# kind -> (link table, entity column)
_LINK_TABLES = {
    "movie": ("movie_categories", "movie_id"),
    "series": ("series_categories", "series_id"),
}


class SqliteStore:
    def __init__(self, data_dir: Path):
        self._lock = RLock()
        self._db_path = Path(data_dir) / "driveindex.db"
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")
        self._migrate()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _migrate(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)"
            )
            row = self._conn.execute("SELECT version FROM schema_version").fetchone()
            if not row:
                self._conn.execute("INSERT INTO schema_version(version) VALUES (1)")

            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                  category_id INTEGER PRIMARY KEY,
                  name TEXT NOT NULL,
                  path TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  advertised_count INTEGER,
                  updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS movies (
                  stream_id INTEGER PRIMARY KEY,
                  name TEXT NOT NULL,
                  title TEXT,
                  year INTEGER,
                  container_extension TEXT NOT NULL DEFAULT 'mkv',
                  remote_path TEXT NOT NULL,
                  folder_path TEXT NOT NULL DEFAULT '',
                  quality TEXT,
                  source TEXT,
                  release_group TEXT,
                  is_dual_audio INTEGER NOT NULL DEFAULT 0,
                  file_size INTEGER NOT NULL DEFAULT 0,
                  raw_filename TEXT NOT NULL DEFAULT '',
                  signed_url TEXT,
                  signed_url_expires_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS series (
                  series_id INTEGER PRIMARY KEY,
                  name TEXT NOT NULL,
                  title TEXT,
                  year INTEGER,
                  content_type TEXT NOT NULL DEFAULT 'series',
                  remote_path TEXT NOT NULL,
                  season_count INTEGER NOT NULL DEFAULT 0,
                  episode_count INTEGER NOT NULL DEFAULT 0,
                  details_synced_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS seasons (
                  season_id INTEGER PRIMARY KEY,
                  series_id INTEGER NOT NULL,
                  season_number INTEGER NOT NULL,
                  name TEXT NOT NULL,
                  remote_path TEXT NOT NULL,
                  episode_count INTEGER NOT NULL DEFAULT 0,
                  release_score INTEGER,
                  release_group TEXT,
                  quality TEXT,
                  is_dual_audio INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL,
                  FOREIGN KEY(series_id) REFERENCES series(series_id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS episodes (
                  episode_id INTEGER PRIMARY KEY,
                  season_id INTEGER NOT NULL,
                  episode_num INTEGER NOT NULL,
                  season_number INTEGER NOT NULL,
                  name TEXT NOT NULL,
                  title TEXT,
                  container_extension TEXT NOT NULL DEFAULT 'mkv',
                  remote_path TEXT NOT NULL,
                  file_size INTEGER NOT NULL DEFAULT 0,
                  signed_url TEXT,
                  signed_url_expires_at TEXT,
                  updated_at TEXT NOT NULL,
                  FOREIGN KEY(season_id) REFERENCES seasons(season_id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS movie_categories (
                  movie_id INTEGER NOT NULL,
                  category_id INTEGER NOT NULL,
                  PRIMARY KEY(movie_id, category_id),
                  FOREIGN KEY(movie_id) REFERENCES movies(stream_id) ON DELETE CASCADE,
                  FOREIGN KEY(category_id) REFERENCES categories(category_id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS series_categories (
                  series_id INTEGER NOT NULL,
                  category_id INTEGER NOT NULL,
                  PRIMARY KEY(series_id, category_id),
                  FOREIGN KEY(series_id) REFERENCES series(series_id) ON DELETE CASCADE,
                  FOREIGN KEY(category_id) REFERENCES categories(category_id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_status (
                  scope TEXT PRIMARY KEY,
                  status TEXT NOT NULL,
                  stats_json TEXT NOT NULL DEFAULT '{}',
                  error TEXT NOT NULL DEFAULT '',
                  updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_seasons_series ON seasons(series_id)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_episodes_season ON episodes(season_id)")

    def _load_keep_set(self, ids: Iterable[int]) -> None:
        """Fill the temp table used by the delete-not-in queries (caller holds the transaction)"""
        self._conn.execute("CREATE TEMP TABLE IF NOT EXISTS keep_ids (id INTEGER PRIMARY KEY)")
        self._conn.execute("DELETE FROM keep_ids")
        self._conn.executemany(
            "INSERT OR IGNORE INTO keep_ids(id) VALUES (?)",
            [(int(i),) for i in ids],
        )

    # ---- Categories ----
    def upsert_categories(self, categories: Iterable[CategoryRecord]) -> int:
        now = _utc_now_iso()
        rows = [
            (c.category_id, c.name, c.path, c.kind, c.advertised_count, now)
            for c in categories
        ]
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO categories(category_id,name,path,kind,advertised_count,updated_at)
                VALUES (?,?,?,?,?,?)
                ON CONFLICT(category_id) DO UPDATE SET
                  name=excluded.name, path=excluded.path, kind=excluded.kind,
                  advertised_count=excluded.advertised_count, updated_at=excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def list_categories(self, kind: Optional[str] = None) -> List[CategoryRecord]:
        query = "SELECT * FROM categories"
        params: Tuple[Any, ...] = ()
        if kind:
            query += " WHERE kind = ?"
            params = (kind,)
        query += " ORDER BY kind, name"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            CategoryRecord(
                category_id=int(r["category_id"]),
                name=str(r["name"]),
                path=str(r["path"]),
                kind=str(r["kind"]),
                advertised_count=r["advertised_count"],
            )
            for r in rows
        ]

    def delete_categories_not_in(self, kind: str, keep_ids: Iterable[int]) -> int:
        with self._lock, self._conn:
            self._load_keep_set(keep_ids)
            cur = self._conn.execute(
                "DELETE FROM categories WHERE kind = ? AND category_id NOT IN (SELECT id FROM keep_ids)",
                (kind,),
            )
            return int(cur.rowcount or 0)

    # ---- Movies ----
    def upsert_movies(self, movies: Iterable[MovieRecord]) -> int:
        now = _utc_now_iso()
        rows = [
            (
                m.stream_id, m.name, m.title, m.year, m.container_extension, m.remote_path,
                m.folder_path, m.quality, m.source, m.release_group, int(bool(m.is_dual_audio)),
                int(m.file_size or 0), m.raw_filename, now, now,
            )
            for m in movies
        ]
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO movies(
                  stream_id,name,title,year,container_extension,remote_path,folder_path,quality,
                  source,release_group,is_dual_audio,file_size,raw_filename,created_at,updated_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(stream_id) DO UPDATE SET
                  name=excluded.name, title=excluded.title, year=excluded.year,
                  container_extension=excluded.container_extension, remote_path=excluded.remote_path,
                  folder_path=excluded.folder_path, quality=excluded.quality, source=excluded.source,
                  release_group=excluded.release_group, is_dual_audio=excluded.is_dual_audio,
                  file_size=excluded.file_size, raw_filename=excluded.raw_filename,
                  updated_at=excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def get_movie(self, stream_id: int) -> Optional[MovieRecord]:
        with self._lock:
            r = self._conn.execute("SELECT * FROM movies WHERE stream_id = ?", (int(stream_id),)).fetchone()
        if not r:
            return None
        return MovieRecord(
            stream_id=int(r["stream_id"]),
            name=str(r["name"]),
            remote_path=str(r["remote_path"]),
            folder_path=str(r["folder_path"]),
            title=r["title"],
            year=r["year"],
            container_extension=str(r["container_extension"]),
            quality=r["quality"],
            source=r["source"],
            release_group=r["release_group"],
            is_dual_audio=bool(r["is_dual_audio"]),
            file_size=int(r["file_size"] or 0),
            raw_filename=str(r["raw_filename"]),
        )

    def movie_ids(self) -> Set[int]:
        with self._lock:
            return {int(r[0]) for r in self._conn.execute("SELECT stream_id FROM movies").fetchall()}

    def delete_movies_not_in(self, keep_ids: Iterable[int]) -> int:
        with self._lock, self._conn:
            self._load_keep_set(keep_ids)
            cur = self._conn.execute("DELETE FROM movies WHERE stream_id NOT IN (SELECT id FROM keep_ids)")
            return int(cur.rowcount or 0)

    # ---- Series ----
    def upsert_series(self, series_list: Iterable[SeriesRecord]) -> int:
        """Upsert title rows only; seasons go through replace_series_details"""
        now = _utc_now_iso()
        rows = [
            (s.series_id, s.name, s.title, s.year, s.content_type, s.remote_path, now, now)
            for s in series_list
        ]
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO series(series_id,name,title,year,content_type,remote_path,created_at,updated_at)
                VALUES (?,?,?,?,?,?,?,?)
                ON CONFLICT(series_id) DO UPDATE SET
                  name=excluded.name, title=excluded.title, year=excluded.year,
                  content_type=excluded.content_type, remote_path=excluded.remote_path,
                  updated_at=excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def get_series(self, series_id: int) -> Optional[SeriesRecord]:
        with self._lock:
            r = self._conn.execute("SELECT * FROM series WHERE series_id = ?", (int(series_id),)).fetchone()
            if not r:
                return None
            season_rows = self._conn.execute(
                "SELECT * FROM seasons WHERE series_id = ? ORDER BY season_number", (int(series_id),)
            ).fetchall()
            episode_rows = self._conn.execute(
                """
                SELECT e.* FROM episodes e JOIN seasons s ON s.season_id = e.season_id
                WHERE s.series_id = ? ORDER BY e.episode_num
                """,
                (int(series_id),),
            ).fetchall()

        episodes_by_season: Dict[int, List[EpisodeRecord]] = {}
        for e in episode_rows:
            episodes_by_season.setdefault(int(e["season_id"]), []).append(EpisodeRecord(
                episode_id=int(e["episode_id"]),
                episode_num=int(e["episode_num"]),
                season_number=int(e["season_number"]),
                name=str(e["name"]),
                remote_path=str(e["remote_path"]),
                title=e["title"],
                container_extension=str(e["container_extension"]),
                file_size=int(e["file_size"] or 0),
            ))
        seasons = [
            SeasonRecord(
                season_id=int(s["season_id"]),
                season_number=int(s["season_number"]),
                name=str(s["name"]),
                remote_path=str(s["remote_path"]),
                episodes=episodes_by_season.get(int(s["season_id"]), []),
                release_score=s["release_score"],
                release_group=s["release_group"],
                quality=s["quality"],
                is_dual_audio=bool(s["is_dual_audio"]),
            )
            for s in season_rows
        ]
        return SeriesRecord(
            series_id=int(r["series_id"]),
            name=str(r["name"]),
            remote_path=str(r["remote_path"]),
            title=r["title"],
            year=r["year"],
            content_type=str(r["content_type"]),
            seasons=seasons,
        )

    def series_ids(self, content_type: Optional[str] = None) -> Set[int]:
        query = "SELECT series_id FROM series"
        params: Tuple[Any, ...] = ()
        if content_type:
            query += " WHERE content_type = ?"
            params = (content_type,)
        with self._lock:
            return {int(r[0]) for r in self._conn.execute(query, params).fetchall()}

    def list_series_for_details(self, content_type: Optional[str] = None) -> List[Tuple[int, str, str]]:
        """(series_id, remote_path, content_type), oldest details first"""
        query = "SELECT series_id, remote_path, content_type FROM series"
        params: Tuple[Any, ...] = ()
        if content_type:
            query += " WHERE content_type = ?"
            params = (content_type,)
        query += " ORDER BY COALESCE(details_synced_at, ''), series_id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [(int(r[0]), str(r[1]), str(r[2])) for r in rows]

    def delete_series_not_in(self, content_type: str, keep_ids: Iterable[int]) -> int:
        with self._lock, self._conn:
            self._load_keep_set(keep_ids)
            cur = self._conn.execute(
                "DELETE FROM series WHERE content_type = ? AND series_id NOT IN (SELECT id FROM keep_ids)",
                (content_type,),
            )
            return int(cur.rowcount or 0)

    def replace_series_details(
        self, series_id: int, seasons: List[SeasonRecord], prune: bool = True
    ) -> Tuple[int, int, int]:
        """
        Upsert seasons and episodes of one series and, with prune, drop the ones no longer listed.

        Returns (seasons, episodes, deleted).
        """
        now = _utc_now_iso()
        series_id = int(series_id)
        season_rows = []
        episode_rows = []
        for s in seasons:
            season_rows.append((
                s.season_id, series_id, s.season_number, s.name, s.remote_path, s.episode_count,
                s.release_score, s.release_group, s.quality, int(bool(s.is_dual_audio)), now,
            ))
            for e in s.episodes:
                episode_rows.append((
                    e.episode_id, s.season_id, e.episode_num, e.season_number, e.name, e.title,
                    e.container_extension, e.remote_path, int(e.file_size or 0), now,
                ))
        season_ids = {row[0] for row in season_rows}
        episode_ids = {row[0] for row in episode_rows}

        with self._lock, self._conn:
            self._conn.executemany(
                """
                INSERT INTO seasons(
                  season_id,series_id,season_number,name,remote_path,episode_count,release_score,
                  release_group,quality,is_dual_audio,updated_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(season_id) DO UPDATE SET
                  series_id=excluded.series_id, season_number=excluded.season_number,
                  name=excluded.name, remote_path=excluded.remote_path,
                  episode_count=excluded.episode_count, release_score=excluded.release_score,
                  release_group=excluded.release_group, quality=excluded.quality,
                  is_dual_audio=excluded.is_dual_audio, updated_at=excluded.updated_at
                """,
                season_rows,
            )
            self._conn.executemany(
                """
                INSERT INTO episodes(
                  episode_id,season_id,episode_num,season_number,name,title,container_extension,
                  remote_path,file_size,updated_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(episode_id) DO UPDATE SET
                  season_id=excluded.season_id, episode_num=excluded.episode_num,
                  season_number=excluded.season_number, name=excluded.name, title=excluded.title,
                  container_extension=excluded.container_extension, remote_path=excluded.remote_path,
                  file_size=excluded.file_size, updated_at=excluded.updated_at
                """,
                episode_rows,
            )

            deleted = 0
            if prune:
                deleted = self._prune_series_details(series_id, season_ids, episode_ids)

            self._conn.execute(
                """
                UPDATE series SET season_count = ?, episode_count = ?, details_synced_at = ?
                WHERE series_id = ?
                """,
                (len(season_rows), len(episode_rows), now, series_id),
            )
        return len(season_rows), len(episode_rows), deleted

    def _prune_series_details(self, series_id: int, season_ids: Set[int], episode_ids: Set[int]) -> int:
        """Delete episodes, then seasons, of a series that are not in the keep sets (caller holds the transaction)"""
        self._load_keep_set(episode_ids)
        deleted = int(self._conn.execute(
            """
            DELETE FROM episodes
            WHERE season_id IN (SELECT season_id FROM seasons WHERE series_id = ?)
              AND episode_id NOT IN (SELECT id FROM keep_ids)
            """,
            (series_id,),
        ).rowcount or 0)
        self._load_keep_set(season_ids)
        deleted += int(self._conn.execute(
            "DELETE FROM seasons WHERE series_id = ? AND season_id NOT IN (SELECT id FROM keep_ids)",
            (series_id,),
        ).rowcount or 0)
        return deleted

    # ---- Category links ----
    def category_links(self, kind: str) -> Dict[int, Set[int]]:
        table, column = _LINK_TABLES[kind]
        out: Dict[int, Set[int]] = {}
        with self._lock:
            for r in self._conn.execute(f"SELECT {column}, category_id FROM {table}").fetchall():
                out.setdefault(int(r[0]), set()).add(int(r[1]))
        return out

    def sync_category_links(self, kind: str, desired: Dict[int, Set[int]]) -> Tuple[int, int]:
        """
        Bring the links of the given entities to the desired sets.

        Only additions are inserted and only removals deleted. Returns (added, removed).
        """
        table, column = _LINK_TABLES[kind]
        if not desired:
            return 0, 0
        with self._lock, self._conn:
            self._load_keep_set(desired.keys())
            current: Dict[int, Set[int]] = {}
            for r in self._conn.execute(
                f"SELECT {column}, category_id FROM {table} WHERE {column} IN (SELECT id FROM keep_ids)"
            ).fetchall():
                current.setdefault(int(r[0]), set()).add(int(r[1]))

            additions = []
            removals = []
            for entity_id, wanted in desired.items():
                have = current.get(int(entity_id), set())
                additions.extend((int(entity_id), c) for c in wanted - have)
                removals.extend((int(entity_id), c) for c in have - wanted)

            if additions:
                self._conn.executemany(
                    f"INSERT OR IGNORE INTO {table}({column}, category_id) VALUES (?, ?)",
                    additions,
                )
            if removals:
                self._conn.executemany(
                    f"DELETE FROM {table} WHERE {column} = ? AND category_id = ?",
                    removals,
                )
        return len(additions), len(removals)

    # ---- Signed URLs ----
    def get_remote_path(self, kind: str, entity_id: int) -> Optional[str]:
        table, column = _URL_TABLES[kind]
        with self._lock:
            r = self._conn.execute(
                f"SELECT remote_path FROM {table} WHERE {column} = ?", (int(entity_id),)
            ).fetchone()
        return str(r[0]) if r else None

    def save_signed_url(self, kind: str, entity_id: int, url: str, expires_at: datetime) -> None:
        table, column = _URL_TABLES[kind]
        with self._lock, self._conn:
            self._conn.execute(
                f"UPDATE {table} SET signed_url = ?, signed_url_expires_at = ? WHERE {column} = ?",
                (url, _to_iso(expires_at), int(entity_id)),
            )

    def get_signed_url(self, kind: str, entity_id: int) -> Optional[Tuple[str, Optional[datetime]]]:
        table, column = _URL_TABLES[kind]
        with self._lock:
            r = self._conn.execute(
                f"SELECT signed_url, signed_url_expires_at FROM {table} WHERE {column} = ?",
                (int(entity_id),),
            ).fetchone()
        if not r or not r[0]:
            return None
        return str(r[0]), _parse_iso(r[1])

    def clear_signed_url(self, kind: str, entity_id: int) -> None:
        table, column = _URL_TABLES[kind]
        with self._lock, self._conn:
            self._conn.execute(
                f"UPDATE {table} SET signed_url = NULL, signed_url_expires_at = NULL WHERE {column} = ?",
                (int(entity_id),),
            )

    def clear_all_signed_urls(self) -> int:
        cleared = 0
        with self._lock, self._conn:
            for table, _ in _URL_TABLES.values():
                cur = self._conn.execute(
                    f"UPDATE {table} SET signed_url = NULL, signed_url_expires_at = NULL WHERE signed_url IS NOT NULL"
                )
                cleared += cur.rowcount
        return cleared

    # ---- Status ----
    def counts(self) -> Dict[str, int]:
        out = {}
        with self._lock:
            for table in ("categories", "movies", "series", "seasons", "episodes", "movie_categories", "series_categories"):
                row = self._conn.execute(f"SELECT COUNT(1) AS n FROM {table}").fetchone()
                out[table] = int(row["n"] if row else 0)
        return out

    def set_sync_status(self, scope: str, status: str, stats: Optional[Dict[str, Any]] = None, error: str = "") -> None:
        payload = json.dumps(stats or {}, sort_keys=True)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO sync_status(scope,status,stats_json,error,updated_at)
                VALUES (?,?,?,?,?)
                ON CONFLICT(scope) DO UPDATE SET
                  status=excluded.status, stats_json=excluded.stats_json,
                  error=excluded.error, updated_at=excluded.updated_at
                """,
                (scope, status, payload, error or "", _utc_now_iso()),
            )

    def get_sync_status(self, scope: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            r = self._conn.execute("SELECT * FROM sync_status WHERE scope = ?", (scope,)).fetchone()
        if not r:
            return None
        try:
            stats = json.loads(str(r["stats_json"]))
        except ValueError:
            stats = {}
        return {
            "scope": scope,
            "status": str(r["status"]),
            "stats": stats,
            "error": str(r["error"]),
            "updated_at": str(r["updated_at"]),
        }

