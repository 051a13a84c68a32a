"""
Index Scraper
Walks the remote index tree and turns folders and files into catalog records

Layout:
    /1:/Filmes/
    ├── Filmes (5519)/              category
    │   └── Nome [Original] (Ano)/  title folder
    │       └── arquivo.mkv
    /1:/Séries/Séries WEB-DL/
    └── Serie (2020)/
        └── S01/                    season folder (files, or one level of release folders)
    /0:/Animes/
    └── [Original] Title (TV)/
        └── SubsPlease (1080p)/     release folder, modeled as a season
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional

from ..core.errors import IndexClientError
from ..core.pacing import RequestPacer
from ..models.catalog import (
    CategoryRecord,
    ContentKind,
    EpisodeRecord,
    MovieRecord,
    SeasonRecord,
    SeriesRecord,
)
from ..models.remote_entry import RemoteEntry
from ..utils.name_parser import (
    infer_episode_number,
    is_season_folder,
    is_video_file,
    parse_anime_episode,
    parse_anime_folder,
    parse_episode_name,
    parse_movie_folder,
    parse_release_folder,
    parse_release_name,
    parse_season_folder,
    parse_series_folder,
    split_extension,
    stable_id,
)

logger = logging.getLogger(__name__)

_CATEGORY_COUNT_RE = re.compile(r"\((\d+)\)$")
_ANIME_DASH_EPISODE_RE = re.compile(r"-\s*(\d{1,4})\s*\[")


def extract_category_count(name: str) -> Optional[int]:
    match = _CATEGORY_COUNT_RE.search((name or "").strip())
    return int(match.group(1)) if match else None


def clean_category_name(name: str) -> str:
    return re.sub(r"\s*\(\d+\)$", "", (name or "").strip()).strip()


def resolve_episode_number(filename: str) -> Optional[int]:
    """Explicit S01E01 marker, then "- 012 [", then positional inference"""
    explicit = parse_episode_name(filename).episode
    if explicit is not None:
        return explicit
    match = _ANIME_DASH_EPISODE_RE.search(filename or "")
    if match:
        return int(match.group(1))
    return infer_episode_number(filename)


@dataclass
class ScrapeReport:
    """What one scrape pass managed to see"""
    categories: List[CategoryRecord] = field(default_factory=list)
    # Category (or root) paths whose listing failed; their titles are missing from the pass.
    failed_categories: List[str] = field(default_factory=list)
    failed_branches: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed_categories


class IndexScraper:
    """Sequential scrape stream over one IndexClient, paced by its own RequestPacer"""

    def __init__(self, client, pacer: Optional[RequestPacer] = None, settings=None, endpoint=None):
        self.client = client
        self.settings = settings if settings is not None else {}
        self.pacer = pacer or RequestPacer.from_settings(self.settings)
        # None lets the client pick through its EndpointManager.
        self.endpoint = endpoint
        self.last_report = ScrapeReport()

    def fork(self) -> "IndexScraper":
        """New stream sharing the client, with an independent pacer"""
        return IndexScraper(self.client, pacer=self.pacer.fork(), settings=self.settings, endpoint=self.endpoint)

    def _begin(self, report: Optional[ScrapeReport]) -> ScrapeReport:
        self.last_report = report if report is not None else ScrapeReport()
        return self.last_report

    def _list_all(self, path: str) -> List[RemoteEntry]:
        self.pacer.wait()
        return self.client.list_folder_all(self.endpoint, path)

    @staticmethod
    def _folders(items: Iterable[RemoteEntry]) -> List[RemoteEntry]:
        return [item for item in items if item.is_folder]

    @staticmethod
    def _videos(items: Iterable[RemoteEntry]) -> List[RemoteEntry]:
        return [item for item in items if item.is_file and is_video_file(item.name)]

    def _series_paths(self, paths) -> List[str]:
        if paths is None:
            paths = self.settings.get("series_paths", [])
        if isinstance(paths, str):
            paths = [paths]
        return [p for p in (paths or []) if p]

    def _anime_paths(self, paths) -> List[str]:
        if paths is None:
            paths = self.settings.get("anime_paths", [])
        if isinstance(paths, str):
            paths = [paths]
        return [p for p in (paths or []) if p]

    # =========================================================================
    # Movies
    # =========================================================================

    def list_categories(self, root: Optional[str] = None, kind: str = ContentKind.MOVIE) -> List[CategoryRecord]:
        """Folders directly under the movies root; raises IndexClientError if the root cannot be listed"""
        root = root or self.settings.get("movies_path", "/1:/Filmes/")
        categories = []
        for item in self._folders(self._list_all(root)):
            categories.append(CategoryRecord(
                category_id=stable_id(item.path),
                name=clean_category_name(item.name),
                path=item.path,
                kind=kind,
                advertised_count=extract_category_count(item.name),
            ))
        return categories

    def scrape_movies(self, root: Optional[str] = None, report: Optional[ScrapeReport] = None) -> Iterator[MovieRecord]:
        """
        Stream every movie under the root, category by category.

        A failed category is recorded in the report and skipped; so is a
        failed root listing (nothing is yielded then).
        """
        report = self._begin(report)
        root = root or self.settings.get("movies_path", "/1:/Filmes/")
        try:
            categories = self.list_categories(root)
        except IndexClientError as e:
            logger.warning("Failed to list movie categories at %s: %s", root, e)
            report.failed_categories.append(root)
            return
        report.categories.extend(categories)

        for category in categories:
            logger.info("Processing category: %s", category.name)
            try:
                folders = self._folders(self._list_all(category.path))
            except IndexClientError as e:
                logger.warning("Failed to list category %s: %s", category.path, e)
                report.failed_categories.append(category.path)
                continue
            logger.info("Found %d movie folders in %s", len(folders), category.name)

            for folder in folders:
                movie = self.scrape_movie_folder(folder, category_id=category.category_id)
                if movie is not None:
                    yield movie

    def scrape_category(self, category_path: str) -> List[MovieRecord]:
        """All movies of one category; raises IndexClientError if the category cannot be listed"""
        logger.info("Scraping category: %s", category_path)
        self._begin(None)
        folders = self._folders(self._list_all(category_path))
        logger.info("Found %d movie folders in category", len(folders))
        category_id = stable_id(category_path)
        movies = []
        for folder in folders:
            movie = self.scrape_movie_folder(folder, category_id=category_id)
            if movie is not None:
                movies.append(movie)
        return movies

    def scrape_movie_folder(self, folder: RemoteEntry, category_id: Optional[int] = None) -> Optional[MovieRecord]:
        """
        One title folder to a movie.

        The first video file wins. Without one, subfolders are probed exactly
        one level deep and the first subfolder holding a video wins.
        """
        logger.debug("Scraping movie folder: %s", folder.name)
        meta = parse_movie_folder(folder.name)
        try:
            items = self._list_all(folder.path)
        except IndexClientError as e:
            logger.warning("Failed to list folder %s: %s", folder.path, e)
            self.last_report.failed_branches += 1
            return None

        videos = self._videos(items)
        if videos:
            return self._build_movie(meta, videos[0], folder.path, category_id)

        for subfolder in self._folders(items):
            try:
                sub_items = self._list_all(subfolder.path)
            except IndexClientError as e:
                logger.warning("Failed to list subfolder %s: %s", subfolder.path, e)
                self.last_report.failed_branches += 1
                continue
            sub_videos = self._videos(sub_items)
            if sub_videos:
                return self._build_movie(meta, sub_videos[0], folder.path, category_id)

        logger.debug("No video found in %s", folder.path)
        return None

    @staticmethod
    def _build_movie(meta, video: RemoteEntry, folder_path: str, category_id: Optional[int]) -> MovieRecord:
        release = parse_release_name(video.name)
        return MovieRecord(
            stream_id=stable_id(video.path),
            name=meta.display_name or release.name,
            remote_path=video.path,
            folder_path=folder_path,
            title=meta.original_name,
            year=meta.year or release.year,
            container_extension=release.extension or "mkv",
            quality=release.quality,
            source=release.source,
            release_group=release.release_group,
            is_dual_audio=release.is_dual_audio,
            file_size=video.size,
            raw_filename=video.name,
            category_id=category_id,
        )

    # =========================================================================
    # Series
    # =========================================================================

    def list_series_folders(self, series_path: str, content_type: str = ContentKind.SERIES) -> List[SeriesRecord]:
        """Title folders of a series/anime category, without seasons"""
        category_id = stable_id(series_path)
        parse = parse_anime_folder if content_type == ContentKind.ANIME else parse_series_folder
        records = []
        for folder in self._folders(self._list_all(series_path)):
            meta = parse(folder.name)
            records.append(SeriesRecord(
                series_id=stable_id(folder.path),
                name=meta.display_name,
                remote_path=folder.path,
                title=meta.original_name,
                year=meta.year,
                content_type=content_type,
                category_id=category_id,
            ))
        return records

    def scrape_series(
        self,
        paths=None,
        details: bool = False,
        report: Optional[ScrapeReport] = None,
    ) -> Iterator[SeriesRecord]:
        """
        Stream series title folders from every series path.

        With details=True each title is fully scraped (seasons and episodes)
        and titles without any episode are dropped.
        """
        report = self._begin(report)
        for path in self._series_paths(paths):
            yield from self._scrape_titles(path, ContentKind.SERIES, details, report)

    def scrape_series_folder(self, series_path: str) -> List[SeriesRecord]:
        """Fully scraped series of one path; raises IndexClientError if it cannot be listed"""
        logger.info("Scraping series folder: %s", series_path)
        results = []
        for shell in self.list_series_folders(series_path):
            record = self._with_details(shell)
            if record is not None:
                results.append(record)
        return results

    def scrape_single_series(self, folder: RemoteEntry, category_id: Optional[int] = None) -> Optional[SeriesRecord]:
        meta = parse_series_folder(folder.name)
        shell = SeriesRecord(
            series_id=stable_id(folder.path),
            name=meta.display_name,
            remote_path=folder.path,
            title=meta.original_name,
            year=meta.year,
            content_type=ContentKind.SERIES,
            category_id=category_id,
        )
        return self._with_details(shell)

    def scrape_series_details(self, series_path: str, content_type: str = ContentKind.SERIES) -> List[SeasonRecord]:
        """
        Seasons and episodes of one title folder.

        Raises IndexClientError when the title folder itself cannot be listed;
        a failing season or release folder is skipped.
        """
        if content_type == ContentKind.ANIME:
            return self._anime_releases(series_path)

        logger.debug("Scraping series: %s", series_path)
        items = self._list_all(series_path)
        season_folders = [f for f in self._folders(items) if is_season_folder(f.name)]

        seasons = []
        for folder in season_folders:
            season = self._scrape_season(folder)
            if season is not None:
                seasons.append(season)
        seasons.sort(key=lambda s: s.season_number)
        return seasons

    def _with_details(self, shell: SeriesRecord) -> Optional[SeriesRecord]:
        try:
            shell.seasons = self.scrape_series_details(shell.remote_path, shell.content_type)
        except IndexClientError as e:
            logger.warning("Failed to list %s %s: %s", shell.content_type, shell.name, e)
            self.last_report.failed_branches += 1
            return None
        if not shell.seasons:
            return None
        return shell

    def _scrape_titles(self, path: str, content_type: str, details: bool, report: ScrapeReport) -> Iterator[SeriesRecord]:
        logger.info("Scraping %s folder: %s", content_type, path)
        try:
            shells = self.list_series_folders(path, content_type)
        except IndexClientError as e:
            logger.warning("Failed to list %s folder %s: %s", content_type, path, e)
            report.failed_categories.append(path)
            return
        report.categories.append(CategoryRecord(
            category_id=stable_id(path),
            name=clean_category_name(path.rstrip("/").rsplit("/", 1)[-1]),
            path=path,
            kind=content_type,
        ))
        logger.info("Found %d %s folders in %s", len(shells), content_type, path)

        for shell in shells:
            if not details:
                yield shell
                continue
            record = self._with_details(shell)
            if record is not None:
                yield record

    def _scrape_season(self, folder: RemoteEntry) -> Optional[SeasonRecord]:
        """A season folder; without direct videos its release subfolders are probed one level deep"""
        season_number = parse_season_folder(folder.name)
        try:
            items = self._list_all(folder.path)
        except IndexClientError as e:
            logger.warning("Failed to list season %s: %s", folder.name, e)
            self.last_report.failed_branches += 1
            return None

        episodes = self._episodes_from_files(self._videos(items), season_number)
        if not episodes:
            for subfolder in self._folders(items):
                try:
                    sub_items = self._list_all(subfolder.path)
                except IndexClientError as e:
                    logger.warning("Failed to list release folder %s: %s", subfolder.path, e)
                    self.last_report.failed_branches += 1
                    continue
                episodes.extend(self._episodes_from_files(self._videos(sub_items), season_number))
            episodes.sort(key=lambda ep: ep.episode_num)

        if not episodes:
            return None
        return SeasonRecord(
            season_id=stable_id(folder.path),
            season_number=season_number,
            name=folder.name,
            remote_path=folder.path,
            episodes=episodes,
        )

    @staticmethod
    def _episodes_from_files(files: List[RemoteEntry], season_number: int) -> List[EpisodeRecord]:
        episodes = []
        for file in files:
            meta = parse_episode_name(file.name)
            episode_num = resolve_episode_number(file.name)
            if episode_num is None:
                logger.debug("No episode number in %s", file.name)
                continue
            episodes.append(EpisodeRecord(
                episode_id=stable_id(file.path),
                episode_num=episode_num,
                season_number=meta.season or season_number,
                name=file.name,
                remote_path=file.path,
                title=meta.title,
                container_extension=meta.extension or "mkv",
                file_size=file.size,
            ))
        episodes.sort(key=lambda ep: ep.episode_num)
        return episodes

    # =========================================================================
    # Anime
    # =========================================================================

    def scrape_animes(
        self,
        paths=None,
        details: bool = False,
        report: Optional[ScrapeReport] = None,
    ) -> Iterator[SeriesRecord]:
        """Stream anime title folders; releases are modeled as seasons"""
        report = self._begin(report)
        for path in self._anime_paths(paths):
            yield from self._scrape_titles(path, ContentKind.ANIME, details, report)

    def scrape_single_anime(self, folder: RemoteEntry, category_id: Optional[int] = None) -> Optional[SeriesRecord]:
        meta = parse_anime_folder(folder.name)
        shell = SeriesRecord(
            series_id=stable_id(folder.path),
            name=meta.display_name,
            remote_path=folder.path,
            title=meta.original_name,
            year=meta.year,
            content_type=ContentKind.ANIME,
            category_id=category_id,
        )
        return self._with_details(shell)

    def _anime_releases(self, anime_path: str) -> List[SeasonRecord]:
        """Release folders ranked by score (best first) and numbered 1..n in that order"""
        logger.debug("Scraping anime: %s", anime_path)
        items = self._list_all(anime_path)

        releases = []
        for folder in self._folders(items):
            release = self._scrape_anime_release(folder)
            if release is not None:
                releases.append(release)

        releases.sort(key=lambda r: r.release_score or 0, reverse=True)
        for rank, release in enumerate(releases, start=1):
            release.season_number = rank
            for episode in release.episodes:
                episode.season_number = rank
        return releases

    def _scrape_anime_release(self, folder: RemoteEntry) -> Optional[SeasonRecord]:
        meta = parse_release_folder(folder.name)
        try:
            items = self._list_all(folder.path)
        except IndexClientError as e:
            logger.warning("Failed to list release %s: %s", folder.name, e)
            self.last_report.failed_branches += 1
            return None

        episodes = []
        for file in self._videos(items):
            episode_num = parse_episode_name(file.name).episode
            if episode_num is None:
                episode_num = parse_anime_episode(file.name).episode
            if episode_num is None:
                episode_num = infer_episode_number(file.name)
            if episode_num is None:
                continue
            _, extension = split_extension(file.name)
            episodes.append(EpisodeRecord(
                episode_id=stable_id(file.path),
                episode_num=episode_num,
                season_number=0,
                name=file.name,
                remote_path=file.path,
                container_extension=extension or "mkv",
                file_size=file.size,
            ))
        if not episodes:
            return None
        episodes.sort(key=lambda ep: ep.episode_num)

        return SeasonRecord(
            season_id=stable_id(folder.path),
            season_number=0,
            name=folder.name,
            remote_path=folder.path,
            episodes=episodes,
            release_score=meta.score,
            release_group=meta.release_group,
            quality=meta.quality,
            is_dual_audio=meta.is_dual_audio,
        )
