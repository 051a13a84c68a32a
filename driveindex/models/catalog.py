"""
Catalog Models
Records produced by a scrape pass and persisted by sync
"""
from dataclasses import dataclass, field
from typing import List, Optional


class ContentKind:
    MOVIE = "movie"
    SERIES = "series"
    ANIME = "anime"


@dataclass
class CategoryRecord:
    """Top-level folder grouping titles (e.g. "Filmes 4K")"""
    category_id: int
    name: str
    path: str
    kind: str = ContentKind.MOVIE
    advertised_count: Optional[int] = None


@dataclass
class MovieRecord:
    """A movie backed by one video file"""
    stream_id: int
    name: str
    remote_path: str
    folder_path: str
    title: Optional[str] = None
    year: Optional[int] = None
    container_extension: str = "mkv"
    quality: Optional[str] = None
    source: Optional[str] = None
    release_group: Optional[str] = None
    is_dual_audio: bool = False
    file_size: int = 0
    raw_filename: str = ""
    category_id: Optional[int] = None


@dataclass
class EpisodeRecord:
    """A single episode file"""
    episode_id: int
    episode_num: int
    season_number: int
    name: str
    remote_path: str
    title: Optional[str] = None
    container_extension: str = "mkv"
    file_size: int = 0


@dataclass
class SeasonRecord:
    """A season folder, or an anime release modeled as a season"""
    season_id: int
    season_number: int
    name: str
    remote_path: str
    episodes: List[EpisodeRecord] = field(default_factory=list)
    release_score: Optional[int] = None
    release_group: Optional[str] = None
    quality: Optional[str] = None
    is_dual_audio: bool = False

    @property
    def episode_count(self) -> int:
        return len(self.episodes)


@dataclass
class SeriesRecord:
    """A series or anime title with its seasons/releases"""
    series_id: int
    name: str
    remote_path: str
    title: Optional[str] = None
    year: Optional[int] = None
    content_type: str = ContentKind.SERIES
    seasons: List[SeasonRecord] = field(default_factory=list)
    category_id: Optional[int] = None

    @property
    def season_count(self) -> int:
        return len(self.seasons)

    @property
    def episode_count(self) -> int:
        return sum(s.episode_count for s in self.seasons)


@dataclass
class SyncStats:
    """Counters for one sync pass"""
    movies: int = 0
    series: int = 0
    seasons: int = 0
    episodes: int = 0
    categories: int = 0
    deleted: int = 0
    failed_items: int = 0
    aborted_categories: List[str] = field(default_factory=list)

    def merge(self, other: "SyncStats") -> "SyncStats":
        self.movies += other.movies
        self.series += other.series
        self.seasons += other.seasons
        self.episodes += other.episodes
        self.categories += other.categories
        self.deleted += other.deleted
        self.failed_items += other.failed_items
        self.aborted_categories.extend(other.aborted_categories)
        return self

    def to_dict(self) -> dict:
        return {
            "movies": self.movies,
            "series": self.series,
            "seasons": self.seasons,
            "episodes": self.episodes,
            "categories": self.categories,
            "deleted": self.deleted,
            "failed_items": self.failed_items,
            "aborted_categories": list(self.aborted_categories),
        }
