"""
Media Metadata Models
Structured results of folder and file name parsing
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class ParsedTitleMetadata:
    """Title folder metadata ("Display [Original] (Year)")"""
    display_name: str
    original_name: Optional[str] = None
    year: Optional[int] = None
    # Anime folders only.
    season: Optional[int] = None
    kind: Optional[str] = None


@dataclass
class ParsedReleaseMetadata:
    """Release folder metadata used to rank competing releases"""
    quality: Optional[str] = None
    source: Optional[str] = None
    codec: Optional[str] = None
    release_group: Optional[str] = None
    is_dual_audio: bool = False
    score: int = 0


@dataclass
class ParsedReleaseName:
    """Movie release filename ("Name.Year.Quality.Source...-GROUP.ext")"""
    name: str
    year: Optional[int] = None
    quality: Optional[str] = None
    source: Optional[str] = None
    release_group: Optional[str] = None
    extension: Optional[str] = None
    is_dual_audio: bool = False
    raw_filename: str = ""


@dataclass
class ParsedEpisodeName:
    """Episode filename ("Series.S01E01.Title.Quality...-GROUP.ext")"""
    series_name: str
    season: Optional[int] = None
    episode: Optional[int] = None
    title: Optional[str] = None
    quality: Optional[str] = None
    source: Optional[str] = None
    release_group: Optional[str] = None
    extension: Optional[str] = None
    is_dual_audio: bool = False
    raw_filename: str = ""


@dataclass
class ParsedAnimeEpisode:
    """Anime episode filename ("[Group] Title - 01 [1080p].mkv")"""
    episode: Optional[int] = None
    release_group: Optional[str] = None
    extension: Optional[str] = None
    is_dual_audio: bool = False
    raw_filename: str = ""
