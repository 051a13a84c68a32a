"""
Name Parser
Extracts media metadata from remote index folder and file names

Folder patterns:
- "Nome PT [Nome Original] (Ano)" -> movie/series title folder
- "[Original] Title 2nd Season (TV) (2020)" -> anime title folder
- "SubsPlease (1080p) HEVC Dual" -> release folder

File patterns:
- "Name.Year.Quality.Source.Codec-GROUP.ext" -> movie file
- "Name.S01E01.Title.Quality.Source-GROUP.ext" -> episode file
- "[Group] Title - 01 [1080p].ext" -> anime episode file
"""
import hashlib
import os
import re
from typing import List, Optional, Tuple

from ..models.media_metadata import (
    ParsedAnimeEpisode,
    ParsedEpisodeName,
    ParsedReleaseMetadata,
    ParsedReleaseName,
    ParsedTitleMetadata,
)


VIDEO_EXTENSIONS = {"mkv", "mp4", "avi", "mov", "wmv", "flv", "webm", "m4v"}

# Exact-token tables for release filenames.
QUALITY_PATTERNS = ["2160p", "1080p", "720p", "480p", "4K", "UHD", "HDR"]
SOURCE_PATTERNS = [
    "AMZN", "NF", "DSNP", "HMAX", "HBO", "ATVP", "PMTP",
    "WEB-DL", "WEBRip", "BluRay", "BDRip", "HDRip", "DVDRip",
]

# Keyword tables for release folders: (label, keywords, points).
RELEASE_QUALITY_TABLE = [
    ("2160p", ("2160p", "4k"), 40),
    ("1080p", ("1080p",), 30),
    ("720p", ("720p",), 20),
    ("480p", ("480p",), 10),
]
RELEASE_SOURCE_TABLE = [
    ("BDRemux", ("bdremux", "remux"), 30),
    ("BluRay", ("bd", "bluray"), 25),
    ("WEB-DL", ("web-dl", "webdl"), 20),
    ("WEBRip", ("webrip",), 15),
    ("HDTV", ("hdtv",), 10),
]
RELEASE_CODEC_TABLE = [
    ("HEVC", ("hevc", "x265", "h.265", "h265"), 10),
    ("x264", ("x264", "h.264", "h264"), 5),
]
DUAL_AUDIO_POINTS = 15

# Tokens that never belong to an episode title.
TECHNICAL_TERMS = {
    # codecs
    "x264", "x265", "h264", "h265", "h", "264", "265", "hevc", "avc", "10bit", "8bit", "xvid",
    # audio
    "aac", "ac3", "eac3", "dd", "ddp", "dts", "dts-hd", "truehd", "atmos", "flac", "opus", "mp3",
    "dual", "dublado", "legendado", "multi",
    # sources
    "web", "webdl", "web-dl", "webrip", "bluray", "bdrip", "bdremux", "remux", "brrip", "hdtv",
    "hdrip", "dvdrip", "amzn", "nf", "dsnp", "hmax", "hbo", "atvp", "pmtp", "max", "glbo",
    # resolution / dynamic range
    "2160p", "1080p", "720p", "480p", "4k", "uhd", "hdr", "hdr10", "dv", "sdr",
    # release flags
    "proper", "repack", "internal", "extended",
}
_AUDIO_TOKEN_RE = re.compile(r"^(dd|ddp|aac|ac3|eac3|dts|truehd|flac|opus)\d*(\.\d)?$", re.IGNORECASE)
_BARE_INT_RE = re.compile(r"^\d+$")
_ACRONYM_RE = re.compile(r"^[A-Z]{2,}\d*$")

_ANIME_SEASON_PATTERNS = [
    re.compile(r"\s+(\d+)(?:st|nd|rd|th)\s+Season\s*$", re.IGNORECASE),
    re.compile(r"\s+Season\s*(\d+)\s*$", re.IGNORECASE),
    re.compile(r"\s+Part\s*(\d+)\s*$", re.IGNORECASE),
    re.compile(r"\s+(\d{1,2})\s*$"),
]


def parse_movie_folder(folder_name: str) -> ParsedTitleMetadata:
    """
    Parse a title folder name.

    Tries "Display [Original] (Year)", then "Display (Year)", then the bare name.

    >>> parse_movie_folder("A Hora do Mal [Weapons] (2025)")
    ParsedTitleMetadata(display_name='A Hora do Mal', original_name='Weapons', year=2025, season=None, kind=None)
    """
    folder_name = (folder_name or "").strip()

    match = re.match(r"^(.+?)\s*\[(.+?)\]\s*\((\d{4})\)$", folder_name)
    if match:
        return ParsedTitleMetadata(
            display_name=match.group(1).strip(),
            original_name=match.group(2).strip(),
            year=int(match.group(3)),
        )

    match = re.match(r"^(.+?)\s*\((\d{4})\)$", folder_name)
    if match:
        return ParsedTitleMetadata(display_name=match.group(1).strip(), year=int(match.group(2)))

    return ParsedTitleMetadata(display_name=folder_name)


def parse_series_folder(folder_name: str) -> ParsedTitleMetadata:
    """Series folders follow the movie folder convention."""
    return parse_movie_folder(folder_name)


def parse_anime_folder(folder_name: str) -> ParsedTitleMetadata:
    """
    Parse an anime title folder.

    Extraction order, each step working on what the previous one left:
    leading "[Original]", trailing "(Year)", trailing "(TV|OVA|ONA|Movie)",
    trailing season indicator ("2nd Season", "Season 2", "Part 2", "Title 2").
    """
    rest = (folder_name or "").strip()
    original = None
    year = None
    kind = None
    season = None

    match = re.match(r"^\[([^\]]+)\]\s*", rest)
    if match:
        original = match.group(1).strip()
        rest = rest[match.end():]

    match = re.search(r"\s*\((\d{4})\)\s*$", rest)
    if match:
        year = int(match.group(1))
        rest = rest[:match.start()]

    match = re.search(r"\s*\((TV|OVA|ONA|Movie)\)\s*$", rest, re.IGNORECASE)
    if match:
        kind = match.group(1).upper() if match.group(1).lower() != "movie" else "Movie"
        rest = rest[:match.start()]

    for pattern in _ANIME_SEASON_PATTERNS:
        match = pattern.search(rest)
        if match and rest[:match.start()].strip():
            season = int(match.group(1))
            rest = rest[:match.start()]
            break

    display = rest.strip() or (original or (folder_name or "").strip())
    return ParsedTitleMetadata(
        display_name=display,
        original_name=original,
        year=year,
        season=season,
        kind=kind,
    )


def parse_anime_episode(filename: str) -> ParsedAnimeEpisode:
    """
    Parse an anime episode filename.

    The episode is the number in front of a bracket after a dash ("- 012 ["),
    otherwise the last number that ends the name or precedes a period.
    """
    filename = (filename or "").strip()
    stem, extension = split_extension(filename)

    group = None
    match = re.match(r"^\[([^\]]+)\]", stem)
    if match:
        group = match.group(1).strip()

    episode = None
    match = re.search(r"-\s*(\d{1,4})\s*\[", stem)
    if match:
        episode = int(match.group(1))
    else:
        candidates = re.findall(r"(?<!\d)(\d{1,4})(?=\.|$)", stem)
        if candidates:
            episode = int(candidates[-1])

    return ParsedAnimeEpisode(
        episode=episode,
        release_group=group,
        extension=extension,
        is_dual_audio="dual" in filename.lower(),
        raw_filename=filename,
    )


def _keyword_match(name: str, table) -> Tuple[Optional[str], int]:
    lowered = name.lower()
    for label, keywords, points in table:
        for keyword in keywords:
            if re.search(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])", lowered):
                return label, points
    return None, 0


def _folder_release_group(name: str) -> Optional[str]:
    match = re.match(r"^\s*([^(\-]*?)\s*[(\-]", name)
    if match:
        token = match.group(1).strip().strip("[]")
        if token and not re.search(r"\s", token):
            return token
    match = re.search(r"\(([^)]+)\)", name)
    if match:
        token = match.group(1).strip()
        if token:
            return token
    return None


def parse_release_folder(folder_name: str) -> ParsedReleaseMetadata:
    """
    Parse a release folder and score it.

    Higher scores win when several releases of the same title compete.
    """
    name = (folder_name or "").strip()
    quality, quality_points = _keyword_match(name, RELEASE_QUALITY_TABLE)
    source, source_points = _keyword_match(name, RELEASE_SOURCE_TABLE)
    codec, codec_points = _keyword_match(name, RELEASE_CODEC_TABLE)
    is_dual = "DUAL" in name.upper()

    score = quality_points + source_points + codec_points
    if is_dual:
        score += DUAL_AUDIO_POINTS

    return ParsedReleaseMetadata(
        quality=quality,
        source=source,
        codec=codec,
        release_group=_folder_release_group(name),
        is_dual_audio=is_dual,
        score=score,
    )


def _extract_year(parts: List[str]) -> Tuple[List[str], List[str], Optional[int]]:
    for idx, part in enumerate(parts):
        if re.fullmatch(r"\d{4}", part) and 1900 <= int(part) <= 2100:
            return parts[:idx], parts[idx + 1:], int(part)
    # No year: the name ends at the first technical token.
    upper_tables = {p.upper() for p in QUALITY_PATTERNS + SOURCE_PATTERNS}
    for idx, part in enumerate(parts):
        if part.upper() in upper_tables:
            return parts[:idx], parts[idx:], None
    return parts, [], None


def _extract_pattern(parts: List[str], patterns: List[str]) -> Tuple[Optional[str], List[str]]:
    patterns_upper = {p.upper() for p in patterns}
    for idx, part in enumerate(parts):
        if part.upper() in patterns_upper:
            return part, parts[:idx] + parts[idx + 1:]
    return None, parts


def _extract_release_group(stem: str) -> Optional[str]:
    match = re.search(r"-([A-Za-z0-9]+)$", stem)
    if not match:
        return None
    # "...1080p.WEB-DL" ends in a source token, not a group.
    last_token = stem.rsplit(".", 1)[-1].upper()
    if last_token in {p.upper() for p in QUALITY_PATTERNS + SOURCE_PATTERNS}:
        return None
    return match.group(1)


def _strip_release_group(stem: str, group: Optional[str]) -> str:
    if group and stem.endswith(f"-{group}"):
        return stem[: -(len(group) + 1)]
    return stem


def parse_release_name(filename: str) -> ParsedReleaseName:
    """
    Parse a movie release filename.

    >>> parse_release_name("Weapons.2025.1080p.AMZN.WEB-DL.DDP5.1.H.264.DUAL-C76.mkv").release_group
    'C76'
    """
    filename = (filename or "").strip()
    stem, extension = split_extension(filename)
    release_group = _extract_release_group(stem)
    parts = [p for p in _strip_release_group(stem, release_group).split(".") if p]

    name_parts, rest_parts, year = _extract_year(parts)
    quality, rest_parts = _extract_pattern(rest_parts, QUALITY_PATTERNS)
    source, rest_parts = _extract_pattern(rest_parts, SOURCE_PATTERNS)
    is_dual = any(p.upper() == "DUAL" for p in rest_parts)

    return ParsedReleaseName(
        name=" ".join(name_parts),
        year=year,
        quality=quality,
        source=source,
        release_group=release_group,
        extension=extension,
        is_dual_audio=is_dual,
        raw_filename=filename,
    )


def _is_technical_token(token: str) -> bool:
    if token.lower() in TECHNICAL_TERMS:
        return True
    if _AUDIO_TOKEN_RE.match(token) or _BARE_INT_RE.match(token) or _ACRONYM_RE.match(token):
        return True
    return False


def parse_episode_name(filename: str) -> ParsedEpisodeName:
    """
    Parse an episode filename carrying an "S01E01" marker.

    >>> ep = parse_episode_name("13.Reasons.Why.S01E01.1080p.NF.WEB-DL.DD5.1.x264-ZMG.mkv")
    >>> (ep.series_name, ep.season, ep.episode, ep.quality, ep.source)
    ('13 Reasons Why', 1, 1, '1080p', 'NF')
    """
    filename = (filename or "").strip()
    stem, extension = split_extension(filename)

    match = re.match(r"^(.+?)[.\s_-]+S(\d{1,2})E(\d{1,3})(?:[.\s_-]+(.*))?$", stem, re.IGNORECASE)
    if not match:
        return ParsedEpisodeName(series_name=stem, extension=extension, raw_filename=filename)

    series_name = match.group(1).replace(".", " ").strip()
    rest = match.group(4) or ""
    release_group = _extract_release_group(stem) if rest else None
    rest_parts = [p for p in _strip_release_group(rest, release_group).split(".") if p]

    quality, rest_parts = _extract_pattern(rest_parts, QUALITY_PATTERNS)
    source, rest_parts = _extract_pattern(rest_parts, SOURCE_PATTERNS)
    is_dual = any(p.upper() == "DUAL" for p in rest_parts)
    title_parts = [p for p in rest_parts if not _is_technical_token(p)]

    return ParsedEpisodeName(
        series_name=series_name,
        season=int(match.group(2)),
        episode=int(match.group(3)),
        title=" ".join(title_parts) or None,
        quality=quality,
        source=source,
        release_group=release_group,
        extension=extension,
        is_dual_audio=is_dual,
        raw_filename=filename,
    )


def parse_season_folder(folder_name: str) -> int:
    """Season number from a season folder name; defaults to 1."""
    name = (folder_name or "").strip()
    for pattern in (
        r"^S(\d{1,2})$",
        r"^Season\s*(\d{1,2})$",
        r"\.S(\d{1,2})\.",
        r"S(\d{1,2})",
    ):
        match = re.search(pattern, name, re.IGNORECASE)
        if match:
            return int(match.group(1))
    return 1


def is_season_folder(folder_name: str) -> bool:
    """Whether a folder name looks like "S01", "Season 1" or "Name.S01.1080p"."""
    name = (folder_name or "").strip()
    return bool(
        re.match(r"^S\d{1,2}$", name, re.IGNORECASE)
        or re.match(r"^Season\s*\d{1,2}$", name, re.IGNORECASE)
        or re.search(r"\.S\d{1,2}\.", name, re.IGNORECASE)
        or re.search(r"S\d{1,2}(?:[^a-zA-Z]|$)", name, re.IGNORECASE)
    )


def infer_episode_number(filename: str) -> Optional[int]:
    """Fallback episode number for files without an S01E01 marker."""
    for pattern in (
        r"E(\d{1,3})",
        r"(?:Episode|Ep)[\s._-]*(\d{1,3})",
        r"^(\d{1,3})[\s._-]",
    ):
        match = re.search(pattern, filename or "", re.IGNORECASE)
        if match:
            return int(match.group(1))
    return None


def is_video_file(filename: str) -> bool:
    _, ext = split_extension(filename)
    return (ext or "").lower() in VIDEO_EXTENSIONS


def split_extension(filename: str) -> Tuple[str, Optional[str]]:
    """Split "name.ext" into ("name", "ext"); non-extension suffixes stay in the name."""
    stem, ext = os.path.splitext(filename or "")
    if ext and re.fullmatch(r"\.[A-Za-z0-9]{2,4}", ext):
        return stem, ext[1:]
    return filename or "", None


def parse_file_size(size_str) -> int:
    """
    Parse "<number> <unit>" to bytes (binary multipliers).

    >>> parse_file_size("2 KB")
    2048
    """
    if not isinstance(size_str, str):
        return 0
    match = re.match(r"^([\d.]+)\s*(GB|MB|KB|B)?$", size_str.strip(), re.IGNORECASE)
    if not match:
        return 0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0
    multipliers = {
        "GB": 1024 ** 3,
        "MB": 1024 ** 2,
        "KB": 1024,
        "B": 1,
    }
    return int(round(number * multipliers[(match.group(2) or "B").upper()]))


def stable_id(path: str) -> int:
    """
    Stable positive 63-bit id for a remote path.

    Same path, same id, across calls and process restarts.
    """
    digest = hashlib.blake2b((path or "").encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFFFFFFFFFFFFFF
