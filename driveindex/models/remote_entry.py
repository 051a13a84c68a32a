"""
Remote Entry Model
Normalized view of one item returned by a remote index folder listing
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class EntryKind(Enum):
    """Remote entry kind"""
    FILE = "file"
    FOLDER = "folder"


@dataclass
class RemoteEntry:
    """A file or folder inside a remote index listing"""
    name: str
    kind: EntryKind
    path: str
    size: int = 0  # bytes
    content_type: str = ""
    modified_at: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.kind == EntryKind.FOLDER

    @property
    def is_file(self) -> bool:
        return self.kind == EntryKind.FILE


@dataclass
class FolderPage:
    """One page of a folder listing, already normalized"""
    entries: List[RemoteEntry] = field(default_factory=list)
    next_page_token: Optional[str] = None
    # Base URL of the endpoint that actually served this page.
    endpoint: str = ""


@dataclass
class FileInfo:
    """HEAD metadata for a remote file"""
    size: Optional[int] = None
    content_type: Optional[str] = None
    modified_at: Optional[str] = None
