"""
sync/models.py - Bookmark data model and the on-disk JSON envelope
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
from dataclasses import dataclass, field, replace

from ..errors import ValidationError
from .checksum import checksum
from .tombstone import Tombstone

FORMAT_VERSION = "1.0"
SOURCE_NAME = "marksync"

DateValue = Union[int, float, str, None]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def to_epoch_ms(value: DateValue) -> int:
    """Normalize epoch milliseconds or an ISO-8601 string to epoch ms (0 if unknown)"""
    if value is None or value == '':
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(float(value))
    except (ValueError, OverflowError):
        pass
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


@dataclass(frozen=True)
class Bookmark:
    """
    A single bookmark
    Identity is (url, folder_path); id is local to one browser and never compared
    """
    url: str
    title: str = ''
    folder_path: str = ''
    date_added: DateValue = None
    id: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.url, self.folder_path)

    @property
    def added_ms(self) -> int:
        return to_epoch_ms(self.date_added)

    def with_id(self, bookmark_id: Optional[str]) -> 'Bookmark':
        return replace(self, id=bookmark_id)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'url': self.url,
            'title': self.title,
            'folderPath': self.folder_path,
        }
        if self.date_added is not None:
            data['dateAdded'] = self.date_added
        if self.id is not None:
            data['id'] = self.id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bookmark':
        if not isinstance(data, dict):
            raise ValidationError(f"Bookmark entry must be an object, got {type(data).__name__}")
        url = data.get('url')
        if not isinstance(url, str) or not url:
            raise ValidationError(f"Bookmark is missing a url: {data!r}")
        return cls(
            url=url,
            title=data.get('title') or '',
            folder_path=data.get('folderPath') or '',
            date_added=data.get('dateAdded'),
            id=data.get('id'),
        )


@dataclass
class FileMetadata:
    created_at: str = field(default_factory=now_iso)
    last_modified: str = field(default_factory=now_iso)
    source: str = SOURCE_NAME
    checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'createdAt': self.created_at,
            'lastModified': self.last_modified,
            'source': self.source,
        }
        if self.checksum is not None:
            data['checksum'] = self.checksum
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileMetadata':
        if not isinstance(data, dict):
            raise ValidationError("metadata must be an object")
        return cls(
            created_at=data.get('createdAt') or now_iso(),
            last_modified=data.get('lastModified') or data.get('createdAt') or now_iso(),
            source=data.get('source') or SOURCE_NAME,
            checksum=data.get('checksum'),
        )


@dataclass
class BookmarkFile:
    """
    Envelope stored by every file-backed source
    metadata.checksum always describes bookmarks after a successful write
    """
    bookmarks: List[Bookmark] = field(default_factory=list)
    tombstones: List[Tombstone] = field(default_factory=list)
    metadata: FileMetadata = field(default_factory=FileMetadata)
    version: str = FORMAT_VERSION

    @classmethod
    def create(cls, bookmarks, tombstones=None,
               created_at: Optional[str] = None) -> 'BookmarkFile':
        metadata = FileMetadata()
        if created_at:
            metadata.created_at = created_at
        return cls(
            bookmarks=list(bookmarks),
            tombstones=list(tombstones or []),
            metadata=metadata,
        )

    def stamp(self) -> 'BookmarkFile':
        """Refresh checksum and lastModified before a write"""
        self.metadata.checksum = checksum(self.bookmarks)
        self.metadata.last_modified = now_iso()
        return self

    @property
    def content_checksum(self) -> str:
        """Stored checksum, or computed when the envelope carries none"""
        if self.metadata.checksum:
            return self.metadata.checksum
        return checksum(self.bookmarks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'metadata': self.metadata.to_dict(),
            'bookmarks': [b.to_dict() for b in self.bookmarks],
            'tombstones': [t.to_dict() for t in self.tombstones],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> 'BookmarkFile':
        if not isinstance(data, dict):
            raise ValidationError("Bookmark file must be a JSON object")

        bookmarks = data.get('bookmarks')
        if not isinstance(bookmarks, list):
            raise ValidationError("Bookmark file has no bookmarks array")

        tombstones = data.get('tombstones') or []
        if not isinstance(tombstones, list):
            raise ValidationError("tombstones must be an array")

        try:
            parsed_tombstones = [Tombstone.from_dict(t) for t in tombstones]
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed tombstone: {e}") from e

        return cls(
            bookmarks=[Bookmark.from_dict(b) for b in bookmarks],
            tombstones=parsed_tombstones,
            metadata=FileMetadata.from_dict(data.get('metadata') or {}),
            version=str(data.get('version') or FORMAT_VERSION),
        )

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> 'BookmarkFile':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ValidationError(f"Bookmark file is not valid JSON: {e}") from e
        return cls.from_dict(data)


@dataclass
class SyncState:
    """Per-device record of what was last synced with the cloud"""
    device_id: str
    checksum: Optional[str] = None
    version: int = 0
    device_name: Optional[str] = None
    last_sync_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'SyncState':
        return cls(
            device_id=row['device_id'],
            checksum=row.get('checksum'),
            version=int(row.get('version') or 0),
            device_name=row.get('device_name'),
            last_sync_at=row.get('last_sync_at'),
        )


@dataclass
class Device:
    id: str
    name: str
    browser: str = ''
    last_seen_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Device':
        return cls(
            id=row['device_id'],
            name=row.get('name') or '',
            browser=row.get('browser') or '',
            last_seen_at=row.get('last_seen_at'),
        )
