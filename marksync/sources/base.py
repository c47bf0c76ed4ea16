"""
sources/base.py - Interface every remote bookmark store implements
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional
from dataclasses import dataclass
import logging

from ..config import SourceConfig
from ..errors import SyncError, ValidationError
from ..sync.checksum import checksum
from ..sync.models import BookmarkFile

logger = logging.getLogger(__name__)


class SourceType(Enum):
    LOCAL_FILE = "local-file"
    GITHUB = "github"
    DROPBOX = "dropbox"
    GOOGLE_DRIVE = "google-drive"
    CLOUD = "cloud"


@dataclass
class Credentials:
    """Tokens for one source; refresh handled by the source itself"""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'expires_at': self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credentials':
        return cls(
            access_token=data.get('access_token'),
            refresh_token=data.get('refresh_token'),
            expires_at=data.get('expires_at'),
        )


@dataclass
class WriteResult:
    """Outcome of a conditional write"""
    skipped: bool
    checksum: str
    bookmark_count: int = 0
    created: bool = False


class BookmarkSource(ABC):
    """
    A place bookmark files are stored.
    read/write are the only required operations; the rest have defaults.
    """

    source_type: SourceType

    def __init__(self, config: SourceConfig, credentials: Optional[Credentials] = None):
        self.config = config
        self.credentials = credentials or Credentials()
        # checksum of the content last read from or written to the store
        self.last_known_checksum: Optional[str] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name or self.config.id

    @abstractmethod
    async def read(self) -> BookmarkFile:
        """
        Fetch the stored bookmark file.
        Raises NotFoundError when nothing was stored yet.
        """

    @abstractmethod
    async def write(self, data: BookmarkFile) -> None:
        """Store data, stamping its checksum and lastModified"""

    async def write_if_changed(self, data: BookmarkFile) -> WriteResult:
        """Write unless the bookmarks match what the store already holds"""
        new_checksum = checksum(data.bookmarks)
        if self.last_known_checksum == new_checksum:
            logger.info(f"{self.name}: content unchanged, skipping write")
            return WriteResult(skipped=True, checksum=new_checksum,
                               bookmark_count=len(data.bookmarks))

        await self.write(data)
        return WriteResult(skipped=False, checksum=new_checksum,
                           bookmark_count=len(data.bookmarks))

    async def get_checksum(self) -> str:
        data = await self.read()
        return data.content_checksum

    async def is_available(self) -> bool:
        try:
            await self.read()
            return True
        except SyncError as e:
            logger.debug(f"{self.name} unavailable: {e}")
            return False

    def validate_config(self) -> bool:
        return True

    async def validate_credentials(self) -> bool:
        return True

    async def refresh_credentials(self) -> Optional[Credentials]:
        return self.credentials

    async def get_metadata(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.source_type.value,
            'name': self.name,
        }

    async def close(self):
        pass

    def _remember(self, data: BookmarkFile):
        self.last_known_checksum = checksum(data.bookmarks)


def create_source(config: SourceConfig, credentials: Optional[Credentials] = None,
                  client=None, timeout: float = 10.0, max_retries: int = 3) -> BookmarkSource:
    """Instantiate the source class for config.type"""
    from .cloud import CloudDatabaseSource
    from .dropbox import DropboxSource
    from .github import GitHubSource
    from .google_drive import GoogleDriveSource
    from .local_file import LocalFileSource

    try:
        source_type = SourceType(config.type)
    except ValueError:
        raise ValidationError(f"Unknown source type: {config.type}") from None

    if source_type is SourceType.LOCAL_FILE:
        source = LocalFileSource(config)
    else:
        source_class = {
            SourceType.GITHUB: GitHubSource,
            SourceType.DROPBOX: DropboxSource,
            SourceType.GOOGLE_DRIVE: GoogleDriveSource,
            SourceType.CLOUD: CloudDatabaseSource,
        }[source_type]
        source = source_class(config, credentials, client=client,
                              timeout=timeout, max_retries=max_retries)

    if not source.validate_config():
        raise ValidationError(f"Invalid configuration for source {config.id!r}")

    return source
