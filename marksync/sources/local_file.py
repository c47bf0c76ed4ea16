"""
sources/local_file.py - Bookmark file on the local filesystem
"""

import os
from pathlib import Path
from typing import Any, Dict
import logging

import aiofiles

from ..errors import NotFoundError, SyncError
from ..sync.models import BookmarkFile
from .base import BookmarkSource, SourceType

logger = logging.getLogger(__name__)


class LocalFileSource(BookmarkSource):
    """JSON envelope stored at config.path"""

    source_type = SourceType.LOCAL_FILE

    @property
    def path(self) -> Path:
        return Path(self.config.path).expanduser()

    def validate_config(self) -> bool:
        return bool(self.config.path)

    async def read(self) -> BookmarkFile:
        if not self.path.exists():
            raise NotFoundError(f"No bookmark file at {self.path}")

        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                text = await f.read()
        except OSError as e:
            raise SyncError(f"Cannot read {self.path}: {e}") from e

        data = BookmarkFile.from_json(text)
        self._remember(data)
        return data

    async def write(self, data: BookmarkFile) -> None:
        data.stamp()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + '.tmp')

        try:
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(data.to_json())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise SyncError(f"Cannot write {self.path}: {e}") from e

        self._remember(data)
        logger.info(f"Wrote {len(data.bookmarks)} bookmarks to {self.path}")

    async def get_metadata(self) -> Dict[str, Any]:
        metadata = await super().get_metadata()
        metadata['path'] = str(self.path)
        if self.path.exists():
            stat = self.path.stat()
            metadata['size'] = stat.st_size
            metadata['modified_time'] = stat.st_mtime
        return metadata
