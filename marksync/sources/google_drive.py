"""
sources/google_drive.py - Bookmark file stored in Google Drive
"""

import time
from typing import Any, Dict, Optional
import logging

import httpx

from ..errors import NotFoundError, SyncError, UnauthorizedError
from ..sync.models import BookmarkFile
from .base import Credentials, SourceType
from .http import HttpSource, error_from_exception

logger = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_FILE_NAME = "marksyncr-bookmarks.json"
JSON_MIME = "application/json"


class GoogleDriveSource(HttpSource):
    """
    Looks the file up by name (optionally inside config.folder_id)
    Drive offers no cheap optimistic-concurrency token, so writes are last-writer-wins.
    """

    source_type = SourceType.GOOGLE_DRIVE
    provider = "Google Drive"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.file_id: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.config.file_name or DEFAULT_FILE_NAME

    def _search_query(self) -> str:
        name = self.file_name.replace("\\", "\\\\").replace("'", "\\'")
        query = f"name='{name}' and mimeType='{JSON_MIME}' and trashed=false"
        if self.config.folder_id:
            query += f" and '{self.config.folder_id}' in parents"
        return query

    async def find_file(self) -> Optional[str]:
        response = await self.request_with_retry(
            'GET', f"{DRIVE_API}/files",
            params={'q': self._search_query(), 'fields': 'files(id,name)', 'spaces': 'drive'},
        )
        files = response.json().get('files') or []
        self.file_id = files[0]['id'] if files else None
        return self.file_id

    async def read(self) -> BookmarkFile:
        file_id = self.file_id or await self.find_file()
        if not file_id:
            raise NotFoundError(f"No {self.file_name} in Google Drive")

        try:
            response = await self.request_with_retry(
                'GET', f"{DRIVE_API}/files/{file_id}", params={'alt': 'media'},
            )
        except NotFoundError:
            # deleted behind our back; search again next time
            self.file_id = None
            raise

        data = BookmarkFile.from_json(response.content)
        self._remember(data)
        return data

    async def _create_file(self) -> str:
        metadata = {'name': self.file_name, 'mimeType': JSON_MIME}
        if self.config.folder_id:
            metadata['parents'] = [self.config.folder_id]

        response = await self.request('POST', f"{DRIVE_API}/files", json=metadata,
                                      params={'fields': 'id'})
        self.file_id = response.json()['id']
        logger.info(f"Created {self.file_name} in Google Drive ({self.file_id})")
        return self.file_id

    async def write(self, data: BookmarkFile) -> None:
        data.stamp()
        file_id = self.file_id or await self.find_file() or await self._create_file()

        await self.request(
            'PATCH', f"{UPLOAD_API}/files/{file_id}",
            params={'uploadType': 'media'},
            headers={'Content-Type': JSON_MIME},
            content=data.to_json().encode('utf-8'),
        )
        self._remember(data)
        logger.info(f"Uploaded {len(data.bookmarks)} bookmarks to Google Drive")

    async def validate_credentials(self) -> bool:
        try:
            await self.request('GET', f"{DRIVE_API}/about", params={'fields': 'user'})
            return True
        except SyncError as e:
            logger.warning(f"Google Drive credential check failed: {e}")
            return False

    async def refresh_credentials(self) -> Optional[Credentials]:
        if not self.credentials.refresh_token:
            raise UnauthorizedError("Google session expired and no refresh token is stored")

        form = {
            'grant_type': 'refresh_token',
            'refresh_token': self.credentials.refresh_token,
            'client_id': self.config.client_id or '',
        }
        if self.config.client_secret:
            form['client_secret'] = self.config.client_secret

        try:
            response = await self.client.post(TOKEN_URL, data=form, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise error_from_exception(e, self.provider) from e

        if response.status_code != 200:
            raise UnauthorizedError(f"Google token refresh failed ({response.status_code})",
                                    status_code=response.status_code)

        token = response.json()
        self.credentials = Credentials(
            access_token=token['access_token'],
            refresh_token=token.get('refresh_token', self.credentials.refresh_token),
            expires_at=time.time() + token['expires_in'] if 'expires_in' in token else None,
        )
        logger.info("Refreshed Google Drive access token")
        return self.credentials

    async def get_metadata(self) -> Dict[str, Any]:
        metadata = await super().get_metadata()
        metadata.update({
            'file_name': self.file_name,
            'folder_id': self.config.folder_id,
            'file_id': self.file_id,
        })
        return metadata
