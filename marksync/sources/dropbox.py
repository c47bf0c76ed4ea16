"""
sources/dropbox.py - Bookmark file stored in Dropbox
The file rev from the last download guards every upload.
"""

import time
import json
from typing import Any, Dict, Iterable, Optional
import logging

import httpx

from ..errors import ConflictError, NotFoundError, SyncError, UnauthorizedError
from ..sync.checksum import checksum
from ..sync.models import Bookmark, BookmarkFile
from ..sync.tombstone import Tombstone
from .base import Credentials, SourceType, WriteResult
from .http import HttpSource, error_from_exception, retry_with_backoff

logger = logging.getLogger(__name__)

CONTENT_API = "https://content.dropboxapi.com/2"
RPC_API = "https://api.dropboxapi.com/2"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
DEFAULT_PATH = "/Apps/MarkSyncr/bookmarks.json"


def _error_summary(response: httpx.Response) -> str:
    try:
        return response.json().get('error_summary', '')
    except ValueError:
        return response.text


class DropboxSource(HttpSource):
    source_type = SourceType.DROPBOX
    provider = "Dropbox"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.rev: Optional[str] = None

    @property
    def path(self) -> str:
        path = self.config.path or DEFAULT_PATH
        return path if path.startswith('/') else '/' + path

    async def _rpc(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Dropbox reports path errors as 409 with an error summary.
        not_found becomes NotFoundError, anything else a conflict.
        """
        response = await self.request(method, url, ok_statuses=(200, 409), **kwargs)
        if response.status_code == 409:
            summary = _error_summary(response)
            if 'not_found' in summary:
                raise NotFoundError(f"No Dropbox file at {self.path}", status_code=409)
            raise ConflictError(f"Dropbox conflict: {summary}", status_code=409)
        return response

    async def read(self) -> BookmarkFile:
        async def download():
            return await self._rpc(
                'POST', f"{CONTENT_API}/files/download",
                headers={'Dropbox-API-Arg': json.dumps({'path': self.path})},
            )

        response = await retry_with_backoff(
            download, max_retries=self.max_retries, base_delay=self.base_delay,
            operation_name="Dropbox download",
        )

        data = BookmarkFile.from_json(response.content)
        result = json.loads(response.headers.get('dropbox-api-result') or '{}')
        self.rev = result.get('rev')
        self._remember(data)
        logger.debug(f"Read {len(data.bookmarks)} bookmarks from Dropbox (rev {self.rev})")
        return data

    async def write(self, data: BookmarkFile) -> None:
        data.stamp()
        mode = {'.tag': 'update', 'update': self.rev} if self.rev else 'add'
        arg = {
            'path': self.path,
            'mode': mode,
            'autorename': False,
            'mute': True,
        }

        try:
            response = await self._rpc(
                'POST', f"{CONTENT_API}/files/upload",
                headers={
                    'Dropbox-API-Arg': json.dumps(arg),
                    'Content-Type': 'application/octet-stream',
                },
                content=data.to_json().encode('utf-8'),
            )
        except SyncError as e:
            if isinstance(e, ConflictError) or isinstance(e.__cause__, httpx.TimeoutException):
                self.rev = None
            raise

        self.rev = response.json().get('rev')
        self._remember(data)
        logger.info(f"Uploaded {len(data.bookmarks)} bookmarks to Dropbox {self.path}")

    async def get_file_metadata(self) -> Dict[str, Any]:
        response = await self._rpc(
            'POST', f"{RPC_API}/files/get_metadata", json={'path': self.path},
        )
        return response.json()

    async def get_checksum(self) -> str:
        """Avoid the download when the rev has not moved since our last read"""
        metadata = await self.get_file_metadata()
        if self.last_known_checksum and metadata.get('rev') == self.rev:
            return self.last_known_checksum
        data = await self.read()
        return data.content_checksum

    async def validate_credentials(self) -> bool:
        try:
            await self.request('POST', f"{RPC_API}/users/get_current_account")
            return True
        except SyncError as e:
            logger.warning(f"Dropbox credential check failed: {e}")
            return False

    async def refresh_credentials(self) -> Optional[Credentials]:
        if not self.credentials.refresh_token:
            raise UnauthorizedError("Dropbox session expired and no refresh token is stored")

        form = {
            'grant_type': 'refresh_token',
            'refresh_token': self.credentials.refresh_token,
        }
        if self.config.client_id:
            form['client_id'] = self.config.client_id
        if self.config.client_secret:
            form['client_secret'] = self.config.client_secret

        try:
            response = await self.client.post(TOKEN_URL, data=form, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise error_from_exception(e, self.provider) from e

        if response.status_code != 200:
            raise UnauthorizedError(f"Dropbox token refresh failed ({response.status_code})",
                                    status_code=response.status_code)

        token = response.json()
        self.credentials = Credentials(
            access_token=token['access_token'],
            refresh_token=token.get('refresh_token', self.credentials.refresh_token),
            expires_at=time.time() + token['expires_in'] if 'expires_in' in token else None,
        )
        logger.info("Refreshed Dropbox access token")
        return self.credentials

    async def get_metadata(self) -> Dict[str, Any]:
        metadata = await super().get_metadata()
        metadata.update({'path': self.path, 'rev': self.rev})
        return metadata

    async def write_if_changed(self, data: BookmarkFile) -> WriteResult:
        return await sync_bookmarks_to_dropbox(self, data.bookmarks, data.tombstones)


async def sync_bookmarks_to_dropbox(source: DropboxSource,
                                    bookmarks: Iterable[Bookmark],
                                    tombstones: Iterable[Tombstone] = ()) -> WriteResult:
    """Upload bookmarks unless Dropbox already holds the same checksum"""
    bookmarks = list(bookmarks)
    new_checksum = checksum(bookmarks)
    expected_rev = source.rev

    try:
        existing = await source.read()
    except NotFoundError:
        existing = None
        source.rev = None

    if expected_rev and source.rev != expected_rev:
        raise ConflictError("Dropbox file changed since last read")

    if existing is not None and existing.content_checksum == new_checksum:
        logger.info("Dropbox copy already up to date, skipping upload")
        return WriteResult(skipped=True, checksum=new_checksum, bookmark_count=len(bookmarks))

    data = BookmarkFile.create(
        bookmarks,
        tombstones,
        created_at=existing.metadata.created_at if existing else None,
    )
    await source.write(data)
    return WriteResult(skipped=False, checksum=new_checksum,
                       bookmark_count=len(bookmarks), created=existing is None)
