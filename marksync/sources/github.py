"""
sources/github.py - Bookmark file stored in a GitHub repository
Uses the contents API; the blob SHA from the last read guards every update.
"""

import base64
import binascii
from typing import Any, Dict, Iterable, Optional
import logging

import httpx

from ..errors import ConflictError, NotFoundError, SyncError, ValidationError
from ..sync.checksum import checksum
from ..sync.models import Bookmark, BookmarkFile
from ..sync.tombstone import Tombstone
from .base import SourceType, WriteResult
from .http import HttpSource

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
DEFAULT_PATH = "bookmarks.json"


class GitHubSource(HttpSource):
    """config.repository is 'owner/name'; config.path defaults to bookmarks.json"""

    source_type = SourceType.GITHUB
    provider = "GitHub"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sha: Optional[str] = None

    @property
    def path(self) -> str:
        return (self.config.path or DEFAULT_PATH).lstrip('/')

    @property
    def contents_url(self) -> str:
        return f"{GITHUB_API}/repos/{self.config.repository}/contents/{self.path}"

    def auth_headers(self) -> dict:
        headers = {
            'Accept': 'application/vnd.github+json',
            'X-GitHub-Api-Version': '2022-11-28',
        }
        if self.credentials.access_token:
            headers['Authorization'] = f'Bearer {self.credentials.access_token}'
        return headers

    def validate_config(self) -> bool:
        repository = self.config.repository or ''
        return repository.count('/') == 1 and all(repository.split('/'))

    async def read(self) -> BookmarkFile:
        response = await self.request_with_retry(
            'GET', self.contents_url, params={'ref': self.config.branch},
        )
        payload = response.json()

        try:
            raw = base64.b64decode(payload.get('content') or '')
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"GitHub returned undecodable content: {e}") from e

        data = BookmarkFile.from_json(raw.decode('utf-8'))
        self.sha = payload.get('sha')
        self._remember(data)
        logger.debug(f"Read {len(data.bookmarks)} bookmarks from {self.config.repository} (sha {self.sha})")
        return data

    async def write(self, data: BookmarkFile) -> None:
        data.stamp()
        existed = self.sha is not None
        body = {
            'message': f"{'Update' if existed else 'Initialize'} bookmarks - "
                       f"{len(data.bookmarks)} bookmarks",
            'content': base64.b64encode(data.to_json().encode('utf-8')).decode('ascii'),
            'branch': self.config.branch,
        }
        if self.sha:
            body['sha'] = self.sha

        try:
            response = await self.request('PUT', self.contents_url, json=body, ok_statuses=(200, 201))
        except ConflictError:
            self.sha = None
            raise
        except SyncError as e:
            if e.status_code == 422:
                # sha missing or stale
                self.sha = None
                raise ConflictError(f"GitHub file changed since last read: {e}", status_code=422) from e
            if isinstance(e.__cause__, httpx.TimeoutException):
                self.sha = None
            raise

        self.sha = response.json().get('content', {}).get('sha')
        self._remember(data)
        logger.info(f"Pushed {len(data.bookmarks)} bookmarks to {self.config.repository}/{self.path}")

    async def validate_credentials(self) -> bool:
        try:
            await self.request('GET', f"{GITHUB_API}/user")
            return True
        except SyncError as e:
            logger.warning(f"GitHub credential check failed: {e}")
            return False

    async def get_metadata(self) -> Dict[str, Any]:
        metadata = await super().get_metadata()
        metadata.update({
            'repository': self.config.repository,
            'branch': self.config.branch,
            'path': self.path,
            'sha': self.sha,
        })
        return metadata

    async def write_if_changed(self, data: BookmarkFile) -> WriteResult:
        return await sync_bookmarks_to_github(self, data.bookmarks, data.tombstones)


async def sync_bookmarks_to_github(source: GitHubSource,
                                   bookmarks: Iterable[Bookmark],
                                   tombstones: Iterable[Tombstone] = ()) -> WriteResult:
    """
    Push bookmarks unless the repository copy already has the same checksum.
    Reads the current file first so createdAt and the sha are fresh.
    """
    bookmarks = list(bookmarks)
    new_checksum = checksum(bookmarks)
    expected_sha = source.sha

    try:
        existing = await source.read()
    except NotFoundError:
        existing = None
        source.sha = None

    if expected_sha and source.sha != expected_sha:
        raise ConflictError("GitHub file changed since last read")

    if existing is not None and existing.content_checksum == new_checksum:
        logger.info("GitHub copy already up to date, skipping push")
        return WriteResult(skipped=True, checksum=new_checksum, bookmark_count=len(bookmarks))

    data = BookmarkFile.create(
        bookmarks,
        tombstones,
        created_at=existing.metadata.created_at if existing else None,
    )
    await source.write(data)
    return WriteResult(skipped=False, checksum=new_checksum,
                       bookmark_count=len(bookmarks), created=existing is None)
