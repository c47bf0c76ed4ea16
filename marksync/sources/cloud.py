"""
sources/cloud.py - Hosted bookmark database (PostgREST API)

One cloud_bookmarks row per user holds the full bookmark set with a
monotonically increasing version. Writes are conditional on the version
that was read, so two devices can never silently overwrite each other.
Devices and their per-device sync state live in separate tables, and
every write keeps a snapshot in bookmark_versions for rollback.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple
import logging

import httpx

from ..errors import ConflictError, NotFoundError, SyncError
from ..sync.history import (
    DEFAULT_VERSION_RETENTION, BookmarkVersion, VersionDiff,
    count_folders, diff_bookmarks, restore_snapshot,
)
from ..sync.models import BookmarkFile, Device, SyncState, now_iso
from .base import SourceType
from .http import HttpSource

logger = logging.getLogger(__name__)

BOOKMARKS_TABLE = "cloud_bookmarks"
DEVICES_TABLE = "devices"
SYNC_STATE_TABLE = "sync_state"
VERSIONS_TABLE = "bookmark_versions"


class CloudDatabaseSource(HttpSource):
    source_type = SourceType.CLOUD
    provider = "Cloud"

    def __init__(self, *args, version_retention: int = DEFAULT_VERSION_RETENTION, **kwargs):
        super().__init__(*args, **kwargs)
        self.version = 0
        self.version_retention = version_retention
        self._last_data: Optional[BookmarkFile] = None
        self.device_id: Optional[str] = None
        self.device_name: Optional[str] = None
        self.browser: str = ''
        self._device_registered = False

    def set_device(self, device_id: str, name: str, browser: str = ''):
        self.device_id = device_id
        self.device_name = name
        self.browser = browser
        self._device_registered = False

    @property
    def user_id(self) -> str:
        return self.config.user_id

    def _url(self, table: str) -> str:
        return f"{self.config.api_url.rstrip('/')}/rest/v1/{table}"

    def auth_headers(self) -> dict:
        headers = {'apikey': self.config.api_key or ''}
        token = self.credentials.access_token or self.config.api_key
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def validate_config(self) -> bool:
        return bool(self.config.api_url and self.config.user_id)

    def _row_to_file(self, row: Dict[str, Any]) -> BookmarkFile:
        data = BookmarkFile.from_dict({
            'version': '1.0',
            'metadata': {
                'createdAt': row.get('created_at'),
                'lastModified': row.get('last_modified'),
                'checksum': row.get('checksum'),
            },
            'bookmarks': row.get('bookmark_data') or [],
            'tombstones': row.get('tombstones') or [],
        })
        return data

    async def read(self) -> BookmarkFile:
        response = await self.request_with_retry(
            'GET', self._url(BOOKMARKS_TABLE),
            params={
                'user_id': f'eq.{self.user_id}',
                'select': 'bookmark_data,tombstones,checksum,version,created_at,last_modified',
            },
        )
        rows = response.json()
        if not rows:
            self.version = 0
            raise NotFoundError("No bookmarks stored in the cloud yet")

        row = rows[0]
        data = self._row_to_file(row)
        self.version = int(row.get('version') or 0)
        self._remember(data)
        self._last_data = data
        return data

    async def write(self, data: BookmarkFile) -> None:
        previous = self._last_data
        await self._write_row(data)
        await self.save_version(data, previous)

    async def _write_row(self, data: BookmarkFile):
        data.stamp()
        expected = self.version
        row = {
            'bookmark_data': [b.to_dict() for b in data.bookmarks],
            'tombstones': [t.to_dict() for t in data.tombstones],
            'checksum': data.metadata.checksum,
            'last_modified': data.metadata.last_modified,
            'version': expected + 1,
        }
        headers = {'Prefer': 'return=representation'}

        try:
            if expected == 0:
                row['user_id'] = self.user_id
                row['created_at'] = data.metadata.created_at
                response = await self.request(
                    'POST', self._url(BOOKMARKS_TABLE), json=row,
                    headers=headers, ok_statuses=(200, 201),
                )
            else:
                response = await self.request(
                    'PATCH', self._url(BOOKMARKS_TABLE), json=row, headers=headers,
                    params={'user_id': f'eq.{self.user_id}', 'version': f'eq.{expected}'},
                )
        except SyncError as e:
            if isinstance(e.__cause__, httpx.TimeoutException):
                # outcome unknown; force a re-read before the next write
                self.version = -1
            raise

        if not response.json():
            raise ConflictError(
                f"Cloud bookmarks changed since version {expected} was read"
            )

        self.version = expected + 1
        self._remember(data)
        self._last_data = data
        logger.info(f"Wrote {len(data.bookmarks)} bookmarks to the cloud (v{self.version})")

    async def get_checksum(self) -> str:
        response = await self.request_with_retry(
            'GET', self._url(BOOKMARKS_TABLE),
            params={'user_id': f'eq.{self.user_id}', 'select': 'checksum'},
        )
        rows = response.json()
        if not rows:
            raise NotFoundError("No bookmarks stored in the cloud yet")
        return rows[0].get('checksum') or ''

    async def get_current_version(self) -> int:
        response = await self.request_with_retry(
            'GET', self._url(BOOKMARKS_TABLE),
            params={'user_id': f'eq.{self.user_id}', 'select': 'version'},
        )
        rows = response.json()
        return int(rows[0].get('version') or 0) if rows else 0

    async def check_for_newer_changes(self) -> Tuple[bool, int, Optional[str]]:
        """
        Compare the cloud row against this device's sync state.
        Captures the row version so the next write is conditional on it.
        """
        response = await self.request_with_retry(
            'GET', self._url(BOOKMARKS_TABLE),
            params={'user_id': f'eq.{self.user_id}', 'select': 'version,checksum'},
        )
        rows = response.json()
        await self.touch_device()
        if not rows:
            self.version = 0
            return False, 0, None

        version = int(rows[0].get('version') or 0)
        self.version = version
        state = await self.get_sync_state()
        has_newer = version > (state.version if state else 0)
        return has_newer, version, rows[0].get('checksum')

    async def delete_all(self):
        """Remove the bookmark row, its saved versions and every device's sync state"""
        params = {'user_id': f'eq.{self.user_id}'}
        await self.request('DELETE', self._url(BOOKMARKS_TABLE), params=params,
                           ok_statuses=(200, 204))
        await self.request('DELETE', self._url(SYNC_STATE_TABLE), params=params,
                           ok_statuses=(200, 204))
        await self.request('DELETE', self._url(VERSIONS_TABLE), params=params,
                           ok_statuses=(200, 204))
        self.version = 0
        self.last_known_checksum = None
        self._last_data = None
        logger.warning("Deleted all cloud bookmark data")

    # Version history

    async def save_version(self, data: BookmarkFile, previous: Optional[BookmarkFile] = None,
                           change_type: str = 'sync', **summary: Any) -> BookmarkVersion:
        """Store data as the snapshot of the current row version and prune old ones"""
        diff = diff_bookmarks(previous.bookmarks if previous else [], data.bookmarks)
        row = {
            'user_id': self.user_id,
            'version': self.version,
            'bookmark_data': [b.to_dict() for b in data.bookmarks],
            'tombstones': [t.to_dict() for t in data.tombstones],
            'checksum': data.content_checksum,
            'device_id': self.device_id,
            'device_name': self.device_name,
            'change_summary': dict(diff.summary, type=change_type, **summary),
            'bookmark_count': len(data.bookmarks),
            'folder_count': count_folders(data.bookmarks),
            'created_at': now_iso(),
        }
        await self.request(
            'POST', self._url(VERSIONS_TABLE), json=row,
            params={'on_conflict': 'user_id,version'},
            headers={'Prefer': 'resolution=merge-duplicates,return=minimal'},
            ok_statuses=(200, 201, 204),
        )

        oldest_kept = self.version - self.version_retention
        if oldest_kept > 0:
            await self.request(
                'DELETE', self._url(VERSIONS_TABLE),
                params={'user_id': f'eq.{self.user_id}', 'version': f'lte.{oldest_kept}'},
                ok_statuses=(200, 204),
            )
        return BookmarkVersion.from_row(row)

    async def get_history(self, limit: int = 20, offset: int = 0) -> List[BookmarkVersion]:
        """Saved versions, newest first, without their bookmark data"""
        response = await self.request_with_retry(
            'GET', self._url(VERSIONS_TABLE),
            params={
                'user_id': f'eq.{self.user_id}',
                'select': 'version,checksum,device_id,device_name,change_summary,'
                          'bookmark_count,folder_count,created_at',
                'order': 'version.desc',
                'limit': str(limit),
                'offset': str(offset),
            },
        )
        versions = []
        for row in response.json():
            row.pop('bookmark_data', None)
            versions.append(BookmarkVersion.from_row(row))
        return versions

    async def get_version(self, version: int) -> BookmarkVersion:
        response = await self.request_with_retry(
            'GET', self._url(VERSIONS_TABLE),
            params={'user_id': f'eq.{self.user_id}', 'version': f'eq.{version}'},
        )
        rows = response.json()
        if not rows:
            raise NotFoundError(f"Version {version} not found")
        return BookmarkVersion.from_row(rows[0])

    async def compare_versions(self, old_version: int, new_version: int) -> VersionDiff:
        old, new = await asyncio.gather(self.get_version(old_version), self.get_version(new_version))
        return diff_bookmarks(old.data.bookmarks, new.data.bookmarks)

    async def rollback(self, target_version: int) -> BookmarkFile:
        """
        Write the snapshot of target_version as a new version.
        Sync state is left alone so every device, this one included, pulls it.
        """
        snapshot = await self.get_version(target_version)
        current = await self.read()
        restored = restore_snapshot(snapshot.data, current.tombstones)

        await self._write_row(restored)
        await self.save_version(restored, current, change_type='rollback',
                                restoredFrom=target_version)
        logger.warning(f"Rolled cloud bookmarks back to v{target_version} as v{self.version}")
        return restored

    # Devices

    async def register_device(self) -> Device:
        if not self.device_id:
            raise SyncError("Cloud source has no device id")
        row = {
            'user_id': self.user_id,
            'device_id': self.device_id,
            'name': self.device_name or self.device_id,
            'browser': self.browser,
            'last_seen_at': now_iso(),
        }
        await self.request(
            'POST', self._url(DEVICES_TABLE), json=row,
            params={'on_conflict': 'user_id,device_id'},
            headers={'Prefer': 'resolution=merge-duplicates,return=minimal'},
            ok_statuses=(200, 201, 204),
        )
        self._device_registered = True
        logger.debug(f"Registered device {self.device_id}")
        return Device.from_row(row)

    async def touch_device(self):
        if not self.device_id:
            return
        if self._device_registered:
            await self.update_device_activity()
        else:
            await self.register_device()

    async def update_device_activity(self):
        await self.request(
            'PATCH', self._url(DEVICES_TABLE),
            json={'last_seen_at': now_iso()},
            params={'user_id': f'eq.{self.user_id}', 'device_id': f'eq.{self.device_id}'},
            ok_statuses=(200, 204),
        )

    async def get_devices(self) -> List[Device]:
        response = await self.request_with_retry(
            'GET', self._url(DEVICES_TABLE),
            params={'user_id': f'eq.{self.user_id}', 'order': 'last_seen_at.desc'},
        )
        return [Device.from_row(row) for row in response.json()]

    async def remove_device(self, device_id: str):
        """Delete a device together with its sync state"""
        params = {'user_id': f'eq.{self.user_id}', 'device_id': f'eq.{device_id}'}
        await self.request('DELETE', self._url(SYNC_STATE_TABLE), params=params,
                           ok_statuses=(200, 204))
        await self.request('DELETE', self._url(DEVICES_TABLE), params=params,
                           ok_statuses=(200, 204))
        if device_id == self.device_id:
            self._device_registered = False
        logger.info(f"Removed device {device_id}")

    # Per-device sync state

    async def get_sync_state(self) -> Optional[SyncState]:
        if not self.device_id:
            return None
        response = await self.request_with_retry(
            'GET', self._url(SYNC_STATE_TABLE),
            params={'user_id': f'eq.{self.user_id}', 'device_id': f'eq.{self.device_id}'},
        )
        rows = response.json()
        return SyncState.from_row(rows[0]) if rows else None

    async def update_sync_state(self, checksum_value: str, version: int):
        if not self.device_id:
            return
        row = {
            'user_id': self.user_id,
            'device_id': self.device_id,
            'device_name': self.device_name,
            'checksum': checksum_value,
            'version': version,
            'last_sync_at': now_iso(),
        }
        await self.request(
            'POST', self._url(SYNC_STATE_TABLE), json=row,
            params={'on_conflict': 'user_id,device_id'},
            headers={'Prefer': 'resolution=merge-duplicates,return=minimal'},
            ok_statuses=(200, 201, 204),
        )

    async def get_all_sync_states(self) -> List[SyncState]:
        response = await self.request_with_retry(
            'GET', self._url(SYNC_STATE_TABLE),
            params={'user_id': f'eq.{self.user_id}'},
        )
        return [SyncState.from_row(row) for row in response.json()]

    async def get_metadata(self) -> Dict[str, Any]:
        metadata = await super().get_metadata()
        metadata.update({'version': self.version, 'device_id': self.device_id})
        return metadata
