"""
sync/conflict.py - Version-based conflict detection for the cloud source
"""

from enum import Enum
from typing import Optional
from dataclasses import dataclass
import logging

from .checksum import checksum
from .models import BookmarkFile

logger = logging.getLogger(__name__)


class SyncAction(Enum):
    """Outcome of comparing this device against the cloud row"""
    PUSHED = "pushed"
    PULLED = "pulled"
    NONE = "none"
    CONFLICT = "conflict"


class Resolution(Enum):
    """How a surfaced conflict is settled"""
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


@dataclass
class CloudSyncOutcome:
    action: SyncAction
    data: Optional[BookmarkFile] = None
    conflict: bool = False
    local: Optional[BookmarkFile] = None
    version: int = 0

    def to_dict(self) -> dict:
        return {
            'action': self.action.value,
            'data': self.data.to_dict() if self.data else None,
            'conflict': self.conflict,
        }


def decide_action(local_checksum: str,
                  remote_checksum: Optional[str],
                  last_synced_checksum: Optional[str],
                  remote_version: int,
                  last_synced_version: int) -> SyncAction:
    """
    Decision table, first matching rule wins:
    no remote row pushes; equal content is a no-op; a remote that moved
    past our last synced version is pulled when we did not change locally
    and is a conflict when we did; anything else pushes.

    A device without sync state counts as unchanged, so its first sync
    pulls instead of clobbering what other devices wrote.
    """
    if not remote_version:
        return SyncAction.PUSHED

    if local_checksum == remote_checksum:
        return SyncAction.NONE

    local_changed = last_synced_checksum is not None and local_checksum != last_synced_checksum

    if remote_version > (last_synced_version or 0):
        return SyncAction.CONFLICT if local_changed else SyncAction.PULLED

    return SyncAction.PUSHED


class CloudConflictResolver:
    """
    Applies decide_action against a cloud source
    Every write is conditional on the version that was read
    """

    def __init__(self, source):
        self.source = source

    async def sync_with_conflict_detection(self, local_data: BookmarkFile,
                                           local_checksum: Optional[str] = None) -> CloudSyncOutcome:
        """
        local_checksum is the browser's content before remote deletions were
        filtered out of local_data; it decides whether this device changed
        since its last sync. Defaults to the checksum of local_data.
        """
        has_newer, remote_version, remote_checksum = await self.source.check_for_newer_changes()
        state = await self.source.get_sync_state()

        content_checksum = checksum(local_data.bookmarks)
        action = decide_action(
            local_checksum or content_checksum,
            remote_checksum,
            state.checksum if state else None,
            remote_version,
            state.version if state else 0,
        )
        logger.info(
            f"Cloud sync decision: {action.value} (remote v{remote_version}, "
            f"last synced v{state.version if state else 0}, newer={has_newer})"
        )

        if action is SyncAction.PUSHED:
            await self.source.write(local_data)
            await self.source.update_sync_state(content_checksum, self.source.version)
            return CloudSyncOutcome(action, data=local_data, version=self.source.version)

        if action is SyncAction.NONE:
            await self.source.update_sync_state(content_checksum, remote_version)
            return CloudSyncOutcome(action, data=local_data, version=remote_version)

        remote_data = await self.source.read()

        if action is SyncAction.PULLED:
            await self.source.update_sync_state(remote_data.content_checksum, self.source.version)
            return CloudSyncOutcome(action, data=remote_data, version=self.source.version)

        logger.warning(
            f"Conflict: cloud moved to v{self.source.version} while this device changed locally"
        )
        return CloudSyncOutcome(
            action,
            data=remote_data,
            conflict=True,
            local=local_data,
            version=self.source.version,
        )

    async def resolve_conflict(self, resolution: Resolution,
                               local_data: BookmarkFile,
                               remote_data: BookmarkFile,
                               merged_data: Optional[BookmarkFile] = None) -> BookmarkFile:
        """Write the chosen side (or the caller's merge) as the next version"""
        resolution = Resolution(resolution)

        if resolution is Resolution.LOCAL:
            final = local_data
        elif resolution is Resolution.REMOTE:
            final = remote_data
        else:
            if merged_data is None:
                raise ValueError("Merged data is required for merge resolution")
            final = merged_data

        await self.source.write(final)
        await self.source.update_sync_state(checksum(final.bookmarks), self.source.version)

        logger.info(f"Resolved conflict with {resolution.value}, cloud now at v{self.source.version}")
        return final
