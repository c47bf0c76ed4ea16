from .credentials import CredentialStore
from .scheduler import (
    BookmarkFileWatcher, SyncScheduler, calculate_sync_stats,
    get_next_sync_time, should_sync, validate_sync_interval,
)
from .session import SyncSession
from .store import SettingsStore

__all__ = [
    'CredentialStore',
    'BookmarkFileWatcher',
    'SyncScheduler',
    'calculate_sync_stats',
    'get_next_sync_time',
    'should_sync',
    'validate_sync_interval',
    'SyncSession',
    'SettingsStore',
]
