from .base import BookmarkSource, Credentials, SourceType, WriteResult, create_source
from .cloud import CloudDatabaseSource
from .dropbox import DropboxSource, sync_bookmarks_to_dropbox
from .github import GitHubSource, sync_bookmarks_to_github
from .google_drive import GoogleDriveSource
from .local_file import LocalFileSource

__all__ = [
    'BookmarkSource',
    'Credentials',
    'SourceType',
    'WriteResult',
    'create_source',
    'CloudDatabaseSource',
    'DropboxSource',
    'sync_bookmarks_to_dropbox',
    'GitHubSource',
    'sync_bookmarks_to_github',
    'GoogleDriveSource',
    'LocalFileSource',
]
