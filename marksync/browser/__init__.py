from .tree import (
    BookmarkTreeNode, BrowserBookmarks, FolderResolver,
    canonical_root_name, flatten_tree, normalize_folder_path,
)
from .chromium import ChromiumBookmarks

__all__ = [
    'BookmarkTreeNode',
    'BrowserBookmarks',
    'FolderResolver',
    'canonical_root_name',
    'flatten_tree',
    'normalize_folder_path',
    'ChromiumBookmarks',
]
