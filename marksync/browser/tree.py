"""
browser/tree.py - The browser's bookmark tree and its flat form

The sync core only ever sees flat Bookmark lists. Folder paths are built
from ancestry, with the root folder renamed to a browser-neutral name so
a path written by one browser lands in the same place on another.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from dataclasses import dataclass, field
import logging

from ..sync.models import Bookmark

logger = logging.getLogger(__name__)

BOOKMARKS_BAR = "Bookmarks Bar"
OTHER_BOOKMARKS = "Other Bookmarks"
MOBILE_BOOKMARKS = "Mobile Bookmarks"

ROOT_ALIASES = {
    BOOKMARKS_BAR: {'bookmarks bar', 'bookmarks toolbar', 'favorites bar', 'toolbar', 'bookmark_bar'},
    OTHER_BOOKMARKS: {'other bookmarks', 'bookmarks menu', 'other', 'menu', 'unfiled', 'other favorites'},
    MOBILE_BOOKMARKS: {'mobile bookmarks', 'mobile', 'synced'},
}


def canonical_root_name(title: str) -> Optional[str]:
    lowered = (title or '').strip().lower()
    for canonical, aliases in ROOT_ALIASES.items():
        if lowered in aliases:
            return canonical
    return None


def normalize_folder_path(folder_path: str) -> str:
    """
    Map any folder path onto one this browser can hold.
    Unknown or missing roots fall under Other Bookmarks.
    """
    segments = [s for s in (folder_path or '').split('/') if s]
    if not segments:
        return OTHER_BOOKMARKS

    root = canonical_root_name(segments[0])
    if root is None:
        return '/'.join([OTHER_BOOKMARKS] + segments)
    return '/'.join([root] + segments[1:])


@dataclass
class BookmarkTreeNode:
    """A folder (url is None) or a bookmark in the browser tree"""
    id: str
    title: str = ''
    url: Optional[str] = None
    date_added: Optional[int] = None  # epoch ms
    parent_id: Optional[str] = None
    children: List['BookmarkTreeNode'] = field(default_factory=list)

    @property
    def is_folder(self) -> bool:
        return self.url is None


class BrowserBookmarks(ABC):
    """
    Access to the local browser's bookmarks.
    get_tree returns the root folders; the engine is the only writer.
    """

    name = "browser"

    @abstractmethod
    async def get_tree(self) -> List[BookmarkTreeNode]:
        ...

    @abstractmethod
    async def create(self, parent_id: str, title: str, url: Optional[str] = None,
                     date_added: Optional[int] = None) -> BookmarkTreeNode:
        """date_added is epoch ms; None means now"""
        ...

    @abstractmethod
    async def update(self, node_id: str, title: Optional[str] = None,
                     url: Optional[str] = None) -> BookmarkTreeNode:
        ...

    @abstractmethod
    async def remove(self, node_id: str):
        ...

    async def last_modified(self) -> Optional[int]:
        """Epoch ms of the last change, if the browser can tell"""
        return None

    async def get_bookmarks(self) -> List[Bookmark]:
        return flatten_tree(await self.get_tree())


def flatten_tree(roots: List[BookmarkTreeNode]) -> List[Bookmark]:
    """Depth-first walk producing one Bookmark per url node"""
    bookmarks: List[Bookmark] = []

    def walk(node: BookmarkTreeNode, path: List[str]):
        for child in node.children:
            if child.is_folder:
                walk(child, path + [child.title])
            else:
                bookmarks.append(Bookmark(
                    url=child.url,
                    title=child.title or '',
                    folder_path='/'.join(path),
                    date_added=child.date_added,
                    id=child.id,
                ))

    for root in roots:
        if not root.is_folder:
            continue
        walk(root, [canonical_root_name(root.title) or root.title])

    return bookmarks


class FolderResolver:
    """
    Finds or creates the folder for a folder path.
    Keeps its own copy of the tree so repeated lookups cost nothing.
    """

    def __init__(self, browser: BrowserBookmarks, roots: List[BookmarkTreeNode]):
        self.browser = browser
        self.roots = roots
        self._cache: Dict[str, BookmarkTreeNode] = {}
        # folders created by ensure(), newest last
        self.created: List[str] = []

    def _root_for(self, name: str) -> BookmarkTreeNode:
        for root in self.roots:
            if canonical_root_name(root.title) == name:
                return root
        for root in self.roots:
            if canonical_root_name(root.title) == OTHER_BOOKMARKS:
                logger.warning(f"Browser has no {name!r} root, using {root.title!r}")
                return root
        return self.roots[-1]

    async def ensure(self, folder_path: str) -> str:
        """Return the id of the folder at folder_path, creating missing folders"""
        path = normalize_folder_path(folder_path)
        if path in self._cache:
            return self._cache[path].id

        segments = path.split('/')
        node = self._root_for(segments[0])
        walked = segments[0]

        for segment in segments[1:]:
            walked = f"{walked}/{segment}"
            cached = self._cache.get(walked)
            if cached is not None:
                node = cached
                continue

            match = next(
                (c for c in node.children if c.is_folder and c.title == segment),
                None,
            )
            if match is None:
                match = await self.browser.create(node.id, segment)
                match.parent_id = node.id
                node.children.append(match)
                self.created.append(match.id)
                logger.debug(f"Created folder {walked}")
            node = match
            self._cache[walked] = node

        self._cache[path] = node
        return node.id
