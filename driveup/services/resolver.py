"""
PathResolver - remote paths to folder/file identifiers.

The drive only addresses nodes by fid, so a path is resolved by listing
each ancestor in turn. Nothing is cached: the remote tree can change
between calls.
"""
import logging
import re
from typing import List, Optional, Tuple

from ..exceptions import PathResolutionError, RemoteNotFoundError
from ..models import RemoteNode
from ..protocols import IDriveAPI

logger = logging.getLogger(__name__)

ROOT_FID = "0"

_SLASHES = re.compile(r"/+")


def normalize_path(path: Optional[str]) -> str:
    """
    Canonical form of a remote path.

    Backslashes become slashes, repeated slashes collapse and the trailing
    slash is dropped. The result always starts with ``/``; root is ``/``.
    """
    value = (path or "").strip().replace("\\", "/")
    value = _SLASHES.sub("/", value)
    parts = [p for p in value.split("/") if p and p != "."]
    return "/" + "/".join(parts)


def normalize_root_dir(path: Optional[str]) -> str:
    """Like ``normalize_path`` but maps root (``""``, ``"/"``, ``"."``) to its fid ``"0"``."""
    normalized = normalize_path(path)
    if normalized == "/":
        return ROOT_FID
    return normalized


def split_parent(path: str) -> Tuple[str, str]:
    """Split a normalized path into (parent path, leaf name)."""
    if path == "/":
        return "/", ""
    parent, _, leaf = path.rpartition("/")
    return parent or "/", leaf


def path_components(path: str) -> List[str]:
    normalized = normalize_path(path)
    return [p for p in normalized.split("/") if p]


class PathResolver:
    """Resolves paths via directory listings and materializes missing folders."""

    def __init__(self, api: IDriveAPI):
        self._api = api

    async def list_children(self, fid: str, parent_path: str = "/") -> List[RemoteNode]:
        items = await self._api.list_directory(fid)
        return [RemoteNode.from_listing(item, parent_path) for item in items]

    async def _lookup_child(self, parent: RemoteNode, name: str) -> Optional[RemoteNode]:
        for child in await self.list_children(parent.fid, parent.path):
            if child.name == name:
                return child
        return None

    async def resolve(self, path: str) -> RemoteNode:
        """
        Resolve a path to its node.

        Raises:
            RemoteNotFoundError: if the path or one of its ancestors is missing
            PathResolutionError: if an ancestor is a file
        """
        normalized = normalize_path(path)
        if normalized == "/":
            return RemoteNode.root()

        parent_path, name = split_parent(normalized)
        parent = await self.resolve(parent_path)
        if not parent.is_directory:
            raise PathResolutionError(f"not a directory: {parent.path}")

        node = await self._lookup_child(parent, name)
        if node is None:
            raise RemoteNotFoundError(normalized)
        return node

    async def exists(self, path: str) -> bool:
        try:
            await self.resolve(path)
        except RemoteNotFoundError:
            return False
        return True

    async def ensure_directory(self, path: str) -> str:
        """
        Return the fid of a folder, creating it and any missing ancestors.

        The walk looks components up one level at a time. After the first
        missing component every later one is created directly under the
        folder just created.

        Raises:
            PathResolutionError: if a component exists as a file
        """
        components = path_components(path)
        current = RemoteNode.root()
        creating = False

        for name in components:
            child_path = current.path.rstrip("/") + "/" + name

            if not creating:
                node = await self._lookup_child(current, name)
                if node is not None:
                    if not node.is_directory:
                        raise PathResolutionError(f"path component is a file: {node.path}")
                    current = node
                    continue
                creating = True
                logger.info(f"Creating folder structure below {current.path}")

            fid = await self._api.create_folder(current.fid, name)
            current = RemoteNode(fid=fid, name=name, path=child_path, is_directory=True)

        logger.debug("Folder %s -> fid=%s", normalize_path(path), current.fid)
        return current.fid
