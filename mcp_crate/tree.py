"""
Path Index and copy-on-write tree edits

``PathIndex`` walks the node tree once, depth-first pre-order, and records a
``NodeReference`` per node under a human-readable path such as
``root/house-1/french-touch-2``. The numeric suffix comes from a counter that
is global to the walk, so two siblings called "French Touch" still get
distinct paths.

A path describes a position, not an identity: moving a playlist changes its
path. Edits therefore address nodes by ``node_id`` and return a new root;
an index built from an older root is simply discarded.
"""

import re
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .errors import NodeNotFoundError, StaleReferenceError, TypeMismatchError
from .models import (
    FolderNode,
    NodeReference,
    PlaylistNode,
    SidebarTreeNode,
)

ROOT_PATH = "root"

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    slug = _NON_SLUG.sub("-", value.lower()).strip("-")[:40]
    return slug or "node"


# ---------------------------------------------------------------------------
# Path index
# ---------------------------------------------------------------------------

class PathIndex:
    """Path -> NodeReference lookup plus the sidebar projection of one tree."""

    def __init__(self, root: FolderNode) -> None:
        self.root = root
        self.references: Dict[str, NodeReference] = {}
        self._counter = 0
        self.tree, self.playlist_count, self.entry_count = self._walk(
            root, path=ROOT_PATH, parent=None, parent_path=None, depth=0, position=0,
        )

    def _child_path(self, parent_path: str, node) -> str:
        name = node.name if node.name is not None else f"{node.kind.lower()}-{self._counter}"
        segment = slugify(name)
        self._counter += 1
        return f"{parent_path}/{segment}-{self._counter}"

    def _walk(
        self,
        node,
        path: str,
        parent: Optional[FolderNode],
        parent_path: Optional[str],
        depth: int,
        position: int,
    ) -> Tuple[SidebarTreeNode, int, int]:
        self.references[path] = NodeReference(
            path=path,
            node_type=node.kind,
            node_id=node.node_id,
            node=node,
            parent_path=parent_path,
            parent_id=parent.node_id if parent is not None else None,
            depth=depth,
            position=position,
        )
        sidebar = SidebarTreeNode(
            name=node.name if node.name is not None else "Untitled",
            type=node.kind,
            path=path,
            parent_path=parent_path,
            depth=depth,
        )

        if isinstance(node, PlaylistNode):
            sidebar.playlist_size = len(node.entries)
            return sidebar, 1, len(node.entries)

        if not isinstance(node, FolderNode):
            return sidebar, 0, 0

        playlists = entries = 0
        for i, child in enumerate(node.children):
            child_tree, child_playlists, child_entries = self._walk(
                child,
                path=self._child_path(path, child),
                parent=node,
                parent_path=path,
                depth=depth + 1,
                position=i,
            )
            sidebar.children.append(child_tree)
            playlists += child_playlists
            entries += child_entries
        sidebar.playlist_count = playlists
        sidebar.entry_count = entries
        return sidebar, playlists, entries

    def __contains__(self, path: str) -> bool:
        return path in self.references

    def __len__(self) -> int:
        return len(self.references)

    def get(self, path: str) -> NodeReference:
        ref = self.references.get(path)
        if ref is None:
            raise NodeNotFoundError(path)
        return ref

    def playlists(self) -> Iterator[NodeReference]:
        for ref in self.references.values():
            if ref.node_type == "PLAYLIST":
                yield ref

    def lineage(self, path: str) -> List[NodeReference]:
        """References from ``path`` up to the root, nearest first."""
        refs = []
        current: Optional[str] = path
        while current is not None:
            ref = self.references.get(current)
            if ref is None:
                break
            refs.append(ref)
            current = ref.parent_path
        return refs


# ---------------------------------------------------------------------------
# Copy-on-write edits
# ---------------------------------------------------------------------------

def iter_nodes(root: FolderNode) -> Iterator:
    """Every node, depth-first pre-order."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, FolderNode):
            stack.extend(reversed(node.children))


def collect_playlist_keys(root: FolderNode) -> Set[str]:
    keys: Set[str] = set()
    for node in iter_nodes(root):
        if isinstance(node, PlaylistNode):
            keys.update(node.entry_keys())
    return keys


def find_lineage(root: FolderNode, node_id: int) -> Optional[List]:
    """Nodes from the root down to ``node_id`` inclusive, or None."""
    stack = [(root, [root])]
    while stack:
        node, lineage = stack.pop()
        if node.node_id == node_id:
            return lineage
        if isinstance(node, FolderNode):
            for child in node.children:
                stack.append((child, lineage + [child]))
    return None


def _require_lineage(root: FolderNode, node_id: int) -> List:
    lineage = find_lineage(root, node_id)
    if lineage is None:
        raise StaleReferenceError(node_id)
    return lineage


def _splice(lineage: List, replacement) -> FolderNode:
    """Rebuild the spine above ``lineage[-1]``; a None replacement removes it."""
    old, new = lineage[-1], replacement
    for parent in reversed(lineage[:-1]):
        children = []
        for child in parent.children:
            if child.node_id != old.node_id:
                children.append(child)
            elif new is not None:
                children.append(new)
        old, new = parent, parent.with_children(children)
    return new


def replace_node(root: FolderNode, node_id: int, replacement) -> FolderNode:
    return _splice(_require_lineage(root, node_id), replacement)


def insert_child(root: FolderNode, folder_id: int, child) -> FolderNode:
    """Prepend ``child`` to the folder's children."""
    lineage = _require_lineage(root, folder_id)
    folder = lineage[-1]
    if not isinstance(folder, FolderNode):
        raise TypeMismatchError("Target node is not a folder")
    return _splice(lineage, folder.with_children((child,) + folder.children))


def remove_node(root: FolderNode, node_id: int):
    """Detach a node; returns ``(new_root, removed_node)``."""
    if node_id == root.node_id:
        raise TypeMismatchError("The root folder cannot be removed")
    lineage = _require_lineage(root, node_id)
    return _splice(lineage, None), lineage[-1]


def move_node(root: FolderNode, node_id: int, folder_id: int) -> FolderNode:
    if any(node.node_id == node_id for node in _require_lineage(root, folder_id)):
        raise TypeMismatchError("A node cannot be moved into itself")
    detached, node = remove_node(root, node_id)
    return insert_child(detached, folder_id, node)
