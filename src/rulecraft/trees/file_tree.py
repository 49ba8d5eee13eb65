"""Turn a provider's flat, recursive file listing into a sorted tree.

GitHub's ``git/trees/{ref}?recursive=1`` endpoint returns every blob and tree
of a repository as one flat list in no guaranteed order. The UI wants the
familiar explorer shape instead: directories first, then files, names compared
case-insensitively, at every level.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from .rule_tree import RuleNodeMetadata

# Version-control metadata directories, dot-prefixed or not.
VCS_METADATA_DIRS = frozenset({".git", ".hg", ".svn", ".bzr", "CVS", "_darcs"})


class NodeKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class FlatTreeEntry:
    """One ``/``-separated path from a flat listing, without a leading slash."""

    path: str
    kind: NodeKind

    @classmethod
    def from_git_tree_item(cls, item: Mapping[str, Any]) -> "FlatTreeEntry":
        # "tree" is a directory; blobs and submodule commits render as files.
        kind = NodeKind.DIRECTORY if item.get("type") == "tree" else NodeKind.FILE
        return cls(path=str(item.get("path", "")), kind=kind)


@dataclass
class TreeNode:
    """A file or directory in a rendered tree.

    Directory nodes always carry a (possibly empty) ``children`` list; file
    nodes never do.
    """

    name: str
    path: str
    kind: NodeKind
    children: Optional[List["TreeNode"]] = None
    rule_id: Optional[str] = None
    metadata: Optional["RuleNodeMetadata"] = None

    def __post_init__(self) -> None:
        if self.kind is NodeKind.DIRECTORY:
            if self.children is None:
                self.children = []
        elif self.children:
            raise ValueError(f"File node {self.path!r} cannot have children")
        else:
            self.children = None

    @property
    def is_directory(self) -> bool:
        return self.kind is NodeKind.DIRECTORY

    def find(self, path: str) -> Optional["TreeNode"]:
        """Depth-first lookup of a descendant (or self) by path."""
        if self.path == path:
            return self
        for child in self.children or []:
            found = child.find(path)
            if found is not None:
                return found
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "type": self.kind.value,
            "path": self.path,
        }
        if self.rule_id is not None:
            payload["ruleId"] = self.rule_id
        if self.metadata is not None:
            payload["metadata"] = self.metadata.model_dump(mode="json")
        if self.children is not None:
            payload["children"] = [child.to_dict() for child in self.children]
        return payload


def is_hidden_path(path: str) -> bool:
    """True if any segment is dot-prefixed or a version-control directory."""
    return any(
        segment.startswith(".") or segment in VCS_METADATA_DIRS
        for segment in path.split("/")
    )


def tree_sort_key(node: TreeNode) -> tuple:
    # Exact name breaks case-insensitive ties so the order is total.
    return (0 if node.is_directory else 1, node.name.casefold(), node.name)


def sort_tree(nodes: List[TreeNode]) -> List[TreeNode]:
    """Sort ``nodes`` in place, directories first, recursing into children."""
    nodes.sort(key=tree_sort_key)
    for node in nodes:
        if node.children:
            sort_tree(node.children)
    return nodes


def build_file_tree(entries: Iterable[FlatTreeEntry]) -> List[TreeNode]:
    """Assemble the root level of a sorted tree from an unordered flat listing.

    Hidden and version-control paths are discarded, as are malformed paths
    (empty segments) and entries nested under something listed as a file.
    Directories implied by a path prefix but missing from the listing are
    created so their contents still appear.
    """
    visible = sorted(
        (
            entry
            for entry in entries
            if _is_well_formed(entry.path) and not is_hidden_path(entry.path)
        ),
        key=lambda entry: entry.path,
    )

    roots: List[TreeNode] = []
    index: Dict[str, TreeNode] = {}

    for entry in visible:
        if entry.path in index:
            continue

        segments = entry.path.split("/")
        siblings = _children_of(segments[:-1], roots, index)
        if siblings is None:
            continue

        node = TreeNode(name=segments[-1], path=entry.path, kind=entry.kind)
        index[entry.path] = node
        siblings.append(node)

    return sort_tree(roots)


def _children_of(
    parent_segments: List[str],
    roots: List[TreeNode],
    index: Dict[str, TreeNode],
) -> Optional[List[TreeNode]]:
    """Children list for the parent path, creating implied directories.

    Returns ``None`` when some ancestor is a file.
    """
    siblings = roots
    for depth in range(len(parent_segments)):
        path = "/".join(parent_segments[: depth + 1])
        node = index.get(path)
        if node is None:
            node = TreeNode(
                name=parent_segments[depth], path=path, kind=NodeKind.DIRECTORY
            )
            index[path] = node
            siblings.append(node)
        elif not node.is_directory:
            return None
        siblings = node.children
    return siblings


def _is_well_formed(path: str) -> bool:
    return bool(path) and all(path.split("/"))


__all__ = [
    "FlatTreeEntry",
    "NodeKind",
    "TreeNode",
    "VCS_METADATA_DIRS",
    "build_file_tree",
    "is_hidden_path",
    "sort_tree",
    "tree_sort_key",
]
