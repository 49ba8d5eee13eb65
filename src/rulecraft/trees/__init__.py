"""Tree assembly for repository file listings and the virtual rules tree."""

from .file_tree import (
    FlatTreeEntry,
    NodeKind,
    TreeNode,
    build_file_tree,
    is_hidden_path,
    sort_tree,
)
from .rule_tree import (
    RuleNodeMetadata,
    RuleRow,
    RuleType,
    project_rules_tree,
    rule_file_name,
)

__all__ = [
    "FlatTreeEntry",
    "NodeKind",
    "RuleNodeMetadata",
    "RuleRow",
    "RuleType",
    "TreeNode",
    "build_file_tree",
    "is_hidden_path",
    "project_rules_tree",
    "rule_file_name",
    "sort_tree",
]
