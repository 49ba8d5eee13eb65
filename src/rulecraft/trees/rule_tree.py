"""Virtual editor-rules tree projected from stored rule rows.

Rules live in the database, not in the repository, but the UI presents them
as the files the editor would read::

    .cursor/
      rules/        PROJECT_RULE rows as <stem>.rules.mdc
      commands/     COMMAND rows as <stem>.md
    .cursorrules    USER_RULE row

The shape is fixed. Category order is semantic, so unlike the file tree no
alphabetical sort is applied; rows keep the order they were given in.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .file_tree import NodeKind, TreeNode

EDITOR_DIR = ".cursor"
USER_RULES_FILE = ".cursorrules"

ApplyMode = Literal["always", "intelligent", "specific", "manual"]


class RuleType(str, Enum):
    PROJECT_RULE = "PROJECT_RULE"
    USER_RULE = "USER_RULE"
    COMMAND = "COMMAND"


# Category directory and file extension per row type. Dict order is the
# order categories appear under ``.cursor``.
_CATEGORIES: Dict[RuleType, tuple] = {
    RuleType.PROJECT_RULE: ("rules", ".rules.mdc"),
    RuleType.COMMAND: ("commands", ".md"),
}


class RuleRow(BaseModel):
    """A stored rule, already scoped to one repository."""

    id: str
    type: RuleType
    file_name: str = Field(..., description="Normalized stem, no extension")
    is_active: bool = True
    apply_mode: Optional[ApplyMode] = Field(
        default=None, description="How a project rule is applied"
    )
    glob_pattern: Optional[str] = Field(
        default=None, description="File pattern for the 'specific' apply mode"
    )
    repository_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = None

    @field_validator("file_name")
    @classmethod
    def _validate_stem(cls, value: str) -> str:
        if not value or "/" in value:
            raise ValueError("file_name must be a non-empty stem without '/'")
        return value


class RuleNodeMetadata(BaseModel):
    """Display metadata carried by each projected rule file."""

    file_name: str
    type: RuleType
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: RuleRow) -> "RuleNodeMetadata":
        return cls(
            file_name=row.file_name,
            type=row.type,
            is_active=row.is_active,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


def rule_file_name(row: RuleRow) -> str:
    """File name a row is presented under, derived from its type."""
    if row.type is RuleType.USER_RULE:
        return USER_RULES_FILE
    _, extension = _CATEGORIES[row.type]
    return f"{row.file_name}{extension}"


def project_rules_tree(rows: Iterable[RuleRow]) -> TreeNode:
    """Build the virtual rules tree rooted at ``/``."""
    rows = list(rows)
    root = TreeNode(name="root", path="/", kind=NodeKind.DIRECTORY)

    editor_dir = TreeNode(name=EDITOR_DIR, path=EDITOR_DIR, kind=NodeKind.DIRECTORY)
    for rule_type, (dirname, _) in _CATEGORIES.items():
        members = [row for row in rows if row.type is rule_type]
        if not members:
            continue
        category_path = f"{EDITOR_DIR}/{dirname}"
        category = TreeNode(name=dirname, path=category_path, kind=NodeKind.DIRECTORY)
        category.children.extend(_file_node(row, category_path) for row in members)
        editor_dir.children.append(category)

    if editor_dir.children:
        root.children.append(editor_dir)

    # One file per USER_RULE row; duplicates are a data anomaly, still shown.
    for row in rows:
        if row.type is RuleType.USER_RULE:
            root.children.append(_file_node(row, None))

    return root


def _file_node(row: RuleRow, directory: Optional[str]) -> TreeNode:
    name = rule_file_name(row)
    return TreeNode(
        name=name,
        path=f"{directory}/{name}" if directory else name,
        kind=NodeKind.FILE,
        rule_id=row.id,
        metadata=RuleNodeMetadata.from_row(row),
    )


__all__ = [
    "ApplyMode",
    "EDITOR_DIR",
    "RuleNodeMetadata",
    "RuleRow",
    "RuleType",
    "USER_RULES_FILE",
    "project_rules_tree",
    "rule_file_name",
]
