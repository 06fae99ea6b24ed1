"""
Board data model and persisted layout.

Layout (one board and one profile per user):
  users/{uid}                      → Profile
  boards/{uid}                     → Board   (columnOrder)
  boards/{uid}/columns/{columnId}  → Column  (title, taskIds)
  boards/{uid}/tasks/{taskId}      → Task    (content)

Ordering lives in the parents: the board orders columns, each column
orders its tasks. Wire field names are camelCase to match stored documents.
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable


DEFAULT_TASK_CONTENT = "Click to edit"
DEFAULT_COLUMN_TITLE = "New Column"

TASK_PREFIX = "task"
COLUMN_PREFIX = "column"


class Theme(Enum):
    """Profile UI theme."""
    LIGHT = "light"
    DARK = "dark"

    @classmethod
    def from_str(cls, value: Optional[str]) -> "Theme":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.LIGHT


# ── Layout ───────────────────────────────────────────────────────────────────

def profile_path(uid: str) -> str:
    return f"users/{uid}"


def board_path(uid: str) -> str:
    return f"boards/{uid}"


def columns_path(uid: str) -> str:
    return f"boards/{uid}/columns"


def tasks_path(uid: str) -> str:
    return f"boards/{uid}/tasks"


def next_sequential_id(prefix: str, existing_ids: Iterable[str]) -> str:
    """
    Next `<prefix>-<n>` id: max numeric suffix + 1, starting at 1.

    Ids that do not carry a numeric suffix are ignored.
    """
    numbers = []
    for existing in existing_ids:
        head, _, tail = str(existing).rpartition("-")
        if head != prefix:
            continue
        try:
            numbers.append(int(tail))
        except ValueError:
            continue
    next_index = max(numbers) + 1 if numbers else 1
    return f"{prefix}-{next_index}"


# ── Documents ────────────────────────────────────────────────────────────────

@dataclass
class Profile:
    """Per-user profile document."""
    first_name: str = ""
    last_name: str = ""
    theme: Theme = Theme.LIGHT

    @classmethod
    def default_for(cls, display_name: Optional[str]) -> "Profile":
        """Profile seeded from the identity provider's display name."""
        return cls(first_name=display_name or "", last_name="", theme=Theme.LIGHT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "theme": self.theme.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        return cls(
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            theme=Theme.from_str(data.get("theme")),
        )


@dataclass
class Board:
    """Per-user board document. Owns the left-to-right column order."""
    column_order: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"columnOrder": list(self.column_order)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Board":
        return cls(column_order=list(data.get("columnOrder") or []))


@dataclass
class Column:
    """A board column. Owns the top-to-bottom order of its tasks."""
    id: str
    title: str = DEFAULT_COLUMN_TITLE
    task_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "taskIds": list(self.task_ids)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> "Column":
        return cls(
            id=data.get("id") or doc_id or "",
            title=data.get("title", ""),
            task_ids=list(data.get("taskIds") or []),
        )


@dataclass
class Task:
    """A task card. Its position is defined by the owning column."""
    id: str
    content: str = DEFAULT_TASK_CONTENT

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> "Task":
        return cls(id=data.get("id") or doc_id or "", content=data.get("content", ""))
