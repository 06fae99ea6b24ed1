"""
View state container.

Holds the last-known snapshot tree ({tasks, columns, columnOrder, user}) and
notifies re-render listeners whenever a snapshot is applied. Snapshots of
different collections arrive in any order, so rendering skips ids whose
documents are missing instead of failing.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .schema import Board, Column, Profile, Task
from .store import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class RenderedColumn:
    """A column resolved for display: tasks in order, missing ids dropped."""
    column: Column
    tasks: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.column.to_dict()
        data["tasks"] = [task.to_dict() for task in self.tasks]
        return data


class ViewState:
    """Latest known board tree for one signed-in user."""

    def __init__(self):
        self._lock = threading.RLock()
        self._listeners: Dict[int, Callable[["ViewState"], None]] = {}
        self._next_listener_id = 1
        self.tasks: Dict[str, Task] = {}
        self.columns: Dict[str, Column] = {}
        self.column_order: List[str] = []
        self.user = Profile()
        self.version = 0

    # ── Snapshot application ─────────────────────────────────────────────────

    def apply_board(self, board: Board) -> None:
        with self._lock:
            self.column_order = list(board.column_order)
        self._changed()

    def apply_columns(self, columns: Dict[str, Column]) -> None:
        with self._lock:
            self.columns = dict(columns)
        self._changed()

    def apply_tasks(self, tasks: Dict[str, Task]) -> None:
        with self._lock:
            self.tasks = dict(tasks)
        self._changed()

    def apply_profile(self, profile: Profile) -> None:
        with self._lock:
            self.user = profile
        self._changed()

    def apply_column(self, column: Column) -> None:
        """Local update of a single column ahead of its snapshot."""
        with self._lock:
            self.columns = dict(self.columns)
            self.columns[column.id] = column
        self._changed()

    def reset(self) -> None:
        with self._lock:
            self.tasks = {}
            self.columns = {}
            self.column_order = []
            self.user = Profile()
        self._changed()

    # ── Listeners ────────────────────────────────────────────────────────────

    def subscribe(self, listener: Callable[["ViewState"], None]) -> CancelToken:
        """Register a re-render callback, invoked after every applied change."""
        with self._lock:
            listener_id = self._next_listener_id
            self._next_listener_id += 1
            self._listeners[listener_id] = listener

        def cancel():
            with self._lock:
                self._listeners.pop(listener_id, None)

        return CancelToken(cancel)

    def _changed(self) -> None:
        with self._lock:
            self.version += 1
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("View listener failed")

    # ── Rendering ────────────────────────────────────────────────────────────

    def column(self, column_id: str) -> Optional[Column]:
        return self.columns.get(column_id)

    def board(self) -> List[RenderedColumn]:
        """Columns in display order with their tasks; orphan ids render as nothing."""
        with self._lock:
            rendered = []
            for column_id in self.column_order:
                column = self.columns.get(column_id)
                if column is None:
                    continue
                tasks = [self.tasks[t] for t in column.task_ids if t in self.tasks]
                rendered.append(RenderedColumn(column=column, tasks=tasks))
            return rendered

    def orphans(self) -> Dict[str, List[str]]:
        """Ids referenced by the board or a column whose documents are missing."""
        with self._lock:
            missing_columns = [c for c in self.column_order if c not in self.columns]
            missing_tasks = []
            for column in self.columns.values():
                for task_id in column.task_ids:
                    if task_id not in self.tasks and task_id not in missing_tasks:
                        missing_tasks.append(task_id)
            return {"columns": missing_columns, "tasks": missing_tasks}

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "version": self.version,
                "user": self.user.to_dict(),
                "columnOrder": list(self.column_order),
                "columns": {cid: c.to_dict() for cid, c in self.columns.items()},
                "tasks": {tid: t.to_dict() for tid, t in self.tasks.items()},
                "board": [rendered.to_dict() for rendered in self.board()],
            }
