"""
Sync layer: bridges the identity-scoped store client and the view state.

Snapshots flow in (store → view); user intents flow out (UI → store writes).
Writes are fire-and-forget: nothing here waits for confirmation, and the
resulting state change arrives through the next snapshot, on this client and
every other one.

Per watched collection:
  UNSUBSCRIBED → SUBSCRIBING → LIVE → UNSUBSCRIBED   (stop())
                                    ↘ ERROR           (auth lost)
"""
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional

from .auth import User
from .client import BoardStoreClient
from .config import Config
from .errors import AlreadyExists, NotFound, TransientNetworkError, Unauthenticated, UnknownReference
from .schema import (
    COLUMN_PREFIX,
    TASK_PREFIX,
    Board,
    Column,
    Profile,
    Task,
    Theme,
    next_sequential_id,
)
from .store import CancelToken, DocumentSnapshot, QuerySnapshot
from .view import ViewState

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("firstName", "lastName", "theme")


class SubscriptionState(Enum):
    """Lifecycle of one watched collection."""
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    ERROR = "error"


@dataclass
class SyncContext:
    """Everything a sync layer needs, passed explicitly at construction."""
    client: BoardStoreClient
    view: ViewState
    config: Config = field(default_factory=Config)


class SyncLayer:
    """Keeps one user's view state in sync with the store and issues their writes."""

    WATCHED = ("profile", "board", "columns", "tasks")

    def __init__(self, context: SyncContext, on_auth_lost: Optional[Callable[[], None]] = None):
        self.context = context
        self.client = context.client
        self.view = context.view
        self.config = context.config
        self.on_auth_lost = on_auth_lost
        self.user: Optional[User] = None
        self.states: Dict[str, SubscriptionState] = {
            name: SubscriptionState.UNSUBSCRIBED for name in self.WATCHED
        }
        self._tokens: Dict[str, CancelToken] = {}
        self._seeded: set = set()
        self._created_ids: set = set()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def live(self) -> bool:
        return all(state == SubscriptionState.LIVE for state in self.states.values())

    def start(self, user: User) -> None:
        """Begin watching profile, board, columns and tasks for `user`."""
        if self.user is not None:
            self.stop()
        self.user = user
        watchers = {
            "profile": (self.client.watch_profile, self._on_profile),
            "board": (self.client.watch_board, self._on_board),
            "columns": (self.client.watch_columns, self._on_columns),
            "tasks": (self.client.watch_tasks, self._on_tasks),
        }
        logger.info(f"Starting sync for {user.uid}")
        for name in self.WATCHED:
            watch, handler = watchers[name]
            self.states[name] = SubscriptionState.SUBSCRIBING
            try:
                self._tokens[name] = watch(partial(self._on_snapshot, name, handler))
            except Unauthenticated:
                self._auth_lost(f"subscribe {name}")
                return
            except TransientNetworkError as e:
                logger.warning(f"Could not subscribe to {name}: {e}")
                self.states[name] = SubscriptionState.UNSUBSCRIBED

    def stop(self) -> None:
        """Cancel every subscription exactly once and forget the session."""
        for name, token in list(self._tokens.items()):
            token()
        self._tokens.clear()
        for name in self.WATCHED:
            self.states[name] = SubscriptionState.UNSUBSCRIBED
        if self.user is not None:
            logger.info(f"Stopped sync for {self.user.uid}")
        self.user = None
        self._seeded.clear()
        self._created_ids.clear()

    def _auth_lost(self, action: str) -> None:
        logger.warning(f"Authentication lost during {action}")
        for token in self._tokens.values():
            token()
        self._tokens.clear()
        for name in self.WATCHED:
            self.states[name] = SubscriptionState.ERROR
        if self.on_auth_lost:
            self.on_auth_lost()

    # ── Snapshot handlers ────────────────────────────────────────────────────

    def _on_snapshot(self, name: str, handler: Callable[[Any], None], snapshot: Any) -> None:
        if self.states.get(name) not in (SubscriptionState.SUBSCRIBING, SubscriptionState.LIVE):
            return
        self.states[name] = SubscriptionState.LIVE
        handler(snapshot)

    def _on_profile(self, snapshot: DocumentSnapshot) -> None:
        if snapshot.exists:
            self.view.apply_profile(Profile.from_dict(snapshot.data))
            return
        display_name = self.user.display_name if self.user else ""
        self._seed("profile", self.client.set_profile, Profile.default_for(display_name).to_dict())

    def _on_board(self, snapshot: DocumentSnapshot) -> None:
        if snapshot.exists:
            self.view.apply_board(Board.from_dict(snapshot.data))
            return
        self._seed("board", self.client.set_board, Board().to_dict())

    def _on_columns(self, snapshot: QuerySnapshot) -> None:
        self.view.apply_columns({
            doc.id: Column.from_dict(doc.data, doc.id) for doc in snapshot if doc.exists
        })

    def _on_tasks(self, snapshot: QuerySnapshot) -> None:
        self.view.apply_tasks({
            doc.id: Task.from_dict(doc.data, doc.id) for doc in snapshot if doc.exists
        })

    def _seed(self, name: str, write: Callable[[Dict[str, Any]], None], data: Dict[str, Any]) -> None:
        """
        Write a default document once per session.

        A second "absent" snapshot can arrive before the first default lands
        (another subscription, or delivery lag); it must not write again.
        """
        if name in self._seeded:
            logger.debug(f"Default {name} already written, waiting for snapshot")
            return
        self._seeded.add(name)
        logger.info(f"Creating default {name}")
        try:
            if not self._write(f"seed {name}", write, data):
                self._seeded.discard(name)
        except Unauthenticated:
            # _write has already moved the layer to ERROR
            pass

    # ── Write helper ─────────────────────────────────────────────────────────

    def _write(self, action: str, fn: Callable[..., None], *args: Any) -> bool:
        """
        Issue one store write. Returns False when it was dropped.

        Transient failures and writes against concurrently deleted documents
        are logged and swallowed; the next snapshot reflects the real state.
        """
        try:
            fn(*args)
            return True
        except TransientNetworkError as e:
            logger.warning(f"{action} dropped, store unavailable: {e}")
        except NotFound as e:
            logger.warning(f"{action} dropped: {e}")
        except Unauthenticated:
            self._auth_lost(action)
            raise
        return False

    def _column(self, column_id: str) -> Column:
        column = self.view.column(column_id)
        if column is None:
            raise UnknownReference(f"Unknown column: {column_id}")
        return column

    def _create_with_next_id(
        self,
        prefix: str,
        known_ids: Iterable[str],
        create: Callable[[str, Dict[str, Any]], None],
        make_data: Callable[[str], Dict[str, Any]],
    ) -> Optional[str]:
        """
        Create a document under the next sequential id.

        Another client may claim the same id between our read of the view and
        the write; create() refuses existing ids, so we move on to the next.
        """
        taken = set(known_ids) | self._created_ids
        for _ in range(self.config.add_task_attempts):
            doc_id = next_sequential_id(prefix, taken)
            try:
                if not self._write(f"create {doc_id}", create, doc_id, make_data(doc_id)):
                    return None
            except AlreadyExists:
                logger.info(f"{doc_id} was claimed by another writer, trying the next id")
                taken.add(doc_id)
                continue
            self._created_ids.add(doc_id)
            return doc_id
        logger.error(f"Gave up creating a {prefix} after {self.config.add_task_attempts} attempts")
        return None

    # ── Mutations ────────────────────────────────────────────────────────────

    def add_task(self, column_id: str) -> Optional[str]:
        """Create a task and append it to the column. Returns the new id, or None if dropped."""
        self._column(column_id)
        content = self.config.default_task_content
        task_id = self._create_with_next_id(
            TASK_PREFIX,
            self.view.tasks.keys(),
            self.client.create_task,
            lambda tid: Task(id=tid, content=content).to_dict(),
        )
        if task_id is None:
            return None
        self._write(f"append {task_id} to {column_id}", self.client.push_task_id, column_id, task_id)
        return task_id

    def add_column(self, title: Optional[str] = None) -> Optional[str]:
        """Create a column and append it to the board's column order."""
        title = title or self.config.default_column_title
        known = set(self.view.columns) | set(self.view.column_order)
        column_id = self._create_with_next_id(
            COLUMN_PREFIX,
            known,
            self.client.create_column,
            lambda cid: Column(id=cid, title=title).to_dict(),
        )
        if column_id is None:
            return None
        self._write(f"append {column_id} to board", self.client.push_to_column_order, column_id)
        return column_id

    def edit_column_title(self, column_id: str, new_title: str) -> bool:
        """Merge the new title in (last write wins). Unchanged titles are not written."""
        column = self._column(column_id)
        if column.title == new_title:
            return False
        return self._write(f"retitle {column_id}", self.client.set_column, column_id, {"title": new_title})

    def edit_task(self, task_id: str, content: str) -> bool:
        task = self.view.tasks.get(task_id)
        if task is None:
            raise UnknownReference(f"Unknown task: {task_id}")
        if task.content == content:
            return False
        return self._write(f"edit {task_id}", self.client.set_task, task_id, {"content": content})

    def delete_task(self, task_id: str, column_id: str) -> None:
        """Unlink the task from its column, then delete the task document."""
        self._column(column_id)
        self._write(f"unlink {task_id}", self.client.pop_task_id, column_id, task_id)
        self._write(f"delete {task_id}", self.client.delete_task, task_id)

    def delete_column(self, column_id: str) -> None:
        """
        Delete the column's tasks, the column, then its board entry.

        Three independent writes with no cross-collection transaction; if the
        sequence is cut short the view renders the leftovers as nothing.
        """
        column = self.view.column(column_id)
        if column is None and column_id not in self.view.column_order:
            raise UnknownReference(f"Unknown column: {column_id}")
        task_ids = list(column.task_ids) if column else []
        if task_ids:
            self._write(f"delete tasks of {column_id}", self.client.delete_tasks, task_ids)
        self._write(f"delete {column_id}", self.client.delete_column, column_id)
        self._write(f"remove {column_id} from board", self.client.pop_from_column_order, column_id)

    def reorder_columns(self, new_order: List[str]) -> bool:
        """Overwrite the board's column order."""
        new_order = list(new_order)
        if len(set(new_order)) != len(new_order):
            raise ValueError("Column order contains duplicates")
        for column_id in new_order:
            if column_id not in self.view.columns and column_id not in self.view.column_order:
                raise UnknownReference(f"Unknown column: {column_id}")
        previous = list(self.view.column_order)
        self.view.apply_board(Board(column_order=new_order))
        if self._write("reorder columns", self.client.set_board, {"columnOrder": new_order}):
            return True
        logger.warning("Column order not saved, restoring the previous order")
        self.view.apply_board(Board(column_order=previous))
        return False

    def move_task(self, task_id: str, from_column_id: str, to_column_id: str, to_index: int) -> bool:
        """
        Move a task within or between columns.

        Both lists are overwritten whole: position matters here, so the
        union/removal transforms do not apply.
        """
        source = self._column(from_column_id)
        destination = self._column(to_column_id)
        if task_id not in source.task_ids:
            raise UnknownReference(f"{task_id} is not in {from_column_id}")

        source_ids = [t for t in source.task_ids if t != task_id]
        if from_column_id == to_column_id:
            destination_ids = source_ids
        else:
            destination_ids = [t for t in destination.task_ids if t != task_id]
        index = max(0, min(int(to_index), len(destination_ids)))
        destination_ids.insert(index, task_id)

        if from_column_id == to_column_id:
            updates = [(source, destination_ids)]
        else:
            updates = [(source, source_ids), (destination, destination_ids)]

        for column, task_ids in updates:
            self.view.apply_column(dataclasses.replace(column, task_ids=task_ids))
        moved = True
        for column, task_ids in updates:
            if self._write(f"update {column.id}", self.client.set_column, column.id, {"taskIds": task_ids}):
                continue
            logger.warning(f"Task order of {column.id} not saved, restoring it")
            self.view.apply_column(column)
            moved = False
        return moved

    def handle_drag_end(self, result: Dict[str, Any]) -> bool:
        """
        Apply a drag-and-drop result.

        `result` carries draggableId, type ("column" or "task"),
        source {droppableId, index} and destination (None when dropped
        outside any list). Returns False when nothing moved.
        """
        source = result.get("source") or {}
        destination = result.get("destination")
        if not destination:
            return False
        if (destination.get("droppableId") == source.get("droppableId")
                and destination.get("index") == source.get("index")):
            return False

        draggable_id = result.get("draggableId")
        if result.get("type") == "column":
            order = [c for c in self.view.column_order if c != draggable_id]
            index = max(0, min(int(destination["index"]), len(order)))
            order.insert(index, draggable_id)
            return self.reorder_columns(order)

        return self.move_task(
            draggable_id,
            source.get("droppableId"),
            destination.get("droppableId"),
            destination["index"],
        )

    def set_profile(self, partial_data: Dict[str, Any]) -> bool:
        """Merge profile fields (firstName, lastName, theme)."""
        unknown = set(partial_data) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        data = dict(partial_data)
        if "theme" in data:
            data["theme"] = Theme(data["theme"]).value
        return self._write("set profile", self.client.set_profile, data)
