"""
Identity-scoped document store client.

Generic operations (get/set/delete/subscribe, array field transforms,
batch deletes) plus typed helpers for the board layout. Every call resolves
the current identity first and raises Unauthenticated if there is none.
"""
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from .auth import AuthState, User
from .schema import board_path, columns_path, profile_path, tasks_path
from .store import (
    ArrayRemove,
    ArrayUnion,
    CancelToken,
    DocumentStore,
    join_path,
)

logger = logging.getLogger(__name__)


class BoardStoreClient:
    """Store operations scoped to the signed-in user."""

    def __init__(self, store: DocumentStore, auth: AuthState):
        self.store = store
        self.auth = auth

    @property
    def user(self) -> User:
        return self.auth.require_user()

    # ── Generic operations ───────────────────────────────────────────────────

    def get_document(self, collection_path: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Point read; None when the document does not exist."""
        self.auth.require_user()
        return self.store.get(join_path(collection_path, doc_id)).to_dict()

    def set_document(
        self,
        collection_path: str,
        doc_id: str,
        data: Dict[str, Any],
        merge: bool = True,
    ) -> None:
        self.auth.require_user()
        self.store.set(join_path(collection_path, doc_id), data, merge=merge)

    def create_document(self, collection_path: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Insert; raises AlreadyExists if the id is taken."""
        self.auth.require_user()
        self.store.create(join_path(collection_path, doc_id), data)

    def update_document(self, collection_path: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Merge into an existing document; raises NotFound if absent."""
        self.auth.require_user()
        self.store.update(join_path(collection_path, doc_id), data)

    def delete_document(self, collection_path: str, doc_id: str, must_exist: bool = False) -> None:
        self.auth.require_user()
        self.store.delete(join_path(collection_path, doc_id), must_exist=must_exist)

    def subscribe(self, path: str, on_snapshot: Callable[[Any], None]) -> CancelToken:
        """Listen to a document or collection path. Fires immediately, then on every change."""
        self.auth.require_user()
        return self.store.subscribe(path, on_snapshot)

    def append_to_array_field(self, doc_path: str, field: str, value: Any) -> None:
        """Set-union append. Appending a present value is a no-op."""
        self.auth.require_user()
        self.store.update(doc_path, {field: ArrayUnion(value)})

    def remove_from_array_field(self, doc_path: str, field: str, value: Any) -> None:
        """Set-removal. Removing an absent value leaves the list unchanged."""
        self.auth.require_user()
        self.store.update(doc_path, {field: ArrayRemove(value)})

    def batch_delete(self, collection_path: str, ids: Iterable[str]) -> None:
        """Delete several documents atomically."""
        self.auth.require_user()
        batch = self.store.batch()
        for doc_id in ids:
            batch.delete(join_path(collection_path, doc_id))
        batch.commit()

    # ── Layout ───────────────────────────────────────────────────────────────

    @property
    def profile_path(self) -> str:
        return profile_path(self.user.uid)

    @property
    def board_path(self) -> str:
        return board_path(self.user.uid)

    @property
    def columns_path(self) -> str:
        return columns_path(self.user.uid)

    @property
    def tasks_path(self) -> str:
        return tasks_path(self.user.uid)

    # ── Profile ──────────────────────────────────────────────────────────────

    def watch_profile(self, on_snapshot: Callable[[Any], None]) -> CancelToken:
        return self.subscribe(self.profile_path, on_snapshot)

    def set_profile(self, data: Dict[str, Any]) -> None:
        self.store.set(self.profile_path, data, merge=True)

    # ── Board ────────────────────────────────────────────────────────────────

    def watch_board(self, on_snapshot: Callable[[Any], None]) -> CancelToken:
        return self.subscribe(self.board_path, on_snapshot)

    def set_board(self, data: Dict[str, Any]) -> None:
        self.store.set(self.board_path, data, merge=True)

    def push_to_column_order(self, column_id: str) -> None:
        self.append_to_array_field(self.board_path, "columnOrder", column_id)

    def pop_from_column_order(self, column_id: str) -> None:
        self.remove_from_array_field(self.board_path, "columnOrder", column_id)

    # ── Columns ──────────────────────────────────────────────────────────────

    def watch_columns(self, on_snapshot: Callable[[Any], None]) -> CancelToken:
        return self.subscribe(self.columns_path, on_snapshot)

    def set_column(self, column_id: str, data: Dict[str, Any]) -> None:
        self.set_document(self.columns_path, column_id, data, merge=True)

    def create_column(self, column_id: str, data: Dict[str, Any]) -> None:
        self.create_document(self.columns_path, column_id, data)

    def delete_column(self, column_id: str) -> None:
        self.delete_document(self.columns_path, column_id)

    def push_task_id(self, column_id: str, task_id: str) -> None:
        self.append_to_array_field(join_path(self.columns_path, column_id), "taskIds", task_id)

    def pop_task_id(self, column_id: str, task_id: str) -> None:
        self.remove_from_array_field(join_path(self.columns_path, column_id), "taskIds", task_id)

    # ── Tasks ────────────────────────────────────────────────────────────────

    def watch_tasks(self, on_snapshot: Callable[[Any], None]) -> CancelToken:
        return self.subscribe(self.tasks_path, on_snapshot)

    def set_task(self, task_id: str, data: Dict[str, Any]) -> None:
        self.set_document(self.tasks_path, task_id, data, merge=True)

    def create_task(self, task_id: str, data: Dict[str, Any]) -> None:
        self.create_document(self.tasks_path, task_id, data)

    def delete_task(self, task_id: str) -> None:
        self.delete_document(self.tasks_path, task_id)

    def delete_tasks(self, task_ids: Iterable[str]) -> None:
        self.batch_delete(self.tasks_path, task_ids)
