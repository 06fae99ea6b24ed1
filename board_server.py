#!/usr/bin/env python3
"""
Board Server
------------
JSON API for the kanban board UI. Each signed-in user gets a live
BoardSession whose snapshot listeners keep its view state current; routes
render that view and dispatch user intents into the sync layer.

Usage:
    python board_server.py --db ~/.local/share/boardsync/board.db
    python board_server.py --config ~/.config/boardsync/config.yaml

Identity:
    Sign-in happens upstream (auth proxy). The proxy forwards the user as
    X-User-Id / X-User-Name headers. /api routes also require
    X-API-Key when api_secret is configured. Sessions idle past
    session_idle_timeout are closed, and at most max_sessions stay open
    (least recently used goes first).

API:
    GET    /health
    GET    /api/board                  → view state: { version, user, columnOrder, columns, tasks, board, orphans }
    GET    /api/profile                → { profile }
    PUT    /api/profile                → body: { firstName?, lastName?, theme? }
    POST   /api/columns                → body: { title? }            → { id }
    PUT    /api/columns/<id>           → body: { title }
    DELETE /api/columns/<id>
    PUT    /api/column-order           → body: { columnOrder: [...] }
    POST   /api/columns/<id>/tasks     →                             → { id }
    PUT    /api/tasks/<id>             → body: { content }
    DELETE /api/tasks/<id>?column=<columnId>
    POST   /api/tasks/<id>/move        → body: { from, to, index }
    POST   /api/drag-end               → body: drag result { draggableId, type, source, destination }
    POST   /api/signout
"""

import hmac
import logging
import os
import sys
import threading
import time
from collections import OrderedDict
from functools import wraps
from typing import Dict, List, Optional

from flask import Flask, jsonify, request

from boardsync.config import Config
from boardsync.errors import (
    ConfigError,
    NotFound,
    TransientNetworkError,
    Unauthenticated,
    UnknownReference,
)
from boardsync.session import BoardSession
from boardsync.store import DocumentStore
from boardsync.watcher import DbChangeWatcher

logger = logging.getLogger("boardsync.server")

app = Flask(__name__)

# ── State ────────────────────────────────────────────────────────────────────

_config: Optional[Config] = None
_store: Optional[DocumentStore] = None
_sessions: "OrderedDict[str, BoardSession]" = OrderedDict()  # least recently used first
_last_seen: Dict[str, float] = {}
_lock = threading.Lock()


def configure(config: Config, store: Optional[DocumentStore] = None) -> None:
    """Install config and store; drops any open sessions."""
    global _config, _store
    with _lock:
        for session in _sessions.values():
            session.close()
        _sessions.clear()
        _last_seen.clear()
        if _store is not None and _store is not store:
            try:
                _store.close()
            except TransientNetworkError as e:
                logger.warning(f"Could not close previous store: {e}")
        _config = config
        _store = store or DocumentStore(
            config.db_path,
            busy_timeout=config.busy_timeout,
            change_retention=config.change_retention,
        )


def get_config() -> Config:
    if _config is None:
        configure(Config.load(os.environ.get("BOARDSYNC_CONFIG")))
    return _config


def get_store() -> DocumentStore:
    get_config()
    return _store


def current_session() -> BoardSession:
    """Session for the user named in the request headers, created on first use."""
    uid = request.headers.get("X-User-Id", "").strip()
    if not uid:
        raise Unauthenticated("X-User-Id header missing")
    display_name = request.headers.get("X-User-Name", "").strip()
    store = get_store()
    config = get_config()
    now = time.monotonic()
    with _lock:
        evicted = _evict(config, now, keep=uid)
        session = _sessions.get(uid)
        if session is None:
            if len(_sessions) >= config.max_sessions:
                evicted.append(_drop(next(iter(_sessions))))
            session = BoardSession(store, config=config)
            session.sign_in(uid, display_name)
            _sessions[uid] = session
        _sessions.move_to_end(uid)
        _last_seen[uid] = now
    for stale in evicted:
        stale.close()
    return session


def _drop(uid: str) -> BoardSession:
    _last_seen.pop(uid, None)
    return _sessions.pop(uid)


def _evict(config: Config, now: float, keep: str) -> List[BoardSession]:
    """Remove sessions idle past session_idle_timeout. Caller holds _lock and closes them."""
    idle = [
        uid for uid, seen in _last_seen.items()
        if uid != keep and now - seen > config.session_idle_timeout
    ]
    if idle:
        logger.info(f"Closing {len(idle)} idle session(s)")
    return [_drop(uid) for uid in idle]


# ── Auth ─────────────────────────────────────────────────────────────────────


def require_api_key(f):
    """Decorator: reject /api requests without a valid X-API-Key header.

    Reads are covered too: the first request for a user opens a session and
    seeds that user's documents.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = get_config().api_secret
        if not secret:
            return f(*args, **kwargs)
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


# ── Errors ───────────────────────────────────────────────────────────────────


@app.errorhandler(Unauthenticated)
def handle_unauthenticated(e):
    return jsonify({"error": str(e), "signedOut": True}), 401


@app.errorhandler(UnknownReference)
@app.errorhandler(NotFound)
def handle_not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(TransientNetworkError)
def handle_unavailable(e):
    app.logger.warning(f"Store unavailable: {e}")
    return jsonify({"error": "Store temporarily unavailable"}), 503


@app.errorhandler(ValueError)
def handle_bad_request(e):
    return jsonify({"error": str(e)}), 400


# ── Routes ───────────────────────────────────────────────────────────────────


@app.route("/health")
def health():
    config = get_config()
    return jsonify({"status": "ok", "db": config.db_path, "sessions": len(_sessions)})


@app.route("/api/board")
@require_api_key
def api_board():
    session = current_session()
    data = session.view.to_dict()
    data["live"] = session.sync.live
    data["orphans"] = session.view.orphans()
    return jsonify(data)


@app.route("/api/profile", methods=["GET"])
@require_api_key
def api_profile_get():
    session = current_session()
    return jsonify({"profile": session.view.user.to_dict()})


@app.route("/api/profile", methods=["PUT"])
@require_api_key
def api_profile_set():
    session = current_session()
    session.sync.set_profile(_body())
    return jsonify({"profile": session.view.user.to_dict()})


@app.route("/api/columns", methods=["POST"])
@require_api_key
def api_add_column():
    session = current_session()
    title = str(_body().get("title", "")).strip() or None
    column_id = session.sync.add_column(title)
    if column_id is None:
        return jsonify({"error": "Column could not be created"}), 503
    return jsonify({"id": column_id, "version": session.view.version}), 201


@app.route("/api/columns/<column_id>", methods=["PUT"])
@require_api_key
def api_edit_column(column_id):
    session = current_session()
    title = _body().get("title")
    if not isinstance(title, str) or not title.strip():
        return jsonify({"error": "title is required"}), 400
    changed = session.sync.edit_column_title(column_id, title.strip())
    return jsonify({"changed": changed, "version": session.view.version})


@app.route("/api/columns/<column_id>", methods=["DELETE"])
@require_api_key
def api_delete_column(column_id):
    session = current_session()
    session.sync.delete_column(column_id)
    return jsonify({"deleted": column_id, "version": session.view.version})


@app.route("/api/column-order", methods=["PUT"])
@require_api_key
def api_reorder_columns():
    session = current_session()
    order = _body().get("columnOrder")
    if not isinstance(order, list):
        return jsonify({"error": "columnOrder must be a list"}), 400
    session.sync.reorder_columns([str(c) for c in order])
    return jsonify({"columnOrder": session.view.column_order, "version": session.view.version})


@app.route("/api/columns/<column_id>/tasks", methods=["POST"])
@require_api_key
def api_add_task(column_id):
    session = current_session()
    task_id = session.sync.add_task(column_id)
    if task_id is None:
        return jsonify({"error": "Task could not be created"}), 503
    return jsonify({"id": task_id, "version": session.view.version}), 201


@app.route("/api/tasks/<task_id>", methods=["PUT"])
@require_api_key
def api_edit_task(task_id):
    session = current_session()
    content = _body().get("content")
    if not isinstance(content, str):
        return jsonify({"error": "content is required"}), 400
    changed = session.sync.edit_task(task_id, content)
    return jsonify({"changed": changed, "version": session.view.version})


@app.route("/api/tasks/<task_id>", methods=["DELETE"])
@require_api_key
def api_delete_task(task_id):
    session = current_session()
    column_id = request.args.get("column", "").strip()
    if not column_id:
        return jsonify({"error": "column query parameter is required"}), 400
    session.sync.delete_task(task_id, column_id)
    return jsonify({"deleted": task_id, "version": session.view.version})


@app.route("/api/tasks/<task_id>/move", methods=["POST"])
@require_api_key
def api_move_task(task_id):
    session = current_session()
    data = _body()
    try:
        from_column = str(data["from"])
        to_column = str(data["to"])
        index = int(data["index"])
    except (KeyError, TypeError, ValueError):
        return jsonify({"error": "from, to and index are required"}), 400
    session.sync.move_task(task_id, from_column, to_column, index)
    return jsonify({"version": session.view.version})


@app.route("/api/drag-end", methods=["POST"])
@require_api_key
def api_drag_end():
    session = current_session()
    moved = session.sync.handle_drag_end(_body())
    return jsonify({"moved": moved, "version": session.view.version})


@app.route("/api/signout", methods=["POST"])
@require_api_key
def api_signout():
    uid = request.headers.get("X-User-Id", "").strip()
    if not uid:
        raise Unauthenticated("X-User-Id header missing")
    with _lock:
        session = _drop(uid) if uid in _sessions else None
    if session is not None:
        session.sign_out()
        session.close()
    return jsonify({"signedOut": True})


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Kanban board sync server")
    parser.add_argument("--host", default=None,
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--db", help="Path to board.db (overrides BOARDSYNC_DB env var)")
    parser.add_argument("--config", help="Path to config.yaml")
    args = parser.parse_args()

    if args.db:
        os.environ["BOARDSYNC_DB"] = args.db

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [boardsync] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    configure(config)
    watcher = None
    if config.watch_db:
        watcher = DbChangeWatcher(get_store())
        watcher.start()

    host = args.host or config.host
    port = args.port or config.port
    logger.info(f"Serving on http://{host}:{port} (db: {config.db_path})")
    try:
        app.run(host=host, port=port, debug=False, threaded=True)
    finally:
        if watcher:
            watcher.stop()
