# boardsync: collaborative kanban board state sync over a document store
#
# Components:
#   errors.py  - Exception taxonomy (Unauthenticated, NotFound, TransientNetworkError, ...)
#   schema.py  - Data model (Profile, Board, Column, Task) and persisted layout
#   store.py   - SQLite-backed document store with merge writes and snapshot listeners
#   watcher.py - watchdog bridge delivering changes written by other processes
#   auth.py    - Identity boundary (on_auth_state_changed subscriptions)
#   client.py  - Identity-scoped document store client for the board layout
#   view.py    - View state container (latest snapshot tree, re-render listeners)
#   sync.py    - Sync layer: snapshots -> view state, intents -> store writes
#   session.py - Wires identity transitions to sync layer start/stop
#   config.py  - YAML configuration with environment overrides
