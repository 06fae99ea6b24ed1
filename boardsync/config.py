# boardsync: configuration
# Override defaults via a YAML file and BOARDSYNC_* environment variables.

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

CONFIG_PATH = Path.home() / ".config" / "boardsync" / "config.yaml"

ENV_OVERRIDES = {
    "BOARDSYNC_DB": "db_path",
    "BOARDSYNC_API_SECRET": "api_secret",
    "BOARDSYNC_LOG_LEVEL": "log_level",
}

_FIELD_TYPES = {str: str, float: (int, float), int: int, bool: bool}


@dataclass
class Config:
    """Runtime configuration for the board store, sync layer and server."""

    # Storage
    db_path: str = "~/.local/share/boardsync/board.db"
    busy_timeout: float = 5.0            # seconds SQLite waits on a locked db
    watch_db: bool = True                # deliver writes from other processes
    change_retention: float = 3600.0     # seconds before an idle reader stops holding feed rows

    # Server
    host: str = "127.0.0.1"
    port: int = 3000
    api_secret: str = ""                 # empty = /api routes need no X-API-Key
    log_level: str = "INFO"
    max_sessions: int = 100              # signed-in users kept live at once
    session_idle_timeout: float = 900.0  # seconds before an unused session is closed

    # Sync layer
    add_task_attempts: int = 20          # ids tried before add_task gives up
    default_task_content: str = "Click to edit"
    default_column_title: str = "New Column"

    def resolve_paths(self):
        """Expand ~ in filesystem paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    def validate(self):
        """Raise ConfigError on wrongly typed or out-of-range values."""
        for f in fields(self):
            value = getattr(self, f.name)
            expected = _FIELD_TYPES[f.type]
            if isinstance(value, bool) and f.type is not bool:
                raise ConfigError(f"{f.name} must be {f.type.__name__}, got bool")
            if not isinstance(value, expected):
                raise ConfigError(
                    f"{f.name} must be {f.type.__name__}, got {type(value).__name__}"
                )
        if self.add_task_attempts < 1:
            raise ConfigError("add_task_attempts must be >= 1")
        if not (0 < self.port < 65536):
            raise ConfigError(f"port out of range: {self.port}")
        if self.max_sessions < 1:
            raise ConfigError("max_sessions must be >= 1")
        for name in ("busy_timeout", "change_retention", "session_idle_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file and environment, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        data = {}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")

        known = {f.name for f in fields(cls)}
        cfg = cls(**{k: v for k, v in data.items() if k in known})
        for env_name, attr in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                setattr(cfg, attr, value)
        cfg.validate()
        cfg.resolve_paths()
        return cfg
