"""State directory configuration.

Each working directory gets its own state database, so distributions run
from different checkouts never share mappings or audit history.

Layout:
    ~/.secrets-sync/
      config.yml              # optional, see config.py
      states/
        <hash-of-cwd>/
          state.db            # SQLite database (WAL mode)

``SECRETS_SYNC_STATE_DB`` overrides the database path entirely.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

STATE_DB_ENV = "SECRETS_SYNC_STATE_DB"


class StateConfig:
    """Resolves where the state database lives.

    Example:
        # Project A: /home/user/project-a
        StateConfig.get_db_path()
        # Returns: ~/.secrets-sync/states/a1b2c3d4e5f6a7b8/state.db
    """

    @staticmethod
    def get_home_dir() -> Path:
        return Path.home() / ".secrets-sync"

    @staticmethod
    def get_state_dir() -> Path:
        """State directory for the current working directory, created if missing."""
        cwd_hash = hashlib.sha256(str(Path.cwd()).encode()).hexdigest()[:16]
        state_dir = StateConfig.get_home_dir() / "states" / cwd_hash
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    @staticmethod
    def get_db_path(explicit: str | Path | None = None) -> Path:
        """Database path: explicit argument, then SECRETS_SYNC_STATE_DB, then the state dir."""
        if explicit:
            path = Path(explicit).expanduser()
        elif os.getenv(STATE_DB_ENV):
            path = Path(os.environ[STATE_DB_ENV]).expanduser()
        else:
            return StateConfig.get_state_dir() / "state.db"

        path.parent.mkdir(parents=True, exist_ok=True)
        return path


__all__ = ["STATE_DB_ENV", "StateConfig"]
