# ============================================================================
# STREET PATROL LOG - Database Connection
# ============================================================================

import sqlite3
from pathlib import Path
from typing import Optional, Union

from .config import get_config


def get_db_path() -> Path:
    return Path(get_config("db_path", "patrols.db"))


def get_conn(db_path: Optional[Union[str, Path]] = None) -> sqlite3.Connection:
    """Open a connection with dict-style rows."""
    conn = sqlite3.connect(str(db_path or get_db_path()), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn
