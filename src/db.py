"""Shared SQLite helpers: WAL mode, busy timeout, row_factory defaults."""

import sqlite3
from pathlib import Path

BUSY_TIMEOUT_MS = 5000


def wal_connect(
    db_path: str | Path,
    row_factory: bool = False,
    busy_timeout_ms: int = BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    The parent directory is created on first use. Use as a context manager
    for commit/rollback; the caller closes the connection.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        busy_timeout_ms: How long a writer waits on a locked database.
    """
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
