"""Progress persistence: the store interface and its SQLite implementation."""

import asyncio
import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

import structlog

from db import wal_connect

from .errors import TransientIOError, ValidationError
from .models import Progress

logger = structlog.get_logger()


class ProgressStore(ABC):
    """Durable per-pack progress records."""

    @abstractmethod
    def get_progress(self, pack_id: str) -> Progress:
        """Stored progress, or a fresh empty Progress. Never raises."""

    @abstractmethod
    async def update_progress(self, pack_id: str, progress: Progress) -> None:
        ...

    @abstractmethod
    async def reset_progress(self, pack_id: str) -> None:
        ...

    @abstractmethod
    async def archive_progress(self, pack_id: str) -> None:
        """Move the active record into the archive."""


class SqliteProgressStore(ProgressStore):
    """One JSON snapshot per pack in a WAL-mode SQLite database."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS progress (
                    pack_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS progress_archive (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pack_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    archived_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_progress_archive_pack ON progress_archive(pack_id)"
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(wal_connect(self.db_path, row_factory=True)) as conn, conn:
            yield conn

    def get_progress(self, pack_id: str) -> Progress:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT data FROM progress WHERE pack_id = ?", (pack_id,)
                ).fetchone()
            if row is None:
                return Progress()
            return Progress.from_dict(json.loads(row["data"]))
        except (sqlite3.Error, json.JSONDecodeError, ValidationError) as e:
            logger.warning("progress_load_failed", pack_id=pack_id, error=str(e))
            return Progress()

    def _write(self, pack_id: str, payload: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO progress (pack_id, data, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(pack_id) DO UPDATE SET data=excluded.data, updated_at=excluded.updated_at""",
                (pack_id, payload, datetime.now().isoformat()),
            )

    def _delete(self, pack_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM progress WHERE pack_id = ?", (pack_id,))

    def _archive(self, pack_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM progress WHERE pack_id = ?", (pack_id,)).fetchone()
            if row is None:
                return False
            conn.execute(
                "INSERT INTO progress_archive (pack_id, data, archived_at) VALUES (?, ?, ?)",
                (pack_id, row["data"], datetime.now().isoformat()),
            )
            conn.execute("DELETE FROM progress WHERE pack_id = ?", (pack_id,))
        return True

    async def _run(self, operation: str, pack_id: str, func, *args):
        try:
            return await asyncio.to_thread(func, pack_id, *args)
        except sqlite3.Error as e:
            logger.warning("progress_store_error", operation=operation, pack_id=pack_id, error=str(e))
            raise TransientIOError(f"{operation} failed for pack {pack_id}: {e}") from e

    async def update_progress(self, pack_id: str, progress: Progress) -> None:
        payload = json.dumps(progress.to_dict())
        await self._run("update_progress", pack_id, self._write, payload)

    async def reset_progress(self, pack_id: str) -> None:
        await self._run("reset_progress", pack_id, self._delete)

    async def archive_progress(self, pack_id: str) -> None:
        archived = await self._run("archive_progress", pack_id, self._archive)
        logger.info("progress_archived", pack_id=pack_id, archived=archived)

    def list_archives(self) -> list[dict]:
        """Archived records, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, pack_id, data, archived_at FROM progress_archive ORDER BY id DESC"
            ).fetchall()
        return [
            {
                "id": row["id"],
                "pack_id": row["pack_id"],
                "archived_at": row["archived_at"],
                "completed": len(json.loads(row["data"]).get("completed_prompts") or []),
            }
            for row in rows
        ]

    def _restore(self, pack_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, data FROM progress_archive WHERE pack_id = ? ORDER BY id DESC LIMIT 1",
                (pack_id,),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                """INSERT INTO progress (pack_id, data, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(pack_id) DO UPDATE SET data=excluded.data, updated_at=excluded.updated_at""",
                (pack_id, row["data"], datetime.now().isoformat()),
            )
            conn.execute("DELETE FROM progress_archive WHERE id = ?", (row["id"],))
        return True

    async def restore_from_archive(self, pack_id: str) -> bool:
        """Move the newest archived record for a pack back to the active table."""
        restored = await self._run("restore_from_archive", pack_id, self._restore)
        logger.info("progress_restored", pack_id=pack_id, restored=restored)
        return restored
