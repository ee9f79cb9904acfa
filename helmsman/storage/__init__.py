"""Task persistence with SQLite storage."""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from helmsman.config import get_config
from helmsman.exceptions import StorageError
from helmsman.history import HistoryRecord
from helmsman.logging import get_logger
from helmsman.message_bus import BusMessage

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class TaskSummary:
    """A stored task as listed for resume."""

    id: str
    title: str
    status: str = "active"
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)


class TaskStore:
    """Persists each task's turn records and bus message log."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize task store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.storage.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'active',
                    history TEXT NOT NULL DEFAULT '[]',
                    messages TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_updated_at ON tasks(updated_at)"
            )
            await self._db.commit()
        return self._db

    async def create_task(self, task_id: str, title: str) -> None:
        """Insert the row for a new task; the id must be unused."""
        db = await self._ensure_db()
        now = _utcnow_iso()
        try:
            await db.execute(
                "INSERT INTO tasks (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (task_id, title, now, now),
            )
            await db.commit()
        except aiosqlite.IntegrityError as e:
            raise StorageError(f"Task already stored: {task_id}") from e
        log.info("Created task record", task_id=task_id)

    async def _update_column(self, task_id: str, column: str, payload: str) -> None:
        db = await self._ensure_db()
        now = _utcnow_iso()
        try:
            await db.execute(
                f"""
                INSERT INTO tasks (id, {column}, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET {column} = excluded.{column}, updated_at = excluded.updated_at
                """,
                (task_id, payload, now, now),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to save {column} for task {task_id}: {e}") from e

    async def save_history(self, task_id: str, records: list[HistoryRecord]) -> None:
        payload = json.dumps([record.to_dict() for record in records])
        await self._update_column(task_id, "history", payload)

    async def save_messages(self, task_id: str, messages: list[BusMessage]) -> None:
        payload = json.dumps([message.to_dict() for message in messages])
        await self._update_column(task_id, "messages", payload)

    async def set_status(self, task_id: str, status: str) -> None:
        await self._update_column(task_id, "status", status)

    async def _load_column(self, task_id: str, column: str) -> Any:
        db = await self._ensure_db()
        async with db.execute(f"SELECT {column} FROM tasks WHERE id = ?", (task_id,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return json.loads(row[0])

    async def load_history(self, task_id: str) -> list[HistoryRecord] | None:
        """Turn records of a stored task, or None when the task is unknown."""
        data = await self._load_column(task_id, "history")
        if data is None:
            return None
        return [HistoryRecord.from_dict(item) for item in data]

    async def load_messages(self, task_id: str) -> list[BusMessage]:
        data = await self._load_column(task_id, "messages")
        return [BusMessage.from_dict(item) for item in data or []]

    async def task_exists(self, task_id: str) -> bool:
        db = await self._ensure_db()
        async with db.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)) as cursor:
            return await cursor.fetchone() is not None

    async def list_tasks(self, limit: int = 20) -> list[TaskSummary]:
        """Most recently updated tasks first."""
        db = await self._ensure_db()
        async with db.execute(
            "SELECT id, title, status, created_at, updated_at FROM tasks ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            TaskSummary(id=row[0], title=row[1], status=row[2], created_at=row[3], updated_at=row[4])
            for row in rows
        ]

    async def delete_task(self, task_id: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        await db.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
