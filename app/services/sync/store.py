"""
SQLite-backed store for sync tasks.

Holds every submitted task with its status so that pending transfers survive
a process restart and status queries keep working after the upload session
that produced the artifact is gone.
"""
import json
import sqlite3
import threading
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (SyncStatus.PENDING, SyncStatus.SYNCING)


@dataclass
class SyncTask:
    task_id: str
    file_path: str
    key: str
    status: SyncStatus = SyncStatus.PENDING
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    delete_after_upload: bool = False
    attempts: int = 0
    error: Optional[str] = None
    submitted_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None


class SQLiteTaskStore:
    SCHEMA_VERSION = 1

    def __init__(self, path: Union[str, Path]):
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _get_connection(self):
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
            yield self._conn

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS version (
                    version INTEGER PRIMARY KEY
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sync_tasks (
                    task_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    s3_key TEXT NOT NULL,
                    content_type TEXT,
                    metadata TEXT NOT NULL,
                    delete_after_upload INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    submitted_at REAL NOT NULL,
                    started_at REAL,
                    completed_at REAL
                )
            ''')
            cursor.execute(
                'CREATE INDEX IF NOT EXISTS idx_sync_tasks_status ON sync_tasks (status, submitted_at)'
            )
            cursor.execute('SELECT version FROM version LIMIT 1')
            if cursor.fetchone() is None:
                cursor.execute('INSERT INTO version (version) VALUES (?)', (self.SCHEMA_VERSION,))
            conn.commit()

    def insert(self, task: SyncTask) -> None:
        with self._get_connection() as conn:
            conn.execute('''
                INSERT INTO sync_tasks (
                    task_id, status, file_path, s3_key, content_type, metadata,
                    delete_after_upload, attempts, error, submitted_at, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                task.task_id,
                task.status.value,
                task.file_path,
                task.key,
                task.content_type,
                json.dumps(task.metadata),
                int(task.delete_after_upload),
                task.attempts,
                task.error,
                task.submitted_at,
                task.started_at,
                task.completed_at,
            ))
            conn.commit()

    def get(self, task_id: str) -> Optional[SyncTask]:
        with self._get_connection() as conn:
            row = conn.execute('SELECT * FROM sync_tasks WHERE task_id = ?', (task_id,)).fetchone()
            return self._row_to_task(row) if row is not None else None

    def mark_syncing(self, task_id: str, attempts: int, started_at: float) -> None:
        # started_at is only set on the first attempt
        with self._get_connection() as conn:
            conn.execute('''
                UPDATE sync_tasks
                SET status = ?, attempts = ?, started_at = COALESCE(started_at, ?)
                WHERE task_id = ? AND status IN (?, ?)
            ''', (
                SyncStatus.SYNCING.value, attempts, started_at, task_id,
                SyncStatus.PENDING.value, SyncStatus.SYNCING.value,
            ))
            conn.commit()

    def record_error(self, task_id: str, error: str) -> None:
        with self._get_connection() as conn:
            conn.execute('UPDATE sync_tasks SET error = ? WHERE task_id = ?', (error, task_id))
            conn.commit()

    def mark_finished(self, task_id: str, status: SyncStatus, completed_at: float, error: Optional[str] = None) -> None:
        with self._get_connection() as conn:
            conn.execute('''
                UPDATE sync_tasks SET status = ?, completed_at = ?, error = COALESCE(?, error)
                WHERE task_id = ? AND status IN (?, ?)
            ''', (
                status.value, completed_at, error, task_id,
                SyncStatus.PENDING.value, SyncStatus.SYNCING.value,
            ))
            conn.commit()

    def unfinished_task_ids(self) -> List[str]:
        """Pending and interrupted tasks, oldest submission first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                'SELECT task_id FROM sync_tasks WHERE status IN (?, ?) ORDER BY submitted_at, rowid',
                tuple(s.value for s in ACTIVE_STATUSES),
            ).fetchall()
            return [row['task_id'] for row in rows]

    def active_file_paths(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                'SELECT file_path FROM sync_tasks WHERE status IN (?, ?)',
                tuple(s.value for s in ACTIVE_STATUSES),
            ).fetchall()
            return [row['file_path'] for row in rows]

    def count_by_status(self) -> Dict[SyncStatus, int]:
        counts = {status: 0 for status in SyncStatus}
        with self._get_connection() as conn:
            for row in conn.execute('SELECT status, COUNT(*) AS n FROM sync_tasks GROUP BY status'):
                counts[SyncStatus(row['status'])] = row['n']
        return counts

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> SyncTask:
        return SyncTask(
            task_id=row['task_id'],
            status=SyncStatus(row['status']),
            file_path=row['file_path'],
            key=row['s3_key'],
            content_type=row['content_type'],
            metadata=json.loads(row['metadata']),
            delete_after_upload=bool(row['delete_after_upload']),
            attempts=row['attempts'],
            error=row['error'],
            submitted_at=row['submitted_at'],
            started_at=row['started_at'],
            completed_at=row['completed_at'],
        )

    def __enter__(self) -> "SQLiteTaskStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
