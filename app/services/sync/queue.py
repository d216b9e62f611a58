"""
Durable, bounded-concurrency relay of finished artifacts to remote storage.

``submit`` only records the task in the SQLite store and hands its id to the
worker pool; the transfer itself happens on one of ``max_concurrent`` worker
threads. Each task gets at most ``max_retries`` attempts with a fixed delay in
between. Tasks still pending or syncing when the process stops are picked up
again by the next ``start``.
"""
import re
import time
import queue
import secrets
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from app.core.exceptions import SyncTaskNotFoundError, TransportError
from app.services.storage.base import BaseStorage
from .store import ACTIVE_STATUSES, SQLiteTaskStore, SyncStatus, SyncTask

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
RESERVED_METADATA_KEYS = ("contentType", "deleteAfterUpload")
NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")

SYNC_COMPLETED = "sync_completed"
SYNC_FAILED = "sync_failed"
SYNC_RETRY = "sync_retry"


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Stringify values, drop ``None`` and reserved keys, strip non-printable characters."""
    if not metadata:
        return {}
    sanitized = {}
    for key, value in metadata.items():
        if value is None or key in RESERVED_METADATA_KEYS:
            continue
        sanitized[NON_PRINTABLE.sub("", str(key))] = NON_PRINTABLE.sub("", str(value))
    return sanitized


@dataclass
class SyncRequest:
    file_path: str
    key: str
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    delete_after_upload: bool = False


def new_task_id() -> str:
    return f"sync_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class SyncQueue:
    def __init__(
        self,
        storage: BaseStorage,
        store: SQLiteTaskStore,
        max_concurrent: int = 3,
        max_retries: int = 3,
        retry_delay: float = 5.0,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.storage = storage
        self.store = store
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._pending: "queue.Queue[Optional[str]]" = queue.Queue()
        self._stop = threading.Event()
        self._state_lock = threading.Lock()
        self._workers: List[threading.Thread] = []
        self._active = 0
        self._in_flight: Set[str] = set()
        self._started = False
        self._listeners: Dict[str, List[Callable]] = {}

    # lifecycle

    def start(self) -> None:
        with self._state_lock:
            if self._started:
                return
            self._stop.clear()
            resumed = self.store.unfinished_task_ids()
            for task_id in resumed:
                self._pending.put(task_id)
            self._workers = [
                threading.Thread(target=self._worker, args=(self._pending,), name=f"sync-worker-{i}", daemon=True)
                for i in range(self.max_concurrent)
            ]
            for worker in self._workers:
                worker.start()
            self._started = True
        if resumed:
            logger.info(f"Resumed {len(resumed)} unfinished sync task(s)")
        logger.info(f"Sync queue started with {self.max_concurrent} worker(s)")

    def shutdown(self, wait: bool = True) -> None:
        with self._state_lock:
            if not self._started:
                return
            self._stop.set()
            for _ in self._workers:
                self._pending.put(None)
            workers, self._workers = self._workers, []
            self._started = False
        if wait:
            for worker in workers:
                worker.join()
        # whatever is still queued stays pending in the store
        self._pending = queue.Queue()
        logger.info("Sync queue stopped")

    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is drained and no transfer is running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._state_lock:
                idle = self._pending.unfinished_tasks == 0 and self._active == 0
            if idle:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)

    # public surface

    def submit(self, request: SyncRequest) -> str:
        metadata = dict(request.metadata or {})
        content_type = request.content_type or metadata.get("contentType")
        task = SyncTask(
            task_id=new_task_id(),
            file_path=str(request.file_path),
            key=request.key,
            content_type=str(content_type) if content_type else None,
            metadata=sanitize_metadata(metadata),
            delete_after_upload=bool(request.delete_after_upload or metadata.get("deleteAfterUpload")),
            submitted_at=time.time(),
        )
        with self._state_lock:
            self.store.insert(task)
            if self._started:
                self._pending.put(task.task_id)
        logger.info(f"Queued sync task {task.task_id} for {task.key}")
        return task.task_id

    def get_status(self, task_id: str) -> Dict[str, Any]:
        task = self.store.get(task_id)
        if task is None:
            raise SyncTaskNotFoundError(task_id)
        return {
            "task_id": task.task_id,
            "status": task.status,
            "key": task.key,
            "attempts": task.attempts,
            "error": task.error,
            "start_time": task.submitted_at,
            "sync_started_time": task.started_at,
            "completed_time": task.completed_at,
            "queue_size": self.queue_size,
            "active_uploads": self.active_uploads,
        }

    def get_queue_stats(self) -> Dict[str, int]:
        counts = self.store.count_by_status()
        return {
            "queue_size": self.queue_size,
            "active_uploads": self.active_uploads,
            "max_concurrent": self.max_concurrent,
            "pending_tasks": counts[SyncStatus.PENDING],
            "failed_tasks": counts[SyncStatus.FAILED],
        }

    def active_file_names(self) -> List[str]:
        return [Path(p).name for p in self.store.active_file_paths()]

    @property
    def queue_size(self) -> int:
        return self._pending.qsize()

    @property
    def active_uploads(self) -> int:
        with self._state_lock:
            return self._active

    def on(self, event_name: str, callback: Callable) -> None:
        listeners = self._listeners.setdefault(event_name, [])
        if callback not in listeners:
            listeners.append(callback)

    def _emit(self, event_name: str, *args) -> None:
        for callback in list(self._listeners.get(event_name, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")

    # workers

    def _worker(self, pending: "queue.Queue[Optional[str]]") -> None:
        while True:
            task_id = pending.get()
            try:
                if task_id is None or self._stop.is_set():
                    return
                with self._state_lock:
                    if task_id in self._in_flight:
                        continue
                    self._in_flight.add(task_id)
                    self._active += 1
                try:
                    self._process(task_id)
                finally:
                    with self._state_lock:
                        self._in_flight.discard(task_id)
                        self._active -= 1
            finally:
                pending.task_done()

    def _process(self, task_id: str) -> None:
        task = self.store.get(task_id)
        if task is None or task.status not in ACTIVE_STATUSES:
            return

        attempt = task.attempts
        error = task.error or "Retries exhausted"
        while attempt < self.max_retries:
            attempt += 1
            self.store.mark_syncing(task_id, attempt, time.time())
            try:
                self._transfer(task)
            except (TransportError, OSError) as e:
                error = str(e)
                self.store.record_error(task_id, error)
                if attempt >= self.max_retries:
                    break
                logger.warning(
                    f"Sync task {task_id} attempt {attempt}/{self.max_retries} failed: {error}; "
                    f"retrying in {self.retry_delay}s"
                )
                self._emit(SYNC_RETRY, task_id, error, attempt)
                if self._stop.wait(self.retry_delay):
                    # left in 'syncing'; the next start() resumes it
                    return
            except Exception as e:
                logger.exception(f"Unexpected error in sync task {task_id}")
                error = str(e)
                break
            else:
                self.store.mark_finished(task_id, SyncStatus.COMPLETED, time.time())
                logger.info(f"Sync task {task_id} completed after {attempt} attempt(s)")
                self._emit(SYNC_COMPLETED, task_id, task.key)
                return

        self.store.mark_finished(task_id, SyncStatus.FAILED, time.time(), error)
        logger.error(f"Sync task {task_id} failed after {attempt} attempt(s): {error}")
        self._emit(SYNC_FAILED, task_id, error)

    def _transfer(self, task: SyncTask) -> None:
        body = Path(task.file_path).read_bytes()
        self.storage.put_object(
            task.key,
            body,
            task.content_type or DEFAULT_CONTENT_TYPE,
            sanitize_metadata(task.metadata),
        )
        if task.delete_after_upload:
            try:
                Path(task.file_path).unlink()
            except OSError as e:
                logger.warning(f"Could not delete {task.file_path} after upload: {e}")
