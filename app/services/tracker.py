"""
In-memory upload tracking: the session registry and the processing gate.

Both are plain objects owned by the application (see ``app.main.create_app``)
rather than module globals, so tests can build isolated instances.
"""
import logging
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, List, Optional, Set

from app.core.concurrency import ConcurrentMap
from app.core.exceptions import UnknownUploadError, ValidationError

logger = logging.getLogger(__name__)


class UploadStatus(str, Enum):
    INITIALIZING = "initializing"
    IN_PROGRESS = "in_progress"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProcessingType(str, Enum):
    OPTIMIZE = "optimize"
    PRESERVE = "preserve"
    AUTO = "auto"


@dataclass
class ProcessingOptions:
    type: ProcessingType = ProcessingType.AUTO
    quality: Optional[int] = None
    metadata: bool = True


@dataclass
class UploadSession:
    upload_id: str
    chunks: Set[int] = field(default_factory=set)
    total_chunks: int = 0
    filename: str = ""
    created_at: float = field(default_factory=time.time)
    last_chunk_at: Optional[float] = None
    status: UploadStatus = UploadStatus.INITIALIZING
    error: Optional[str] = None
    options: ProcessingOptions = field(default_factory=ProcessingOptions)

    @property
    def chunks_received(self) -> int:
        return len(self.chunks)

    @property
    def is_complete(self) -> bool:
        if self.total_chunks <= 0:
            return False
        return all(i in self.chunks for i in range(self.total_chunks))


@dataclass(frozen=True)
class ChunkProgress:
    """Snapshot of a session taken while recording a chunk."""

    upload_id: str
    chunks_received: int
    total_chunks: int
    filename: str
    complete: bool
    options: ProcessingOptions


class UploadRegistry:
    def __init__(self):
        self._sessions: ConcurrentMap[str, UploadSession] = ConcurrentMap()

    def create(self) -> UploadSession:
        while True:
            session = UploadSession(upload_id=secrets.token_hex(16))
            if self._sessions.set_if_absent(session.upload_id, session):
                logger.info(f"Initialized upload with ID: {session.upload_id}")
                return session

    def get(self, upload_id: str) -> UploadSession:
        session = self._sessions.get(upload_id)
        if session is None:
            raise UnknownUploadError(upload_id)
        return session

    def __contains__(self, upload_id: object) -> bool:
        return upload_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def record_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        filename: str,
        options: Optional[ProcessingOptions] = None,
    ) -> ChunkProgress:
        if total_chunks < 1:
            raise ValidationError(f"totalChunks must be at least 1, got {total_chunks}")
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise ValidationError(
                f"chunkNumber {chunk_index} is out of range for {total_chunks} chunks"
            )

        with self._sessions.lock:
            session = self.get(upload_id)
            session.chunks.add(chunk_index)
            # last writer wins for the declared file shape
            session.total_chunks = total_chunks
            session.filename = filename
            if options is not None:
                session.options = options
            session.last_chunk_at = time.time()
            if session.status == UploadStatus.INITIALIZING:
                session.status = UploadStatus.IN_PROGRESS
            return ChunkProgress(
                upload_id=upload_id,
                chunks_received=session.chunks_received,
                total_chunks=session.total_chunks,
                filename=session.filename,
                complete=session.is_complete,
                options=session.options,
            )

    def set_status(self, upload_id: str, status: UploadStatus) -> None:
        with self._sessions.lock:
            session = self._sessions.get(upload_id)
            if session is not None:
                session.status = status

    def mark_failed(self, upload_id: str, error: str) -> None:
        with self._sessions.lock:
            session = self._sessions.get(upload_id)
            if session is not None:
                session.status = UploadStatus.FAILED
                session.error = error
                # the failed attempt deleted every chunk file; a retry has to resend them all
                session.chunks.clear()
                logger.warning(f"Upload {upload_id} marked as failed: {error}")

    def remove(self, upload_id: str) -> Optional[UploadSession]:
        return self._sessions.pop(upload_id)

    def expire(
        self,
        max_age: float,
        skip: Optional[Callable[[str], bool]] = None,
        now: Optional[float] = None,
    ) -> List[str]:
        """
        Drop sessions with no activity for ``max_age`` seconds.

        Activity is the last chunk time, or the creation time for sessions
        that never received one. Ids for which ``skip`` returns true are kept.
        Returns the removed ids.
        """
        now = time.time() if now is None else now
        expired = []
        with self._sessions.lock:
            for upload_id, session in self._sessions.items():
                last_activity = session.last_chunk_at or session.created_at
                if now - last_activity <= max_age:
                    continue
                if skip is not None and skip(upload_id):
                    continue
                self._sessions.pop(upload_id)
                expired.append(upload_id)
        if expired:
            logger.info(f"Expired {len(expired)} idle upload session(s)")
        return expired


class ProcessingGate:
    """
    Non-blocking per-upload try-lock.

    ``try_acquire`` never waits: a second caller for the same upload simply
    gets ``False`` back and is expected to answer "already processing".
    """

    def __init__(self):
        self._locks: ConcurrentMap[str, bool] = ConcurrentMap()

    def try_acquire(self, upload_id: str) -> bool:
        return self._locks.set_if_absent(upload_id, True)

    def release(self, upload_id: str) -> None:
        self._locks.pop(upload_id)

    def is_held(self, upload_id: str) -> bool:
        return bool(self._locks.get(upload_id, False))

    @contextmanager
    def hold(self, upload_id: str) -> Iterator[bool]:
        acquired = self.try_acquire(upload_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(upload_id)
