"""
Cleanup ledger and orphan sweeps.

The ledger remembers which transient files belong to an upload so the
pipeline can purge them on both its success and failure branches. Sweeps run
independently on the maintenance scheduler and delete anything that aged out.
"""
import time
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from app.core.concurrency import ConcurrentMap
from app.core.directories import Directories, temp_filename

logger = logging.getLogger(__name__)


@dataclass
class CleanupRecord:
    upload_id: str
    temp_file: Optional[str] = None
    chunk_files: List[str] = field(default_factory=list)
    final_file: Optional[str] = None
    registered_at: float = 0.0
    cleaned: bool = False
    cleaned_at: Optional[float] = None


class CleanupLedger:
    def __init__(
        self,
        directories: Directories,
        retention_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.directories = directories
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._records: ConcurrentMap[str, CleanupRecord] = ConcurrentMap()

    def register(
        self,
        upload_id: str,
        temp_file: Optional[str] = None,
        chunk_files: Optional[Iterable[str]] = None,
        final_file: Optional[str] = None,
    ) -> CleanupRecord:
        def merge(record: Optional[CleanupRecord]) -> CleanupRecord:
            if record is None:
                record = CleanupRecord(upload_id=upload_id)
            if temp_file is not None:
                record.temp_file = temp_file
            if chunk_files is not None:
                record.chunk_files = list(chunk_files)
            if final_file is not None:
                record.final_file = final_file
            record.registered_at = self._clock()
            record.cleaned = False
            record.cleaned_at = None
            return record

        return self._records.update(upload_id, merge)

    def get(self, upload_id: str) -> Optional[CleanupRecord]:
        return self._records.get(upload_id)

    def __len__(self) -> int:
        return len(self._records)

    def cleanup(self, upload_id: str, success: bool = False) -> int:
        """
        Remove every transient file of ``upload_id``. Never raises.

        Chunk files are found by scanning the chunk directory for the
        ``{uploadId}-`` prefix, not only from the record. The final artifact
        is removed only for failed uploads. Returns the number of files
        deleted.
        """
        record = self._records.get(upload_id)
        removed = 0

        try:
            prefix = f"{upload_id}-"
            for entry in self._list_dir(self.directories.chunks_dir):
                if entry.name.startswith(prefix):
                    removed += self._remove(entry, "chunk")

            removed += self._remove(self.directories.processing_dir / temp_filename(upload_id), "temp file")
            if record is not None and record.temp_file and record.temp_file != temp_filename(upload_id):
                removed += self._remove(self.directories.processing_dir / record.temp_file, "temp file")

            if not success and record is not None and record.final_file:
                removed += self._remove(self.directories.upload_dir / record.final_file, "final file")
        except Exception as e:
            logger.error(f"Error during cleanup for upload {upload_id}: {e}")
        finally:
            if record is not None:
                record.cleaned = True
                record.cleaned_at = self._clock()

        logger.info(f"Cleanup for upload {upload_id} (success={success}) removed {removed} file(s)")
        return removed

    def expire(self) -> int:
        """Drop records cleaned longer ago than the retention window."""
        now = self._clock()
        expired = 0
        for upload_id, record in self._records.items():
            if record.cleaned and record.cleaned_at is not None and now - record.cleaned_at > self.retention_seconds:
                self._records.pop(upload_id)
                expired += 1
        if expired:
            logger.debug(f"Expired {expired} cleanup record(s)")
        return expired

    def protected_final_files(self) -> Set[str]:
        """Final file names of unexpired, not yet cleaned records."""
        now = self._clock()
        return {
            record.final_file
            for record in self._records.values()
            if record.final_file
            and not record.cleaned
            and now - record.registered_at <= self.retention_seconds
        }

    def sweep_directory(self, directory: Path, max_age: float, protected: Iterable[str] = ()) -> int:
        """Delete files in ``directory`` older than ``max_age`` seconds."""
        protected = set(protected)
        now = self._clock()
        removed = 0
        for entry in self._list_dir(directory):
            if entry.name in protected:
                continue
            try:
                if not entry.is_file():
                    continue
                if now - entry.stat().st_mtime > max_age:
                    entry.unlink()
                    removed += 1
                    logger.info(f"Cleaned old file: {entry}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not process {entry}: {e}")
        return removed

    def sweep_processing(self, max_age: float) -> int:
        return self.sweep_directory(self.directories.processing_dir, max_age)

    def sweep_chunks(self, max_age: float) -> int:
        return self.sweep_directory(self.directories.chunks_dir, max_age)

    def sweep_uploads(self, max_age: float, in_use: Iterable[str] = ()) -> int:
        protected = self.protected_final_files() | set(in_use)
        return self.sweep_directory(self.directories.upload_dir, max_age, protected)

    def _list_dir(self, directory: Path) -> List[Path]:
        try:
            return list(directory.iterdir())
        except FileNotFoundError:
            return []

    def _remove(self, path: Path, kind: str) -> int:
        try:
            path.unlink()
            logger.debug(f"Deleted {kind}: {path}")
            return 1
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.warning(f"Could not delete {kind} {path}: {e}")
            return 0
