import os
import asyncio
import secrets
import logging
import concurrent.futures
from pathlib import Path
from typing import BinaryIO, Optional

from app.core.directories import Directories
from app.core.exceptions import MissingChunkError, PipelineError, ValidationError

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


class ChunkStore:
    """Writes received chunk bytes to ``{chunks_dir}/{uploadId}-{chunkIndex}``."""

    def __init__(
        self,
        directories: Directories,
        max_chunk_size: int,
        executor: Optional[concurrent.futures.Executor] = None,
    ):
        self.directories = directories
        self.max_chunk_size = max_chunk_size
        self._executor = executor

    def _save_chunk_sync(self, upload_id: str, chunk_index: int, source: BinaryIO) -> Path:
        chunk_path = self.directories.chunk_path(upload_id, chunk_index)
        # a retried chunk must never truncate the file a combine may be reading
        part_path = chunk_path.with_name(f"{chunk_path.name}.{secrets.token_hex(4)}.part")
        written = 0
        try:
            with open(part_path, "wb") as f:
                while True:
                    block = source.read(COPY_BUFFER_SIZE)
                    if not block:
                        break
                    written += len(block)
                    if written > self.max_chunk_size:
                        raise ValidationError(
                            f"Chunk {chunk_index} exceeds the maximum chunk size of {self.max_chunk_size} bytes"
                        )
                    f.write(block)
            os.replace(part_path, chunk_path)
        except Exception:
            self._remove_part(part_path)
            raise

        logger.debug(f"Chunk saved successfully: {chunk_path} ({written} bytes)")
        return chunk_path

    async def save(self, upload_id: str, chunk_index: int, source: BinaryIO) -> Path:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self._save_chunk_sync, upload_id, chunk_index, source
        )

    @staticmethod
    def _remove_part(part_path: Path) -> None:
        try:
            part_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial chunk {part_path}: {e}")

    def discard(self, upload_id: str, chunk_index: int) -> None:
        chunk_path = self.directories.chunk_path(upload_id, chunk_index)
        try:
            chunk_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not discard chunk {chunk_path}: {e}")


class ChunkCombiner:
    def __init__(self, directories: Directories):
        self.directories = directories

    def verify(self, upload_id: str, total_chunks: int) -> None:
        for i in range(total_chunks):
            chunk_path = self.directories.chunk_path(upload_id, i)
            if not chunk_path.is_file():
                raise MissingChunkError(i, str(chunk_path))

    def combine(self, upload_id: str, total_chunks: int, destination: Path) -> int:
        """
        Concatenate chunks ``0..total_chunks-1`` into ``destination``.

        Every chunk is checked before the destination is opened, so a missing
        chunk leaves nothing behind. The destination is flushed, fsynced and
        closed before this returns. Returns the number of bytes written.
        """
        self.verify(upload_id, total_chunks)

        logger.info(f"Starting merge of {total_chunks} chunks for upload {upload_id} into {destination}")
        total_size = 0
        try:
            with open(destination, "wb") as merged:
                for i in range(total_chunks):
                    chunk_path = self.directories.chunk_path(upload_id, i)
                    with open(chunk_path, "rb") as chunk_file:
                        while True:
                            block = chunk_file.read(COPY_BUFFER_SIZE)
                            if not block:
                                break
                            merged.write(block)
                            total_size += len(block)
                    logger.debug(f"Chunk {i + 1}/{total_chunks} merged")
                merged.flush()
                os.fsync(merged.fileno())
        except OSError as e:
            logger.error(f"Error merging chunks for upload {upload_id}: {e}")
            try:
                destination.unlink()
                logger.info(f"Removed incomplete output file: {destination}")
            except FileNotFoundError:
                pass
            except OSError as cleanup_error:
                logger.warning(f"Could not remove incomplete output {destination}: {cleanup_error}")
            raise PipelineError(f"Failed to combine chunks: {e}") from e

        logger.info(f"Merge completed: {total_chunks} chunks, {total_size / 1024 / 1024:.2f}MB -> {destination}")
        return total_size
