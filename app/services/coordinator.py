"""
Upload lifecycle coordinator.

Reacts to the three external events of a chunked upload (chunk received,
status requested, cancellation requested) and drives the session through
initializing -> in_progress -> processing -> completed | failed | cancelled.
"""
import asyncio
import logging
import concurrent.futures
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.core.exceptions import ConflictError, PipelineError, UnknownUploadError
from app.services.cleanup import CleanupLedger
from app.services.pipeline import ProcessedUpload, UploadPipeline
from app.services.tracker import ChunkProgress, ProcessingGate, ProcessingOptions, UploadRegistry, UploadStatus

logger = logging.getLogger(__name__)

MSG_CHUNK_RECEIVED = "Chunk received successfully"
MSG_PROCESSING = "Chunk received, processing in progress"
MSG_COMPLETED = "Upload completed successfully"
MSG_CANCELLED = "Upload cancelled successfully"


@dataclass
class ChunkAck:
    message: str
    chunks_received: int
    total_chunks: int


@dataclass
class UploadCompleted:
    message: str
    upload: ProcessedUpload


class UploadCoordinator:
    def __init__(
        self,
        registry: UploadRegistry,
        gate: ProcessingGate,
        ledger: CleanupLedger,
        pipeline: UploadPipeline,
        executor: Optional[concurrent.futures.Executor] = None,
    ):
        self.registry = registry
        self.gate = gate
        self.ledger = ledger
        self.pipeline = pipeline
        self._executor = executor

    def initialize(self) -> str:
        return self.registry.create().upload_id

    def processing_ack(self, upload_id: str) -> Optional[ChunkAck]:
        """The "processing in progress" answer if the upload's gate is held, else ``None``."""
        if not self.gate.is_held(upload_id):
            return None
        session = self.registry.get(upload_id)
        return ChunkAck(MSG_PROCESSING, session.chunks_received, session.total_chunks)

    async def receive_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        filename: str,
        options: Optional[ProcessingOptions] = None,
    ):
        """
        Record one chunk and, if it completes the upload, run the pipeline.

        Returns a ``ChunkAck`` while chunks are outstanding or another call is
        already processing this upload, and an ``UploadCompleted`` once this
        call has combined and enqueued the artifact.

        The pipeline runs on the executor and owns the gate until it has
        finished, so cancelling the awaiting request does not let a second
        pipeline start for the same upload.
        """
        progress = self.registry.record_chunk(upload_id, chunk_index, total_chunks, filename, options)
        logger.debug(
            f"Upload {upload_id}: chunk {chunk_index} recorded "
            f"({progress.chunks_received}/{progress.total_chunks})"
        )

        if not progress.complete:
            return ChunkAck(MSG_CHUNK_RECEIVED, progress.chunks_received, progress.total_chunks)

        if not self.gate.try_acquire(upload_id):
            logger.info(f"Upload {upload_id} already processing; duplicate completion ignored")
            return ChunkAck(MSG_PROCESSING, progress.chunks_received, progress.total_chunks)

        try:
            if upload_id not in self.registry:
                # completed, cancelled or expired between recording and acquiring the gate
                raise UnknownUploadError(upload_id)
            self.registry.set_status(upload_id, UploadStatus.PROCESSING)
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._executor, self._complete, upload_id, progress)
        except BaseException:
            self.gate.release(upload_id)
            raise

        result = await asyncio.shield(future)
        logger.info(f"Upload {upload_id} completed as {result.filename}")
        return UploadCompleted(MSG_COMPLETED, result)

    def _complete(self, upload_id: str, progress: ChunkProgress) -> ProcessedUpload:
        """Run the pipeline and settle the session. Releases the gate on every exit path."""
        try:
            try:
                result = self.pipeline.process(
                    upload_id,
                    progress.total_chunks,
                    progress.filename,
                    progress.options,
                )
            except Exception as e:
                error = e if isinstance(e, PipelineError) else PipelineError(str(e))
                # chunks retried while the pipeline ran
                self.ledger.cleanup(upload_id, success=False)
                self.registry.mark_failed(upload_id, error.message)
                if error is e:
                    raise
                raise error from e

            # retire the session before the gate opens again
            self.registry.remove(upload_id)
            self.ledger.cleanup(upload_id, success=True)
            return result
        finally:
            self.gate.release(upload_id)

    def status(self, upload_id: str) -> Dict[str, Any]:
        session = self.registry.get(upload_id)
        is_processing = self.gate.is_held(upload_id)

        if is_processing:
            status = UploadStatus.PROCESSING
        elif session.status == UploadStatus.FAILED:
            status = UploadStatus.FAILED
        elif session.chunks_received > 0:
            status = UploadStatus.IN_PROGRESS
        else:
            status = UploadStatus.INITIALIZING

        return {
            "upload_id": upload_id,
            "status": status,
            "chunks_received": session.chunks_received,
            "total_chunks": session.total_chunks,
            "filename": session.filename,
            "upload_start_time": session.created_at,
            "last_chunk_received": session.last_chunk_at,
            "processing_status": "active" if is_processing else "inactive",
            "error": session.error,
        }

    async def cancel(self, upload_id: str) -> Dict[str, Any]:
        self.registry.get(upload_id)

        # holding the gate for the whole cancellation keeps a late last chunk out
        with self.gate.hold(upload_id) as acquired:
            if not acquired:
                raise ConflictError("Cannot cancel upload while processing")
            if self.registry.remove(upload_id) is None:
                raise UnknownUploadError(upload_id)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, self.ledger.cleanup, upload_id, False)

        logger.info(f"Upload {upload_id} cancelled")
        return {"status": UploadStatus.CANCELLED, "message": MSG_CANCELLED}

    def expire_sessions(self, max_age: float) -> int:
        """Drop sessions idle for ``max_age`` seconds and delete their chunk files."""
        expired: List[str] = self.registry.expire(max_age, skip=self.gate.is_held)
        for upload_id in expired:
            self.ledger.cleanup(upload_id, success=False)
        return len(expired)
