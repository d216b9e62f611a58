import re
import secrets
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.core.directories import Directories, chunk_filename, temp_filename
from app.core.exceptions import PipelineError
from app.services.chunks import ChunkCombiner
from app.services.cleanup import CleanupLedger
from app.services.image_processor import ImageTransformer
from app.services.sync.queue import SyncQueue, SyncRequest
from app.services.tracker import ProcessingOptions

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(filename: str) -> str:
    name = Path(filename.replace("\\", "/")).name
    name = UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
    return name[:200] or "file"


@dataclass
class ProcessedUpload:
    filename: str
    sync_task_id: str
    s3_key: str
    path: str
    processing_type: str
    original_size: Optional[int] = None
    processed_size: Optional[int] = None
    compression_ratio: Optional[float] = None


class UploadPipeline:
    """Combine -> transform -> enqueue for one fully received upload."""

    def __init__(
        self,
        directories: Directories,
        combiner: ChunkCombiner,
        transformer: ImageTransformer,
        ledger: CleanupLedger,
        sync_queue: SyncQueue,
        key_prefix: str = "",
        delete_after_upload: bool = False,
    ):
        self.directories = directories
        self.combiner = combiner
        self.transformer = transformer
        self.ledger = ledger
        self.sync_queue = sync_queue
        self.key_prefix = key_prefix
        self.delete_after_upload = delete_after_upload

    def process(
        self,
        upload_id: str,
        total_chunks: int,
        original_filename: str,
        options: Optional[ProcessingOptions] = None,
    ) -> ProcessedUpload:
        temp_path = self.directories.temp_path(upload_id)
        self.ledger.register(
            upload_id,
            temp_file=temp_filename(upload_id),
            chunk_files=[chunk_filename(upload_id, i) for i in range(total_chunks)],
        )

        try:
            self.combiner.combine(upload_id, total_chunks, temp_path)

            final_filename = f"{secrets.token_hex(8)}-{safe_filename(original_filename)}"
            final_path = self.directories.upload_dir / final_filename
            self.ledger.register(upload_id, final_file=final_filename)

            result = self.transformer.transform(temp_path, final_path, options)
            if not result.success:
                raise PipelineError(f"Failed to process file: {result.error}")

            s3_key = f"{self.key_prefix}{final_filename}"
            content_type = mimetypes.guess_type(original_filename)[0]
            sync_task_id = self.sync_queue.submit(SyncRequest(
                file_path=str(final_path),
                key=s3_key,
                content_type=content_type,
                metadata={
                    "originalFilename": original_filename,
                    "uploadId": upload_id,
                    "processingType": result.processing_type,
                },
                delete_after_upload=self.delete_after_upload,
            ))
        except PipelineError as e:
            logger.error(f"Pipeline failed for upload {upload_id}: {e}")
            self.ledger.cleanup(upload_id, success=False)
            raise
        except Exception as e:
            logger.exception(f"Unexpected pipeline error for upload {upload_id}")
            self.ledger.cleanup(upload_id, success=False)
            raise PipelineError(str(e)) from e

        self.ledger.cleanup(upload_id, success=True)
        logger.info(f"Upload {upload_id} processed into {final_filename}, sync task {sync_task_id}")

        return ProcessedUpload(
            filename=final_filename,
            sync_task_id=sync_task_id,
            s3_key=s3_key,
            path=result.path,
            processing_type=result.processing_type,
            original_size=result.original_size,
            processed_size=result.processed_size,
            compression_ratio=result.compression_ratio,
        )
