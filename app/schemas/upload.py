from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional

from app.services.sync.store import SyncStatus
from app.services.tracker import UploadStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitUploadResponse(CamelModel):
    upload_id: str


class ChunkUploadResponse(CamelModel):
    message: str
    chunks_received: int
    total_chunks: int


class UploadCompleteResponse(CamelModel):
    message: str = "Upload completed successfully"
    filename: str
    sync_task_id: str
    s3_key: str
    path: str
    processing_type: str
    original_size: Optional[int] = None
    processed_size: Optional[int] = None
    compression_ratio: Optional[float] = None


class UploadStatusResponse(CamelModel):
    upload_id: str
    status: UploadStatus
    chunks_received: int
    total_chunks: int
    filename: str
    upload_start_time: float
    last_chunk_received: Optional[float] = None
    processing_status: str
    error: Optional[str] = None


class CancelUploadRequest(BaseModel):
    upload_id: str = Field(..., min_length=1)


class CancelUploadResponse(CamelModel):
    status: UploadStatus
    message: str


class SyncStatusResponse(CamelModel):
    task_id: str
    status: SyncStatus
    key: str
    attempts: int
    error: Optional[str] = None
    start_time: float
    sync_started_time: Optional[float] = None
    completed_time: Optional[float] = None
    queue_size: int
    active_uploads: int


class QueueStatsResponse(CamelModel):
    queue_size: int
    active_uploads: int
    max_concurrent: int
    pending_tasks: int
    failed_tasks: int


class ErrorResponse(BaseModel):
    error: str
    details: str
