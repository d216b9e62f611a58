import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from app.core.exceptions import UnknownUploadError, ValidationError
from app.schemas.upload import (
    CancelUploadRequest, CancelUploadResponse, ChunkUploadResponse, ErrorResponse,
    InitUploadResponse, QueueStatsResponse, SyncStatusResponse, UploadCompleteResponse,
    UploadStatusResponse,
)
from app.services.container import ServiceContainer
from app.services.coordinator import ChunkAck
from app.services.tracker import ProcessingOptions, ProcessingType

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def parse_processing_options(
    preserve_original: Optional[str],
    processing_type: Optional[str],
    image_quality: Optional[str],
) -> ProcessingOptions:
    if preserve_original == "true":
        kind = ProcessingType.PRESERVE
    else:
        try:
            kind = ProcessingType(processing_type or ProcessingType.AUTO.value)
        except ValueError:
            raise ValidationError(f"Unknown processingType: {processing_type}")

    quality = None
    if image_quality:
        try:
            quality = int(image_quality)
        except ValueError:
            raise ValidationError(f"imageQuality must be an integer, got {image_quality!r}")
        if not 1 <= quality <= 100:
            raise ValidationError(f"imageQuality must be between 1 and 100, got {quality}")

    return ProcessingOptions(type=kind, quality=quality, metadata=True)


@router.post("/init", response_model=InitUploadResponse)
async def init_upload(services: ServiceContainer = Depends(get_services)):
    upload_id = services.coordinator.initialize()
    return InitUploadResponse(upload_id=upload_id)


@router.post(
    "/chunk",
    response_model=Union[UploadCompleteResponse, ChunkUploadResponse],
    responses=ERROR_RESPONSES,
)
async def upload_chunk(
    file: Optional[UploadFile] = File(None),
    upload_id: Optional[str] = Form(None, alias="uploadId"),
    chunk_number: Optional[int] = Form(None, alias="chunkNumber"),
    total_chunks: Optional[int] = Form(None, alias="totalChunks"),
    original_filename: Optional[str] = Form(None, alias="originalFilename"),
    preserve_original: Optional[str] = Form(None, alias="preserveOriginal"),
    image_quality: Optional[str] = Form(None, alias="imageQuality"),
    processing_type: Optional[str] = Form(None, alias="processingType"),
    services: ServiceContainer = Depends(get_services),
):
    if not upload_id or chunk_number is None or total_chunks is None:
        raise ValidationError("Missing required upload information")
    if file is None:
        raise ValidationError("No file received")
    # the id becomes part of a file name, so unknown ids never reach the disk
    if upload_id not in services.registry:
        raise UnknownUploadError(upload_id)

    options = parse_processing_options(preserve_original, processing_type, image_quality)
    if not 0 <= chunk_number < max(total_chunks, 0):
        raise ValidationError(f"chunkNumber {chunk_number} is out of range for {total_chunks} chunks")

    # nothing is written while the upload is being combined or cancelled
    result = services.coordinator.processing_ack(upload_id)
    if result is None:
        await services.chunk_store.save(upload_id, chunk_number, file.file)
        try:
            result = await services.coordinator.receive_chunk(
                upload_id,
                chunk_number,
                total_chunks,
                original_filename or "",
                options,
            )
        except (UnknownUploadError, ValidationError):
            services.chunk_store.discard(upload_id, chunk_number)
            raise

    if isinstance(result, ChunkAck):
        return ChunkUploadResponse(
            message=result.message,
            chunks_received=result.chunks_received,
            total_chunks=result.total_chunks,
        )

    upload = result.upload
    return UploadCompleteResponse(
        message=result.message,
        filename=upload.filename,
        sync_task_id=upload.sync_task_id,
        s3_key=upload.s3_key,
        path=upload.path,
        processing_type=upload.processing_type,
        original_size=upload.original_size,
        processed_size=upload.processed_size,
        compression_ratio=upload.compression_ratio,
    )


@router.get("/status/{upload_id}", response_model=UploadStatusResponse, responses=ERROR_RESPONSES)
async def get_upload_status(upload_id: str, services: ServiceContainer = Depends(get_services)):
    return UploadStatusResponse(**services.coordinator.status(upload_id))


@router.post("/cancel", response_model=CancelUploadResponse, responses=ERROR_RESPONSES)
async def cancel_upload(req: CancelUploadRequest, services: ServiceContainer = Depends(get_services)):
    return CancelUploadResponse(**await services.coordinator.cancel(req.upload_id))


@router.get("/sync-status/{task_id}", response_model=SyncStatusResponse, responses=ERROR_RESPONSES)
async def get_sync_status(task_id: str, services: ServiceContainer = Depends(get_services)):
    return SyncStatusResponse(**services.sync_queue.get_status(task_id))


@router.get("/sync-stats", response_model=QueueStatsResponse)
async def get_queue_stats(services: ServiceContainer = Depends(get_services)):
    return QueueStatsResponse(**services.sync_queue.get_queue_stats())
