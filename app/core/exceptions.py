from typing import Optional


class UploadServiceError(Exception):
    """Base error; every subclass maps to one HTTP status and error title."""

    status_code = 500
    title = "Internal server error"

    def __init__(self, message: str, title: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if title is not None:
            self.title = title

    def to_dict(self) -> dict:
        return {"error": self.title, "details": self.message}


class NotFoundError(UploadServiceError):
    status_code = 404
    title = "Not found"


class UnknownUploadError(NotFoundError):
    title = "Upload not found"

    def __init__(self, upload_id: str):
        super().__init__(f"Invalid upload ID: {upload_id}")
        self.upload_id = upload_id


class SyncTaskNotFoundError(NotFoundError):
    title = "Sync task not found"

    def __init__(self, task_id: str):
        super().__init__(f"Sync task not found: {task_id}")
        self.task_id = task_id


class ConflictError(UploadServiceError):
    status_code = 409
    title = "Conflict"


class ValidationError(UploadServiceError):
    status_code = 400
    title = "Validation error"


class PipelineError(UploadServiceError):
    status_code = 500
    title = "Error processing chunk"


class MissingChunkError(PipelineError):
    def __init__(self, chunk_index: int, chunk_path: str):
        super().__init__(f"Missing chunk file: {chunk_path}")
        self.chunk_index = chunk_index
        self.chunk_path = chunk_path


class TransportError(UploadServiceError):
    status_code = 502
    title = "Remote storage error"
