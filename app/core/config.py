from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENV: str = "local"

    # Working directories for chunks, combine temp files and final artifacts
    DATA_DIR: Path = Path("/tmp/chunk_relay")
    CHUNKS_DIR: Optional[Path] = None
    PROCESSING_DIR: Optional[Path] = None
    UPLOAD_DIR: Optional[Path] = None

    MAX_CHUNK_SIZE: int = 20 * 1024 * 1024

    STORAGE_BACKEND: str = "s3"  # 's3' or 'local'

    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_BUCKET_NAME: str = "chunk-relay-uploads"
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION_NAME: Optional[str] = None
    S3_KEY_PREFIX: str = "uploads/"

    # Destination for the 'local' storage backend
    PERSISTENT_LOCAL_STORAGE_PATH: Path = Path("/var/data/chunk_relay")

    SYNC_MAX_CONCURRENT: int = 3
    SYNC_MAX_RETRIES: int = 3
    SYNC_RETRY_DELAY: float = 5.0
    SYNC_QUEUE_DB_PATH: Optional[Path] = None
    SYNC_DELETE_AFTER_UPLOAD: bool = False

    CLEANUP_ENABLED: bool = True
    CLEANUP_INTERVAL_SECONDS: int = 30 * 60
    PROCESSING_SWEEP_INTERVAL_SECONDS: int = 60 * 60
    PROCESSING_MAX_AGE_SECONDS: int = 60 * 60
    STALE_FILE_MAX_AGE_SECONDS: int = 24 * 60 * 60
    SESSION_MAX_AGE_SECONDS: int = 24 * 60 * 60
    LEDGER_RETENTION_SECONDS: int = 60 * 60

    CORS_ORIGINS: List[str] = ["*"]
    SERVICE_PORT: int = 7000

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def chunks_dir(self) -> Path:
        return self.CHUNKS_DIR or self.DATA_DIR / "chunks"

    @property
    def processing_dir(self) -> Path:
        return self.PROCESSING_DIR or self.DATA_DIR / "processing"

    @property
    def upload_dir(self) -> Path:
        return self.UPLOAD_DIR or self.DATA_DIR / "uploads"

    @property
    def sync_queue_db_path(self) -> Path:
        return self.SYNC_QUEUE_DB_PATH or self.DATA_DIR / "data" / "sync-queue.db"


settings = Settings()
