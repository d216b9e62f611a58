import logging
from dataclasses import dataclass
from pathlib import Path

from app.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Directories:
    """Working directories shared by the chunk store, pipeline and sweeps."""

    chunks_dir: Path
    processing_dir: Path
    upload_dir: Path

    @classmethod
    def from_settings(cls, settings: Settings) -> "Directories":
        return cls(
            chunks_dir=Path(settings.chunks_dir),
            processing_dir=Path(settings.processing_dir),
            upload_dir=Path(settings.upload_dir),
        )

    def ensure(self) -> "Directories":
        for directory in (self.chunks_dir, self.processing_dir, self.upload_dir):
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Directory ready: {directory}")
        return self

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.chunks_dir / chunk_filename(upload_id, chunk_index)

    def temp_path(self, upload_id: str) -> Path:
        return self.processing_dir / temp_filename(upload_id)


def chunk_filename(upload_id: str, chunk_index: int) -> str:
    return f"{upload_id}-{chunk_index}"


def temp_filename(upload_id: str) -> str:
    return f"temp_{upload_id}"
