"""Shared fixtures for the upload service tests."""
import threading
from typing import Dict

import pytest

from app.core.config import Settings
from app.core.directories import Directories
from app.core.exceptions import TransportError
from app.services.container import build_services
from app.services.storage.base import BaseStorage


class FakeStorage(BaseStorage):
    """In-memory object store that can be told to fail the next N puts."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.objects: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def put_object(self, key, body, content_type, metadata):
        with self._lock:
            self.calls += 1
            if self.failures > 0:
                self.failures -= 1
                raise TransportError(f"connection reset (attempt {self.calls})")
            self.objects[key] = {"body": body, "content_type": content_type, "metadata": metadata}
            return key

    def delete_object(self, key):
        with self._lock:
            self.objects.pop(key, None)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every directory into tmp_path, no background sweeps."""
    return Settings(
        DATA_DIR=tmp_path / "data",
        STORAGE_BACKEND="local",
        PERSISTENT_LOCAL_STORAGE_PATH=tmp_path / "remote",
        SYNC_MAX_CONCURRENT=2,
        SYNC_MAX_RETRIES=3,
        SYNC_RETRY_DELAY=0,
        CLEANUP_ENABLED=False,
        S3_KEY_PREFIX="uploads/",
        MAX_CHUNK_SIZE=64 * 1024,
    )


@pytest.fixture
def directories(settings):
    return Directories.from_settings(settings).ensure()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def services(settings, fake_storage):
    """Fully wired services; the sync queue is not started."""
    container = build_services(settings, storage=fake_storage)
    yield container
    container.shutdown()


def write_chunk(directories: Directories, upload_id: str, index: int, payload: bytes) -> None:
    directories.chunk_path(upload_id, index).write_bytes(payload)


def list_chunk_files(directories: Directories, upload_id: str):
    return sorted(p.name for p in directories.chunks_dir.iterdir() if p.name.startswith(f"{upload_id}-"))
