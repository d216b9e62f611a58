import logging
import concurrent.futures
from dataclasses import dataclass
from typing import Optional

from app.core.config import Settings
from app.core.directories import Directories
from app.services.chunks import ChunkCombiner, ChunkStore
from app.services.cleanup import CleanupLedger
from app.services.coordinator import UploadCoordinator
from app.services.image_processor import ImageTransformer
from app.services.pipeline import UploadPipeline
from app.services.scheduler import MaintenanceScheduler
from app.services.storage.base import BaseStorage
from app.services.storage.factory import create_storage
from app.services.sync.queue import SyncQueue
from app.services.sync.store import SQLiteTaskStore
from app.services.tracker import ProcessingGate, UploadRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    directories: Directories
    chunk_store: ChunkStore
    registry: UploadRegistry
    gate: ProcessingGate
    ledger: CleanupLedger
    sync_queue: SyncQueue
    coordinator: UploadCoordinator
    scheduler: MaintenanceScheduler
    executor: concurrent.futures.ThreadPoolExecutor

    def start(self) -> None:
        self.directories.ensure()
        self.sync_queue.start()
        if self.settings.CLEANUP_ENABLED:
            self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.sync_queue.shutdown()
        self.sync_queue.store.close()
        self.executor.shutdown(wait=True)


def build_services(settings: Settings, storage: Optional[BaseStorage] = None) -> ServiceContainer:
    directories = Directories.from_settings(settings).ensure()
    # thread pool for blocking I/O: chunk writes and the combine pipeline
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="upload-io")

    ledger = CleanupLedger(directories, retention_seconds=settings.LEDGER_RETENTION_SECONDS)
    sync_queue = SyncQueue(
        storage=storage or create_storage(settings),
        store=SQLiteTaskStore(settings.sync_queue_db_path),
        max_concurrent=settings.SYNC_MAX_CONCURRENT,
        max_retries=settings.SYNC_MAX_RETRIES,
        retry_delay=settings.SYNC_RETRY_DELAY,
    )
    pipeline = UploadPipeline(
        directories=directories,
        combiner=ChunkCombiner(directories),
        transformer=ImageTransformer(),
        ledger=ledger,
        sync_queue=sync_queue,
        key_prefix=settings.S3_KEY_PREFIX,
        delete_after_upload=settings.SYNC_DELETE_AFTER_UPLOAD,
    )
    registry = UploadRegistry()
    gate = ProcessingGate()
    coordinator = UploadCoordinator(registry, gate, ledger, pipeline, executor)

    return ServiceContainer(
        settings=settings,
        directories=directories,
        chunk_store=ChunkStore(directories, settings.MAX_CHUNK_SIZE, executor),
        registry=registry,
        gate=gate,
        ledger=ledger,
        sync_queue=sync_queue,
        coordinator=coordinator,
        scheduler=MaintenanceScheduler(ledger, sync_queue, settings, coordinator),
        executor=executor,
    )
