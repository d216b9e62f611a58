"""Tests for the upload registry and processing gate."""
import threading

import pytest

from app.core.concurrency import ConcurrentMap
from app.core.exceptions import NotFoundError, UnknownUploadError, ValidationError
from app.services.tracker import (
    ProcessingGate,
    ProcessingOptions,
    ProcessingType,
    UploadRegistry,
    UploadStatus,
)


class TestUploadRegistry:

    @pytest.fixture
    def registry(self):
        return UploadRegistry()

    def test_create_generates_unique_hex_ids(self, registry):
        ids = {registry.create().upload_id for _ in range(50)}

        assert len(ids) == 50
        assert all(len(i) == 32 and int(i, 16) >= 0 for i in ids)

    def test_new_session_is_initializing(self, registry):
        session = registry.create()

        assert session.status == UploadStatus.INITIALIZING
        assert session.chunks_received == 0
        assert not session.is_complete

    def test_record_chunk_unknown_upload(self, registry):
        with pytest.raises(UnknownUploadError) as exc_info:
            registry.record_chunk("missing", 0, 2, "a.jpg")

        assert isinstance(exc_info.value, NotFoundError)

    def test_duplicate_chunk_is_not_double_counted(self, registry):
        upload_id = registry.create().upload_id

        registry.record_chunk(upload_id, 0, 2, "a.jpg")
        progress = registry.record_chunk(upload_id, 0, 2, "a.jpg")

        assert progress.chunks_received == 1
        assert not progress.complete

    def test_completion_detected_in_any_order(self, registry):
        upload_id = registry.create().upload_id

        registry.record_chunk(upload_id, 2, 3, "a.jpg")
        registry.record_chunk(upload_id, 0, 3, "a.jpg")
        progress = registry.record_chunk(upload_id, 1, 3, "a.jpg")

        assert progress.complete
        assert progress.chunks_received == 3

    def test_last_writer_wins_for_metadata(self, registry):
        upload_id = registry.create().upload_id
        options = ProcessingOptions(type=ProcessingType.PRESERVE)

        registry.record_chunk(upload_id, 0, 4, "first.jpg")
        progress = registry.record_chunk(upload_id, 1, 3, "second.jpg", options)

        assert progress.total_chunks == 3
        assert progress.filename == "second.jpg"
        assert registry.get(upload_id).options.type == ProcessingType.PRESERVE

    def test_first_chunk_moves_to_in_progress(self, registry):
        upload_id = registry.create().upload_id

        registry.record_chunk(upload_id, 0, 3, "a.jpg")

        assert registry.get(upload_id).status == UploadStatus.IN_PROGRESS
        assert registry.get(upload_id).last_chunk_at is not None

    @pytest.mark.parametrize("index,total", [(-1, 3), (3, 3), (0, 0)])
    def test_out_of_range_chunk_rejected(self, registry, index, total):
        upload_id = registry.create().upload_id

        with pytest.raises(ValidationError):
            registry.record_chunk(upload_id, index, total, "a.jpg")

        assert registry.get(upload_id).chunks_received == 0

    def test_mark_failed_keeps_session_and_forgets_chunks(self, registry):
        upload_id = registry.create().upload_id
        registry.record_chunk(upload_id, 0, 2, "a.jpg")
        registry.record_chunk(upload_id, 1, 2, "a.jpg")

        registry.mark_failed(upload_id, "disk full")

        session = registry.get(upload_id)
        assert session.status == UploadStatus.FAILED
        assert session.error == "disk full"
        assert session.chunks_received == 0
        assert not registry.record_chunk(upload_id, 0, 2, "a.jpg").complete

    def test_remove(self, registry):
        upload_id = registry.create().upload_id

        assert registry.remove(upload_id) is not None
        assert upload_id not in registry
        assert registry.remove(upload_id) is None

    def test_expire_drops_idle_sessions(self, registry):
        idle = registry.create()
        active = registry.create()
        now = idle.created_at + 7200
        registry.record_chunk(active.upload_id, 0, 2, "a.jpg")
        active.last_chunk_at = now - 10

        expired = registry.expire(3600, now=now)

        assert expired == [idle.upload_id]
        assert idle.upload_id not in registry
        assert active.upload_id in registry

    def test_expire_respects_skip(self, registry):
        session = registry.create()

        expired = registry.expire(0, skip=lambda upload_id: True, now=session.created_at + 10)

        assert expired == []
        assert session.upload_id in registry


class TestProcessingGate:

    def test_try_acquire_is_exclusive(self):
        gate = ProcessingGate()

        assert gate.try_acquire("u1") is True
        assert gate.try_acquire("u1") is False
        assert gate.try_acquire("u2") is True

    def test_hold_releases_on_exception(self):
        gate = ProcessingGate()

        with pytest.raises(RuntimeError):
            with gate.hold("u1") as acquired:
                assert acquired
                assert gate.is_held("u1")
                raise RuntimeError("boom")

        assert not gate.is_held("u1")

    def test_nested_hold_does_not_release_owner(self):
        gate = ProcessingGate()

        with gate.hold("u1") as outer:
            with gate.hold("u1") as inner:
                assert outer and not inner
            assert gate.is_held("u1")

        assert not gate.is_held("u1")

    def test_only_one_thread_acquires(self):
        gate = ProcessingGate()
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def contend():
            barrier.wait()
            acquired = gate.try_acquire("same")
            with lock:
                results.append(acquired)

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestConcurrentMap:

    def test_lock_is_reentrant_for_compound_operations(self):
        shared = ConcurrentMap()

        with shared.lock:
            assert shared.set_if_absent("a", 1)
            assert shared.get("a") == 1
            assert "a" in shared

        assert shared.update("a", lambda value: value + 1) == 2
