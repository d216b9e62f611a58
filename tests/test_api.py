"""End-to-end tests for the HTTP upload API."""
import re

import pytest
from fastapi.testclient import TestClient

from app.main import create_app


@pytest.fixture
def client(settings, fake_storage):
    app = create_app(settings, storage=fake_storage)
    with TestClient(app) as test_client:
        yield test_client


def init_upload(client):
    response = client.post("/upload/init")
    assert response.status_code == 200
    return response.json()["uploadId"]


def send_chunk(client, upload_id, index, total, payload, filename="photo.jpg", **extra):
    data = {
        "uploadId": upload_id,
        "chunkNumber": str(index),
        "totalChunks": str(total),
        "originalFilename": filename,
    }
    data.update(extra)
    return client.post(
        "/upload/chunk",
        data=data,
        files={"file": ("blob", payload, "application/octet-stream")},
    )


class TestUploadFlow:

    def test_two_chunk_upload(self, client, fake_storage):
        upload_id = init_upload(client)
        assert re.fullmatch(r"[0-9a-f]{32}", upload_id)

        first = send_chunk(client, upload_id, 0, 2, b"first half ")
        assert first.status_code == 200
        assert first.json() == {
            "message": "Chunk received successfully",
            "chunksReceived": 1,
            "totalChunks": 2,
        }

        second = send_chunk(client, upload_id, 1, 2, b"second half")
        assert second.status_code == 200
        body = second.json()
        assert body["message"] == "Upload completed successfully"
        assert re.fullmatch(r"[0-9a-f]{16}-photo\.jpg", body["filename"])
        assert body["syncTaskId"].startswith("sync_")
        assert body["s3Key"] == f"uploads/{body['filename']}"

        status = client.get(f"/upload/status/{upload_id}")
        assert status.status_code == 404
        assert status.json()["error"] == "Upload not found"

        services = client.app.state.services
        assert services.sync_queue.join(timeout=5)
        stored = fake_storage.objects[body["s3Key"]]
        assert stored["body"] == b"first half second half"
        assert stored["content_type"] == "image/jpeg"

        sync_status = client.get(f"/upload/sync-status/{body['syncTaskId']}")
        assert sync_status.status_code == 200
        assert sync_status.json()["status"] == "completed"
        assert sync_status.json()["attempts"] == 1

    def test_status_of_partial_upload(self, client):
        upload_id = init_upload(client)
        send_chunk(client, upload_id, 2, 3, b"c")

        response = client.get(f"/upload/status/{upload_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "in_progress"
        assert body["chunksReceived"] == 1
        assert body["totalChunks"] == 3
        assert body["processingStatus"] == "inactive"

    def test_fresh_upload_status(self, client):
        upload_id = init_upload(client)

        body = client.get(f"/upload/status/{upload_id}").json()

        assert body["status"] == "initializing"
        assert body["chunksReceived"] == 0


class TestValidation:

    def test_missing_fields(self, client):
        response = client.post("/upload/chunk", data={"uploadId": "abc"})

        assert response.status_code == 400
        assert response.json()["details"] == "Missing required upload information"

    def test_unknown_upload_is_rejected_before_writing(self, client, directories):
        response = send_chunk(client, "deadbeef", 0, 1, b"x")

        assert response.status_code == 404
        assert not directories.chunk_path("deadbeef", 0).exists()

    def test_out_of_range_chunk(self, client, directories):
        upload_id = init_upload(client)

        response = send_chunk(client, upload_id, 3, 3, b"x")

        assert response.status_code == 400
        assert not directories.chunk_path(upload_id, 3).exists()

    def test_bad_processing_type(self, client):
        upload_id = init_upload(client)

        response = send_chunk(client, upload_id, 0, 1, b"x", processingType="shrink")

        assert response.status_code == 400

    def test_oversized_chunk(self, client, settings):
        upload_id = init_upload(client)

        response = send_chunk(client, upload_id, 0, 2, b"x" * (settings.MAX_CHUNK_SIZE + 1))

        assert response.status_code == 400


class TestCancel:

    def test_cancel(self, client, directories):
        upload_id = init_upload(client)
        send_chunk(client, upload_id, 0, 2, b"a")
        assert directories.chunk_path(upload_id, 0).exists()

        response = client.post("/upload/cancel", json={"upload_id": upload_id})

        assert response.status_code == 200
        assert response.json() == {"status": "cancelled", "message": "Upload cancelled successfully"}
        assert not directories.chunk_path(upload_id, 0).exists()
        assert client.get(f"/upload/status/{upload_id}").status_code == 404

    def test_cancel_while_processing(self, client):
        upload_id = init_upload(client)
        gate = client.app.state.services.gate

        with gate.hold(upload_id):
            response = client.post("/upload/cancel", json={"upload_id": upload_id})

        assert response.status_code == 409
        assert response.json()["details"] == "Cannot cancel upload while processing"
        assert client.get(f"/upload/status/{upload_id}").status_code == 200

    def test_chunk_is_not_written_while_processing(self, client, directories):
        upload_id = init_upload(client)
        send_chunk(client, upload_id, 1, 2, b"b")
        gate = client.app.state.services.gate

        with gate.hold(upload_id):
            response = send_chunk(client, upload_id, 0, 2, b"a")

        assert response.status_code == 200
        assert response.json() == {
            "message": "Chunk received, processing in progress",
            "chunksReceived": 1,
            "totalChunks": 2,
        }
        assert not directories.chunk_path(upload_id, 0).exists()
        assert client.get(f"/upload/status/{upload_id}").json()["chunksReceived"] == 1

    def test_cancel_unknown(self, client):
        assert client.post("/upload/cancel", json={"upload_id": "nope"}).status_code == 404

    def test_cancel_requires_id(self, client):
        assert client.post("/upload/cancel", json={}).status_code == 400


class TestSyncEndpoints:

    def test_unknown_sync_task(self, client):
        response = client.get("/upload/sync-status/sync_missing")

        assert response.status_code == 404
        assert response.json()["error"] == "Sync task not found"

    def test_sync_stats(self, client, settings):
        response = client.get("/upload/sync-stats")

        assert response.status_code == 200
        assert response.json() == {
            "queueSize": 0,
            "activeUploads": 0,
            "maxConcurrent": settings.SYNC_MAX_CONCURRENT,
            "pendingTasks": 0,
            "failedTasks": 0,
        }
