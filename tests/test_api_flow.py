import hashlib
import shutil
import threading
import time
from pathlib import Path

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from second_brain.auth import principal_rate_limiter
from second_brain.blobstore import BlobNotFoundError, BlobStore, StoredBlob
from second_brain.config import settings
from second_brain.db import SessionLocal, reset_schema
from second_brain.main import app, merge_chunks_for_owner
from second_brain.models import File
from second_brain.schemas import MergeChunksRequest

AUTH_HEADERS = {"X-API-Key": "dev-key"}
MIB = 1024 * 1024


class _FakeBlobStore(BlobStore):
    def __init__(self, fail_store: bool = False, fail_delete: bool = False, delay: float = 0.0) -> None:
        self.blobs: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_store = fail_store
        self.fail_delete = fail_delete
        self.delay = delay
        self._lock = threading.Lock()

    def store(self, stream, name, mime_type, public=True) -> StoredBlob:
        with self._lock:
            self.calls.append(("store", name))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_store:
            raise RuntimeError("remote store unavailable")
        payload = stream.read()
        remote_id = f"remote-{len(self.blobs) + 1}"
        with self._lock:
            self.blobs[remote_id] = payload
        return StoredBlob(remote_id=remote_id, url=f"https://blobs.example/{remote_id}", size=len(payload))

    def delete(self, remote_id: str) -> None:
        self.calls.append(("delete", remote_id))
        if self.fail_delete:
            raise RuntimeError("remote delete unavailable")
        if remote_id not in self.blobs:
            raise BlobNotFoundError(remote_id)
        del self.blobs[remote_id]

    def fetch_metadata(self, remote_id: str) -> dict:
        return {"id": remote_id, "size": len(self.blobs[remote_id])}

    def store_calls(self) -> int:
        return sum(1 for name, _ in self.calls if name == "store")


def _reset_state() -> None:
    reset_schema()
    shutil.rmtree(Path("data"), ignore_errors=True)
    principal_rate_limiter.reset()


def _send_chunk(client: TestClient, upload_id: str, index: int, payload: bytes, headers: dict | None = None):
    return client.post(
        "/upload-chunk",
        data={"chunkIndex": str(index), "uploadId": upload_id},
        files={"file": ("blob", payload, "application/octet-stream")},
        headers=headers,
    )


def _merge(client: TestClient, upload_id: str, total_chunks: int, headers: dict | None = None, **extra):
    body = {
        "uploadId": upload_id,
        "totalChunks": total_chunks,
        "fileName": "video.mp4",
        "mimeType": "video/mp4",
    }
    body.update(extra)
    return client.post("/merge-chunks", json=body, headers=headers)


def _file_count() -> int:
    with SessionLocal() as db:
        return db.query(File).count()


def test_reverse_order_chunks_merge_into_one_file(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    parts = [b"a" * (5 * MIB), b"b" * (5 * MIB), b"c" * (2 * MIB)]
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        for index in (2, 1, 0):
            response = _send_chunk(client, "u1", index, parts[index])
            assert response.status_code == 200, response.text
            assert response.json()["message"] == f"Chunk {index} uploaded successfully"

        status = client.get("/upload-chunk/u1", params={"totalChunks": 3})
        assert status.json()["received_chunk_indexes"] == [0, 1, 2]
        assert status.json()["missing_chunk_indexes"] == []

        merged = _merge(client, "u1", 3, category="Videos")
        assert merged.status_code == 201, merged.text
        payload = merged.json()
        assert payload["size"] == 12 * MIB
        assert payload["filename"] == "video.mp4"
        assert payload["mimetype"] == "video/mp4"
        assert payload["category"] == "Videos"
        assert payload["storage_id"] == "remote-1"
        assert payload["storage_url"] == "https://blobs.example/remote-1"

        after = client.get("/upload-chunk/u1")
        assert after.json()["received_chunk_indexes"] == []

    assert fake.store_calls() == 1
    assert fake.blobs["remote-1"] == b"".join(parts)
    assert _file_count() == 1


def test_merge_reports_first_missing_chunk_and_keeps_staged_chunks(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "u2", 0, b"abc").status_code == 200
        assert _send_chunk(client, "u2", 2, b"ghi").status_code == 200

        response = _merge(client, "u2", 3)
        assert response.status_code == 400
        assert response.json()["error"] == "Missing chunk 1"
        assert response.json()["error_code"] == "bad_request"
        assert response.json()["upload_id"] == "u2"

        status = client.get("/upload-chunk/u2", params={"totalChunks": 3})
        assert status.json()["received_chunk_indexes"] == [0, 2]
        assert status.json()["missing_chunk_indexes"] == [1]

        assert _send_chunk(client, "u2", 1, b"def").status_code == 200
        retried = _merge(client, "u2", 3)
        assert retried.status_code == 201, retried.text

    assert fake.store_calls() == 1
    assert fake.blobs["remote-1"] == b"abcdefghi"


def test_resent_chunk_replaces_earlier_bytes(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "u3", 0, b"first-attempt").status_code == 200
        assert _send_chunk(client, "u3", 0, b"retry").status_code == 200
        assert _send_chunk(client, "u3", 1, b"-tail").status_code == 200

        merged = _merge(client, "u3", 2)
        assert merged.status_code == 201
        assert merged.json()["size"] == len(b"retry-tail")

    assert fake.blobs["remote-1"] == b"retry-tail"


def test_merge_of_unknown_upload_is_not_found(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        response = _merge(client, "never-sent", 1, headers=AUTH_HEADERS)
        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    assert fake.calls == []


def test_merge_accepts_form_encoded_body(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "form-upload", 0, b"hello").status_code == 200
        response = client.post(
            "/merge-chunks",
            data={
                "uploadId": "form-upload",
                "totalChunks": "1",
                "fileName": "hello.txt",
                "mimeType": "text/plain",
                "category": "",
            },
        )
        assert response.status_code == 201, response.text
        assert response.json()["category"] is None


def test_merge_validation_errors_are_keyed_by_field() -> None:
    _reset_state()
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        response = client.post(
            "/merge-chunks",
            json={"uploadId": "u4", "totalChunks": 0, "mimeType": "text/plain", "category": "x" * 101},
        )
        assert response.status_code == 422
        errors = response.json()["errors"]
        assert "totalChunks" in errors
        assert "fileName" in errors
        assert "category" in errors
        assert response.json()["error_code"] == "validation_error"


def test_checksum_mismatch_rejects_merge_without_storing(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "u5", 0, b"payload").status_code == 200

        mismatch = _merge(client, "u5", 1, fileMd5="0" * 32)
        assert mismatch.status_code == 409
        assert mismatch.json()["error_code"] == "conflict"

        assert _send_chunk(client, "u5", 0, b"payload").status_code == 200
        matched = _merge(client, "u5", 1, fileMd5=hashlib.md5(b"payload").hexdigest())
        assert matched.status_code == 201

    assert fake.store_calls() == 1
    assert _file_count() == 1


def test_remote_store_failure_returns_500_and_clears_scratch(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore(fail_store=True)
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "u6", 0, b"abc").status_code == 200

        response = _merge(client, "u6", 1)
        assert response.status_code == 500
        assert response.json()["error"].startswith("File upload failed:")

        status = client.get("/upload-chunk/u6")
        assert status.json()["received_chunk_indexes"] == []

    assert _file_count() == 0


def test_uploads_are_isolated_per_owner(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    old_mapping = settings.api_key_mappings
    settings.api_key_mappings = "key-a:user-a,key-b:user-b"
    try:
        with TestClient(app) as client:
            assert _send_chunk(client, "shared-id", 0, b"aaa", headers={"X-API-Key": "key-a"}).status_code == 200

            other = _merge(client, "shared-id", 1, headers={"X-API-Key": "key-b"})
            assert other.status_code == 404

            mine = _merge(client, "shared-id", 1, headers={"X-API-Key": "key-a"})
            assert mine.status_code == 201
            file_id = mine.json()["id"]

            hidden = client.get(f"/files/{file_id}", headers={"X-API-Key": "key-b"})
            assert hidden.status_code == 404
            listing = client.get("/files", headers={"X-API-Key": "key-b"})
            assert listing.json()["total"] == 0
    finally:
        settings.api_key_mappings = old_mapping


def test_concurrent_merges_of_one_upload_store_once(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore(delay=0.2)
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "race", 0, b"left-").status_code == 200
        assert _send_chunk(client, "race", 1, b"right").status_code == 200

    payload = MergeChunksRequest(
        uploadId="race", totalChunks=2, fileName="race.bin", mimeType="application/octet-stream"
    )
    outcomes: list[int] = []

    def _run() -> None:
        with SessionLocal() as db:
            try:
                outcomes.append(merge_chunks_for_owner(db, "dev-user", payload).id)
            except HTTPException as exc:
                outcomes.append(exc.status_code)

    threads = [threading.Thread(target=_run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == [1, 404]
    assert fake.store_calls() == 1
    assert fake.blobs["remote-1"] == b"left-right"


def test_direct_upload_records_file(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        response = client.post(
            "/files/upload",
            files={"file": ("notes.pdf", b"%PDF-1.4 tiny", "application/pdf")},
            data={"category": "Docs"},
        )
        assert response.status_code == 201, response.text
        payload = response.json()
        assert payload["filename"] == "notes.pdf"
        assert payload["mimetype"] == "application/pdf"
        assert payload["size"] == len(b"%PDF-1.4 tiny")
        assert payload["category"] == "Docs"

    assert fake.blobs["remote-1"] == b"%PDF-1.4 tiny"


def test_direct_upload_over_limit_is_rejected_before_storing(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    old_limit = settings.max_direct_upload_bytes
    settings.max_direct_upload_bytes = 10
    try:
        with TestClient(app) as client:
            response = client.post(
                "/files/upload",
                files={"file": ("big.bin", b"x" * 11, "application/octet-stream")},
                headers=AUTH_HEADERS,
            )
            assert response.status_code == 422
            assert "file" in response.json()["errors"]
    finally:
        settings.max_direct_upload_bytes = old_limit

    assert fake.calls == []
    assert _file_count() == 0


def test_download_redirects_to_remote_url(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "dl", 0, b"bytes").status_code == 200
        file_id = _merge(client, "dl", 1).json()["id"]

        download = client.get(f"/files/{file_id}/download", follow_redirects=False)
        assert download.status_code == 302
        assert download.headers["location"] == "https://blobs.example/remote-1"


def test_delete_removes_record_even_when_remote_delete_fails(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore(fail_delete=True)
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "del", 0, b"bytes").status_code == 200
        file_id = _merge(client, "del", 1).json()["id"]

        deleted = client.delete(f"/files/{file_id}")
        assert deleted.status_code == 200
        assert deleted.json()["message"] == "File deleted successfully"
        assert client.get(f"/files/{file_id}").status_code == 404

    assert ("delete", "remote-1") in fake.calls
    assert _file_count() == 0


def test_file_listing_filters_and_paginates() -> None:
    _reset_state()
    with SessionLocal() as db:
        for idx in range(23):
            db.add(
                File(
                    owner_id="dev-user",
                    filename=f"photo-{idx}.png" if idx % 2 == 0 else f"report-{idx}.pdf",
                    storage_url=f"https://blobs.example/{idx}",
                    storage_id=str(idx),
                    mimetype="image/png" if idx % 2 == 0 else "application/pdf",
                    size=100,
                    category="Work" if idx < 3 else None,
                )
            )
        db.add(
            File(
                owner_id="someone-else",
                filename="photo-foreign.png",
                storage_url="https://blobs.example/foreign",
                mimetype="image/png",
                size=1,
            )
        )
        db.commit()

    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        first = client.get("/files").json()
        assert first["total"] == 23
        assert first["per_page"] == 20
        assert first["last_page"] == 2
        assert len(first["data"]) == 20

        second = client.get("/files", params={"page": 2}).json()
        assert second["current_page"] == 2
        assert len(second["data"]) == 3

        images = client.get("/files", params={"type": "image"}).json()
        assert images["total"] == 12
        assert all(item["mimetype"].startswith("image/") for item in images["data"])

        work = client.get("/files", params={"category": "Work"}).json()
        assert work["total"] == 3

        reports = client.get("/files", params={"search": "REPORT"}).json()
        assert reports["total"] == 11


def test_chunk_upload_requires_file_part() -> None:
    _reset_state()
    with TestClient(app) as client:
        response = client.post(
            "/upload-chunk",
            data={"chunkIndex": "0", "uploadId": "u7"},
            headers=AUTH_HEADERS,
        )
        assert response.status_code == 422
        assert "file" in response.json()["errors"]


@pytest.mark.parametrize("index", ["-1", "abc"])
def test_chunk_upload_rejects_bad_index(index: str) -> None:
    _reset_state()
    with TestClient(app) as client:
        response = client.post(
            "/upload-chunk",
            data={"chunkIndex": index, "uploadId": "u8"},
            files={"file": ("blob", b"x", "application/octet-stream")},
            headers=AUTH_HEADERS,
        )
        assert response.status_code == 422
        assert "chunkIndex" in response.json()["errors"]


def test_metrics_endpoint_available() -> None:
    _reset_state()
    with TestClient(app) as client:
        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert "chunks_received_total" in metrics.text
        assert "merges_total" in metrics.text


def test_merge_rejects_implausible_chunk_count(monkeypatch) -> None:
    _reset_state()
    fake = _FakeBlobStore()
    monkeypatch.setattr("second_brain.main.blob_store", fake)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        assert _send_chunk(client, "huge", 0, b"abc").status_code == 200

        too_many = _merge(client, "huge", 1_000_000_000)
        assert too_many.status_code == 422
        assert "totalChunks" in too_many.json()["errors"]

        gap = _merge(client, "huge", 100_000)
        assert gap.status_code == 400
        assert gap.json()["error"] == "Missing chunk 1"

    assert fake.calls == []
