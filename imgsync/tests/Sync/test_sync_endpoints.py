# test_sync_endpoints.py
# Description: Tests for the sync service endpoints, directly and through HttpApiTransport.
#
# Imports
#
# 3rd-party Libraries
import pytest
from fastapi.testclient import TestClient
#
# Local Imports
from imgsync.app.api.v1.API_Deps.Sync_Deps import get_authority
from imgsync.app.core.exceptions import ConflictError, DuplicateImageError, ImageNotFoundError
from imgsync.app.core.Sync.core import ImageSyncEngine
from imgsync.app.core.Sync.models import WriteRequest, parse_timestamp
from imgsync.app.core.Sync.transport import HttpApiTransport
from imgsync.app.main import create_app
#
#######################################################################################################################
#
# Functions:


@pytest.fixture
def client(authority):
    app = create_app(configure_logging=False)
    app.dependency_overrides[get_authority] = lambda: authority
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def write_headers(client_id="client-a", last_sequence=0):
    return {"X-Client-ID": client_id, "X-Last-Sync-Sequence": str(last_sequence)}


def image_body(record, exif=None):
    body = {"image": record.to_wire()}
    if exif is not None:
        body["exifData"] = exif
    return body


class TestReadEndpoints:

    def test_status(self, client):
        response = client.get("/api/sync/status")
        assert response.status_code == 200
        assert response.json()["sync"] == {"currentSequence": 0, "anchorId": "anchor-1", "hasMore": False}

    def test_operations_are_paged(self, client, authority, make_record, at):
        for i in range(3):
            authority.apply_external_write(WriteRequest.create(make_record(f"img-{i}")), timestamp=at(i))

        first = client.get("/api/sync/operations", params={"since": 0, "limit": 2}).json()
        assert [f["sequence"] for f in first["data"]] == [1, 2]
        assert first["sync"]["hasMore"] is True
        assert first["data"][0]["type"] == "create"
        assert first["data"][0]["payload"]["mimeType"] == "image/png"
        assert first["data"][0]["clientId"] == "server"

        rest = client.get("/api/sync/operations", params={"since": 2, "limit": 2}).json()
        assert [f["sequence"] for f in rest["data"]] == [3]
        assert rest["sync"]["hasMore"] is False
        assert rest["sync"]["currentSequence"] == 3

    def test_invalid_limit_rejected(self, client):
        assert client.get("/api/sync/operations", params={"limit": 0}).status_code == 422

    def test_snapshot_includes_tombstones_and_metadata(self, client, authority, make_record, make_metadata, at):
        authority.apply_external_write(WriteRequest.create(make_record("A"), make_metadata("A")), timestamp=at(1))
        authority.apply_external_write(WriteRequest.create(make_record("B")), timestamp=at(2))
        authority.apply_external_write(WriteRequest.delete("B"), timestamp=at(3))

        body = client.get("/api/sync/snapshot").json()

        by_uuid = {entry["uuid"]: entry for entry in body["data"]}
        assert by_uuid["A"]["exifData"]["cameraMake"] == "Canon"
        assert parse_timestamp(by_uuid["B"]["deletedAt"]) == at(3)
        assert body["sync"]["currentSequence"] == 3

    def test_recreated_image_has_no_stale_metadata(self, client, authority, make_record, make_metadata, at):
        authority.apply_external_write(WriteRequest.create(make_record("A"), make_metadata("A", camera_make="OldCam")),
                                       timestamp=at(1))
        authority.apply_external_write(WriteRequest.delete("A"), timestamp=at(2))
        authority.apply_external_write(WriteRequest.create(make_record("A")), timestamp=at(3))

        body = client.get("/api/sync/snapshot").json()

        assert authority.get_metadata("A") is None
        assert body["data"][0].get("exifData") is None


class TestWriteEndpoints:

    def test_create(self, client, authority, make_record):
        response = client.post("/api/images", json=image_body(make_record("A"), {"iso": 400}),
                               headers=write_headers())
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["sequence"] == 1
        assert body["data"]["uuid"] == "A"
        assert body["data"]["exifData"]["iso"] == 400
        assert authority.operations_since(0).facts[0].client_id == "client-a"

    def test_stale_sequence_returns_409_with_headers(self, client, authority, make_record, at):
        authority.apply_external_write(WriteRequest.create(make_record("other")), timestamp=at(1))
        authority.apply_external_write(WriteRequest.create(make_record("another")), timestamp=at(2))

        response = client.post("/api/images", json=image_body(make_record("A")), headers=write_headers())

        assert response.status_code == 409
        assert response.headers["X-Operations-Behind"] == "2"
        assert response.headers["X-Current-Sequence"] == "2"
        assert response.headers["X-Sync-Anchor"] == "anchor-1"
        assert response.json()["operationsBehind"] == 2
        assert authority.get_image("A") is None

    def test_sync_headers_are_required(self, client, make_record):
        response = client.post("/api/images", json=image_body(make_record("A")))
        assert response.status_code == 422

    def test_duplicate_create(self, client, make_record):
        client.post("/api/images", json=image_body(make_record("A")), headers=write_headers())
        response = client.post("/api/images", json=image_body(make_record("A")), headers=write_headers(last_sequence=1))
        assert response.status_code == 400
        assert response.json()["errorType"] == "DuplicateImageError"

    def test_update_replace_delete(self, client, authority, make_record):
        client.post("/api/images", json=image_body(make_record("A")), headers=write_headers())

        updated = client.put("/api/images/A", json={"changes": {"filename": "renamed.png"}},
                             headers=write_headers(last_sequence=1))
        assert updated.status_code == 200
        assert updated.json()["data"]["filename"] == "renamed.png"

        replaced = client.put("/api/images/A/replace", json=image_body(make_record("A", hash="new-hash")),
                              headers=write_headers(last_sequence=2))
        assert replaced.json()["data"]["hash"] == "new-hash"

        deleted = client.delete("/api/images/A", headers=write_headers(last_sequence=3))
        assert deleted.json()["sequence"] == 4
        assert authority.get_image("A").is_deleted
        assert [f.type.value for f in authority.operations_since(0).facts] == ["create", "update", "replace",
                                                                                 "delete"]

    def test_update_without_changes_is_rejected(self, client, make_record):
        client.post("/api/images", json=image_body(make_record("A")), headers=write_headers())
        response = client.put("/api/images/A", json={}, headers=write_headers(last_sequence=1))
        assert response.status_code == 400

    def test_replace_with_mismatched_uuid(self, client, make_record):
        client.post("/api/images", json=image_body(make_record("A")), headers=write_headers())
        response = client.put("/api/images/A/replace", json=image_body(make_record("B")),
                              headers=write_headers(last_sequence=1))
        assert response.status_code == 400

    def test_delete_unknown_image(self, client):
        response = client.delete("/api/images/ghost", headers=write_headers())
        assert response.status_code == 404
        assert response.json()["errorType"] == "ImageNotFoundError"


class TestEngineOverHttp:

    @pytest.fixture
    def http_engine(self, client, store, bus):
        transport = HttpApiTransport(base_url="http://testserver", session=client)
        return ImageSyncEngine(store, transport, bus, client_id="client-http", retry_delay=0)

    def test_pull_and_push(self, http_engine, store, authority, make_record, make_metadata, at):
        authority.apply_external_write(WriteRequest.create(make_record("A"), make_metadata("A")), timestamp=at(1))
        authority.apply_external_write(WriteRequest.update("A", {"width": 1234}), timestamp=at(2))

        http_engine.sync()
        assert store.get_image("A").width == 1234
        assert store.get_extended_metadata("A").camera_make == "Canon"
        assert store.get_sync_state().last_applied_sequence == 2

        result = http_engine.submit_write(WriteRequest.create(make_record("B")))
        assert result.sequence == 3
        assert authority.get_image("B") is not None
        assert store.get_sync_state().last_applied_sequence == 3

    def test_conflict_over_http_is_retried(self, http_engine, store, authority, make_record, at):
        authority.apply_external_write(WriteRequest.create(make_record("other")), timestamp=at(1))

        with pytest.raises(ConflictError):
            http_engine.submit_write(WriteRequest.create(make_record("A")))

        result = http_engine.with_retry(lambda: http_engine.submit_write(WriteRequest.create(make_record("A"))))
        assert result.sequence == 2
        assert store.get_image("other") is not None

    def test_errors_keep_their_kind(self, http_engine, make_record):
        with pytest.raises(ImageNotFoundError):
            http_engine.submit_write(WriteRequest.delete("ghost"))
        http_engine.submit_write(WriteRequest.create(make_record("A")))
        with pytest.raises(DuplicateImageError):
            http_engine.submit_write(WriteRequest.create(make_record("A")))

    def test_reset_over_http_uses_snapshot(self, http_engine, store, authority, make_record, at):
        authority.apply_external_write(WriteRequest.create(make_record("A")), timestamp=at(1))
        http_engine.sync()

        authority.reset(anchor_id="anchor-2")
        authority.apply_external_write(WriteRequest.create(make_record("B")), timestamp=at(2))
        summary = http_engine.sync()

        assert summary.full_resync is True
        assert store.get_sync_state().anchor_id == "anchor-2"
        # A only exists locally now, so it is pushed back as a create
        assert authority.get_image("A") is not None
        assert store.get_image("B") is not None
        assert store.get_sync_state().last_applied_sequence == authority.current_sequence == 2

#
# End of test_sync_endpoints.py
#######################################################################################################################
