# test_image_library.py
# Description: Tests for the ImageLibrary facade over store, engine and event bus.
#
# Imports
from unittest.mock import MagicMock
#
# 3rd-party Libraries
import pytest
import toml
#
# Local Imports
from imgsync.app.core import config
from imgsync.app.core.exceptions import TransientNetworkError
from imgsync.app.core.Sync.core import ImageSyncEngine
from imgsync.app.core.Sync.events import SyncEventType
from imgsync.app.core.Sync.models import WriteRequest
from imgsync.app.core.Sync.transport import InProcessTransport, SyncTransport
from imgsync.app.services.image_library_service import ImageLibrary
#
#######################################################################################################################
#
# Functions:


@pytest.fixture
def library(store, engine, bus):
    lib = ImageLibrary(store, engine, bus)
    yield lib
    lib.stop_auto_sync()


def test_writes_go_through_the_service(library, authority, make_record, make_metadata):
    library.upload_image(make_record("A"), make_metadata("A"))
    library.update_image("A", {"filename": "beach.png"})
    library.replace_image(make_record("A", filename="beach-edit.png", width=800))
    library.delete_image("A")

    assert authority.current_sequence == 4
    assert authority.get_image("A").is_deleted
    assert library.get_image("A") is None
    assert library.store.get_sync_state().last_applied_sequence == 4


def test_upload_after_remote_change_retries(library, authority, make_record, at, sleeps):
    authority.apply_external_write(WriteRequest.create(make_record("remote")), timestamp=at(1))

    result = library.upload_image(make_record("A"))

    assert result.sequence == 2
    assert sleeps == [0.25]
    assert {r.uuid for r in library.list_active_images()} == {"remote", "A"}


def test_local_images_are_listed_and_counted(library, make_record, make_metadata, at):
    library.add_local_image(make_record("A", created_at=at(1)), make_metadata("A"))
    library.add_local_image(make_record("B", created_at=at(2), format="jpeg", mime_type="image/jpeg"))

    assert [r.uuid for r in library.list_active_images()] == ["B", "A"]
    assert library.get_extended_metadata("A").camera_model == "EOS R5"
    page = library.list_images_paginated(page=1, page_size=1)
    assert page["total"] == 2
    assert page["has_more"] is True
    assert library.get_image_stats()["total_images"] == 2

    assert library.delete_local_image("A") is True
    assert [r.uuid for r in library.list_active_images()] == ["B"]


def test_subscriptions(library, authority, make_record, at):
    applied = []
    unsubscribe = library.subscribe(SyncEventType.OPERATION_APPLIED, applied.append)
    authority.apply_external_write(WriteRequest.create(make_record("A")), timestamp=at(1))

    library.sync()
    unsubscribe()
    authority.apply_external_write(WriteRequest.create(make_record("B")), timestamp=at(2))
    library.sync()

    assert [e.uuid for e in applied] == ["A"]


def test_status_reports_operations_behind(library, authority, make_record, at):
    authority.apply_external_write(WriteRequest.create(make_record("A")), timestamp=at(1))
    status = library.check_sync_status()
    assert status.operations_behind == 1
    assert status.in_sync is False


def test_start_in_auto_mode(store, engine, bus):
    library = ImageLibrary(store, engine, bus, {"mode": "auto", "interval_seconds": 60.0})
    try:
        summary = library.start()
        assert summary.trigger == "initialize"
        assert engine.is_auto_syncing
    finally:
        library.stop_auto_sync()
    assert not engine.is_auto_syncing


def test_start_while_offline(store, bus):
    transport = MagicMock(spec=SyncTransport)
    for name in ("fetch_operations", "fetch_snapshot", "fetch_status", "submit_write"):
        getattr(transport, name).side_effect = TransientNetworkError("offline")
    engine = ImageSyncEngine(store, transport, bus, client_id="client-a", retry_delay=0)

    library = ImageLibrary(store, engine, bus)

    assert library.start() is None
    assert not engine.is_auto_syncing


def test_from_config(tmp_path, monkeypatch, authority):
    config_file = tmp_path / "config.toml"
    db_path = tmp_path / "library" / "images.db"
    config_file.write_text(toml.dumps({
        "database": {"path": str(db_path)},
        "sync": {"mode": "manual", "batch_size": 7, "max_retries": 1, "retry_delay_seconds": 0},
    }), encoding="utf-8")
    monkeypatch.setenv("IMGSYNC_CONFIG_PATH", str(config_file))
    config.reset_config_cache()
    try:
        with ImageLibrary.from_config(config_file, transport=InProcessTransport(authority)) as library:
            assert library.engine.batch_size == 7
            assert library.engine.max_retries == 1
            assert library.store.db_path == db_path.resolve()
            library.start()
            assert library.store.get_sync_state().anchor_id == "anchor-1"
        assert db_path.exists()
    finally:
        config.reset_config_cache()

#
# End of test_image_library.py
#######################################################################################################################
