# test_image_db.py
# Description: Tests for the SQLite local store: CRUD, tombstones, atomic batches and sync bookkeeping.
#
# Imports
import sqlite3
from unittest.mock import patch
#
# 3rd-party Libraries
import pytest
#
# Local Imports
from imgsync.app.core.DB_Management.Image_DB import CLIENT_ID_PREFIX, ImageDB
from imgsync.app.core.exceptions import DuplicateImageError, StorageError, ValidationError
from imgsync.app.core.Sync.models import Mutation, PageDimension
#
#######################################################################################################################
#
# Functions:


@pytest.fixture
def file_db_path(tmp_path):
    return tmp_path / "library" / "imgsync_library.db"


class TestImageDBInitialization:

    def test_schema_version_recorded(self, store):
        row = store.execute_query("SELECT version FROM db_schema_version WHERE schema_name = ?",
                                  (ImageDB._SCHEMA_NAME,)).fetchone()
        assert row["version"] == ImageDB._CURRENT_SCHEMA_VERSION

    def test_fresh_store_has_empty_sync_state(self, store):
        state = store.get_sync_state()
        assert state.last_applied_sequence == 0
        assert state.anchor_id is None
        assert state.last_sync_time is None

    def test_file_db_persists_across_instances(self, file_db_path, make_record):
        db = ImageDB(file_db_path)
        db.create_image(make_record("A"))
        db.set_sync_state(last_applied_sequence=7, anchor_id="anchor-1")
        db.close_connection()

        reopened = ImageDB(file_db_path)
        try:
            assert reopened.get_image("A") is not None
            assert reopened.get_sync_state().last_applied_sequence == 7
        finally:
            reopened.close_connection()


class TestImageCrud:

    def test_create_and_get_round_trip(self, store, make_record, make_metadata):
        record = make_record("A", page_count=2,
                             page_dimensions=[PageDimension(width=10, height=20), PageDimension(width=30, height=40)])
        store.create_image(record, make_metadata("A"))

        fetched = store.get_image("A")
        assert fetched == record
        assert [d.width for d in fetched.page_dimensions] == [10, 30]
        assert store.get_extended_metadata("A").camera_make == "Canon"

    def test_duplicate_uuid_rejected(self, store, make_record):
        store.create_image(make_record("A"))
        with pytest.raises(DuplicateImageError):
            store.create_image(make_record("A", filename="other.png"))
        assert store.get_image("A").filename == "A.png"

    def test_duplicate_of_tombstoned_uuid_rejected(self, store, make_record):
        store.create_image(make_record("A"))
        store.tombstone("A")
        with pytest.raises(DuplicateImageError):
            store.create_image(make_record("A"))

    def test_upsert_replaces_in_place(self, store, make_record, at):
        store.upsert_image(make_record("A"))
        store.upsert_image(make_record("A", filename="renamed.png", updated_at=at(5)))

        assert len(store.list_all()) == 1
        assert store.get_image("A").filename == "renamed.png"
        assert store.get_image("A").updated_at == at(5)

    def test_metadata_upsert_is_one_to_one(self, store, make_record, make_metadata):
        store.create_image(make_record("A"))
        store.upsert_metadata("A", make_metadata("A", iso=100))
        store.upsert_metadata("A", {"iso": 800, "metadata": {"rating": 4}})

        meta = store.get_extended_metadata("A")
        assert meta.iso == 800
        assert meta.camera_make is None
        assert meta.extra == {"rating": 4}
        assert len(store.get_all_metadata()) == 1

    def test_metadata_requires_parent(self, store, make_metadata):
        with pytest.raises(ValidationError):
            store.upsert_metadata("missing", make_metadata("missing"))


class TestTombstones:

    def test_tombstone_hides_record_and_metadata(self, store, make_record, make_metadata, at):
        store.create_image(make_record("A"), make_metadata("A"))
        assert store.tombstone("A", deleted_at=at(10)) is True

        assert store.get_image("A") is None
        assert store.get_extended_metadata("A") is None
        assert store.list_active() == []

        tombstone = store.get_image("A", include_deleted=True)
        assert tombstone.is_deleted
        assert tombstone.deleted_at == at(10)
        assert tombstone.updated_at == at(10)

    def test_tombstone_drops_metadata_row(self, store, make_record, make_metadata, at):
        store.create_image(make_record("A"), make_metadata("A"))
        store.tombstone("A", deleted_at=at(10))
        assert "A" not in store.get_all_metadata()

        store.upsert_image(make_record("A", updated_at=at(11)))
        assert store.get_extended_metadata("A") is None

    def test_deleted_upsert_drops_metadata_row(self, store, make_record, make_metadata, at):
        store.create_image(make_record("A"), make_metadata("A"))
        store.upsert_image(make_record("A", updated_at=at(10), deleted_at=at(10)))
        assert store.get_all_metadata() == {}

    def test_tombstone_unknown_uuid(self, store):
        assert store.tombstone("nope") is False

    def test_list_all_includes_tombstones(self, store, make_record):
        store.create_image(make_record("A"))
        store.create_image(make_record("B"))
        store.tombstone("A")
        assert {r.uuid for r in store.list_all()} == {"A", "B"}
        assert [r.uuid for r in store.list_active()] == ["B"]


class TestApplyBatch:

    def test_batch_and_cursor_commit_together(self, store, make_record):
        mutations = [Mutation.upsert_image(make_record(u)) for u in ("A", "B", "C")]
        applied = store.apply_batch(mutations, {"last_applied_sequence": 3, "anchor_id": "anchor-1"})

        assert applied == 3
        assert len(store.list_active()) == 3
        assert store.get_sync_state().last_applied_sequence == 3

    @pytest.mark.parametrize("fail_at", [1, 2, 3])
    def test_storage_failure_on_nth_mutation_leaves_no_trace(self, store, make_record, fail_at):
        store.create_image(make_record("existing"))
        store.set_sync_state(last_applied_sequence=4, anchor_id="anchor-1")

        original = store._apply_mutation
        calls = []

        def failing(conn, mutation):
            calls.append(mutation.uuid)
            if len(calls) == fail_at:
                raise sqlite3.OperationalError("disk I/O error")
            return original(conn, mutation)

        mutations = [Mutation.upsert_image(make_record(u)) for u in ("A", "B", "C")]
        mutations.append(Mutation.tombstone("existing", make_record("x").updated_at))

        with patch.object(store, "_apply_mutation", side_effect=failing):
            with pytest.raises(StorageError):
                store.apply_batch(mutations, {"last_applied_sequence": 5})

        assert {r.uuid for r in store.list_all()} == {"existing"}
        assert store.get_image("existing") is not None
        assert store.get_sync_state().last_applied_sequence == 4

    def test_validation_failure_rolls_back(self, store, make_record, make_metadata):
        mutations = [Mutation.upsert_image(make_record("A")), Mutation.upsert_metadata(make_metadata("ghost"))]
        with pytest.raises(ValidationError):
            store.apply_batch(mutations, {"last_applied_sequence": 1})
        assert store.get_image("A") is None
        assert store.get_sync_state().last_applied_sequence == 0

    def test_nested_transaction_commits_once(self, store, make_record):
        with store.transaction():
            store.upsert_image(make_record("A"))
            store.upsert_image(make_record("B"))
            assert store.get_connection().in_transaction
        assert not store.get_connection().in_transaction
        assert len(store.list_active()) == 2

    def test_outer_rollback_discards_inner_writes(self, store, make_record):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.upsert_image(make_record("A"))
                raise RuntimeError("boom")
        assert store.get_image("A") is None


class TestSyncState:

    def test_partial_update(self, store, at):
        store.set_sync_state(last_applied_sequence=3, anchor_id="anchor-1")
        state = store.set_sync_state(last_sync_time=at(1))
        assert state.last_applied_sequence == 3
        assert state.anchor_id == "anchor-1"
        assert state.last_sync_time == at(1)

    def test_rewind_ignored_within_same_anchor(self, store):
        store.set_sync_state(last_applied_sequence=5, anchor_id="anchor-1")
        state = store.set_sync_state(last_applied_sequence=3)
        assert state.last_applied_sequence == 5

    def test_rewind_allowed_with_new_anchor(self, store):
        store.set_sync_state(last_applied_sequence=5, anchor_id="anchor-1")
        state = store.set_sync_state(last_applied_sequence=2, anchor_id="anchor-2")
        assert state.last_applied_sequence == 2
        assert state.anchor_id == "anchor-2"

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValidationError):
            store.set_sync_state(cursor=1)

    def test_reset_forgets_cursor_but_keeps_client_id(self, store):
        client_id = store.get_or_create_client_id()
        store.set_sync_state(last_applied_sequence=9, anchor_id="anchor-1")
        state = store.reset_sync_state()
        assert state.last_applied_sequence == 0
        assert state.anchor_id is None
        assert state.client_id == client_id

    def test_client_id_generated_once(self, store):
        first = store.get_or_create_client_id()
        assert first.startswith(CLIENT_ID_PREFIX)
        assert store.get_or_create_client_id() == first


class TestQueries:

    def _seed(self, store, make_record, at):
        for i, fmt in enumerate(["png", "png", "tiff", "jpeg", "tiff"]):
            store.create_image(make_record(f"img-{i}", format=fmt, file_size=100 * (i + 1),
                                           created_at=at(i), is_corrupted=(i == 4)))

    def test_pagination(self, store, make_record, at):
        self._seed(store, make_record, at)
        first = store.list_images_paginated(page=1, page_size=2)
        assert [r.uuid for r in first["images"]] == ["img-4", "img-3"]
        assert first["total"] == 5
        assert first["total_pages"] == 3
        assert first["has_more"] is True

        last = store.list_images_paginated(page=3, page_size=2, sort_by="createdAt", sort_order="asc")
        assert [r.uuid for r in last["images"]] == ["img-4"]
        assert last["has_more"] is False

    def test_pagination_rejects_bad_arguments(self, store):
        with pytest.raises(ValidationError):
            store.list_images_paginated(page=0)
        with pytest.raises(ValidationError):
            store.list_images_paginated(sort_by="hash; DROP TABLE images")

    def test_stats_ignore_tombstones(self, store, make_record, at):
        self._seed(store, make_record, at)
        store.tombstone("img-0")
        stats = store.get_image_stats()
        assert stats["total_images"] == 4
        assert stats["total_size"] == 200 + 300 + 400 + 500
        assert stats["corrupted_images"] == 1
        assert stats["by_format"] == {"jpeg": 1, "png": 1, "tiff": 2}

    def test_get_images_includes_tombstones(self, store, make_record):
        store.create_image(make_record("A"))
        store.create_image(make_record("B"))
        store.tombstone("B")
        found = store.get_images(["A", "B", "C"])
        assert set(found) == {"A", "B"}
        assert found["B"].is_deleted

#
# End of test_image_db.py
#######################################################################################################################
