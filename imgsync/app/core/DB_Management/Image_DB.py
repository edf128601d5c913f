# Image_DB.py
# Description: Local persistent store for image records, their extended metadata and sync bookkeeping.
#
# Imports
import json
import sqlite3
import threading
import uuid as uuid_lib
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from imgsync.app.core.exceptions import (DuplicateImageError, SchemaError, StorageError, ValidationError)
from imgsync.app.core.Sync.models import (ExtendedMetadata, ImageRecord, Mutation, MutationKind, SyncState,
                                          parse_timestamp, to_iso, utc_now)
#
########################################################################################################################
#
# Functions:

CLIENT_ID_PREFIX = "desktop-app-v1.0"

_IMAGE_COLUMNS = (
    "uuid", "filename", "file_size", "format", "width", "height", "mime_type", "hash",
    "is_corrupted", "page_count", "page_dimensions", "created_at", "updated_at", "deleted_at",
)

_SORTABLE_COLUMNS = {
    "created_at": "created_at", "createdAt": "created_at",
    "updated_at": "updated_at", "updatedAt": "updated_at",
    "filename": "filename",
    "file_size": "file_size", "fileSize": "file_size",
}

_SYNC_STATE_FIELDS = ("last_applied_sequence", "last_sync_time", "anchor_id", "client_id")


class ImageDB:
    """
    SQLite-backed local store.

    One connection is shared by every thread using the instance and all access
    goes through a re-entrant lock; a transaction holds that lock from BEGIN to
    COMMIT/ROLLBACK, so the transaction API is the single consistency boundary
    for local edits, reconciliation and sync bookkeeping.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "imgsync_library_schema"

    _FULL_SCHEMA_SQL_V1 = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name, version) VALUES('imgsync_library_schema', 0);

/*───────────────────────────────────────────────────────────────
  Images (tombstoned rows are kept so deletions stay diffable)
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS images(
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  uuid            TEXT UNIQUE NOT NULL,
  filename        TEXT NOT NULL,
  file_size       INTEGER NOT NULL DEFAULT 0,
  format          TEXT NOT NULL,
  width           INTEGER NOT NULL DEFAULT 0,
  height          INTEGER NOT NULL DEFAULT 0,
  mime_type       TEXT NOT NULL,
  hash            TEXT,
  is_corrupted    INTEGER NOT NULL DEFAULT 0,
  page_count      INTEGER NOT NULL DEFAULT 1,
  page_dimensions TEXT,             /* JSON list of {width, height} */
  created_at      TEXT NOT NULL,
  updated_at      TEXT NOT NULL,
  deleted_at      TEXT
);
CREATE INDEX IF NOT EXISTS idx_images_deleted_at ON images(deleted_at);
CREATE INDEX IF NOT EXISTS idx_images_updated_at ON images(updated_at);

/*───────────────────────────────────────────────────────────────
  Extended metadata (1:1 with images, keyed by image uuid)
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS image_metadata(
  image_uuid    TEXT PRIMARY KEY NOT NULL REFERENCES images(uuid) ON DELETE CASCADE,
  camera_make   TEXT,
  camera_model  TEXT,
  lens_model    TEXT,
  iso           INTEGER,
  shutter_speed TEXT,
  aperture      TEXT,
  focal_length  TEXT,
  date_taken    TEXT,
  orientation   INTEGER,
  gps_latitude  REAL,
  gps_longitude REAL,
  gps_altitude  REAL,
  extra         TEXT,               /* JSON object */
  updated_at    TEXT NOT NULL
);

/*───────────────────────────────────────────────────────────────
  Sync bookkeeping (singleton row)
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS sync_state(
  id                    INTEGER PRIMARY KEY CHECK (id = 1),
  last_applied_sequence INTEGER NOT NULL DEFAULT 0,
  last_sync_time        TEXT,
  anchor_id             TEXT,
  client_id             TEXT
);
INSERT OR IGNORE INTO sync_state(id, last_applied_sequence) VALUES (1, 0);

UPDATE db_schema_version SET version = 1 WHERE schema_name = 'imgsync_library_schema' AND version = 0;
"""

    def __init__(self, db_path: Union[str, Path]):
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to create database directory {self.db_path.parent}",
                                   operation="open", original_error=e) from e

        logger.info(f"Initializing ImageDB for path: {self.db_path_str}")
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self._initialize_schema()
            logger.debug(f"ImageDB initialization completed successfully for {self.db_path_str}")
        except (StorageError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}")
            self.close_connection()
            if isinstance(e, StorageError):
                raise
            raise StorageError("Database initialization failed", operation="open",
                               context={"db_path": self.db_path_str}, original_error=e) from e

    # --- Connection Management ---
    def get_connection(self) -> sqlite3.Connection:
        with self._lock:
            conn = self._conn
            if conn is not None:
                try:
                    conn.execute("SELECT 1")
                except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                    if self.is_memory_db:
                        raise StorageError("In-memory database connection was closed", operation="connect")
                    logger.warning(f"Connection for {self.db_path_str} was closed or became unusable. Reopening.")
                    conn = None

            if conn is None:
                try:
                    conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15)
                    conn.row_factory = sqlite3.Row
                    if not self.is_memory_db:
                        conn.execute("PRAGMA journal_mode=WAL;")
                    conn.execute("PRAGMA foreign_keys = ON;")
                    self._conn = conn
                    logger.debug(f"Opened SQLite connection to {self.db_path_str}")
                except sqlite3.Error as e:
                    logger.error(f"Failed to connect to database {self.db_path_str}: {e}")
                    self._conn = None
                    raise StorageError(f"Failed to connect to database '{self.db_path_str}'",
                                       operation="connect", original_error=e) from e
            return conn

    def close_connection(self):
        with self._lock:
            conn = self._conn
            if conn is None:
                return
            try:
                if conn.in_transaction:
                    logger.warning(f"Connection to {self.db_path_str} is in an uncommitted transaction during close. Rolling back.")
                    conn.rollback()
                if not self.is_memory_db:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                conn.close()
                logger.debug(f"Closed connection to {self.db_path_str}.")
            except sqlite3.Error as e:
                logger.warning(f"Error during SQLite connection close/checkpoint for {self.db_path_str}: {e}")
            finally:
                self._conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      commit: bool = False, script: bool = False) -> sqlite3.Cursor:
        with self._lock:
            conn = self.get_connection()
            try:
                cursor = conn.cursor()
                if script:
                    cursor.executescript(query)
                else:
                    cursor.execute(query, params or ())
                if commit and not conn.in_transaction:
                    conn.commit()
                return cursor
            except sqlite3.IntegrityError as e:
                logger.warning(f"Integrity constraint violation: {query[:300]}... Error: {e}")
                raise StorageError("Database constraint violation", operation="execute_query",
                                   original_error=e) from e
            except sqlite3.Error as e:
                logger.error(f"Query execution failed: {query[:300]}... Error: {e}")
                raise StorageError("Query execution failed", operation="execute_query", original_error=e) from e

    def _fetchall(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.execute_query(query, params).fetchall()

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.execute_query(query, params).fetchone()

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        return TransactionContextManager(self)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}'",
                              operation="schema", original_error=e) from e

    def _initialize_schema(self):
        with self._lock:
            conn = self.get_connection()
            current_version = self._get_db_version(conn)
            target_version = self._CURRENT_SCHEMA_VERSION
            logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_version}. Code supports: {target_version}")

            if current_version == target_version:
                return
            if current_version > target_version:
                raise SchemaError(
                    f"Database schema '{self._SCHEMA_NAME}' version ({current_version}) is newer than supported by code ({target_version}).",
                    operation="schema")
            try:
                conn.executescript(self._FULL_SCHEMA_SQL_V1)
            except sqlite3.Error as e:
                raise SchemaError(f"DB schema V1 setup failed for '{self._SCHEMA_NAME}'",
                                  operation="schema", original_error=e) from e

            final_version = self._get_db_version(conn)
            if final_version != target_version:
                raise SchemaError(f"Schema setup completed, but DB version is {final_version}, expected {target_version}.",
                                  operation="schema")
            logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {final_version}.")

    # --- Row Conversion (JSON only exists at this boundary) ---
    @staticmethod
    def _record_to_params(record: ImageRecord) -> tuple:
        data = record.model_dump()
        data["page_dimensions"] = json.dumps(data["page_dimensions"]) if data["page_dimensions"] else None
        data["is_corrupted"] = 1 if data["is_corrupted"] else 0
        for key in ("created_at", "updated_at", "deleted_at"):
            data[key] = to_iso(data[key])
        return tuple(data[col] for col in _IMAGE_COLUMNS)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ImageRecord:
        data = {col: row[col] for col in _IMAGE_COLUMNS}
        data["page_dimensions"] = json.loads(data["page_dimensions"]) if data["page_dimensions"] else []
        data["is_corrupted"] = bool(data["is_corrupted"])
        return ImageRecord.model_validate(data)

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> ExtendedMetadata:
        data = {col: row[col] for col in ExtendedMetadata.STRUCTURED_FIELDS}
        data["uuid"] = row["image_uuid"]
        data["extra"] = json.loads(row["extra"]) if row["extra"] else {}
        return ExtendedMetadata.model_validate(data)

    # --- Mutation primitives (run on an open transaction) ---
    def _insert_image(self, conn: sqlite3.Connection, record: ImageRecord):
        placeholders = ", ".join("?" for _ in _IMAGE_COLUMNS)
        try:
            conn.execute(f"INSERT INTO images ({', '.join(_IMAGE_COLUMNS)}) VALUES ({placeholders})",
                         self._record_to_params(record))
        except sqlite3.IntegrityError as e:
            if "unique constraint failed" in str(e).lower():
                raise DuplicateImageError(f"Image with uuid '{record.uuid}' already exists",
                                          uuid=record.uuid, operation="create_image", original_error=e) from e
            raise

    def _upsert_image(self, conn: sqlite3.Connection, record: ImageRecord):
        placeholders = ", ".join("?" for _ in _IMAGE_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in _IMAGE_COLUMNS if col != "uuid")
        conn.execute(
            f"INSERT INTO images ({', '.join(_IMAGE_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(uuid) DO UPDATE SET {updates}",
            self._record_to_params(record))
        if record.is_deleted:
            self._drop_metadata(conn, record.uuid)

    def _upsert_metadata(self, conn: sqlite3.Connection, metadata: ExtendedMetadata):
        exists = conn.execute("SELECT 1 FROM images WHERE uuid = ?", (metadata.uuid,)).fetchone()
        if not exists:
            raise ValidationError(f"Cannot store metadata for unknown image '{metadata.uuid}'",
                                  operation="upsert_metadata", context={"uuid": metadata.uuid})
        columns = ("image_uuid",) + ExtendedMetadata.STRUCTURED_FIELDS + ("extra", "updated_at")
        values = ((metadata.uuid,)
                  + tuple(getattr(metadata, f) for f in ExtendedMetadata.STRUCTURED_FIELDS)
                  + (json.dumps(metadata.extra) if metadata.extra else None, to_iso(utc_now())))
        updates = ", ".join(f"{col} = excluded.{col}" for col in columns if col != "image_uuid")
        conn.execute(
            f"INSERT INTO image_metadata ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT(image_uuid) DO UPDATE SET {updates}",
            values)

    def _tombstone(self, conn: sqlite3.Connection, uuid: str, deleted_at: datetime) -> bool:
        ts = to_iso(deleted_at)
        cursor = conn.execute("UPDATE images SET deleted_at = ?, updated_at = ? WHERE uuid = ?", (ts, ts, uuid))
        if cursor.rowcount == 0:
            return False
        self._drop_metadata(conn, uuid)
        return True

    @staticmethod
    def _drop_metadata(conn: sqlite3.Connection, uuid: str):
        # Metadata is deleted with its parent; a resurrected image starts without it
        conn.execute("DELETE FROM image_metadata WHERE image_uuid = ?", (uuid,))

    def _apply_mutation(self, conn: sqlite3.Connection, mutation: Mutation):
        if mutation.kind is MutationKind.CREATE_IMAGE:
            self._insert_image(conn, mutation.record)
        elif mutation.kind is MutationKind.UPSERT_IMAGE:
            self._upsert_image(conn, mutation.record)
        elif mutation.kind is MutationKind.UPSERT_METADATA:
            self._upsert_metadata(conn, mutation.metadata)
        elif mutation.kind is MutationKind.TOMBSTONE:
            if not self._tombstone(conn, mutation.uuid, mutation.deleted_at or utc_now()):
                logger.debug(f"Tombstone for unknown image '{mutation.uuid}' ignored")
        else:
            raise ValidationError(f"Unknown mutation kind: {mutation.kind}", operation="apply_batch")

    def _write_sync_state(self, conn: sqlite3.Connection, updates: Dict[str, Any], *, allow_rewind: bool = False):
        unknown = set(updates) - set(_SYNC_STATE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown sync state fields: {sorted(unknown)}", operation="set_sync_state")
        updates = dict(updates)

        current = conn.execute("SELECT last_applied_sequence, anchor_id FROM sync_state WHERE id = 1").fetchone()
        new_seq = updates.get("last_applied_sequence")
        if new_seq is not None and new_seq < current["last_applied_sequence"]:
            anchor_changes = "anchor_id" in updates and updates["anchor_id"] != current["anchor_id"]
            if not (allow_rewind or anchor_changes):
                logger.warning(f"Ignoring cursor rewind from {current['last_applied_sequence']} to {new_seq} "
                               f"within anchor generation {current['anchor_id']}")
                updates.pop("last_applied_sequence")

        if "last_sync_time" in updates:
            updates["last_sync_time"] = to_iso(updates["last_sync_time"])
        if not updates:
            return
        assignments = ", ".join(f"{k} = ?" for k in updates)
        conn.execute(f"UPDATE sync_state SET {assignments} WHERE id = 1", tuple(updates.values()))

    # --- Public Mutation API ---
    def apply_batch(self, mutations: Iterable[Mutation], sync_state: Optional[Dict[str, Any]] = None, *,
                    allow_rewind: bool = False) -> int:
        """
        Applies every mutation, and the optional sync state update, in one transaction.
        Either all of it is committed or none of it is. `allow_rewind` lets a
        resync move the cursor backwards within the same anchor.

        Returns:
            The number of mutations applied.
        """
        mutations = list(mutations)
        try:
            with self.transaction() as conn:
                for mutation in mutations:
                    self._apply_mutation(conn, mutation)
                if sync_state:
                    self._write_sync_state(conn, sync_state, allow_rewind=allow_rewind)
        except (ValidationError, StorageError):
            raise
        except sqlite3.Error as e:
            logger.error(f"Batch of {len(mutations)} mutations rolled back: {e}")
            raise StorageError("Batch application failed and was rolled back", operation="apply_batch",
                               context={"mutations": len(mutations)}, original_error=e) from e
        logger.debug(f"Applied batch of {len(mutations)} mutations (sync_state={sync_state})")
        return len(mutations)

    def create_image(self, record: ImageRecord, metadata: Optional[ExtendedMetadata] = None) -> ImageRecord:
        """Strict insert; a duplicate uuid (even a tombstoned one) raises DuplicateImageError."""
        mutations = [Mutation.create_image(record)]
        if metadata is not None:
            mutations.append(Mutation.upsert_metadata(metadata))
        self.apply_batch(mutations)
        return record

    def upsert_image(self, record: ImageRecord) -> ImageRecord:
        self.apply_batch([Mutation.upsert_image(record)])
        return record

    def upsert_metadata(self, uuid: str, data: Union[ExtendedMetadata, Dict[str, Any]]) -> ExtendedMetadata:
        if isinstance(data, ExtendedMetadata):
            metadata = data if data.uuid == uuid else data.model_copy(update={"uuid": uuid})
        else:
            metadata = ExtendedMetadata.model_validate({**data, "uuid": uuid})
        self.apply_batch([Mutation.upsert_metadata(metadata)])
        return metadata

    def tombstone(self, uuid: str, deleted_at: Optional[datetime] = None) -> bool:
        """Logically deletes an image. Returns False if the uuid is unknown."""
        deleted_at = parse_timestamp(deleted_at) or utc_now()
        try:
            with self.transaction() as conn:
                return self._tombstone(conn, uuid, deleted_at)
        except sqlite3.Error as e:
            raise StorageError("Tombstone failed", operation="tombstone", context={"uuid": uuid},
                               original_error=e) from e

    # --- Queries ---
    def get_image(self, uuid: str, include_deleted: bool = False) -> Optional[ImageRecord]:
        query = "SELECT * FROM images WHERE uuid = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        row = self._fetchone(query, (uuid,))
        return self._row_to_record(row) if row else None

    def get_images(self, uuids: Iterable[str]) -> Dict[str, ImageRecord]:
        """Current state (tombstones included) for the given uuids."""
        uuids = list(dict.fromkeys(uuids))
        if not uuids:
            return {}
        found: Dict[str, ImageRecord] = {}
        # Stay under SQLite's bound-parameter limit
        for start in range(0, len(uuids), 500):
            chunk = uuids[start:start + 500]
            rows = self._fetchall(f"SELECT * FROM images WHERE uuid IN ({', '.join('?' for _ in chunk)})", tuple(chunk))
            for row in rows:
                found[row["uuid"]] = self._row_to_record(row)
        return found

    def get_extended_metadata(self, uuid: str) -> Optional[ExtendedMetadata]:
        """Metadata of an active image; absent once the parent is tombstoned."""
        row = self._fetchone(
            "SELECT m.* FROM image_metadata m JOIN images i ON i.uuid = m.image_uuid "
            "WHERE m.image_uuid = ? AND i.deleted_at IS NULL",
            (uuid,))
        return self._row_to_metadata(row) if row else None

    def get_all_metadata(self) -> Dict[str, ExtendedMetadata]:
        rows = self._fetchall("SELECT * FROM image_metadata")
        return {row["image_uuid"]: self._row_to_metadata(row) for row in rows}

    def list_active(self) -> List[ImageRecord]:
        rows = self._fetchall("SELECT * FROM images WHERE deleted_at IS NULL ORDER BY created_at DESC, id DESC")
        return [self._row_to_record(row) for row in rows]

    def list_all(self) -> List[ImageRecord]:
        """Every record including tombstones, for diffing."""
        rows = self._fetchall("SELECT * FROM images ORDER BY id ASC")
        return [self._row_to_record(row) for row in rows]

    def list_images_paginated(self, page: int = 1, page_size: int = 50, sort_by: str = "created_at",
                              sort_order: str = "desc") -> Dict[str, Any]:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive", operation="list_images_paginated",
                                  context={"page": page, "page_size": page_size})
        column = _SORTABLE_COLUMNS.get(sort_by)
        if column is None:
            raise ValidationError(f"Cannot sort by '{sort_by}'", operation="list_images_paginated")
        direction = "ASC" if str(sort_order).lower() == "asc" else "DESC"

        total = self._fetchone("SELECT COUNT(*) AS n FROM images WHERE deleted_at IS NULL")["n"]
        rows = self._fetchall(
            f"SELECT * FROM images WHERE deleted_at IS NULL ORDER BY {column} {direction}, id {direction} LIMIT ? OFFSET ?",
            (page_size, (page - 1) * page_size))
        total_pages = (total + page_size - 1) // page_size
        return {
            "images": [self._row_to_record(row) for row in rows],
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": total_pages,
            "has_more": page < total_pages,
        }

    def get_image_stats(self) -> Dict[str, Any]:
        row = self._fetchone(
            "SELECT COUNT(*) AS total, COALESCE(SUM(file_size), 0) AS total_size, "
            "COALESCE(SUM(is_corrupted), 0) AS corrupted FROM images WHERE deleted_at IS NULL")
        formats = self._fetchall(
            "SELECT format, COUNT(*) AS n FROM images WHERE deleted_at IS NULL GROUP BY format ORDER BY format")
        return {
            "total_images": row["total"],
            "total_size": row["total_size"],
            "corrupted_images": row["corrupted"],
            "by_format": {r["format"]: r["n"] for r in formats},
        }

    # --- Sync State ---
    def get_sync_state(self) -> SyncState:
        row = self._fetchone("SELECT * FROM sync_state WHERE id = 1")
        return SyncState(
            last_applied_sequence=row["last_applied_sequence"],
            last_sync_time=parse_timestamp(row["last_sync_time"]),
            anchor_id=row["anchor_id"],
            client_id=row["client_id"],
        )

    def set_sync_state(self, **partial) -> SyncState:
        """
        Partial update of the sync state singleton. A cursor rewind is ignored
        unless it comes with a different anchor_id.
        """
        try:
            with self.transaction() as conn:
                self._write_sync_state(conn, partial)
        except sqlite3.Error as e:
            raise StorageError("Failed to update sync state", operation="set_sync_state",
                               context=dict(partial), original_error=e) from e
        return self.get_sync_state()

    def reset_sync_state(self) -> SyncState:
        """Forgets the cursor and anchor so the next sync replays from the start."""
        with self.transaction() as conn:
            self._write_sync_state(conn, {"last_applied_sequence": 0, "anchor_id": None, "last_sync_time": None},
                                   allow_rewind=True)
        logger.info("Sync state reset")
        return self.get_sync_state()

    def get_or_create_client_id(self) -> str:
        with self.transaction() as conn:
            row = conn.execute("SELECT client_id FROM sync_state WHERE id = 1").fetchone()
            if row["client_id"]:
                return row["client_id"]
            client_id = f"{CLIENT_ID_PREFIX}-{uuid_lib.uuid4()}"
            conn.execute("UPDATE sync_state SET client_id = ? WHERE id = 1", (client_id,))
        logger.info(f"Generated new client id: {client_id}")
        return client_id


class TransactionContextManager:
    """Outermost-only BEGIN/COMMIT that holds the store lock for its whole duration."""

    def __init__(self, db_instance: ImageDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.db._lock.acquire()
        try:
            self.conn = self.db.get_connection()
            if not self.conn.in_transaction:
                self.conn.execute("BEGIN")
                self.is_outermost_transaction = True
        except BaseException:
            self.db._lock.release()
            raise
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if not self.is_outermost_transaction:
                return False
            if exc_type:
                logger.error(f"Transaction failed, rolling back: {exc_type.__name__} - {exc_val}")
                try:
                    self.conn.rollback()
                except sqlite3.Error as rb_err:
                    logger.critical(f"Rollback FAILED: {rb_err}")
                return False
            try:
                self.conn.commit()
            except sqlite3.Error as commit_err:
                logger.error(f"Commit FAILED, attempting rollback: {commit_err}")
                try:
                    self.conn.rollback()
                except sqlite3.Error as rb_err:
                    logger.critical(f"Rollback after failed commit also FAILED: {rb_err}")
                raise StorageError("Commit failed", operation="commit", original_error=commit_err) from commit_err
            return False
        finally:
            self.db._lock.release()

#
# End of Image_DB.py
#######################################################################################################################
