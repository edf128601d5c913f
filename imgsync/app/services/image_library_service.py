# image_library_service.py
# Description: Composition root and application-facing surface of the image library.
#
# Imports
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from imgsync.app.core.config import get_database_path, get_setting, get_sync_settings, load_config
from imgsync.app.core.DB_Management.Image_DB import ImageDB
from imgsync.app.core.exceptions import TransientNetworkError
from imgsync.app.core.Sync.core import ImageSyncEngine
from imgsync.app.core.Sync.events import Listener, SyncEventBus, SyncEventType
from imgsync.app.core.Sync.models import (ExtendedMetadata, ImageRecord, SyncStatus, SyncSummary, WriteRequest,
                                          WriteResult)
from imgsync.app.core.Sync.transport import HttpApiTransport, SyncTransport
#
########################################################################################################################
#
# Classes:

T = TypeVar("T")


class ImageLibrary:
    """
    Wires the local store, the sync engine and the event bus together and
    exposes them to the UI layer. Reads always come from the local store;
    writes to the authoritative service go through the conflict retry.
    """

    def __init__(self, store: ImageDB, engine: ImageSyncEngine, bus: Optional[SyncEventBus] = None,
                 sync_settings: Optional[Dict[str, Any]] = None):
        self.store = store
        self.engine = engine
        self.bus = bus if bus is not None else engine.bus
        self.sync_settings = sync_settings or {"mode": "manual", "interval_seconds": 30.0}

    @classmethod
    def from_config(cls, config_path: Optional[Path] = None,
                    transport: Optional[SyncTransport] = None) -> "ImageLibrary":
        """Builds a library from the TOML config (see config.load_config)."""
        load_config(config_path, reload=config_path is not None)
        settings = get_sync_settings()

        store = ImageDB(get_database_path())
        if transport is None:
            transport = HttpApiTransport(
                base_url=get_setting("server", "base_url"),
                timeout=float(get_setting("server", "timeout_seconds", 10.0)),
                api_key=get_setting("server", "api_key") or None,
            )
        bus = SyncEventBus()
        engine = ImageSyncEngine(
            store, transport, bus,
            batch_size=settings["batch_size"],
            max_retries=settings["max_retries"],
            retry_delay=settings["retry_delay_seconds"],
            repush_local_only=settings["repush_local_only"],
        )
        logger.info(f"Image library built for {store.db_path_str} (sync mode: {settings['mode']})")
        return cls(store, engine, bus, settings)

    # --- Lifecycle ---
    def start(self) -> Optional[SyncSummary]:
        """
        First sync, then auto-sync when the configured mode is 'auto'. An
        unreachable service does not prevent the library from opening.
        """
        summary = None
        try:
            summary = self.engine.initialize()
        except TransientNetworkError as e:
            logger.warning(f"Initial sync failed, continuing offline: {e}")
        if self.sync_settings.get("mode") == "auto":
            self.engine.start_auto_sync(self.sync_settings.get("interval_seconds", 30.0))
        return summary

    def close(self) -> None:
        self.engine.stop_auto_sync()
        self.store.close_connection()
        logger.info("Image library closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # --- Queries ---
    def list_active_images(self) -> List[ImageRecord]:
        return self.store.list_active()

    def get_image(self, uuid: str) -> Optional[ImageRecord]:
        return self.store.get_image(uuid)

    def get_extended_metadata(self, uuid: str) -> Optional[ExtendedMetadata]:
        return self.store.get_extended_metadata(uuid)

    def list_images_paginated(self, page: int = 1, page_size: int = 50, sort_by: str = "created_at",
                              sort_order: str = "desc") -> Dict[str, Any]:
        return self.store.list_images_paginated(page, page_size, sort_by, sort_order)

    def get_image_stats(self) -> Dict[str, Any]:
        return self.store.get_image_stats()

    # --- Commands ---
    def sync(self, trigger: str = "manual") -> Optional[SyncSummary]:
        return self.engine.sync(trigger=trigger)

    def check_sync_status(self) -> SyncStatus:
        return self.engine.check_sync_status()

    def with_retry(self, operation: Callable[[], T], max_retries: Optional[int] = None,
                   retry_delay: Optional[float] = None) -> T:
        return self.engine.with_retry(operation, max_retries, retry_delay)

    def start_auto_sync(self, interval_seconds: Optional[float] = None) -> None:
        self.engine.start_auto_sync(interval_seconds or self.sync_settings.get("interval_seconds", 30.0))

    def stop_auto_sync(self) -> None:
        self.engine.stop_auto_sync()

    # --- Writes to the authoritative service ---
    # Each request is rebuilt per attempt so a retry carries the cursor adopted by the catch-up sync.
    def upload_image(self, record: ImageRecord, metadata: Optional[ExtendedMetadata] = None) -> WriteResult:
        return self.with_retry(lambda: self.engine.submit_write(WriteRequest.create(record, metadata)))

    def update_image(self, uuid: str, changes: Dict[str, Any],
                     metadata: Optional[ExtendedMetadata] = None) -> WriteResult:
        return self.with_retry(lambda: self.engine.submit_write(WriteRequest.update(uuid, changes, metadata)))

    def replace_image(self, record: ImageRecord, metadata: Optional[ExtendedMetadata] = None) -> WriteResult:
        return self.with_retry(lambda: self.engine.submit_write(WriteRequest.replace(record, metadata)))

    def delete_image(self, uuid: str) -> WriteResult:
        return self.with_retry(lambda: self.engine.submit_write(WriteRequest.delete(uuid)))

    # --- Local-only ingestion ---
    def add_local_image(self, record: ImageRecord, metadata: Optional[ExtendedMetadata] = None) -> ImageRecord:
        """Stores an image locally without telling the service."""
        return self.store.create_image(record, metadata)

    def delete_local_image(self, uuid: str) -> bool:
        return self.store.tombstone(uuid)

    # --- Subscriptions ---
    def subscribe(self, event_type: Optional[SyncEventType], listener: Listener) -> Callable[[], None]:
        return self.bus.subscribe(event_type, listener)

    def unsubscribe(self, listener: Listener, event_type: Optional[SyncEventType] = None) -> bool:
        return self.bus.unsubscribe(listener, event_type)

#
# End of image_library_service.py
########################################################################################################################
