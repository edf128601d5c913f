# conftest.py
# Description: Shared fixtures: in-memory local store, in-process authoritative store, engine and record factory.
#
# Imports
import uuid as uuid_lib
from datetime import datetime, timedelta, timezone
#
# 3rd-party Libraries
import pytest
#
# Local Imports
from imgsync.app.core.DB_Management.Image_DB import ImageDB
from imgsync.app.core.Sync.authority import AuthoritativeImageStore
from imgsync.app.core.Sync.core import ImageSyncEngine
from imgsync.app.core.Sync.events import SyncEventBus
from imgsync.app.core.Sync.models import ExtendedMetadata, ImageRecord
from imgsync.app.core.Sync.transport import InProcessTransport
#
#######################################################################################################################
#
# Fixtures:

BASE_TIME = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def ts(minutes: int) -> datetime:
    """A timestamp `minutes` after BASE_TIME."""
    return BASE_TIME + timedelta(minutes=minutes)


@pytest.fixture
def at():
    return ts


@pytest.fixture
def make_record():
    def _make(uuid=None, filename=None, updated_at=None, created_at=None, **overrides) -> ImageRecord:
        uuid = uuid or str(uuid_lib.uuid4())
        data = {
            "uuid": uuid,
            "filename": filename or f"{uuid}.png",
            "file_size": 1024,
            "format": "png",
            "width": 640,
            "height": 480,
            "mime_type": "image/png",
            "hash": f"hash-{uuid}",
            "created_at": created_at or BASE_TIME,
            "updated_at": updated_at or created_at or BASE_TIME,
        }
        data.update(overrides)
        return ImageRecord(**data)
    return _make


@pytest.fixture
def make_metadata():
    def _make(uuid, **fields) -> ExtendedMetadata:
        data = {"camera_make": "Canon", "camera_model": "EOS R5", "iso": 200}
        data.update(fields)
        return ExtendedMetadata(uuid=uuid, **data)
    return _make


@pytest.fixture
def store():
    db = ImageDB(":memory:")
    yield db
    db.close_connection()


@pytest.fixture
def authority():
    return AuthoritativeImageStore(anchor_id="anchor-1")


@pytest.fixture
def transport(authority):
    return InProcessTransport(authority)


@pytest.fixture
def bus():
    return SyncEventBus()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(store, transport, bus, sleeps):
    eng = ImageSyncEngine(store, transport, bus, client_id="client-a", retry_delay=0.25, sleep=sleeps.append)
    yield eng
    eng.stop_auto_sync()


@pytest.fixture
def events(bus):
    """Every event published on the bus, in delivery order."""
    received = []
    bus.subscribe(None, received.append)
    return received

#
# End of conftest.py
#######################################################################################################################
