# Sync_Deps.py
# Description: Provides the process-wide authoritative image store to the sync endpoints.
#
# Imports
import threading
from typing import Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from imgsync.app.core.Sync.authority import AuthoritativeImageStore
#
#######################################################################################################################
#
# Functions:

_authority: Optional[AuthoritativeImageStore] = None
_authority_lock = threading.Lock()


def get_authority() -> AuthoritativeImageStore:
    """FastAPI dependency returning the shared AuthoritativeImageStore, created on first use."""
    global _authority
    if _authority is None:
        with _authority_lock:
            if _authority is None:
                _authority = AuthoritativeImageStore()
                logger.info(f"Created authoritative image store (anchor {_authority.anchor_id})")
    return _authority


def set_authority(authority: Optional[AuthoritativeImageStore]) -> None:
    """Installs (or clears, with None) the shared store. Used by create_app and tests."""
    global _authority
    with _authority_lock:
        _authority = authority

#
# End of Sync_Deps.py
#######################################################################################################################
