# retry.py
# Description: Conflict-aware retry combinator for writes against the authoritative service.
#
# Imports
import time
from typing import Callable, Optional, TypeVar
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from imgsync.app.core.exceptions import ConflictError
#
########################################################################################################################
#
# Functions:

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 0.5


def with_sync_retry(operation: Callable[[], T],
                    on_conflict: Callable[[ConflictError], object],
                    max_retries: int = DEFAULT_MAX_RETRIES,
                    delay: float = DEFAULT_RETRY_DELAY,
                    sleep: Optional[Callable[[float], None]] = None) -> T:
    """
    Runs `operation`, catching up and retrying when it reports a conflict.

    On ConflictError the `on_conflict` hook runs (normally a sync), then the
    combinator waits `delay` seconds and calls `operation` again. The operation
    has to rebuild its request on every call so the retry carries the
    freshly synced sequence. After `max_retries` retries the last
    ConflictError is raised. Any other exception propagates immediately.
    """
    if max_retries < 0:
        raise ValueError("max_retries cannot be negative")
    sleep = sleep or time.sleep

    attempt = 0
    while True:
        try:
            return operation()
        except ConflictError as e:
            if attempt >= max_retries:
                logger.warning(f"Write still conflicting after {max_retries} retries: {e}")
                raise
            attempt += 1
            logger.info(f"Sync conflict (operations behind: {e.operations_behind}); "
                        f"catching up before retry {attempt}/{max_retries}")
            on_conflict(e)
            if delay > 0:
                sleep(delay)

#
# End of retry.py
########################################################################################################################
