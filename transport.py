"""
transport.py — Moves encrypted shards in and out of object storage.

ShardTransport wraps a storage backend with the retry policy every shard
gets: a fixed number of attempts separated by a fixed delay. Once the
budget is spent the failure becomes a TransportError naming the shard.
"""

import logging
import time
from typing import Callable, Iterable, List

from config import Settings
from encryption import MIN_WIRE_SIZE
from exceptions import StorageError, StorageUnsupportedError, TransportError

logger = logging.getLogger(__name__)


def with_retries(operation: Callable, *, attempts: int, delay: float, what: str,
                 shard_index: int, sleep: Callable[[float], None] = time.sleep):
    """
    Run operation() until it succeeds or attempts are exhausted.
    Only StorageError counts as transient; anything else propagates at once.
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except StorageUnsupportedError:
            raise
        except StorageError as e:
            last_error = e
            if attempt < attempts:
                logger.warning(
                    f"{what} shard {shard_index} failed (attempt {attempt}/{attempts}): {e}; "
                    f"retrying in {delay}s"
                )
                sleep(delay)
    logger.error(f"{what} shard {shard_index} failed after {attempts} attempts: {last_error}")
    raise TransportError(
        f"{what} of shard {shard_index} failed after {attempts} attempts",
        shard_index=shard_index,
    ) from last_error


class ShardTransport:

    def __init__(self, store, settings: Settings, sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.folder = settings.storage_folder
        self.attempts = max(1, settings.upload_attempts)
        self.delay = settings.retry_delay
        self._sleep = sleep

    def upload(self, data: bytes, index: int) -> str:
        return with_retries(
            lambda: self.store.put(data, self.folder),
            attempts=self.attempts, delay=self.delay,
            what="Upload", shard_index=index, sleep=self._sleep,
        )

    def fetch(self, locator: str, index: int) -> bytes:
        def _get():
            body = self.store.get(locator)
            if body is None or len(body) < MIN_WIRE_SIZE:
                raise StorageError(f"Undersized body ({0 if body is None else len(body)} bytes)")
            return body

        return with_retries(
            _get, attempts=self.attempts, delay=self.delay,
            what="Fetch", shard_index=index, sleep=self._sleep,
        )

    def discard(self, locators: Iterable[str]) -> List[str]:
        """Best-effort delete. Returns the locators that could not be removed."""
        failed = []
        for locator in locators:
            try:
                self.store.delete(locator)
            except StorageError as e:
                logger.warning(f"Compensating delete failed for {locator}: {e}")
                failed.append(locator)
        return failed
