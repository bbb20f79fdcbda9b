"""Expiry sweep and orphaned-shard cleanup."""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from exceptions import PersistenceError, StorageError
from manifest_store import ManifestStore
from models import utcnow

logger = logging.getLogger(__name__)


class OrphanLog:
    """
    JSON file of shard locators that no manifest references and that could
    not be deleted when their upload was aborted.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r") as f:
                entries = json.load(f)
            if not isinstance(entries, list):
                raise ValueError("expected a JSON list")
            return entries
        except ValueError as e:
            aside = self.path.with_name(f"{self.path.name}.corrupt-{utcnow():%Y%m%dT%H%M%S}")
            self.path.replace(aside)
            logger.error(f"Orphan log {self.path} is unreadable ({e}); moved to {aside}")
            return []

    def _write(self, entries: List[dict]):
        if not entries:
            self.path.unlink(missing_ok=True)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(entries, f, indent=2)

    def record(self, locators: Iterable[str], reason: str):
        now = utcnow().isoformat()
        with self._lock:
            entries = self._read()
            entries.extend({"locator": loc, "reason": reason, "recorded_at": now} for loc in locators)
            self._write(entries)

    def entries(self) -> List[dict]:
        with self._lock:
            return self._read()

    def settle(self, processed: List[dict], remaining: List[dict]):
        """
        Drop the processed entries except those in remaining. Entries
        recorded since `processed` was read are kept.
        """
        with self._lock:
            current = self._read()
            self._write(remaining + [e for e in current if e not in processed])


@dataclass
class SweepReport:
    manifests_deleted: int = 0
    shards_deleted: int = 0
    failures: List[str] = field(default_factory=list)


def sweep_expired(store: ManifestStore, object_store, now: Optional[datetime] = None) -> SweepReport:
    """
    Delete every expired manifest: shards first, then the record. A record
    whose shards cannot all be deleted is kept for the next run; one bad
    record never stops the sweep. Safe to run repeatedly or concurrently.
    """
    report = SweepReport()
    for manifest in store.find_expired(now or utcnow()):
        try:
            for locator in manifest.shard_locators:
                object_store.delete(locator)
                report.shards_deleted += 1
            if store.delete_by_code(manifest.code):
                report.manifests_deleted += 1
        except (StorageError, PersistenceError) as e:
            logger.warning(f"Expiry sweep skipped {manifest.code}: {e}")
            report.failures.append(manifest.code)
    if report.manifests_deleted or report.failures:
        logger.info(
            f"Expiry sweep: {report.manifests_deleted} manifests, "
            f"{report.shards_deleted} shards deleted, {len(report.failures)} failed"
        )
    return report


def sweep_orphans(orphan_log: OrphanLog, object_store) -> SweepReport:
    report = SweepReport()
    entries = orphan_log.entries()
    if not entries:
        return report

    remaining = []
    for entry in entries:
        locator = entry.get("locator")
        if not locator:
            continue
        try:
            object_store.delete(locator)
            report.shards_deleted += 1
        except StorageError as e:
            logger.warning(f"Orphaned shard {locator} still not deletable: {e}")
            report.failures.append(locator)
            remaining.append(entry)

    orphan_log.settle(entries, remaining)
    logger.info(f"Orphan sweep: {report.shards_deleted} cleaned, {len(remaining)} remaining")
    return report


class ExpiryCleaner:
    """Background task that runs both sweeps every `interval_seconds`."""

    def __init__(self, store: ManifestStore, object_store, orphan_log: OrphanLog,
                 interval_seconds: int = 3600):
        self.store = store
        self.object_store = object_store
        self.orphan_log = orphan_log
        self.interval_seconds = interval_seconds
        self._running = False
        self._task = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Cleanup task already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started expiry cleanup task (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped expiry cleanup task")

    async def run_once(self) -> SweepReport:
        expired = await asyncio.to_thread(sweep_expired, self.store, self.object_store)
        orphans = await asyncio.to_thread(sweep_orphans, self.orphan_log, self.object_store)
        expired.shards_deleted += orphans.shards_deleted
        expired.failures.extend(orphans.failures)
        return expired

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                if not self._running:
                    break
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}", exc_info=True)
