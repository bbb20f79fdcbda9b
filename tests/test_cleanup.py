"""Tests for the expiry sweep, the orphan log and the background cleaner."""

import asyncio
import io
from datetime import timedelta

import pytest

from cleanup import ExpiryCleaner, OrphanLog, sweep_expired, sweep_orphans
from conftest import FlakyStore, stored_shards
from exceptions import NotFoundError
from models import utcnow
from registry import ManifestRegistry
from transfer import TransferOrchestrator
from transport import ShardTransport

PASSWORD = "correcthorse"


@pytest.fixture
def upload_at(store, hasher, settings, object_store, sleeps):
    """Upload `data` as if it happened `hours_ago` hours in the past."""
    def _upload(data, hours_ago=0):
        moment = utcnow() - timedelta(hours=hours_ago)
        registry = ManifestRegistry(store, hasher, settings, clock=lambda: moment)
        orchestrator = TransferOrchestrator(
            ShardTransport(object_store, settings, sleep=sleeps.append), registry, settings,
        )
        return orchestrator.upload(io.BytesIO(data), PASSWORD, "old.bin").code
    return _upload


class TestSweepExpired:

    def test_removes_manifest_and_shards(self, upload_at, store, registry, tmp_path, object_store):
        code = upload_at(b"x" * 3000, hours_ago=49)
        assert len(stored_shards(tmp_path / "uploads")) == 3

        report = sweep_expired(store, object_store)

        assert report.manifests_deleted == 1
        assert report.shards_deleted == 3
        assert stored_shards(tmp_path / "uploads") == []
        assert store.count() == 0
        with pytest.raises(NotFoundError):
            registry.open(code, PASSWORD)

    def test_keeps_live_manifests(self, upload_at, store, registry, tmp_path, object_store):
        old = upload_at(b"x" * 3000, hours_ago=49)
        fresh = upload_at(b"y" * 100, hours_ago=1)

        sweep_expired(store, object_store)

        assert store.count() == 1
        assert registry.open(fresh, PASSWORD).original_name == "old.bin"
        assert store.find_by_code(old) is None
        assert len(stored_shards(tmp_path / "uploads")) == 1

    def test_is_idempotent(self, upload_at, store, object_store):
        upload_at(b"x" * 2000, hours_ago=72)

        first = sweep_expired(store, object_store)
        second = sweep_expired(store, object_store)

        assert first.manifests_deleted == 1
        assert second.manifests_deleted == 0
        assert second.failures == []

    def test_already_missing_shards_are_fine(self, upload_at, store, object_store, tmp_path):
        upload_at(b"x" * 2000, hours_ago=72)
        for path in stored_shards(tmp_path / "uploads"):
            path.unlink()

        assert sweep_expired(store, object_store).manifests_deleted == 1

    def test_undeletable_record_is_kept_and_others_proceed(self, upload_at, store, object_store):
        upload_at(b"x" * 2000, hours_ago=72)
        upload_at(b"y" * 2000, hours_ago=60)

        report = sweep_expired(store, FlakyStore(object_store, fail_deletes=True))

        assert report.manifests_deleted == 0
        assert len(report.failures) == 2
        assert store.count() == 2

        assert sweep_expired(store, object_store).manifests_deleted == 2


class TestOrphanLog:

    def test_record_and_read(self, orphan_log):
        orphan_log.record(["file:///a.bin", "file:///b.bin"], "TransportError")
        entries = orphan_log.entries()
        assert [e["locator"] for e in entries] == ["file:///a.bin", "file:///b.bin"]
        assert all(e["reason"] == "TransportError" for e in entries)

    def test_missing_file_is_empty(self, tmp_path):
        assert OrphanLog(str(tmp_path / "nope.json")).entries() == []

    def test_sweep_deletes_and_clears(self, orphan_log, object_store, tmp_path):
        locators = [object_store.put(b"\x00" * 64, "quantc_files") for _ in range(2)]
        orphan_log.record(locators, "PersistenceError")

        report = sweep_orphans(orphan_log, object_store)

        assert report.shards_deleted == 2
        assert orphan_log.entries() == []
        assert not orphan_log.path.exists()
        assert stored_shards(tmp_path / "uploads") == []

    def test_sweep_keeps_what_still_fails(self, orphan_log, object_store):
        locator = object_store.put(b"\x00" * 64, "quantc_files")
        orphan_log.record([locator], "TransportError")

        report = sweep_orphans(orphan_log, FlakyStore(object_store, fail_deletes=True))

        assert report.failures == [locator]
        assert [e["locator"] for e in orphan_log.entries()] == [locator]

    def test_entries_recorded_during_sweep_survive(self, orphan_log, object_store):
        locator = object_store.put(b"\x00" * 64, "quantc_files")
        orphan_log.record([locator], "TransportError")

        class RecordsWhileDeleting:
            """Records a new orphan mid-sweep, as an aborting upload would."""

            def delete(self, loc):
                object_store.delete(loc)
                orphan_log.record(["file:///late/orphan.bin"], "PersistenceError")

        sweep_orphans(orphan_log, RecordsWhileDeleting())

        assert [e["locator"] for e in orphan_log.entries()] == ["file:///late/orphan.bin"]

    def test_corrupt_log_is_moved_aside(self, orphan_log, object_store):
        orphan_log.path.parent.mkdir(parents=True, exist_ok=True)
        orphan_log.path.write_text("{not json")

        assert sweep_orphans(orphan_log, object_store).shards_deleted == 0
        assert not orphan_log.path.exists()
        assert len(list(orphan_log.path.parent.glob("orphans.json.corrupt-*"))) == 1

        orphan_log.record(["file:///a.bin"], "TransportError")
        assert [e["locator"] for e in orphan_log.entries()] == ["file:///a.bin"]


class TestExpiryCleaner:

    def test_run_once_runs_both_sweeps(self, upload_at, store, object_store, orphan_log):
        upload_at(b"x" * 2000, hours_ago=72)
        orphan_log.record([object_store.put(b"\x00" * 64, "quantc_files")], "TransportError")
        cleaner = ExpiryCleaner(store, object_store, orphan_log, interval_seconds=3600)

        report = asyncio.run(cleaner.run_once())

        assert report.manifests_deleted == 1
        assert report.shards_deleted == 3
        assert orphan_log.entries() == []

    def test_start_and_stop(self, store, object_store, orphan_log):
        cleaner = ExpiryCleaner(store, object_store, orphan_log, interval_seconds=3600)

        async def cycle():
            await cleaner.start()
            assert cleaner._task is not None
            await cleaner.stop()
            return cleaner._task.cancelled() or cleaner._task.done()

        assert asyncio.run(cycle())
