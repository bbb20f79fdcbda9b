"""Shared pytest fixtures for all tests."""

import os
import tempfile

# main.py builds a module-level app on import; keep it out of the working tree.
_SCRATCH = tempfile.mkdtemp(prefix="quantdrop-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_SCRATCH}/module.db")
os.environ.setdefault("UPLOAD_DIR", os.path.join(_SCRATCH, "uploads"))
os.environ.setdefault("ORPHAN_LOG", os.path.join(_SCRATCH, "orphans.json"))
os.environ.setdefault("USE_MINIO", "false")

import httpx
import pytest

from config import Settings
from database import create_db_engine, create_session_factory, init_database
from exceptions import StorageError
from manifest_store import ManifestStore
from registry import ManifestRegistry
from security import PasswordHasher
from storage import LocalObjectStore, _shard_key
from transfer import TransferOrchestrator
from transport import ShardTransport
from cleanup import OrphanLog


class FlakyStore:
    """
    Wraps a real store and fails selected put/get calls.

    Args:
        inner: store that does the real work
        fail_puts: how many put() calls fail before they start succeeding
        fail_put_after: number of successful puts after which every put fails
    """

    def __init__(self, inner, fail_puts=0, fail_put_after=None, fail_gets=0, fail_deletes=False):
        self.inner = inner
        self.fail_puts = fail_puts
        self.fail_put_after = fail_put_after
        self.fail_gets = fail_gets
        self.fail_deletes = fail_deletes
        self.put_calls = 0
        self.get_calls = 0
        self.successful_puts = 0

    def put(self, data, folder):
        self.put_calls += 1
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise StorageError("simulated 503")
        if self.fail_put_after is not None and self.successful_puts >= self.fail_put_after:
            raise StorageError("simulated network error")
        self.successful_puts += 1
        return self.inner.put(data, folder)

    def get(self, locator):
        self.get_calls += 1
        if self.fail_gets > 0:
            self.fail_gets -= 1
            raise StorageError("simulated timeout")
        return self.inner.get(locator)

    def delete(self, locator):
        if self.fail_deletes:
            raise StorageError("simulated delete failure")
        return self.inner.delete(locator)


@pytest.fixture
def settings(tmp_path):
    """
    Settings pointing at a per-test SQLite file and upload directory, with
    small shards, cheap bcrypt and no retry delay.
    """
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        upload_dir=str(tmp_path / "uploads"),
        orphan_log=str(tmp_path / "data" / "orphans.json"),
        shard_size=1024,
        bcrypt_rounds=4,
        retry_delay=0.0,
    )


@pytest.fixture
def store(settings):
    engine = create_db_engine(settings.database_url)
    init_database(engine)
    yield ManifestStore(create_session_factory(engine))
    engine.dispose()


@pytest.fixture
def object_store(settings):
    return LocalObjectStore(settings.upload_dir)


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def registry(store, hasher, settings):
    return ManifestRegistry(store, hasher, settings)


@pytest.fixture
def orphan_log(settings):
    return OrphanLog(settings.orphan_log)


@pytest.fixture
def sleeps():
    """Records the delays a transport would have slept."""
    return []


@pytest.fixture
def make_orchestrator(registry, settings, orphan_log, sleeps):
    """Factory: orchestrator over any store, with optional settings overrides."""
    def _make(backend, **overrides):
        cfg = settings.with_overrides(**overrides) if overrides else settings
        transport = ShardTransport(backend, cfg, sleep=sleeps.append)
        return TransferOrchestrator(transport, registry, cfg, orphan_log=orphan_log)
    return _make


@pytest.fixture
def orchestrator(make_orchestrator, object_store):
    return make_orchestrator(object_store)


STORAGE_HOST = "http://storage.test"


class PresigningStore(LocalObjectStore):
    """
    Local disk store that hands out URLs on a fake storage host, so the
    direct-to-storage flow can run against httpx.MockTransport.
    """

    def url_for(self, locator):
        return f"{STORAGE_HOST}/{self._path_for(locator).relative_to(self.root).as_posix()}"

    def presign_put(self, folder):
        path = self.root / _shard_key(folder)
        return f"{STORAGE_HOST}/{path.relative_to(self.root).as_posix()}", path.as_uri()

    def presign_get(self, locator):
        return self.url_for(locator) + "?response-cache-control=no-cache"

    def storage_server(self, fail_puts=0):
        """MockTransport handler that serves PUT/GET against this store's root."""
        state = {"fail_puts": fail_puts, "puts": 0, "gets": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            path = self.root / request.url.path.lstrip("/")
            if request.method == "PUT":
                state["puts"] += 1
                if state["fail_puts"] > 0:
                    state["fail_puts"] -= 1
                    return httpx.Response(503)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(request.content)
                return httpx.Response(200)
            if request.method == "GET":
                state["gets"] += 1
                if not path.is_file():
                    return httpx.Response(404)
                return httpx.Response(200, content=path.read_bytes())
            return httpx.Response(405)

        return handler, state


@pytest.fixture
def presigning(settings):
    return PresigningStore(settings.upload_dir)


def stored_shards(upload_dir):
    """Paths of every shard file currently on disk."""
    return sorted(p for p in upload_dir.rglob("*.bin"))
