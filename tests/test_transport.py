"""Tests for shard transport retries and object storage backends."""

import io

import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from conftest import FlakyStore
from exceptions import StorageError, StorageUnsupportedError, TransportError
from storage import LocalObjectStore, S3ObjectStore, is_valid_folder
from transport import ShardTransport

WIRE = b"\x00" * 64


@pytest.fixture
def transport_for(settings, sleeps):
    def _make(backend, **overrides):
        cfg = settings.with_overrides(**overrides) if overrides else settings
        return ShardTransport(backend, cfg, sleep=sleeps.append)
    return _make


class TestUploadRetries:

    def test_succeeds_after_transient_failures(self, transport_for, object_store, sleeps):
        flaky = FlakyStore(object_store, fail_puts=2)
        transport = transport_for(flaky, retry_delay=1.0)

        locator = transport.upload(WIRE, index=4)

        assert object_store.get(locator) == WIRE
        assert flaky.put_calls == 3
        assert sleeps == [1.0, 1.0]

    def test_exhausted_budget_names_the_shard(self, transport_for, object_store, sleeps):
        flaky = FlakyStore(object_store, fail_puts=10)
        transport = transport_for(flaky, upload_attempts=3, retry_delay=1.0)

        with pytest.raises(TransportError) as exc_info:
            transport.upload(WIRE, index=7)

        assert exc_info.value.shard_index == 7
        assert flaky.put_calls == 3
        assert len(sleeps) == 2

    def test_unsupported_backend_is_not_retried(self, transport_for):
        class NoPut:
            calls = 0

            def put(self, data, folder):
                self.calls += 1
                raise StorageUnsupportedError("read only")

        backend = NoPut()
        with pytest.raises(StorageUnsupportedError):
            transport_for(backend).upload(WIRE, index=0)
        assert backend.calls == 1


class TestFetch:

    def test_fetch_retries_then_returns_body(self, transport_for, object_store):
        locator = object_store.put(WIRE, "quantc_files")
        flaky = FlakyStore(object_store, fail_gets=1)

        assert transport_for(flaky).fetch(locator, index=0) == WIRE
        assert flaky.get_calls == 2

    def test_undersized_body_is_a_failure(self, transport_for, object_store):
        locator = object_store.put(b"", "quantc_files")
        with pytest.raises(TransportError) as exc_info:
            transport_for(object_store).fetch(locator, index=2)
        assert exc_info.value.shard_index == 2

    def test_missing_object_is_a_failure(self, transport_for, object_store):
        locator = object_store.put(WIRE, "quantc_files")
        object_store.delete(locator)
        with pytest.raises(TransportError):
            transport_for(object_store).fetch(locator, index=0)


class TestDiscard:

    def test_deletes_everything(self, transport_for, object_store):
        locators = [object_store.put(WIRE, "quantc_files") for _ in range(3)]
        assert transport_for(object_store).discard(locators) == []
        for locator in locators:
            with pytest.raises(StorageError):
                object_store.get(locator)

    def test_reports_what_it_could_not_delete(self, transport_for, object_store):
        locators = [object_store.put(WIRE, "quantc_files") for _ in range(2)]
        flaky = FlakyStore(object_store, fail_deletes=True)
        assert transport_for(flaky).discard(locators) == locators


class TestLocalObjectStore:

    def test_locators_are_file_urls(self, object_store):
        locator = object_store.put(WIRE, "quantc_files")
        assert locator.startswith("file://")
        assert object_store.owns(locator)

    def test_rejects_locators_outside_root(self, object_store, tmp_path):
        outside = tmp_path / "elsewhere.bin"
        outside.write_bytes(WIRE)
        assert not object_store.owns(outside.as_uri())
        with pytest.raises(StorageError):
            object_store.get(outside.as_uri())

    def test_rejects_foreign_schemes(self, object_store):
        assert not object_store.owns("https://example.com/a.bin")

    def test_delete_is_idempotent(self, object_store):
        locator = object_store.put(WIRE, "quantc_files")
        object_store.delete(locator)
        object_store.delete(locator)

    def test_presigning_is_unsupported(self, object_store):
        with pytest.raises(StorageUnsupportedError):
            object_store.presign_put("quantc_files")

    def test_invalid_folder(self, object_store):
        assert not is_valid_folder("../etc")
        with pytest.raises(StorageError):
            object_store.put(WIRE, "../etc")

    def test_separate_roots_do_not_share(self, tmp_path):
        a = LocalObjectStore(str(tmp_path / "a"))
        b = LocalObjectStore(str(tmp_path / "b"))
        assert not b.owns(a.put(WIRE, "quantc_files"))


class TestS3ObjectStore:

    @pytest.fixture
    def s3_store(self, settings):
        cfg = settings.with_overrides(
            use_minio=True,
            minio_endpoint="http://minio.test:9000/",
            minio_bucket="shards",
        )
        return S3ObjectStore(cfg)

    def test_put_returns_bucket_locator(self, s3_store):
        with Stubber(s3_store._s3) as stub:
            stub.add_response("put_object", {}, {
                "Bucket": "shards",
                "Key": ANY,
                "Body": WIRE,
                "ContentType": "application/octet-stream",
                "Metadata": {"encrypted": "AES-256-GCM"},
            })
            locator = s3_store.put(WIRE, "quantc_files")

        assert locator.startswith("http://minio.test:9000/shards/quantc_files/")
        assert locator.endswith(".bin")
        assert s3_store.owns(locator)

    def test_get_asks_for_uncached_body(self, s3_store):
        locator = s3_store.locator_for("quantc_files/abc.bin")
        with Stubber(s3_store._s3) as stub:
            stub.add_response(
                "get_object",
                {"Body": StreamingBody(io.BytesIO(WIRE), len(WIRE))},
                {"Bucket": "shards", "Key": "quantc_files/abc.bin", "ResponseCacheControl": "no-cache"},
            )
            assert s3_store.get(locator) == WIRE

    def test_client_errors_become_storage_errors(self, s3_store):
        locator = s3_store.locator_for("quantc_files/gone.bin")
        with Stubber(s3_store._s3) as stub:
            stub.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
            with pytest.raises(StorageError):
                s3_store.get(locator)

    def test_presigned_get_disables_caching(self, s3_store):
        url = s3_store.presign_get(s3_store.locator_for("quantc_files/abc.bin"))
        assert "abc.bin" in url
        assert "response-cache-control=no-cache" in url

    def test_presigned_put_matches_locator(self, s3_store):
        url, locator = s3_store.presign_put("quantc_files")
        key = s3_store.key_for(locator)
        assert key.startswith("quantc_files/")
        assert key.rsplit("/", 1)[-1] in url

    def test_foreign_locators(self, s3_store):
        assert not s3_store.owns("http://minio.test:9000/other/x.bin")
        assert not s3_store.owns("http://minio.test:9000/shards/")
