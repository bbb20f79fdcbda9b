"""
storage.py — Object storage for encrypted shards.

Two backends share one contract:
    put(data, folder) -> locator      (locator is a URL)
    get(locator)      -> bytes
    delete(locator)   -> None         (idempotent)

S3ObjectStore talks to MinIO / R2 / AWS through boto3 and can hand out
pre-signed URLs so clients upload shards directly. LocalObjectStore keeps
shards on disk and is used when S3 is disabled or unreachable.
"""

import logging
import os
import re
import uuid
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import Settings
from exceptions import StorageError, StorageUnsupportedError

logger = logging.getLogger(__name__)

_FOLDER_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def is_valid_folder(folder: str) -> bool:
    return bool(_FOLDER_RE.match(folder or ""))


def _shard_key(folder: str) -> str:
    if not is_valid_folder(folder):
        raise StorageError(f"Invalid storage folder: {folder!r}")
    return f"{folder}/{uuid.uuid4().hex}.bin"


# ─── S3 / MinIO ──────────────────────────────────────────────────────────────

class S3ObjectStore:

    backend_name = "MinIO"

    def __init__(self, settings: Settings, client=None):
        self.endpoint = settings.minio_endpoint.rstrip("/")
        self.bucket = settings.minio_bucket
        self.presign_expiry = settings.presign_expiry
        self._s3 = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            aws_access_key_id=settings.minio_access_key,
            aws_secret_access_key=settings.minio_secret_key,
            config=Config(
                signature_version="s3v4",
                connect_timeout=settings.connect_timeout,
                read_timeout=settings.read_timeout,
                # ShardTransport owns the retry policy
                retries={"total_max_attempts": 1, "mode": "standard"},
            ),
            region_name="us-east-1",
        )

    def ensure_bucket(self):
        try:
            self._s3.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchBucket"):
                self._s3.create_bucket(Bucket=self.bucket)
                logger.info(f"Created bucket: {self.bucket}")
            else:
                raise

    def locator_for(self, key: str) -> str:
        return f"{self.endpoint}/{self.bucket}/{key}"

    def key_for(self, locator: str) -> str:
        prefix = f"{self.endpoint}/{self.bucket}/"
        if not locator.startswith(prefix) or len(locator) == len(prefix):
            raise StorageError(f"Locator does not belong to bucket {self.bucket}")
        return locator[len(prefix):]

    def owns(self, locator: str) -> bool:
        try:
            self.key_for(locator)
            return True
        except StorageError:
            return False

    def put(self, data: bytes, folder: str) -> str:
        key = _shard_key(folder)
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/octet-stream",
                Metadata={"encrypted": "AES-256-GCM"},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"PUT {key} failed: {e}") from e
        return self.locator_for(key)

    def get(self, locator: str) -> bytes:
        key = self.key_for(locator)
        try:
            response = self._s3.get_object(
                Bucket=self.bucket,
                Key=key,
                ResponseCacheControl="no-cache",
            )
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"GET {key} failed: {e}") from e

    def delete(self, locator: str) -> None:
        key = self.key_for(locator)
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"DELETE {key} failed: {e}") from e

    def presign_put(self, folder: str):
        """Returns (upload_url, locator) for one shard."""
        key = _shard_key(folder)
        url = self._s3.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.presign_expiry,
        )
        return url, self.locator_for(key)

    def presign_get(self, locator: str) -> str:
        return self._s3.generate_presigned_url(
            "get_object",
            Params={
                "Bucket": self.bucket,
                "Key": self.key_for(locator),
                "ResponseCacheControl": "no-cache",
            },
            ExpiresIn=self.presign_expiry,
        )

    def get_health(self) -> dict:
        try:
            self._s3.head_bucket(Bucket=self.bucket)
            return {"status": "healthy", "backend": self.backend_name, "endpoint": self.endpoint}
        except (ClientError, BotoCoreError) as e:
            return {"status": "degraded", "backend": self.backend_name, "error": str(e)}


# ─── Local disk ──────────────────────────────────────────────────────────────

class LocalObjectStore:

    backend_name = "LocalDisk"

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        os.makedirs(self.root, exist_ok=True)

    def _path_for(self, locator: str) -> Path:
        parsed = urlparse(locator)
        if parsed.scheme != "file":
            raise StorageError(f"Not a local locator: {locator}")
        path = Path(url2pathname(parsed.path)).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(f"Locator escapes storage root: {locator}")
        return path

    def owns(self, locator: str) -> bool:
        try:
            self._path_for(locator)
            return True
        except StorageError:
            return False

    def put(self, data: bytes, folder: str) -> str:
        path = self.root / _shard_key(folder)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"LocalDisk PUT failed for {path.name}: {e}") from e
        return path.as_uri()

    def get(self, locator: str) -> bytes:
        path = self._path_for(locator)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"LocalDisk GET failed for {path.name}: {e}") from e

    def delete(self, locator: str) -> None:
        path = self._path_for(locator)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"LocalDisk DELETE failed for {path.name}: {e}") from e

    def presign_put(self, folder: str):
        raise StorageUnsupportedError("Direct uploads need an S3-compatible backend")

    def presign_get(self, locator: str) -> str:
        raise StorageUnsupportedError("Direct downloads need an S3-compatible backend")

    def get_health(self) -> dict:
        return {"status": "local_disk", "backend": self.backend_name}


def get_object_store(settings: Settings):
    """S3 when enabled and reachable, otherwise local disk."""
    if settings.use_minio:
        try:
            store = S3ObjectStore(settings)
            store.ensure_bucket()
            logger.info(f"✅ Object storage connected: {store.endpoint} / bucket={store.bucket}")
            return store
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"⚠️  Object storage unavailable ({e}). Falling back to local disk.")
    return LocalObjectStore(settings.upload_dir)
