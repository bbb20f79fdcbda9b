"""
client.py — Client side of the protocol.

The file is split, encrypted and uploaded from the client: the server only
hands out pre-signed storage URLs and records the manifest, so plaintext
and keys never leave this process. Retrieval asks the server for the
manifest (the password gate runs there), fetches every shard straight from
storage and decrypts locally.

    with ShareClient("http://localhost:8000") as client:
        receipt = client.upload_file("report.pdf", "correcthorse")
        client.download(receipt.code, "correcthorse", "downloads/")
"""

import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import httpx

from config import Settings
from encryption import MIN_WIRE_SIZE
from exceptions import (
    AuthError,
    IntegrityError,
    NotFoundError,
    PersistenceError,
    StorageError,
    StorageUnsupportedError,
    TransferError,
    TransportError,
    ValidationError,
)
from file_service import detect_mime
from registry import CommittedManifest, ManifestDraft, OpenedManifest
from transfer import RetrievedFile, TransferOrchestrator, UploadReceipt
from transport import with_retries

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}

_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (ValidationError, AuthError, NotFoundError, IntegrityError, PersistenceError, TransportError)
}


def _raise_for_api(response: httpx.Response) -> dict:
    if response.is_success:
        return response.json()
    if response.status_code == 501:
        raise StorageUnsupportedError(response.json().get("message", "Not supported"))
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("message") or f"Server answered {response.status_code}"
    error_cls = _ERRORS_BY_KIND.get(body.get("code"), TransferError)
    raise error_cls(message)


def _api_post(api: httpx.Client, path: str, payload: dict) -> dict:
    try:
        response = api.post(path, json=payload)
    except httpx.HTTPError as e:
        raise TransportError(f"API unreachable: {e}") from e
    return _raise_for_api(response)


class HttpShardTransport:
    """Shards go straight to storage over pre-signed URLs."""

    def __init__(self, api: httpx.Client, storage_http: httpx.Client, settings: Settings,
                 sleep: Callable[[float], None] = time.sleep):
        self.api = api
        self.storage_http = storage_http
        self.folder = settings.storage_folder
        self.attempts = max(1, settings.upload_attempts)
        self.delay = settings.retry_delay
        self._sleep = sleep

    def _put(self, data: bytes) -> str:
        try:
            signed = self.api.post("/api/sign-upload", json={"folder": self.folder})
        except httpx.HTTPError as e:
            raise StorageError(f"sign-upload unreachable: {e}") from e
        if signed.status_code >= 500 and signed.status_code != 501:
            raise StorageError(f"sign-upload answered {signed.status_code}")
        _raise_for_api(signed)
        grant = signed.json()

        try:
            response = self.storage_http.put(
                grant["upload_url"],
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            raise StorageError(f"PUT failed: {e}") from e
        if not response.is_success:
            raise StorageError(f"PUT answered {response.status_code}")
        return grant["locator"]

    def _get(self, url: str) -> bytes:
        try:
            response = self.storage_http.get(url, headers=NO_CACHE_HEADERS)
        except httpx.HTTPError as e:
            raise StorageError(f"GET failed: {e}") from e
        if not response.is_success:
            raise StorageError(f"GET answered {response.status_code}")
        if len(response.content) < MIN_WIRE_SIZE:
            raise StorageError(f"Undersized body ({len(response.content)} bytes)")
        return response.content

    def upload(self, data: bytes, index: int) -> str:
        return with_retries(
            lambda: self._put(data), attempts=self.attempts, delay=self.delay,
            what="Upload", shard_index=index, sleep=self._sleep,
        )

    def fetch(self, locator: str, index: int) -> bytes:
        return with_retries(
            lambda: self._get(locator), attempts=self.attempts, delay=self.delay,
            what="Fetch", shard_index=index, sleep=self._sleep,
        )

    def discard(self, locators: Iterable[str]) -> List[str]:
        # Pre-signed grants are upload-only; nothing here can delete.
        locators = list(locators)
        if locators:
            logger.warning(f"{len(locators)} uploaded shards left behind by an aborted upload")
        return locators


class RemoteRegistry:
    """Manifest operations performed by the server on the client's behalf."""

    def __init__(self, api: httpx.Client):
        self.api = api

    def commit(self, draft: ManifestDraft, password: str) -> CommittedManifest:
        body = _api_post(self.api, "/api/finalize-upload", {
            "password": password,
            "original_name": draft.original_name,
            "mime_type": draft.mime_type,
            "parts": list(draft.shard_locators),
            "key_salt": draft.key_salt.hex(),
            "transfer_id": draft.transfer_id.hex(),
            "shard_size": draft.shard_size,
            "size": draft.size,
        })
        return CommittedManifest(code=body["code"], expires_at=datetime.fromisoformat(body["expires_at"]))

    def open(self, code: str, password: str) -> OpenedManifest:
        if not password:
            raise ValidationError("Password is required")
        body = _api_post(self.api, "/api/retrieve-meta", {"code": code, "password": password})
        return OpenedManifest(
            code=code,
            key_salt=bytes.fromhex(body["key_salt"]),
            transfer_id=bytes.fromhex(body["transfer_id"]),
            shard_locators=tuple(body["parts"]),
            shard_size=body["shard_size"],
            size=body["size"],
            original_name=body["original_name"],
            mime_type=body["mime_type"],
            expires_at=None,
        )


class ShareClient:

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        settings: Optional[Settings] = None,
        api: Optional[httpx.Client] = None,
        storage_http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or Settings()
        timeout = httpx.Timeout(settings.read_timeout, connect=settings.connect_timeout)
        self.api = api or httpx.Client(base_url=base_url, timeout=timeout)
        self.storage_http = storage_http or httpx.Client(timeout=timeout)
        self.orchestrator = TransferOrchestrator(
            HttpShardTransport(self.api, self.storage_http, settings, sleep=sleep),
            RemoteRegistry(self.api),
            settings,
        )

    def upload(self, stream, password: str, original_name: str,
               mime_type: Optional[str] = None, cancel=None) -> UploadReceipt:
        return self.orchestrator.upload(
            stream, password, original_name,
            mime_type or detect_mime(original_name), cancel=cancel,
        )

    def upload_file(self, path, password: str, cancel=None) -> UploadReceipt:
        path = Path(path)
        if not path.is_file():
            raise ValidationError(f"No such file: {path}")
        with open(path, "rb") as f:
            return self.upload(f, password, path.name, cancel=cancel)

    def retrieve(self, code: str, password: str, cancel=None) -> RetrievedFile:
        return self.orchestrator.retrieve(code.strip(), password, cancel=cancel)

    def download(self, code: str, password: str, dest_dir) -> Path:
        """Retrieve and write under dest_dir using the uploader's base name."""
        result = self.retrieve(code, password)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        name = os.path.basename(result.original_name.replace("\\", "/"))
        if name in ("", ".", ".."):
            name = "download"
        target = dest_dir / name
        with open(target, "wb") as f:
            f.write(result.data)
        return target

    def close(self):
        self.api.close()
        self.storage_http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
