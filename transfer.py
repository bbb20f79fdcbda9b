"""
transfer.py — End-to-end upload and retrieval of sharded encrypted files.

Upload:    validate → salt + key → (encrypt, upload) per shard → commit manifest
Retrieval: gate (code + password) → key → (fetch, decrypt) per shard → join

Shards are processed in order with at most `concurrency` of them held in
memory at once. Any shard failure aborts the whole transfer; an aborted
upload deletes the shards it already stored and records whatever it could
not delete in the orphan log. No manifest ever points at a missing shard and
no caller ever receives part of a file.
"""

import enum
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Callable, Dict, Iterable, Optional

from config import Settings
from encryption import (
    decrypt_shard,
    derive_key,
    encrypt_shard,
    iter_shards,
    new_salt,
    new_transfer_id,
    shard_aad,
)
from exceptions import IntegrityError, PersistenceError, TransferCancelled, TransferError, ValidationError
from registry import ManifestDraft, OpenedManifest
from security import validate_password

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class TransferState(enum.Enum):
    IDLE = "idle"
    DERIVING = "deriving"
    UPLOADING_SHARDS = "uploading_shards"
    FETCHING_SHARDS = "fetching_shards"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    TransferState.IDLE: {TransferState.DERIVING},
    TransferState.DERIVING: {TransferState.UPLOADING_SHARDS, TransferState.FETCHING_SHARDS},
    TransferState.UPLOADING_SHARDS: {TransferState.FINALIZING},
    TransferState.FETCHING_SHARDS: {TransferState.DONE},
    TransferState.FINALIZING: {TransferState.DONE},
    TransferState.DONE: set(),
    TransferState.FAILED: set(),
}


class Transfer:
    """Progress of one upload or retrieval. DONE and FAILED are terminal."""

    def __init__(self, kind: str):
        self.kind = kind
        self.state = TransferState.IDLE
        self.reason: Optional[str] = None
        self.shards_done = 0

    @property
    def finished(self) -> bool:
        return self.state in (TransferState.DONE, TransferState.FAILED)

    def advance(self, state: TransferState):
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.kind}: illegal transition {self.state.value} -> {state.value}")
        logger.debug(f"{self.kind}: {self.state.value} -> {state.value}")
        self.state = state

    def shard_finished(self):
        self.shards_done += 1

    def fail(self, reason: str):
        if self.finished:
            raise RuntimeError(f"{self.kind}: already {self.state.value}")
        logger.debug(f"{self.kind}: {self.state.value} -> failed ({reason})")
        self.state = TransferState.FAILED
        self.reason = reason


@dataclass(frozen=True)
class UploadReceipt:
    code: str
    expires_at: datetime
    shard_count: int
    size: int


@dataclass(frozen=True)
class RetrievedFile:
    original_name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def _check_cancel(cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise TransferCancelled("Transfer cancelled")


def _run_windowed(jobs: Iterable, submit: Callable, concurrency: int,
                  results: Dict[int, object], cancel: Optional[threading.Event],
                  on_result: Optional[Callable[[], None]] = None):
    """
    Run submit(job) -> (index, result) for every job, keeping at most
    `concurrency` in flight. Results land in `results` keyed by index, and
    on_result is called for each one from the calling thread only.
    On the first failure nothing new is started, in-flight work is drained
    (its successes still recorded) and the failure is raised.
    """
    if concurrency <= 1:
        for job in jobs:
            _check_cancel(cancel)
            index, value = submit(job)
            results[index] = value
            if on_result:
                on_result()
        return

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="shard") as pool:
        in_flight = set()
        error = None
        try:
            for job in jobs:
                _check_cancel(cancel)
                in_flight.add(pool.submit(submit, job))
                if len(in_flight) >= concurrency:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    error = _collect(done, results, on_result)
                    if error:
                        break
        except BaseException as e:
            error = e

        if in_flight:
            done, _ = wait(in_flight)
            later = _collect(done, results, on_result)
            error = error or later
        if error:
            raise error


def _collect(done, results, on_result=None):
    first_error = None
    for future in done:
        exc = future.exception()
        if exc is not None:
            first_error = first_error or exc
            continue
        index, value = future.result()
        results[index] = value
        if on_result:
            on_result()
    return first_error


class TransferOrchestrator:

    def __init__(self, transport, registry, settings: Settings, orphan_log=None):
        self.transport = transport
        self.registry = registry
        self.shard_size = settings.shard_size
        self.min_password_length = settings.min_password_length
        self.upload_concurrency = max(1, settings.upload_concurrency)
        self.fetch_concurrency = max(1, settings.fetch_concurrency)
        self.orphan_log = orphan_log

    # ─── Upload ────────────────────────────────────────────────────────

    def upload(
        self,
        stream: BinaryIO,
        password: str,
        original_name: str,
        mime_type: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        transfer: Optional[Transfer] = None,
    ) -> UploadReceipt:
        transfer = transfer or Transfer("upload")
        uploaded: Dict[int, str] = {}
        try:
            validate_password(password, self.min_password_length)
            if not original_name:
                raise ValidationError("File name is required")

            transfer.advance(TransferState.DERIVING)
            key_salt = new_salt()
            transfer_id = new_transfer_id()
            key = derive_key(password, key_salt)

            transfer.advance(TransferState.UPLOADING_SHARDS)
            sizes: Dict[int, int] = {}

            def upload_one(shard):
                wire = encrypt_shard(shard.data, key, shard_aad(transfer_id, shard.index, shard.final))
                sizes[shard.index] = len(shard.data)
                locator = self.transport.upload(wire, shard.index)
                logger.debug(f"Shard {shard.index} stored ({len(wire)} bytes)")
                return shard.index, locator

            _run_windowed(
                iter_shards(stream, self.shard_size), upload_one,
                self.upload_concurrency, uploaded, cancel, on_result=transfer.shard_finished,
            )
            _check_cancel(cancel)

            transfer.advance(TransferState.FINALIZING)
            locators = tuple(uploaded[i] for i in range(len(uploaded)))
            draft = ManifestDraft(
                key_salt=key_salt,
                transfer_id=transfer_id,
                shard_locators=locators,
                shard_size=self.shard_size,
                size=sum(sizes.values()),
                original_name=original_name,
                mime_type=mime_type or DEFAULT_MIME_TYPE,
            )
            committed = self.registry.commit(draft, password)
        except BaseException as e:
            reason = e.__class__.__name__
            if not transfer.finished:
                transfer.fail(reason)
            if uploaded:
                remaining = self._compensate(list(uploaded.values()), reason)
                if isinstance(e, PersistenceError):
                    e.orphaned_locators = remaining
            raise

        transfer.advance(TransferState.DONE)
        return UploadReceipt(
            code=committed.code,
            expires_at=committed.expires_at,
            shard_count=len(locators),
            size=draft.size,
        )

    def _compensate(self, locators, reason: str):
        logger.warning(f"Upload aborted ({reason}); deleting {len(locators)} stored shards")
        remaining = self.transport.discard(locators)
        if remaining:
            logger.error(f"{len(remaining)} shards could not be deleted and are now orphaned")
            if self.orphan_log is not None:
                try:
                    self.orphan_log.record(remaining, reason)
                except (OSError, ValueError) as e:
                    logger.error(f"Orphan log unavailable ({e}); unrecorded shards: {remaining}")
        return remaining

    # ─── Retrieval ─────────────────────────────────────────────────────

    def open(self, code: str, password: str) -> OpenedManifest:
        return self.registry.open(code, password)

    def retrieve(
        self,
        code: str,
        password: str,
        cancel: Optional[threading.Event] = None,
        transfer: Optional[Transfer] = None,
    ) -> RetrievedFile:
        transfer = transfer or Transfer("retrieve")
        try:
            manifest = self.registry.open(code, password)

            transfer.advance(TransferState.DERIVING)
            key = derive_key(password, manifest.key_salt)

            transfer.advance(TransferState.FETCHING_SHARDS)
            data = self._fetch_all(manifest, key, cancel, transfer)
        except BaseException as e:
            if not transfer.finished:
                transfer.fail(e.__class__.__name__)
            raise

        transfer.advance(TransferState.DONE)
        return RetrievedFile(
            original_name=manifest.original_name,
            mime_type=manifest.mime_type,
            data=data,
        )

    def _fetch_all(self, manifest: OpenedManifest, key: bytes,
                   cancel: Optional[threading.Event], transfer: Transfer) -> bytes:
        last = len(manifest.shard_locators) - 1

        def fetch_one(job):
            index, locator = job
            wire = self.transport.fetch(locator, index)
            plain = decrypt_shard(wire, key, shard_aad(manifest.transfer_id, index, index == last))
            return index, plain

        plaintexts: Dict[int, bytes] = {}
        _run_windowed(
            enumerate(manifest.shard_locators), fetch_one,
            self.fetch_concurrency, plaintexts, cancel, on_result=transfer.shard_finished,
        )
        data = b"".join(plaintexts[i] for i in range(len(manifest.shard_locators)))
        if len(data) != manifest.size:
            raise IntegrityError("Decrypted size does not match the manifest")
        return data


def describe_error(error: TransferError) -> str:
    """Message for end users; says whether to retry the code, the password, or give up."""
    if error.kind == "NOT_FOUND":
        return "Invalid code, or the file has expired."
    if error.kind == "AUTH_ERROR":
        return "Wrong password."
    if error.kind == "INTEGRITY_ERROR":
        return "Wrong password or corrupted data; the file cannot be decrypted."
    if error.kind == "TRANSPORT_ERROR":
        return "Storage is unreachable right now. Please try again."
    return str(error)
