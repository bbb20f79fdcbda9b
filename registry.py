"""
registry.py — Server side of the manifest: codes, access secrets, the gate.

commit() is the last step of an upload. It hashes the access password,
then keeps drawing random six-digit codes until the store accepts one.
open() is the first step of a retrieval: no live manifest is NotFoundError,
a wrong password is AuthError, and nothing about shards is revealed before
both checks pass.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Tuple

from config import Settings
from encryption import FORMAT_VERSION, SALT_LENGTH, TRANSFER_ID_LENGTH, shard_count
from exceptions import AuthError, NotFoundError, PersistenceError, ValidationError
from manifest_store import ManifestStore
from models import FileManifest, as_utc, utcnow
from security import PasswordHasher, generate_code, is_valid_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManifestDraft:
    """Everything an upload knows once its last shard is stored."""
    key_salt: bytes
    transfer_id: bytes
    shard_locators: Tuple[str, ...]
    shard_size: int
    size: int
    original_name: str
    mime_type: str


@dataclass(frozen=True)
class CommittedManifest:
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class OpenedManifest:
    """A manifest that passed the access gate."""
    code: str
    key_salt: bytes
    transfer_id: bytes
    shard_locators: Tuple[str, ...]
    shard_size: int
    size: int
    original_name: str
    mime_type: str
    expires_at: datetime


def validate_draft(draft: ManifestDraft) -> None:
    if len(draft.key_salt) != SALT_LENGTH:
        raise ValidationError(f"Key salt must be {SALT_LENGTH} bytes")
    if len(draft.transfer_id) != TRANSFER_ID_LENGTH:
        raise ValidationError(f"Transfer id must be {TRANSFER_ID_LENGTH} bytes")
    if not draft.shard_locators:
        raise ValidationError("A manifest needs at least one shard")
    if draft.shard_size <= 0 or draft.size <= 0:
        raise ValidationError("Shard size and file size must be positive")
    if shard_count(draft.size, draft.shard_size) != len(draft.shard_locators):
        raise ValidationError(
            f"{len(draft.shard_locators)} shards do not cover {draft.size} bytes "
            f"at {draft.shard_size} bytes per shard"
        )
    if not draft.original_name:
        raise ValidationError("Original file name is required")


class ManifestRegistry:

    def __init__(
        self,
        store: ManifestStore,
        hasher: PasswordHasher,
        settings: Settings,
        code_generator: Callable[[], str] = generate_code,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hasher = hasher
        self.ttl = timedelta(hours=settings.manifest_ttl_hours)
        self.code_attempts = settings.code_attempts
        self._generate_code = code_generator
        self._clock = clock

    def commit(self, draft: ManifestDraft, password: str) -> CommittedManifest:
        validate_draft(draft)
        access_secret = self.hasher.hash(password)
        created_at = self._clock()
        expires_at = created_at + self.ttl

        for _ in range(self.code_attempts):
            code = self._generate_code()
            manifest = FileManifest(
                code=code,
                access_secret=access_secret,
                key_salt=draft.key_salt.hex(),
                transfer_id=draft.transfer_id.hex(),
                shard_locators=list(draft.shard_locators),
                shard_size=draft.shard_size,
                size=draft.size,
                original_name=draft.original_name,
                mime_type=draft.mime_type,
                format_version=FORMAT_VERSION,
                created_at=created_at,
                expires_at=expires_at,
            )
            if self.store.insert_if_absent(manifest):
                logger.info(
                    f"Manifest {code} committed: {len(draft.shard_locators)} shards, "
                    f"{draft.size} bytes, expires {expires_at.isoformat()}"
                )
                return CommittedManifest(code=code, expires_at=expires_at)

        raise PersistenceError(
            f"No free retrieval code after {self.code_attempts} attempts",
            orphaned_locators=draft.shard_locators,
        )

    def open(self, code: str, password: str) -> OpenedManifest:
        if not password:
            raise ValidationError("Password is required")
        manifest = self.store.find_by_code(code, now=self._clock()) if is_valid_code(code) else None
        if manifest is None:
            raise NotFoundError("File not found")
        if not self.hasher.verify(password, manifest.access_secret):
            logger.warning(f"Wrong password for manifest {code}")
            raise AuthError("Wrong password")
        return OpenedManifest(
            code=manifest.code,
            key_salt=bytes.fromhex(manifest.key_salt),
            transfer_id=bytes.fromhex(manifest.transfer_id),
            shard_locators=tuple(manifest.shard_locators),
            shard_size=manifest.shard_size,
            size=manifest.size,
            original_name=manifest.original_name,
            mime_type=manifest.mime_type,
            expires_at=as_utc(manifest.expires_at),
        )
