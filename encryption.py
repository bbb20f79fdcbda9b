from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from dataclasses import dataclass
from typing import BinaryIO, Iterator
import os
import struct

from exceptions import IntegrityError, ValidationError

# Frozen parameters of manifest format version 1.
FORMAT_VERSION = 1
KDF_ITERATIONS = 100000
KEY_LENGTH = 32
SALT_LENGTH = 16
TRANSFER_ID_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16
SHARD_OVERHEAD = NONCE_LENGTH + TAG_LENGTH
MIN_WIRE_SIZE = SHARD_OVERHEAD + 1

_AAD_MAGIC = b"QDS1"


@dataclass(frozen=True)
class Shard:
    index: int
    data: bytes
    final: bool


# ─── Key derivation ──────────────────────────────────────────────────────────

def new_salt() -> bytes:
    return os.urandom(SALT_LENGTH)


def new_transfer_id() -> bytes:
    return os.urandom(TRANSFER_ID_LENGTH)


def derive_key(password: str, salt: bytes) -> bytes:
    """PBKDF2-HMAC-SHA256 → 256-bit AES key. Same inputs, same key, any machine."""
    if not password:
        raise ValidationError("Password is required")
    if len(salt) != SALT_LENGTH:
        raise ValidationError(f"Key salt must be {SALT_LENGTH} bytes")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


# ─── Shard codec ─────────────────────────────────────────────────────────────

def shard_aad(transfer_id: bytes, index: int, final: bool) -> bytes:
    """
    Associated data bound into each shard's tag: which file, which position,
    and whether it is the last one. Reordered, dropped, appended or
    foreign shards all fail authentication.
    """
    return _AAD_MAGIC + transfer_id + struct.pack(">IB", index, 1 if final else 0)


def encrypt_shard(plain_chunk: bytes, key: bytes, aad: bytes = b"") -> bytes:
    """AES-256-GCM. Wire format: nonce(12) || ciphertext || tag(16)."""
    nonce = os.urandom(NONCE_LENGTH)
    return nonce + AESGCM(key).encrypt(nonce, plain_chunk, aad or None)


def decrypt_shard(wire_bytes: bytes, key: bytes, aad: bytes = b"") -> bytes:
    if len(wire_bytes) < MIN_WIRE_SIZE:
        raise IntegrityError("Shard is truncated or empty")
    nonce = wire_bytes[:NONCE_LENGTH]
    ciphertext = wire_bytes[NONCE_LENGTH:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad or None)
    except InvalidTag:
        raise IntegrityError("Wrong password or corrupted data") from None


# ─── Splitting ───────────────────────────────────────────────────────────────

def shard_count(length: int, shard_size: int) -> int:
    return -(-length // shard_size)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        piece = stream.read(size - len(buf))
        if not piece:
            break
        buf += piece
    return bytes(buf)


def iter_shards(stream: BinaryIO, shard_size: int) -> Iterator[Shard]:
    """
    Yield consecutive plaintext shards of exactly shard_size bytes, the last
    one holding the remainder. Reads one shard ahead so the final flag is
    known without the total length; never yields an empty shard.
    """
    if shard_size <= 0:
        raise ValidationError("Shard size must be positive")

    current = _read_exact(stream, shard_size)
    if not current:
        raise ValidationError("File is empty")

    index = 0
    while True:
        following = _read_exact(stream, shard_size) if len(current) == shard_size else b""
        yield Shard(index=index, data=current, final=not following)
        if not following:
            return
        current = following
        index += 1
