"""Error taxonomy for sharded transfers."""

from typing import Iterable, Optional


class TransferError(Exception):
    """Base class for every error a transfer surfaces to its caller."""

    kind = "TRANSFER_ERROR"


class ValidationError(TransferError):
    """
    Missing file or password, password too short, malformed code.
    Raised before any network I/O.
    """

    kind = "VALIDATION_ERROR"


class TransportError(TransferError):
    """A shard upload or fetch failed after exhausting its retry budget."""

    kind = "TRANSPORT_ERROR"

    def __init__(self, message: str, shard_index: Optional[int] = None):
        super().__init__(message)
        self.shard_index = shard_index


class NotFoundError(TransferError):
    """
    No live manifest for the retrieval code. Never says whether the code
    expired or never existed.
    """

    kind = "NOT_FOUND"


class AuthError(TransferError):
    """Password did not match the manifest's access secret."""

    kind = "AUTH_ERROR"


class IntegrityError(TransferError):
    """Shard authentication failed: wrong password or corrupted data."""

    kind = "INTEGRITY_ERROR"


class PersistenceError(TransferError):
    """
    The manifest could not be written after all shards were uploaded.
    The shards listed in orphaned_locators have no manifest pointing at them.
    """

    kind = "PERSISTENCE_ERROR"

    def __init__(self, message: str, orphaned_locators: Iterable[str] = ()):
        super().__init__(message)
        self.orphaned_locators = list(orphaned_locators)


class TransferCancelled(TransferError):
    kind = "CANCELLED"


class StorageError(Exception):
    """Transient object-storage failure (network, timeout, non-2xx)."""


class StorageUnsupportedError(StorageError):
    """The configured storage backend cannot perform the operation."""
