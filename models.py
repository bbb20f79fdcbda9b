from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, BigInteger, JSON

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ─────────────────────────────────────────────────────────────
# File Manifest: one shared file, keyed by its retrieval code
# ─────────────────────────────────────────────────────────────
class FileManifest(Base):
    __tablename__ = "file_manifests"

    code = Column(String(6), primary_key=True)
    access_secret = Column(String, nullable=False)     # bcrypt hash, never the password
    key_salt = Column(String(32), nullable=False)      # hex
    transfer_id = Column(String(32), nullable=False)   # hex, bound into every shard
    shard_locators = Column(JSON, nullable=False)      # ordered: upload order = decrypt order
    shard_size = Column(Integer, nullable=False)
    size = Column(BigInteger, nullable=False)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False, default="application/octet-stream")
    format_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    @property
    def shard_count(self) -> int:
        return len(self.shard_locators or [])

    def is_expired(self, now: datetime = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())
