"""
config.py — Runtime settings for QuantDrop.

Everything is read from the environment (a local .env file is honoured)
exactly once, in Settings.from_env(). Components receive a Settings
instance at construction and never look at os.environ themselves.
"""

import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

MB = 1024 * 1024


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./quantdrop.db"

    # Object storage
    use_minio: bool = False
    minio_endpoint: str = "http://localhost:9000"
    minio_access_key: str = "admin"
    minio_secret_key: str = "StrongPassword123"
    minio_bucket: str = "quantdrop"
    upload_dir: str = "uploads"
    storage_folder: str = "quantc_files"
    presign_expiry: int = 3600
    connect_timeout: float = 5.0
    read_timeout: float = 30.0

    # Transfer protocol
    shard_size: int = 8 * MB
    upload_attempts: int = 3
    retry_delay: float = 1.0
    upload_concurrency: int = 1
    fetch_concurrency: int = 1

    # Access control
    min_password_length: int = 6
    bcrypt_rounds: int = 10
    code_attempts: int = 20

    # Expiry
    manifest_ttl_hours: int = 48
    cleanup_interval: int = 3600
    orphan_log: str = "data/orphaned_shards.json"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            use_minio=_env_bool("USE_MINIO", "false"),
            minio_endpoint=os.getenv("MINIO_ENDPOINT", cls.minio_endpoint),
            minio_access_key=os.getenv("MINIO_ROOT_USER", cls.minio_access_key),
            minio_secret_key=os.getenv("MINIO_ROOT_PASSWORD", cls.minio_secret_key),
            minio_bucket=os.getenv("MINIO_BUCKET", cls.minio_bucket),
            upload_dir=os.getenv("UPLOAD_DIR", cls.upload_dir),
            storage_folder=os.getenv("STORAGE_FOLDER", cls.storage_folder),
            presign_expiry=int(os.getenv("PRESIGN_EXPIRY", str(cls.presign_expiry))),
            connect_timeout=float(os.getenv("CONNECT_TIMEOUT", str(cls.connect_timeout))),
            read_timeout=float(os.getenv("READ_TIMEOUT", str(cls.read_timeout))),
            shard_size=int(float(os.getenv("SHARD_SIZE_MB", "8")) * MB),
            upload_attempts=int(os.getenv("UPLOAD_ATTEMPTS", str(cls.upload_attempts))),
            retry_delay=float(os.getenv("RETRY_DELAY", str(cls.retry_delay))),
            upload_concurrency=int(os.getenv("UPLOAD_CONCURRENCY", str(cls.upload_concurrency))),
            fetch_concurrency=int(os.getenv("FETCH_CONCURRENCY", str(cls.fetch_concurrency))),
            min_password_length=int(os.getenv("MIN_PASSWORD_LENGTH", str(cls.min_password_length))),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", str(cls.bcrypt_rounds))),
            manifest_ttl_hours=int(os.getenv("MANIFEST_TTL_HOURS", str(cls.manifest_ttl_hours))),
            cleanup_interval=int(os.getenv("CLEANUP_INTERVAL", str(cls.cleanup_interval))),
            orphan_log=os.getenv("ORPHAN_LOG", cls.orphan_log),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)
