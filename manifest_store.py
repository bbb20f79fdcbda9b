"""
manifest_store.py — Persistence for FileManifest records.

Single-record operations keyed by retrieval code. Uniqueness of codes is
enforced by the primary key: insert_if_absent reports a collision instead
of checking first, so two concurrent uploaders can never both win the
same code.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError as DBIntegrityError, SQLAlchemyError

from exceptions import PersistenceError
from models import FileManifest, utcnow

logger = logging.getLogger(__name__)


class ManifestStore:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def insert_if_absent(self, manifest: FileManifest) -> bool:
        """False when the code is already taken; raises PersistenceError otherwise."""
        try:
            with self._session() as db:
                db.add(manifest)
                db.commit()
                db.refresh(manifest)
                db.expunge(manifest)
                return True
        except DBIntegrityError:
            logger.info(f"Retrieval code collision on {manifest.code}")
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(f"Manifest write failed: {e}") from e

    def find_by_code(self, code: str, now: Optional[datetime] = None) -> Optional[FileManifest]:
        """Live manifest for code, or None. Expired records are invisible."""
        try:
            with self._session() as db:
                manifest = db.get(FileManifest, code)
                if manifest is None or manifest.is_expired(now):
                    return None
                db.expunge(manifest)
                return manifest
        except SQLAlchemyError as e:
            raise PersistenceError(f"Manifest lookup failed: {e}") from e

    def delete_by_code(self, code: str) -> bool:
        try:
            with self._session() as db:
                manifest = db.get(FileManifest, code)
                if manifest is None:
                    return False
                db.delete(manifest)
                db.commit()
                return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"Manifest delete failed: {e}") from e

    def find_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[FileManifest]:
        now = now or utcnow()
        query = (
            select(FileManifest)
            .where(FileManifest.expires_at <= now)
            .order_by(FileManifest.expires_at)
        )
        if limit:
            query = query.limit(limit)
        try:
            with self._session() as db:
                manifests = list(db.scalars(query))
                for manifest in manifests:
                    db.expunge(manifest)
                return manifests
        except SQLAlchemyError as e:
            raise PersistenceError(f"Expiry query failed: {e}") from e

    def count(self) -> int:
        with self._session() as db:
            return db.scalar(select(func.count()).select_from(FileManifest))
