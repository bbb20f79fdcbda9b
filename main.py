from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from contextlib import asynccontextmanager
from typing import Optional

from cleanup import ExpiryCleaner, OrphanLog
from config import Settings
from database import create_db_engine, create_session_factory, init_database
from exceptions import (
    AuthError,
    IntegrityError,
    NotFoundError,
    PersistenceError,
    StorageUnsupportedError,
    TransferCancelled,
    TransferError,
    TransportError,
    ValidationError,
)
from logging_config import setup_logging
from manifest_store import ManifestStore
from registry import ManifestRegistry
from security import PasswordHasher
from storage import get_object_store
from transfer import TransferOrchestrator, describe_error
from transport import ShardTransport

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    AuthError: 401,
    NotFoundError: 404,
    TransferCancelled: 409,
    IntegrityError: 422,
    TransportError: 502,
    PersistenceError: 503,
}


class Services:
    """Everything a request needs, built once per application."""

    def __init__(self, settings: Settings, object_store=None):
        self.settings = settings
        self.engine = create_db_engine(settings.database_url)
        init_database(self.engine)
        self.store = ManifestStore(create_session_factory(self.engine))
        self.object_store = object_store or get_object_store(settings)
        self.orphan_log = OrphanLog(settings.orphan_log)
        self.registry = ManifestRegistry(self.store, PasswordHasher(settings.bcrypt_rounds), settings)
        self.transport = ShardTransport(self.object_store, settings)
        self.orchestrator = TransferOrchestrator(
            self.transport, self.registry, settings, orphan_log=self.orphan_log,
        )
        self.cleaner = ExpiryCleaner(
            self.store, self.object_store, self.orphan_log,
            interval_seconds=settings.cleanup_interval,
        )


def create_app(settings: Optional[Settings] = None, object_store=None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    services = Services(settings, object_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Storage backend: {services.object_store.backend_name}")
        await services.cleaner.start()
        try:
            yield
        finally:
            await services.cleaner.stop()

    app = FastAPI(
        title="QuantDrop API",
        description="Share files end-to-end encrypted with a six-digit code",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services

    from transfer_routes import relay_router, router as transfer_router
    app.include_router(transfer_router)
    app.include_router(relay_router)

    @app.exception_handler(TransferError)
    async def transfer_error_handler(request: Request, exc: TransferError):
        status = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
        )
        if isinstance(exc, PersistenceError):
            logger.error(
                f"Manifest not written: {exc}; orphaned shards: {exc.orphaned_locators}"
            )
        elif status >= 500:
            logger.error(f"{exc.kind} on {request.url.path}: {exc}")
        else:
            logger.warning(f"{exc.kind} on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status,
            content={"success": False, "code": exc.kind, "message": describe_error(exc)},
        )

    @app.exception_handler(StorageUnsupportedError)
    async def unsupported_handler(request: Request, exc: StorageUnsupportedError):
        return JSONResponse(
            status_code=501,
            content={"success": False, "code": "NOT_SUPPORTED", "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "code": "SERVER_ERROR", "message": "Server Error"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
