from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .db import Base, build_engine, build_session_factory
from .errors import (
    AlreadyExists,
    ArchiveRejected,
    DocumentRejected,
    InvalidFilename,
    IOFailure,
    LockTimeout,
    NotFound,
    PathEscape,
    RatioExceeded,
    SizeExceeded,
    StorageError,
    UnsupportedExtension,
)
from .routers import archives, audit, files
from .services.archives import ArchiveManager
from .services.audit import DatabaseAuditLog
from .services.file_ops import GuardedFileOps

logger = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    'Content-Security-Policy': "default-src 'none'",
    'X-Frame-Options': 'DENY',
    'X-Content-Type-Options': 'nosniff',
    'Referrer-Policy': 'no-referrer',
}

_STATUS_BY_ERROR: tuple[tuple[type[StorageError], int], ...] = (
    (PathEscape, 403),
    (InvalidFilename, 400),
    (UnsupportedExtension, 415),
    (SizeExceeded, 413),
    (RatioExceeded, 422),
    (ArchiveRejected, 422),
    (DocumentRejected, 422),
    (LockTimeout, 503),
    (NotFound, 404),
    (AlreadyExists, 409),
    (IOFailure, 500),
)

LOCK_RETRY_AFTER_SEC = 1


def status_for(exc: StorageError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _apply_security_headers(response):
    for key, value in _SECURITY_HEADERS.items():
        response.headers[key] = value
    return response


async def storage_error_handler(request: Request, exc: StorageError):
    headers = {'Retry-After': str(LOCK_RETRY_AFTER_SEC)} if exc.retryable else None
    response = JSONResponse(jsonable_encoder(exc.to_dict()), status_code=status_for(exc), headers=headers)
    return _apply_security_headers(response)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception('Unhandled error on %s %s', request.method, request.url.path)
    response = JSONResponse({'detail': 'Internal server error. Please try again.'}, status_code=500)
    return _apply_security_headers(response)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)

    audit_log = DatabaseAuditLog(build_session_factory(engine))
    file_ops = GuardedFileOps.from_settings(settings, audit_log)
    app.state.audit = audit_log
    app.state.file_ops = file_ops
    app.state.archives = ArchiveManager(file_ops)
    logger.info('Storage root %s, lock directory %s', file_ops.root, file_ops.locks.lock_dir)
    try:
        yield
    finally:
        engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.middleware('http')
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        return _apply_security_headers(response)

    @app.get('/healthz')
    def healthz():
        return {'ok': True}

    app.include_router(files.router)
    app.include_router(archives.router)
    app.include_router(audit.router)
    return app


app = create_app()
