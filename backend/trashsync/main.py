import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from trashsync.config import settings
from trashsync.database import create_tables
from trashsync.exceptions import (
    TrashSyncError,
    CorruptDataError,
    NotFoundError,
    ServiceMismatchError,
    ConflictError,
    ConcurrencyError,
    RollbackUnavailableError,
    RemoteError,
    UpstreamFetchError,
)
from trashsync.routers import templates, deployments, cache, backups
from trashsync.services.backup_cleanup import cleanup_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases
ERROR_STATUS_CODES = [
    (NotFoundError, 404),
    (ConcurrencyError, 409),
    (ConflictError, 409),
    (RollbackUnavailableError, 409),
    (ServiceMismatchError, 422),
    (CorruptDataError, 500),
    (UpstreamFetchError, 502),
    (RemoteError, 502),
]


def status_code_for(error: TrashSyncError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create tables, then the first cleanup pass runs right away
    await create_tables()
    cleanup_service.start()
    yield
    # Shutdown: an in-flight cleanup pass is allowed to finish
    await cleanup_service.stop()


app = FastAPI(
    title=settings.app_name,
    description="Sync TRaSH Guides custom formats and quality profiles to Radarr and Sonarr",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrashSyncError)
async def trashsync_error_handler(request: Request, exc: TrashSyncError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Include routers
app.include_router(templates.router, prefix="/api/templates", tags=["Templates"])
app.include_router(deployments.router, prefix="/api/deployments", tags=["Deployments"])
app.include_router(cache.router, prefix="/api/cache", tags=["Cache"])
app.include_router(backups.router, prefix="/api/backups", tags=["Backups"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": settings.app_name}
