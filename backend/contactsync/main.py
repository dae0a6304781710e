import logging

from dotenv import load_dotenv

# Load environment variables FIRST - before any other imports
load_dotenv()

# ruff: noqa: E402
from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contactsync.config import get_settings
from contactsync.constants import CONTACTS_PREFIX
from contactsync.database import db_session
from contactsync.database import initialize_database
from contactsync.errors import SyncError
from contactsync.routers.contacts import router as contacts_router
from contactsync.routers.metrics import router as metrics_router
from contactsync.routers.sync import router as sync_router
from contactsync.routers.system import router as system_router
from contactsync.routers.websocket import router as websocket_router
from contactsync.services.device_registry import DeviceRegistry

# Long-running loops keep the event loop alive and make pytest hang after the
# last test, so the liveness service is skipped when ``TESTING`` is truthy
# (set by ``backend/tests/conftest.py``).
from contactsync.services.liveness import liveness_service
from contactsync.websocket.manager import presence_tracker

_settings = get_settings()

# --------------------------------------------------------------------------
# LOGGING CONFIGURATION
# --------------------------------------------------------------------------
#
# - Default log level: INFO
# - Can be set at runtime with LOG_LEVEL env (e.g. LOG_LEVEL=WARNING for CI)
#
_log_level = getattr(logging, _settings.log_level.upper(), logging.INFO)
logging.basicConfig(level=_log_level, format="%(levelname)s - %(message)s", handlers=[logging.StreamHandler()])

logger = logging.getLogger(__name__)

app = FastAPI(title="contactsync", redirect_slashes=True)

# ------------------------------------------------------------------
# CORS – open wildcard unless ``ALLOWED_CORS_ORIGINS`` lists origins
# (comma-separated).  Browser clients of the contacts API are served from
# arbitrary local origins during development.
# ------------------------------------------------------------------

if _settings.allowed_cors_origins.strip():
    cors_origins = [o.strip() for o in _settings.allowed_cors_origins.split(",") if o.strip()]
else:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials="*" not in cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Render expected failures with the status code they carry."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Sync endpoints are served at the root and, for older clients, below
# /contacts as well.  They must be registered before the contacts router so
# /contacts/sync/... is never mistaken for a contact id.
app.include_router(sync_router)
app.include_router(sync_router, prefix=CONTACTS_PREFIX)
app.include_router(contacts_router, prefix=CONTACTS_PREFIX)
app.include_router(websocket_router)
app.include_router(system_router)
app.include_router(metrics_router)  # no prefix – Prometheus expects /metrics


@app.on_event("startup")
async def startup_event():
    """Initialize services on app startup."""
    initialize_database()
    logger.info("Database tables initialized")

    # The presence map starts empty, so the registry must not claim any
    # device is still connected.
    with db_session() as db:
        DeviceRegistry(db).reset_presence()

    if not _settings.testing:
        await liveness_service.start()
        logger.info("Liveness service started")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up services on app shutdown."""
    if not _settings.testing:
        await liveness_service.stop()
    await presence_tracker.shutdown()
    logger.info("Background services stopped")


@app.get("/")
async def read_root():
    """Root endpoint."""
    return {"message": "contactsync API"}
