"""System endpoints (public).

Provides an unauthenticated readiness probe that reports database
reachability and live presence statistics.
"""

import logging
from typing import Any
from typing import Dict

from fastapi import APIRouter
from fastapi import status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from contactsync import __version__
from contactsync.database import get_session_factory
from contactsync.websocket.manager import presence_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health() -> Dict[str, Any]:
    """Lightweight readiness probe.

    Returns JSON with overall status and basic subsystem stats.
    """
    db_ok = True
    try:
        session_factory = get_session_factory()
        with session_factory() as s:
            s.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check could not reach the database: %s", exc)
        db_ok = False

    return {
        "status": "ok" if db_ok else "degraded",
        "version": __version__,
        "db": {"status": "ok" if db_ok else "error"},
        "presence": presence_tracker.stats(),
    }
