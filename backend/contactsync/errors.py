"""Error taxonomy shared by the store, the sync engine and the HTTP layer.

Every error carries the HTTP status it maps to so ``contactsync.main`` can
render all of them through one exception handler.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base class for all expected failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(SyncError):
    """Record or device absent."""

    status_code = 404


class ConflictError(SyncError):
    """Uniqueness constraint violated (e.g. business-key collision)."""

    status_code = 409


class SyncBusyError(SyncError):
    """A delta pull for the same device is already in flight."""

    status_code = 423


class ValidationError(SyncError):
    """Malformed payload that the schema layer cannot express."""

    status_code = 400


class TransientStoreError(SyncError):
    """Durable-store I/O failure; the caller decides whether to retry."""

    status_code = 503


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into :class:`TransientStoreError`.

    The original exception is logged and chained; callers only ever see the
    generic ``"Failed to <action>"`` message.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Store failure while trying to %s: %s", action, exc)
        raise TransientStoreError(f"Failed to {action}") from exc


__all__ = [
    "SyncError",
    "NotFoundError",
    "ConflictError",
    "SyncBusyError",
    "ValidationError",
    "TransientStoreError",
    "store_errors",
]
