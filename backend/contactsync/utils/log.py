"""Structured logger shared by long-running background services.

Request-path modules use ``logging.getLogger(__name__)``; the liveness loop
and other background tasks log key/value events through *structlog* so the
output stays machine-parseable in production::

    from contactsync.utils.log import log

    log.info("liveness", action="sweep", stale=3)
"""

from __future__ import annotations

from typing import Any

import structlog

# Keep the logger global so every import shares the same base instance.
log = structlog.get_logger("contactsync")

# Attach the JSON processor chain only if the application has not configured
# structlog already.
if not structlog.is_configured():
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )


def get_logger(**bindings: Any):  # noqa: D401 – factory helper
    """Return a child/bound logger with optional key/value bindings."""

    return log.bind(**bindings)


__all__ = ["log", "get_logger"]
