"""API route configuration."""

# Contacts resource and its legacy-mounted sync endpoints
CONTACTS_PREFIX = "/contacts"

# Sync endpoints (delta pull, bulk reconcile, reconnect probe)
SYNC_PREFIX = "/sync"

# WebSocket endpoint for the live device channel
WS_ENDPOINT = "/ws"

# Close code used when the liveness sweep drops a silent device
WS_CLOSE_HEARTBEAT_TIMEOUT = 4408


def get_full_path(prefix: str, relative_path: str) -> str:
    """Get the full API path for a relative path."""
    return f"{prefix}{relative_path}"
