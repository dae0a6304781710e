"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a **single**
:class:`Settings` instance (retrieved via :func:`get_settings`).  Values are
read from the process environment after the project ``.env`` file has been
loaded with *python-dotenv*.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` points to the top-level repository directory (one level
# **above** the "backend" folder).  This file lives at
# ``backend/contactsync/config/__init__.py``.

_REPO_ROOT = Path(__file__).resolve().parents[3]


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got '{raw}'") from exc


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    environment: Any
    log_level: str

    # Database ---------------------------------------------------------
    database_url: str

    # HTTP ---------------------------------------------------------------
    allowed_cors_origins: str

    # Presence / liveness ----------------------------------------------
    heartbeat_interval_seconds: int
    heartbeat_timeout_seconds: int
    presence_sweep_interval_seconds: int
    ws_send_timeout_seconds: int
    ws_queue_size: int

    # Delta sync --------------------------------------------------------
    default_batch_size: int
    max_batch_size: int
    sync_lock_timeout_seconds: int
    full_sync_pending_threshold: int
    full_sync_changes_threshold: int

    # Outbox retention ---------------------------------------------------
    queue_max_age_days: int
    queue_delivered_retention_hours: int
    queue_max_per_device: int

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        for key, value in kwargs.items():
            if not hasattr(self, key):  # pragma: no cover – safety
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Singleton accessor – values loaded only once per interpreter
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    node_env = os.getenv("NODE_ENV", "development")
    env_path = _REPO_ROOT / ".env.test" if node_env == "test" else _REPO_ROOT / ".env"
    if not env_path.exists():
        env_path = _REPO_ROOT / ".env"

    if env_path.exists():
        # Keep an explicitly exported TESTING flag; the test-suite sets it
        # before importing the application.
        current_testing = os.getenv("TESTING")
        load_dotenv(env_path, override=True)
        if current_testing:
            os.environ["TESTING"] = current_testing

    return Settings(
        testing=_truthy(os.getenv("TESTING")),
        environment=os.getenv("ENVIRONMENT"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", ""),
        allowed_cors_origins=os.getenv("ALLOWED_CORS_ORIGINS", ""),
        heartbeat_interval_seconds=_int("HEARTBEAT_INTERVAL_SECONDS", 30),
        heartbeat_timeout_seconds=_int("HEARTBEAT_TIMEOUT_SECONDS", 120),
        presence_sweep_interval_seconds=_int("PRESENCE_SWEEP_INTERVAL_SECONDS", 60),
        ws_send_timeout_seconds=_int("WS_SEND_TIMEOUT_SECONDS", 1),
        ws_queue_size=_int("WS_QUEUE_SIZE", 100),
        default_batch_size=_int("DEFAULT_BATCH_SIZE", 100),
        max_batch_size=_int("MAX_BATCH_SIZE", 1000),
        sync_lock_timeout_seconds=_int("SYNC_LOCK_TIMEOUT_SECONDS", 300),
        full_sync_pending_threshold=_int("FULL_SYNC_PENDING_THRESHOLD", 50),
        full_sync_changes_threshold=_int("FULL_SYNC_CHANGES_THRESHOLD", 100),
        queue_max_age_days=_int("QUEUE_MAX_AGE_DAYS", 30),
        queue_delivered_retention_hours=_int("QUEUE_DELIVERED_RETENTION_HOURS", 24),
        queue_max_per_device=_int("QUEUE_MAX_PER_DEVICE", 1000),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast on settings that cannot work together.
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort startup when the configuration is internally inconsistent."""

    problems = []

    if settings.heartbeat_interval_seconds <= 0:
        problems.append("HEARTBEAT_INTERVAL_SECONDS must be positive")

    # The sweep would otherwise drop devices that are heartbeating on time.
    if settings.heartbeat_timeout_seconds <= settings.heartbeat_interval_seconds:
        problems.append("HEARTBEAT_TIMEOUT_SECONDS must exceed HEARTBEAT_INTERVAL_SECONDS")

    if settings.presence_sweep_interval_seconds <= 0:
        problems.append("PRESENCE_SWEEP_INTERVAL_SECONDS must be positive")

    if not 1 <= settings.default_batch_size <= settings.max_batch_size:
        problems.append("DEFAULT_BATCH_SIZE must lie between 1 and MAX_BATCH_SIZE")

    if settings.queue_max_per_device <= 0:
        problems.append("QUEUE_MAX_PER_DEVICE must be positive")

    if problems:
        raise RuntimeError("CRITICAL: invalid configuration: " + "; ".join(problems))


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "Settings",
    "get_settings",
]
