"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so that JSON serialisation renders plain
strings and equality checks against raw literals (``status == "online"``)
keep working.
"""

from __future__ import annotations

from enum import Enum


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RESTORED = "restored"

    @property
    def wire_event(self) -> str:
        """Live-channel event name used for this change kind."""
        if self is ChangeKind.CREATED:
            return "contact-created"
        if self is ChangeKind.DELETED:
            return "contact-deleted"
        # Restores travel as updates carrying ``event_type: "restored"``.
        return "contact-updated"


__all__ = [
    "DeviceStatus",
    "ChangeKind",
]
