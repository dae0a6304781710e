from contactsync.events.event_bus import EventType
from contactsync.events.event_bus import event_bus

__all__ = ["EventType", "event_bus"]
