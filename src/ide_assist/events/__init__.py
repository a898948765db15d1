"""Event bus for engine observability."""

from ide_assist.events.bus import EventBus

__all__ = ["EventBus"]
