"""Live room state: presence tables and the room coordinator."""

from .coordinator import RoomCoordinator, coordinator
from .presence import PresenceEntry, PresenceStatus, RoomState

__all__ = [
    "PresenceEntry",
    "PresenceStatus",
    "RoomCoordinator",
    "RoomState",
    "coordinator",
]
