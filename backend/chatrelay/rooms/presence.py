"""Per-room presence table and broadcast group.

A RoomState holds the live state of a single room:
    - presence entries keyed by userId, in insertion order
    - the set of sessions subscribed to the room's fan-out
    - the lock that serializes every mutation of this room

RoomState itself does no I/O and never awaits; the coordinator acquires
``lock`` around each operation and performs sends while holding it.
"""
import asyncio
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from chatrelay.session import Identity, Session


class PresenceStatus(str, Enum):
    """Live status of a user in a room. Absent users have no entry at all."""
    ONLINE = "online"


class PresenceEntry(BaseModel):
    """Live status record for one identity within one room."""
    userId: str = Field(..., description="User ID")
    username: str = Field(default="", description="Display name")
    status: PresenceStatus = Field(default=PresenceStatus.ONLINE, description="Presence status")
    typing: bool = Field(default=False, description="Whether the user is typing")


class RoomState:
    """Live state of one room."""

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.entries: Dict[str, PresenceEntry] = {}
        self.members: Set[Session] = set()
        self.lock = asyncio.Lock()
        # operations that hold or are waiting for ``lock``
        self.pending = 0

    def upsert(self, identity: Identity) -> PresenceEntry:
        """Register or overwrite the entry for ``identity`` (online, not typing).

        An existing entry keeps its position in the snapshot order.
        """
        entry = PresenceEntry(userId=identity.userId, username=identity.username)
        self.entries[identity.userId] = entry
        return entry

    def remove(self, user_id: str) -> Optional[PresenceEntry]:
        return self.entries.pop(user_id, None)

    def get(self, user_id: str) -> Optional[PresenceEntry]:
        return self.entries.get(user_id)

    def set_typing(self, user_id: str, typing: bool) -> Optional[PresenceEntry]:
        """Update the typing flag. Returns None if the user has no entry."""
        entry = self.entries.get(user_id)
        if entry is None:
            return None
        updated = entry.model_copy(update={"typing": typing})
        self.entries[user_id] = updated
        return updated

    def snapshot(self) -> List[PresenceEntry]:
        """All current entries in insertion order."""
        return list(self.entries.values())

    def subscribe(self, session: Session) -> None:
        self.members.add(session)

    def unsubscribe(self, session: Session) -> bool:
        if session in self.members:
            self.members.discard(session)
            return True
        return False

    def is_idle(self) -> bool:
        """True when nothing references this room and it can be dropped."""
        return not self.entries and not self.members and self.pending == 0
