"""Per-connection session state.

A Session wraps one live WebSocket. It carries at most one bound Identity
and remembers which rooms it joined (and under which identity), so that
disconnect cleanup can run against a snapshot of its membership.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import WebSocket
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    """Client-declared identity bound to a connection.

    Attributes:
        userId: User identifier (not checked for uniqueness across connections).
        username: Display name shown to other room members.
    """
    userId: str = Field(..., description="User ID")
    username: str = Field(default="", description="Display name")


class Session:
    """One live connection and the state the gateway tracks for it."""

    def __init__(self, websocket: WebSocket, session_id: Optional[str] = None) -> None:
        self.websocket = websocket
        self.id = session_id or str(uuid.uuid4())
        self.identity: Optional[Identity] = None
        # room_id -> identity the session joined that room with
        self.rooms: Dict[str, Identity] = {}
        self.closed = False

    def __repr__(self) -> str:
        user_id = self.identity.userId if self.identity else None
        return f"Session(id={self.id!r}, userId={user_id!r}, rooms={sorted(self.rooms)!r})"

    async def send(self, message: Dict[str, Any]) -> bool:
        """Send a JSON frame to this connection.

        Returns:
            True if successful, False if the connection failed.
        """
        if self.closed:
            return False
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to session {self.id}: {e}")
            return False
