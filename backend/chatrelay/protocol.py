"""Wire protocol for the chat relay WebSocket.

Every frame, in both directions, is a flat JSON object whose ``type`` field
names the event; the remaining fields are the event payload:

    {"type": "room-join", "roomId": "room-1"}
    {"type": "message-new", "id": "...", "roomId": "room-1", "text": "hi", ...}

Client → server events:
    - identity-init: Bind {userId, username} to the connection
    - room-join / room-leave: Enter or leave a room
    - typing-start / typing-stop: Typing state change
    - message-send: Send a chat message

Server → client events:
    - identity-ack: Identity bound (client auto-joins on receipt)
    - history-seed: Recent messages, sent only to the joiner
    - presence-snapshot: Full presence list of a room
    - presence-online / presence-offline: Discrete join/leave notice
    - typing-start / typing-stop: Typing fan-out (excludes the sender)
    - message-new: Persisted message fan-out (includes the sender)
    - error: Generic failure when the message store is unavailable
"""
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Protocol event names.

    ``CONNECT`` and ``DISCONNECT`` are connection lifecycle kinds routed
    through the same dispatch table; they never arrive over the wire.
    """
    IDENTITY_INIT = "identity-init"
    IDENTITY_ACK = "identity-ack"
    ROOM_JOIN = "room-join"
    ROOM_LEAVE = "room-leave"
    HISTORY_SEED = "history-seed"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    PRESENCE_SNAPSHOT = "presence-snapshot"
    PRESENCE_ONLINE = "presence-online"
    PRESENCE_OFFLINE = "presence-offline"
    MESSAGE_SEND = "message-send"
    MESSAGE_NEW = "message-new"
    ERROR = "error"
    CONNECT = "connect"
    DISCONNECT = "disconnect"


# Events a client is allowed to send
INBOUND_EVENTS = frozenset({
    EventType.IDENTITY_INIT,
    EventType.ROOM_JOIN,
    EventType.ROOM_LEAVE,
    EventType.TYPING_START,
    EventType.TYPING_STOP,
    EventType.MESSAGE_SEND,
})


class IdentityInit(BaseModel):
    """Payload of ``identity-init``. Identity is client-declared and trusted."""
    userId: str = Field(..., min_length=1, description="Client-declared user ID")
    username: str = Field(default="", description="Display name")


class RoomRef(BaseModel):
    """Payload of ``room-join``, ``room-leave`` and the typing events."""
    roomId: str = Field(..., min_length=1, description="Target room")


class MessageSend(BaseModel):
    """Payload of ``message-send``. Blank text is rejected by the coordinator."""
    roomId: str = Field(..., min_length=1, description="Target room")
    text: str = Field(..., description="Message text")


def make_event(event_type: EventType, **fields: Any) -> Dict[str, Any]:
    """Build an outbound frame. ``fields`` may include an ``event`` key."""
    return {"type": event_type.value, **fields}


def error_event(event: EventType, error: str) -> Dict[str, Any]:
    """Build a generic failure frame for the event that triggered it."""
    return make_event(EventType.ERROR, event=event.value, error=error)
