"""Pydantic schemas for persisted chat messages.

These schemas are used by:
    - MessageStore: DuckDB storage layer (append + range query)
    - RoomCoordinator: history seed on join and message-new fan-out
    - GET /history: paginated history fetch
"""
from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    """Input schema for appending a message.

    The store assigns ``id`` and ``createdAt``; callers pass text that has
    already been trimmed.
    """
    roomId: str = Field(..., min_length=1, description="Room the message belongs to")
    userId: str = Field(..., min_length=1, description="Sender's user ID")
    username: str = Field(default="", description="Sender's display name")
    text: str = Field(..., min_length=1, description="Message text (trimmed)")


class Message(BaseModel):
    """A persisted chat message.

    Attributes:
        id: Store-assigned, globally unique identifier.
        roomId: Room this message belongs to.
        userId: Sender's user ID.
        username: Sender's display name at send time.
        text: Message text, trimmed and non-empty.
        createdAt: Store-assigned creation time (UTC).
    """
    id: str = Field(..., description="Unique message ID")
    roomId: str = Field(..., description="Room ID this message belongs to")
    userId: str = Field(..., description="User ID of the sender")
    username: str = Field(default="", description="Display name of the sender")
    text: str = Field(..., description="Message text")
    createdAt: datetime = Field(..., description="Creation time (UTC)")


class HistoryResponse(BaseModel):
    """Response from the history endpoint (oldest first)."""
    messages: List[Message] = Field(..., description="Messages in ascending createdAt order")
