"""Message history API endpoint.

Endpoints:
    GET /history: Paginated message history for a room (oldest first)

Clients call this when scrolling back past the join-time history seed,
passing the ``createdAt`` of the oldest message they already hold as the
``before`` cursor. This path is separate from the live broadcast channel.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from ..config import get_config
from .schemas import HistoryResponse
from .service import MessageStore, StoreUnavailableError, clamp_limit

logger = logging.getLogger(__name__)

router = APIRouter(tags=["history"])


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    roomId: str = Query(..., min_length=1, description="Room ID to fetch history for"),
    before: Optional[datetime] = Query(None, description="Only messages strictly older than this time"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (values above the maximum are clamped)")
):
    """Get paginated message history for a room.

    Args:
        roomId: The room ID.
        before: ISO-8601 timestamp cursor. If omitted, the most recent
                messages are returned.
        limit: Maximum number of messages to return (default 50, max 200).

    Returns:
        JSON with a ``messages`` array in ascending createdAt order, or a
        500 response with a generic error and no partial data.

    Example:
        GET /history?roomId=room-1&limit=50
        GET /history?roomId=room-1&before=2026-10-18T09:30:00Z
    """
    settings = get_config().store
    if limit is None:
        limit = settings.default_page_size
    limit = clamp_limit(limit, settings.max_page_size)

    store = MessageStore.get_instance()
    try:
        messages = await asyncio.to_thread(store.query_messages, roomId, before, limit)
    except StoreUnavailableError as e:
        logger.error(f"[History] Fetch failed for room {roomId}: {e.message}")
        return JSONResponse({"error": "Failed to fetch messages"}, status_code=500)

    return HistoryResponse(messages=messages)
