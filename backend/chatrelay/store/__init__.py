"""Durable message log for chat rooms."""

from .schemas import HistoryResponse, Message, MessageCreate
from .service import MessageStore, StoreUnavailableError
from .router import router

__all__ = [
    "HistoryResponse",
    "Message",
    "MessageCreate",
    "MessageStore",
    "StoreUnavailableError",
    "router",
]
