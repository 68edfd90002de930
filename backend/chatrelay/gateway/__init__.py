"""Session gateway: WebSocket endpoint, identity binding and dispatch."""

from .gateway import SessionGateway, gateway
from .router import router

__all__ = [
    "SessionGateway",
    "gateway",
    "router",
]
