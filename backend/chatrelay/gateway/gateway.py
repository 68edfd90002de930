"""Session gateway: connection ↔ identity binding and event dispatch.

Every inbound frame is routed through one handler table keyed by event
type. Connection open and close are two more kinds in the same table, so
the lifecycle of a session goes through the same path as its protocol
events.

Identity is client-declared and trusted: ``identity-init`` may be sent
again at any time and the last call wins. Events other than
``identity-init`` from a session without an identity are dropped without
telling the client; so are unknown events and payloads that fail
validation. Drops are logged server-side only.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Set

from fastapi import WebSocket
from pydantic import ValidationError

from chatrelay.protocol import (
    INBOUND_EVENTS,
    EventType,
    IdentityInit,
    MessageSend,
    RoomRef,
    make_event,
)
from chatrelay.rooms.coordinator import RoomCoordinator, coordinator
from chatrelay.session import Identity, Session

logger = logging.getLogger(__name__)

Handler = Callable[[Session, Dict[str, Any]], Awaitable[None]]

# Kinds that may be handled before an identity is bound
_IDENTITY_EXEMPT = frozenset({
    EventType.IDENTITY_INIT,
    EventType.CONNECT,
    EventType.DISCONNECT,
})


class SessionGateway:
    """Maps live connections to identities and dispatches their events."""

    def __init__(self, room_coordinator: RoomCoordinator) -> None:
        self.coordinator = room_coordinator
        # session_id -> Session for every open connection
        self.sessions: Dict[str, Session] = {}
        # cleanup tasks still running after their connection task was cancelled
        self._cleanups: Set[asyncio.Task] = set()
        self._handlers: Dict[EventType, Handler] = {
            EventType.CONNECT: self._on_connect,
            EventType.DISCONNECT: self._on_disconnect,
            EventType.IDENTITY_INIT: self._on_identity_init,
            EventType.ROOM_JOIN: self._on_room_join,
            EventType.ROOM_LEAVE: self._on_room_leave,
            EventType.TYPING_START: self._on_typing_start,
            EventType.TYPING_STOP: self._on_typing_stop,
            EventType.MESSAGE_SEND: self._on_message_send,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    async def on_connect(self, websocket: WebSocket) -> Session:
        """Create and register a session for an accepted connection."""
        session = Session(websocket)
        await self.dispatch(session, EventType.CONNECT, {})
        return session

    async def on_disconnect(self, session: Session) -> None:
        """Tear down a session. Safe to call more than once.

        Cleanup runs in its own task and is shielded, so cancelling the
        caller (the connection task being torn down) does not stop it
        partway through the session's rooms.
        """
        task = asyncio.create_task(self.dispatch(session, EventType.DISCONNECT, {}))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)
        await asyncio.shield(task)

    async def bind_identity(self, session: Session, user_id: str, username: str) -> None:
        """Bind an identity to the session and acknowledge to it alone."""
        previous = session.identity
        session.identity = Identity(userId=user_id, username=username)
        if previous is not None and previous != session.identity:
            logger.info(
                f"[WS] Session {session.id} re-bound identity "
                f"{previous.userId} -> {user_id}"
            )
        else:
            logger.info(f"[WS] Session {session.id} bound to userId={user_id}")
        await session.send(make_event(EventType.IDENTITY_ACK, ok=True))

    async def handle_frame(self, session: Session, frame: Any) -> None:
        """Route one decoded frame received from the wire."""
        if not isinstance(frame, dict):
            logger.debug(f"[WS] Dropping non-object frame from {session.id}")
            return
        try:
            event = EventType(frame.get("type"))
        except ValueError:
            logger.debug(f"[WS] Dropping unknown event {frame.get('type')!r} from {session.id}")
            return
        if event not in INBOUND_EVENTS:
            logger.warning(f"[WS] Session {session.id} sent server-only event {event.value}")
            return
        await self.dispatch(session, event, frame)

    async def dispatch(self, session: Session, event: EventType, payload: Dict[str, Any]) -> None:
        """Run the handler for ``event``.

        Events that need an identity are dropped if none is bound.
        """
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"[WS] No handler for {event.value}")
            return
        if event not in _IDENTITY_EXEMPT and session.identity is None:
            logger.debug(f"[WS] Dropping {event.value} from {session.id}: no identity bound")
            return
        try:
            await handler(session, payload)
        except ValidationError as e:
            logger.debug(f"[WS] Dropping malformed {event.value} from {session.id}: {e.error_count()} error(s)")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_connect(self, session: Session, payload: Dict[str, Any]) -> None:
        self.sessions[session.id] = session
        logger.info(f"[WS] Session {session.id} connected ({len(self.sessions)} open)")

    async def _on_disconnect(self, session: Session, payload: Dict[str, Any]) -> None:
        if session.closed:
            return
        session.closed = True
        self.sessions.pop(session.id, None)

        # Membership as of disconnect time; rooms joined later are refused
        # by the coordinator because the session is closed.
        joined = list(session.rooms)
        logger.info(
            f"[WS] Session {session.id} disconnected; cleaning up {len(joined)} room(s)"
        )
        for room_id in joined:
            await self.coordinator.drop_session(session, room_id)

    async def _on_identity_init(self, session: Session, payload: Dict[str, Any]) -> None:
        data = IdentityInit.model_validate(payload)
        await self.bind_identity(session, data.userId, data.username)

    async def _on_room_join(self, session: Session, payload: Dict[str, Any]) -> None:
        data = RoomRef.model_validate(payload)
        await self.coordinator.join(session, data.roomId)

    async def _on_room_leave(self, session: Session, payload: Dict[str, Any]) -> None:
        data = RoomRef.model_validate(payload)
        await self.coordinator.leave(session, data.roomId)

    async def _on_typing_start(self, session: Session, payload: Dict[str, Any]) -> None:
        data = RoomRef.model_validate(payload)
        await self.coordinator.set_typing(session, data.roomId, True)

    async def _on_typing_stop(self, session: Session, payload: Dict[str, Any]) -> None:
        data = RoomRef.model_validate(payload)
        await self.coordinator.set_typing(session, data.roomId, False)

    async def _on_message_send(self, session: Session, payload: Dict[str, Any]) -> None:
        data = MessageSend.model_validate(payload)
        await self.coordinator.send_message(session, data.roomId, data.text)


# Global singleton instance used by the WebSocket endpoint
gateway = SessionGateway(coordinator)
