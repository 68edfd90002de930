"""Room coordinator for real-time chat rooms.

This module owns all live room state and is the only place it is mutated.
It manages the join/leave lifecycle, typing state, message sends, presence
snapshots and per-room fan-out.

Key features:
    - Rooms created lazily on first reference, dropped again once idle
    - One asyncio.Lock per room: join/leave/typing/send for a room apply in
      arrival order, while different rooms proceed concurrently
    - Message store round-trips run in a worker thread while the room lock
      is held, so the live feed order matches the store append order
    - Full presence snapshot broadcast after every mutation
    - Broadcasting with asyncio.gather() and dead connection cleanup

Concurrency:
    Room state is only touched from the event loop. The one thing handed to
    worker threads is the store call itself; its result is applied back on
    the loop while the room lock is still held.

Typing state is never expired server-side; clients send ``typing-stop``
after 1.5s without a keystroke.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from chatrelay.protocol import EventType, error_event, make_event
from chatrelay.session import Identity, Session
from chatrelay.store.schemas import Message, MessageCreate
from chatrelay.store.service import DEFAULT_PAGE_SIZE, MessageStore, StoreUnavailableError

from .presence import PresenceEntry, RoomState

logger = logging.getLogger(__name__)


class RoomCoordinator:
    """Owns the roomId -> RoomState table and every operation on it.

    Attributes:
        history_seed_limit: Number of recent messages sent to a joiner.
    """

    def __init__(
        self,
        store_provider: Optional[Callable[[], MessageStore]] = None,
        history_seed_limit: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._rooms: Dict[str, RoomState] = {}
        self._store_provider = store_provider or MessageStore.get_instance
        self.history_seed_limit = history_seed_limit

    # =========================================================================
    # Room table
    # =========================================================================

    @asynccontextmanager
    async def _locked_room(self, room_id: str) -> AsyncIterator[RoomState]:
        """Get (or create) a room and hold its lock for the block.

        The room is dropped from the table on exit if it ended up idle.
        """
        room = self._rooms.get(room_id)
        if room is None:
            room = RoomState(room_id)
            self._rooms[room_id] = room
        room.pending += 1
        try:
            async with room.lock:
                yield room
        finally:
            room.pending -= 1
            self._prune(room)

    def _prune(self, room: RoomState) -> None:
        if room.is_idle() and self._rooms.get(room.room_id) is room:
            del self._rooms[room.room_id]
            logger.debug(f"[Rooms] Dropped idle room {room.room_id}")

    def get_room(self, room_id: str) -> Optional[RoomState]:
        return self._rooms.get(room_id)

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def presence(self, room_id: str) -> List[PresenceEntry]:
        """Current presence entries of a room (empty for unknown rooms)."""
        room = self._rooms.get(room_id)
        return room.snapshot() if room else []

    def clear(self) -> None:
        """Forget all rooms (used by tests)."""
        self._rooms.clear()

    # =========================================================================
    # Operations
    # =========================================================================

    async def join(self, session: Session, room_id: str) -> None:
        """Add the session's identity to a room.

        Sends the history seed to the joiner, ``presence-online`` to every
        other member, then a presence snapshot to all members. If the history
        cannot be read the join does not happen and the joiner gets an
        ``error`` frame.
        """
        identity = session.identity
        if identity is None or not room_id:
            logger.debug(f"[Rooms] Dropping join without identity/room from {session.id}")
            return

        async with self._locked_room(room_id) as room:
            try:
                history = await asyncio.to_thread(
                    self._store_provider().recent, room_id, self.history_seed_limit
                )
            except StoreUnavailableError as e:
                logger.error(f"[Rooms] Join of {room_id} by {identity.userId} failed: {e.message}")
                await session.send(error_event(EventType.ROOM_JOIN, "Failed to join room"))
                return

            # Disconnect may have run its cleanup while the store was busy
            if session.closed:
                logger.info(f"[Rooms] Session {session.id} closed before join of {room_id} completed")
                return

            # Re-joining under a new identity retires the one joined with before
            previous = session.rooms.get(room_id)
            if previous is not None and previous.userId != identity.userId:
                logger.info(f"[Rooms] {previous.userId} replaced by {identity.userId} in {room_id}")
                await self._remove_entry(room, previous, exclude=session)

            room.upsert(identity)
            room.subscribe(session)
            session.rooms[room_id] = identity
            logger.info(
                f"[Rooms] {identity.userId} joined {room_id} "
                f"({len(room.entries)} present, {len(room.members)} connections)"
            )

            await session.send(make_event(
                EventType.HISTORY_SEED,
                roomId=room_id,
                messages=[m.model_dump(mode="json") for m in history],
            ))
            await self._broadcast(
                room,
                make_event(
                    EventType.PRESENCE_ONLINE,
                    userId=identity.userId,
                    username=identity.username,
                    roomId=room_id,
                ),
                exclude=session,
            )
            await self._broadcast_snapshot(room)

    async def leave(self, session: Session, room_id: str) -> None:
        """Remove the session from a room.

        The entry removed is the one for the identity the session joined the
        room with, which may differ from its current identity if it re-bound
        after joining. If the session never joined, the current identity is
        used. No-op (no notices) if that identity has no presence entry there.
        """
        if session.identity is None or not room_id:
            logger.debug(f"[Rooms] Dropping leave without identity/room from {session.id}")
            return
        await self._leave(session, room_id, session.identity)

    async def drop_session(self, session: Session, room_id: str) -> None:
        """Leave-equivalent cleanup for one room of a disconnected session."""
        fallback = session.rooms.get(room_id) or session.identity
        if fallback is None:
            return
        await self._leave(session, room_id, fallback)

    async def _leave(self, session: Session, room_id: str, fallback: Identity) -> None:
        async with self._locked_room(room_id) as room:
            room.unsubscribe(session)
            identity = session.rooms.pop(room_id, None) or fallback

            if not await self._remove_entry(room, identity):
                logger.debug(f"[Rooms] {identity.userId} not present in {room_id}; leave ignored")
                return

            logger.info(f"[Rooms] {identity.userId} left {room_id} ({len(room.entries)} present)")
            await self._broadcast_snapshot(room)

    async def _remove_entry(
        self, room: RoomState, identity: Identity, exclude: Optional[Session] = None
    ) -> bool:
        """Drop an identity's presence entry and announce ``presence-offline``.

        Returns:
            False if the identity had no entry in the room.
        """
        entry = room.remove(identity.userId)
        if entry is None:
            return False
        await self._broadcast(
            room,
            make_event(
                EventType.PRESENCE_OFFLINE,
                userId=identity.userId,
                username=entry.username,
                roomId=room.room_id,
            ),
            exclude=exclude,
        )
        return True

    async def set_typing(self, session: Session, room_id: str, typing: bool) -> None:
        """Set the typing flag of the session's identity in a room.

        Other members get a discrete ``typing-start``/``typing-stop`` and all
        members get a fresh snapshot. No-op without a presence entry.
        """
        identity = session.identity
        if identity is None or not room_id:
            return

        async with self._locked_room(room_id) as room:
            entry = room.set_typing(identity.userId, typing)
            if entry is None:
                logger.debug(f"[Rooms] Typing from {identity.userId} ignored; not present in {room_id}")
                return

            event_type = EventType.TYPING_START if typing else EventType.TYPING_STOP
            await self._broadcast(
                room,
                make_event(
                    event_type,
                    roomId=room_id,
                    userId=identity.userId,
                    username=identity.username,
                ),
                exclude=session,
            )
            await self._broadcast_snapshot(room)

    async def send_message(self, session: Session, room_id: str, text: str) -> Optional[Message]:
        """Persist a message, then broadcast it to every connection in the room.

        The sender gets the broadcast too if it joined the room. A presence
        entry is not required. Nothing is broadcast unless the store accepted
        the message.

        Returns:
            The persisted Message, or None if dropped or the store failed.
        """
        identity = session.identity
        text = (text or "").strip()
        if identity is None or not room_id or not text:
            logger.debug(f"[Rooms] Dropping invalid message-send from {session.id}")
            return None

        async with self._locked_room(room_id) as room:
            entry = MessageCreate(
                roomId=room_id,
                userId=identity.userId,
                username=identity.username,
                text=text,
            )
            try:
                message = await asyncio.to_thread(self._store_provider().append, entry)
            except StoreUnavailableError as e:
                logger.error(f"[Rooms] Message from {identity.userId} in {room_id} not stored: {e.message}")
                await session.send(error_event(EventType.MESSAGE_SEND, "Failed to send message"))
                return None

            logger.info(f"[Rooms] Broadcasting message {message.id} to {len(room.members)} connections in {room_id}")
            await self._broadcast(
                room,
                make_event(EventType.MESSAGE_NEW, **message.model_dump(mode="json")),
            )
            return message

    # =========================================================================
    # Fan-out
    # =========================================================================

    def snapshot_event(self, room: RoomState) -> dict:
        return make_event(
            EventType.PRESENCE_SNAPSHOT,
            roomId=room.room_id,
            users=[entry.model_dump(mode="json") for entry in room.snapshot()],
        )

    async def _broadcast_snapshot(self, room: RoomState) -> None:
        await self._broadcast(room, self.snapshot_event(room))

    async def _broadcast(
        self, room: RoomState, message: dict, exclude: Optional[Session] = None
    ) -> None:
        """Send a frame to every subscribed session concurrently.

        Sessions whose send fails are unsubscribed; their presence is cleaned
        up when the transport reports the disconnect.
        """
        connections = [s for s in room.members if s is not exclude]
        if not connections:
            return

        results = await asyncio.gather(
            *[conn.send(message) for conn in connections],
            return_exceptions=True
        )

        for conn, success in zip(connections, results):
            if success is not True:
                room.unsubscribe(conn)
                logger.debug(f"[Rooms] Removed dead connection {conn.id} from room {room.room_id}")


# Global singleton instance shared by the gateway and the HTTP layer
coordinator = RoomCoordinator()
