"""Mesh coordinator for room-wide peer connections.

This module owns the set of PeerSessions for the room the local participant
has joined, and is the single place where session state changes.

Key responsibilities:
- Joining the room through the signaling service and opening one initiator
  session per peer already present
- Polling the signaling service on a fixed period
- Routing offers/answers/candidates to the right session (creating a
  responder session for an offer from an unseen peer)
- Removing sessions that fail or close
- Recomputing the aggregate connectivity summary after every change

Architecture:
1. The poll loop, aiortc callbacks, negotiation timers and user sends only
   enqueue events (see meshchat.mesh.events)
2. One consumer task drains the queue and applies each event in order
3. Blocking signaling requests run in the default executor, awaited by
   whichever task issued them
4. Leaving cancels both tasks, marks the room inactive so anything still in
   flight is dropped, and closes every session independently
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from meshchat.config import Config, get_config
from meshchat.errors import SignalingError
from meshchat.mesh.connection import ConnectionFactory
from meshchat.mesh.events import (
    ChannelClosedEvent,
    ChannelMessageEvent,
    ChannelOpenEvent,
    ConnectionStateEvent,
    DiagnosticEvent,
    NegotiationTimeoutEvent,
    PeersDiscoveredEvent,
    PollResultEvent,
    SendRequest,
)
from meshchat.mesh.message_bus import MessageBus
from meshchat.mesh.peer_session import PeerSession
from meshchat.models import (
    ConnectivitySummary,
    InboundSignal,
    PeerRole,
    PeerStatus,
    PollResult,
    RoomMembership,
    SignalingEnvelope,
    get_local_peer_id,
    normalize_room_id,
)
from meshchat.signaling.transport import SignalingTransport

logger = logging.getLogger(__name__)

# Events that target one session and must be dropped if it was replaced
_SESSION_EVENTS = (
    ConnectionStateEvent,
    ChannelOpenEvent,
    ChannelMessageEvent,
    ChannelClosedEvent,
    NegotiationTimeoutEvent,
)


class MeshCoordinator:
    """Coordinates the full mesh of peer sessions in one room.

    Attributes:
        transport: SignalingTransport used for join/poll/send
        bus: MessageBus holding the chat log
        config: Poll interval, negotiation timeout and ICE servers
        sessions: Registry of live sessions keyed by peer_id
        membership: Local RoomMembership while a room is active
        summary: ConnectivitySummary recomputed after every event
        seen_peers: Every peer_id a session was ever created for in this room
    """

    def __init__(
        self,
        transport: SignalingTransport,
        bus: MessageBus,
        config: Optional[Config] = None,
        connection_factory: Optional[Any] = None,
    ):
        """Initialize MeshCoordinator.

        Args:
            transport: SignalingTransport instance
            bus: MessageBus instance
            config: Config instance (global config if omitted)
            connection_factory: Object with ``create(session)``; an aiortc
                ConnectionFactory is built on join if omitted
        """
        self.transport = transport
        self.bus = bus
        self.config = config or get_config()
        self.sessions: Dict[str, PeerSession] = {}
        self.membership: Optional[RoomMembership] = None
        self.summary = ConnectivitySummary()
        self.seen_peers: Set[str] = set()

        self._injected_factory = connection_factory
        self._factory: Optional[Any] = connection_factory
        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._active = False
        self._signaling_healthy = True
        self._listeners: List[Callable[[ConnectivitySummary], None]] = []
        # Serializes join and leave so a room has one consumer and one poller
        self._lifecycle_lock = asyncio.Lock()

    @property
    def is_active(self) -> bool:
        return self._active

    # ===== Room lifecycle =====

    async def join(self, display_name: str, room_id: str) -> bool:
        """Join ``room_id`` as ``display_name``.

        Input errors and rejections are reported as System diagnostics.

        Returns:
            True if the room was entered.
        """
        async with self._lifecycle_lock:
            return await self._join(display_name, room_id)

    async def _join(self, display_name: str, room_id: str) -> bool:
        if self._active:
            self.bus.system("Already in a room; leave it before joining another")
            return False

        name = (display_name or "").strip()
        room = normalize_room_id(room_id or "")
        if not name:
            self.bus.system("Please enter a username first")
            return False
        if not room:
            self.bus.system("Please enter a room code first")
            return False

        peer_id = get_local_peer_id()
        logger.info(f"Joining room {room} as {name} ({peer_id})")

        try:
            result = await self._run_blocking(self.transport.join, room, peer_id)
        except SignalingError as e:
            logger.error(f"Join failed: {e}")
            self.bus.system(f"Could not join room {room}: {e}")
            return False

        if not result.accepted:
            logger.warning(f"Signaling service rejected join for room {room}")
            self.bus.system(f"Room {room} rejected the join request")
            return False

        self.membership = RoomMembership(local_peer_id=peer_id, room_id=room, display_name=name)
        self.bus.display_name = name
        self.seen_peers = set()
        self._signaling_healthy = True
        if self._injected_factory is None:
            self._factory = ConnectionFactory(self.config.ice_servers, self._enqueue)

        self._queue = asyncio.Queue()
        self._active = True
        self._consumer_task = asyncio.create_task(self._consume_events())

        self.bus.system(f"Joined room {room} as {name}")
        if result.known_peers:
            self.discover(result.known_peers)

        self._poll_task = asyncio.create_task(self._poll_loop())
        self._recompute_summary()
        return True

    async def leave(self) -> None:
        """Tear the room down.

        Stops polling and event handling, closes every session (a failure
        closing one never prevents closing the others), clears the registry
        and resets the summary. A leave issued while a join is in flight
        waits for the join to finish, then tears the room down.
        """
        async with self._lifecycle_lock:
            await self._leave()

    async def _leave(self) -> None:
        if self.membership is None and not self.sessions:
            return

        room = self.membership.room_id if self.membership else None
        logger.info(f"Leaving room {room}")
        self._active = False

        await _cancel_task(self._poll_task)
        self._poll_task = None
        await _cancel_task(self._consumer_task)
        self._consumer_task = None
        self._drain_queue()

        for peer_id, session in list(self.sessions.items()):
            try:
                await session.close("Left the room")
            except Exception as e:
                logger.error(f"Error closing session with {peer_id}: {e}")

        self.sessions.clear()
        self.membership = None
        self._recompute_summary()
        self.bus.system(f"Left room {room}")

    def discover(self, peer_ids: List[str]) -> None:
        """Open initiator sessions to ``peer_ids`` (duplicates are ignored)."""
        self._enqueue(PeersDiscoveredEvent(list(peer_ids)))

    async def send(self, text: str) -> int:
        """Broadcast ``text`` to every connected peer.

        Returns:
            Number of peers the message was written to.
        """
        if not self._active:
            self.bus.system("Join a room before sending messages")
            return 0
        if not text or not text.strip():
            self.bus.system("Cannot send an empty message")
            return 0

        future = asyncio.get_running_loop().create_future()
        self._enqueue(SendRequest(text, future))
        return await future

    async def settle(self) -> None:
        """Wait until every queued event has been handled."""
        if self._queue is not None and self._active:
            await self._queue.join()

    # ===== Views =====

    def peer_statuses(self) -> List[PeerStatus]:
        return [session.status() for session in self.sessions.values()]

    def subscribe_summary(
        self, listener: Callable[[ConnectivitySummary], None]
    ) -> Callable[[], None]:
        """Call ``listener`` whenever the connected peer count changes.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ===== Event plumbing =====

    def _enqueue(self, event: Any) -> None:
        """Hand an event to the consumer; dropped once the room is left."""
        if not self._active or self._queue is None:
            logger.debug(f"Dropping {type(event).__name__}: room not active")
            if isinstance(event, SendRequest) and not event.future.done():
                event.future.set_result(0)
            return
        self._queue.put_nowait(event)

    def _drain_queue(self) -> None:
        if self._queue is None:
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            self._queue.task_done()
            if isinstance(event, SendRequest) and not event.future.done():
                event.future.set_result(0)

    async def _consume_events(self):
        """Single consumer: the only code path that mutates sessions."""
        logger.info("Mesh event loop started")
        try:
            while True:
                event = await self._queue.get()
                try:
                    await self._dispatch(event)
                except Exception as e:
                    logger.error(f"Error handling {type(event).__name__}: {e}")
                    if isinstance(event, SendRequest) and not event.future.done():
                        event.future.set_result(0)
                finally:
                    # Runs even if a handler raised midway through a transition
                    if self._active:
                        self._reap_sessions()
                        self._recompute_summary()
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("Mesh event loop cancelled")
            raise

    async def _dispatch(self, event: Any) -> None:
        if not self._active:
            if isinstance(event, SendRequest) and not event.future.done():
                event.future.set_result(0)
            return

        if isinstance(event, _SESSION_EVENTS):
            session = event.session
            if self.sessions.get(session.peer_id) is not session:
                logger.debug(f"Dropping {type(event).__name__} for stale session {session.peer_id}")
                return

        if isinstance(event, PollResultEvent):
            await self._handle_poll_result(event.result)
        elif isinstance(event, PeersDiscoveredEvent):
            for peer_id in event.peer_ids:
                await self._handle_discovered_peer(peer_id)
        elif isinstance(event, ConnectionStateEvent):
            await event.session.handle_connection_state(event.state)
        elif isinstance(event, ChannelOpenEvent):
            event.session.handle_channel_open(event.channel)
        elif isinstance(event, ChannelMessageEvent):
            self.bus.deliver(event.session, event.payload)
        elif isinstance(event, ChannelClosedEvent):
            await event.session.handle_channel_closed()
        elif isinstance(event, NegotiationTimeoutEvent):
            await event.session.expire()
        elif isinstance(event, SendRequest):
            count = self.bus.broadcast(event.text)
            if not event.future.done():
                event.future.set_result(count)
        elif isinstance(event, DiagnosticEvent):
            self.bus.system(event.text)
        else:
            logger.warning(f"Unknown mesh event: {event!r}")

    # ===== Signaling =====

    async def _poll_loop(self):
        """Poll the signaling service every ``poll_interval`` seconds.

        Every failed poll is logged. Only the first failure of an outage, and
        the first success after it, become System diagnostics.
        """
        membership = self.membership
        logger.info(f"Polling {membership.room_id} every {self.config.poll_interval}s")
        try:
            while self._active:
                try:
                    result = await self._run_blocking(
                        self.transport.poll, membership.room_id, membership.local_peer_id
                    )
                except SignalingError as e:
                    logger.warning(f"Poll failed: {e}")
                    if self._signaling_healthy:
                        self._signaling_healthy = False
                        self._enqueue(DiagnosticEvent(f"Signaling service unreachable: {e}"))
                else:
                    if not self._signaling_healthy:
                        self._signaling_healthy = True
                        self._enqueue(DiagnosticEvent("Signaling service reachable again"))
                    if not result.is_empty:
                        self._enqueue(PollResultEvent(result))

                await asyncio.sleep(self.config.poll_interval)
        except asyncio.CancelledError:
            logger.info("Poll loop cancelled")
            raise

    async def _handle_poll_result(self, result: PollResult) -> None:
        # Offer first, so candidates from a brand-new offerer in the same
        # cycle find its session.
        if result.offer is not None:
            await self._handle_offer(result.offer)
        if result.answer is not None:
            await self._handle_answer(result.answer)
        for candidate in result.candidates:
            await self._handle_candidate(candidate)

    async def _handle_offer(self, signal: InboundSignal) -> None:
        peer_id = signal.peer_id
        if peer_id == self.membership.local_peer_id:
            logger.warning("Ignoring offer from ourselves")
            return

        existing = self.sessions.get(peer_id)
        if existing is not None and not existing.is_terminal:
            logger.info(
                f"Ignoring offer from {peer_id}: session already {existing.state.value}"
            )
            return

        logger.info(f"Received offer from {peer_id}")
        session = self._create_session(peer_id, PeerRole.RESPONDER)
        await session.accept_offer(signal.payload)

    async def _handle_answer(self, signal: InboundSignal) -> None:
        session = self.sessions.get(signal.peer_id)
        if session is None:
            logger.warning(f"Ignoring answer from unknown peer {signal.peer_id}")
            return
        await session.apply_answer(signal.payload)

    async def _handle_candidate(self, signal: InboundSignal) -> None:
        session = self.sessions.get(signal.peer_id)
        if session is None:
            logger.debug(f"Discarding ICE candidate for unknown peer {signal.peer_id}")
            return
        await session.add_candidate(signal.payload)

    async def _handle_discovered_peer(self, peer_id: str) -> None:
        if not peer_id or peer_id == self.membership.local_peer_id:
            return
        existing = self.sessions.get(peer_id)
        if existing is not None and not existing.is_terminal:
            logger.debug(f"Peer {peer_id} already has a session ({existing.state.value})")
            return

        logger.info(f"Initiating connection to {peer_id}")
        session = self._create_session(peer_id, PeerRole.INITIATOR)
        await session.start()

    async def _send_signal(self, envelope: SignalingEnvelope) -> bool:
        """Submit an envelope; failures become diagnostics, never exceptions."""
        membership = self.membership
        if membership is None:
            return False
        try:
            await self._run_blocking(self.transport.send, membership.room_id, envelope)
            return True
        except SignalingError as e:
            logger.warning(f"Failed to send {envelope.kind.value} to {envelope.to}: {e}")
            self.bus.system(f"Could not send {envelope.kind.value} to {envelope.to}: {e}")
            return False

    # ===== Registry =====

    def _create_session(self, peer_id: str, role: PeerRole) -> PeerSession:
        session = PeerSession(
            peer_id=peer_id,
            role=role,
            local_peer_id=self.membership.local_peer_id,
            connection_factory=self._factory,
            send_signal=self._send_signal,
            bus=self.bus,
        )
        self.sessions[peer_id] = session
        self.seen_peers.add(peer_id)
        session.arm_timeout(
            asyncio.get_running_loop(), self.config.negotiation_timeout, self._enqueue
        )
        return session

    def _reap_sessions(self) -> None:
        for peer_id, session in list(self.sessions.items()):
            if session.is_terminal:
                logger.info(f"Removing {session.state.value} session with {peer_id}")
                del self.sessions[peer_id]

    def _recompute_summary(self) -> None:
        connected = sum(1 for s in self.sessions.values() if s.is_connected)
        if connected == self.summary.connected_count:
            return
        self.summary = ConnectivitySummary(connected_count=connected)
        logger.info(f"Connectivity: {self.summary.status_text}")
        for listener in list(self._listeners):
            try:
                listener(self.summary)
            except Exception as e:
                logger.error(f"Summary listener raised: {e}")

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)


async def _cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
