"""Per-peer negotiation and lifecycle state machine.

Initiator:  NEW -> OFFERING -> AWAITING_ANSWER -> NEGOTIATING -> CONNECTED -> CLOSED
Responder:  NEW -> AWAITING_OFFER -> ANSWERING_SENT -> NEGOTIATING -> CONNECTED -> CLOSED

FAILED is reachable from every non-terminal state (connectivity failure,
primitive error, or the negotiation deadline). Leaving the room moves every
session, FAILED ones included, to CLOSED.

Sessions are driven exclusively by the MeshCoordinator's event consumer, so
none of these methods need locking.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from meshchat.models import (
    EnvelopeKind,
    PeerRole,
    PeerState,
    PeerStatus,
    SignalingEnvelope,
    default_display_name,
)
from meshchat.mesh.events import NegotiationTimeoutEvent

if TYPE_CHECKING:
    from meshchat.mesh.connection import ConnectionFactory, ConnectionHandle
    from meshchat.mesh.message_bus import MessageBus

logger = logging.getLogger(__name__)

SignalSender = Callable[[SignalingEnvelope], Awaitable[bool]]

# Connectivity states that end a session which never reached CONNECTED
_FAILURE_STATES = ("failed", "disconnected")


class PeerSession:
    """One remote participant relationship.

    Attributes:
        peer_id: Remote peer's opaque id
        display_name: Default derived from peer_id, refined by chat payloads
        role: INITIATOR (sends the offer) or RESPONDER, fixed at creation
        state: Current PeerState
        history: Every state entered, in order
        connection: Exclusively owned ConnectionHandle (None before negotiation)
        channel: Chat data channel once received/created
        created_at: Wall-clock creation time
        last_activity_at: Wall-clock time of the last event for this session
    """

    def __init__(
        self,
        peer_id: str,
        role: PeerRole,
        local_peer_id: str,
        connection_factory: "ConnectionFactory",
        send_signal: SignalSender,
        bus: "MessageBus",
    ):
        self.peer_id = peer_id
        self.display_name = default_display_name(peer_id)
        self.role = role
        self.state = PeerState.NEW
        self.history: List[PeerState] = [PeerState.NEW]
        self.connection: Optional["ConnectionHandle"] = None
        self.channel: Any = None
        self.created_at = time.time()
        self.last_activity_at = self.created_at

        self.offers_sent = 0
        self.offers_received = 0
        self.answers_sent = 0
        self.answers_received = 0

        self._local_peer_id = local_peer_id
        self._factory = connection_factory
        self._send_signal = send_signal
        self._bus = bus
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

    def __repr__(self) -> str:
        return f"PeerSession({self.peer_id!r}, {self.role.value}, {self.state.value})"

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_connected(self) -> bool:
        return self.state is PeerState.CONNECTED

    @property
    def channel_ready(self) -> bool:
        return self.channel is not None and getattr(self.channel, "readyState", None) == "open"

    @property
    def exchange_complete(self) -> bool:
        """Whether this session finished the offer/answer exchange for its role."""
        if self.role is PeerRole.INITIATOR:
            return self.offers_sent == 1 and self.answers_received == 1
        return self.offers_received == 1 and self.answers_sent == 1

    def status(self) -> PeerStatus:
        return PeerStatus(peer_id=self.peer_id, display_name=self.display_name, state=self.state)

    def refine_display_name(self, name: str) -> None:
        name = name.strip()
        if name and name != self.display_name:
            logger.debug(f"Peer {self.peer_id} is now known as {name}")
            self.display_name = name

    def touch(self) -> None:
        self.last_activity_at = time.time()

    # ===== Negotiation deadline =====

    def arm_timeout(
        self,
        loop: asyncio.AbstractEventLoop,
        seconds: float,
        notify: Callable[[Any], None],
    ) -> None:
        """Schedule a NegotiationTimeoutEvent ``seconds`` from now."""
        self.cancel_timeout()
        self._timeout_handle = loop.call_later(seconds, notify, NegotiationTimeoutEvent(self))

    def cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    # ===== Offer/answer exchange =====

    async def start(self) -> None:
        """Initiator: create the connection and channel, then send an offer."""
        if self.role is not PeerRole.INITIATOR or self.state is not PeerState.NEW:
            logger.warning(f"Ignoring start() for {self!r}")
            return

        self._transition(PeerState.OFFERING)
        try:
            self.connection = self._factory.create(self)
            self.connection.open_channel()
            offer = await self.connection.create_offer()
        except Exception as e:
            await self.fail(f"Could not create offer: {e}")
            return

        self.offers_sent += 1
        await self._signal(EnvelopeKind.OFFER, offer)
        self._transition(PeerState.AWAITING_ANSWER)

    async def accept_offer(self, offer: Dict[str, Any]) -> None:
        """Responder: apply the inbound offer and send an answer."""
        if self.role is not PeerRole.RESPONDER or self.state is not PeerState.NEW:
            logger.warning(f"Ignoring offer for {self!r}")
            return

        self._transition(PeerState.AWAITING_OFFER)
        self.offers_received += 1
        try:
            self.connection = self._factory.create(self)
            answer = await self.connection.accept_offer(offer)
        except Exception as e:
            await self.fail(f"Could not answer offer: {e}")
            return

        self.answers_sent += 1
        await self._signal(EnvelopeKind.ANSWER, answer)
        self._transition(PeerState.ANSWERING_SENT)

    async def apply_answer(self, answer: Dict[str, Any]) -> bool:
        """Initiator: apply the remote answer.

        An answer in any state other than AWAITING_ANSWER (a duplicate, or one
        racing an offer that is not finalized) is ignored.

        Returns:
            True if the answer was applied.
        """
        if self.state is not PeerState.AWAITING_ANSWER:
            logger.warning(f"Ignoring answer from {self.peer_id} in state {self.state.value}")
            return False

        self.touch()
        try:
            await self.connection.apply_answer(answer)
        except Exception as e:
            await self.fail(f"Could not apply answer: {e}")
            return False

        self.answers_received += 1
        self._transition(PeerState.NEGOTIATING)
        return True

    async def add_candidate(self, candidate: Dict[str, Any]) -> bool:
        """Apply a remote candidate if negotiation is still in progress.

        Returns:
            True if the candidate was handed to the connection.
        """
        if self.connection is None or self.is_terminal or self.is_connected:
            logger.debug(f"Discarding candidate for {self.peer_id} in state {self.state.value}")
            return False

        self.touch()
        try:
            return await self.connection.add_candidate(candidate)
        except Exception as e:
            # A bad candidate does not doom the connection; others may work.
            logger.warning(f"Failed to add ICE candidate from {self.peer_id}: {e}")
            return False

    # ===== Primitive notifications =====

    async def handle_connection_state(self, state: str) -> None:
        if self.is_terminal:
            return
        self.touch()

        if state == "connecting":
            if self.state is PeerState.ANSWERING_SENT:
                self._transition(PeerState.NEGOTIATING)
        elif state == "connected":
            self._mark_connected()
        elif state in _FAILURE_STATES:
            await self.fail(f"Connection {state}")
        elif state == "closed":
            if self.is_connected:
                await self.close("Connection closed by peer")
            else:
                await self.fail("Connection closed before it was established")

    def handle_channel_open(self, channel: Any) -> None:
        if self.is_terminal:
            return
        self.touch()
        if self.channel is channel and self.channel_ready:
            return
        self.channel = channel
        self._bus.system(f"Data channel opened with {self.display_name}")

    async def handle_channel_closed(self) -> None:
        if self.is_terminal:
            return
        if self.is_connected:
            await self.close("Remote channel closed")
        else:
            await self.fail("Data channel closed during negotiation")

    async def expire(self) -> None:
        """Negotiation deadline reached."""
        if self.is_terminal or self.is_connected:
            return
        await self.fail("Negotiation timed out")

    # ===== Terminal transitions =====

    async def fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        logger.warning(f"Session with {self.peer_id} failed: {reason}")
        self._transition(PeerState.FAILED)
        self._bus.system(f"Connection with {self.display_name} failed: {reason}")
        await self._release()

    async def close(self, reason: Optional[str] = None) -> None:
        """Move to CLOSED and release the connection; no-op once CLOSED."""
        if self.state is PeerState.CLOSED:
            return
        was_connected = self.is_connected
        self._transition(PeerState.CLOSED)
        if was_connected and reason:
            self._bus.system(f"Disconnected from {self.display_name}: {reason}")
        await self._release()

    # ===== Internals =====

    def _mark_connected(self) -> None:
        if self.is_connected:
            return
        if not self.exchange_complete:
            logger.warning(
                f"Ignoring 'connected' from {self.peer_id} before the offer/answer "
                f"exchange completed (state {self.state.value})"
            )
            return
        self.cancel_timeout()
        self._transition(PeerState.CONNECTED)
        self._bus.register(self)
        self._bus.system(f"Connected to {self.display_name}")

    async def _signal(self, kind: EnvelopeKind, payload: Dict[str, Any]) -> None:
        envelope = SignalingEnvelope(
            kind=kind, sender=self._local_peer_id, to=self.peer_id, payload=payload
        )
        await self._send_signal(envelope)

    async def _release(self) -> None:
        self.cancel_timeout()
        self._bus.unregister(self.peer_id)
        connection, self.connection = self.connection, None
        self.channel = None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.error(f"Error closing connection with {self.peer_id}: {e}")

    def _transition(self, new_state: PeerState) -> None:
        logger.info(f"Peer {self.peer_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        self.touch()
