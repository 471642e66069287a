"""Events consumed by the MeshCoordinator's serialized event loop.

Poll results, aiortc notifications, negotiation timeouts and user sends all
become one of these and are pushed onto a single queue. Only the consumer
task touches session state, so no two sources can interleave a transition.

Events produced for a specific session carry the session object itself; the
coordinator discards them if that object is no longer the registered session
for its peer (e.g. a late callback from a connection that already failed).
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List

from meshchat.models import PollResult

if TYPE_CHECKING:
    from meshchat.mesh.peer_session import PeerSession


@dataclass
class PollResultEvent:
    result: PollResult


@dataclass
class PeersDiscoveredEvent:
    """Peers listed as present when the room was joined."""

    peer_ids: List[str]


@dataclass
class DiagnosticEvent:
    """A System message raised outside the consumer (e.g. by the poll loop)."""

    text: str


@dataclass
class ConnectionStateEvent:
    """Connectivity state reported by the connection primitive."""

    session: "PeerSession"
    state: str


@dataclass
class ChannelOpenEvent:
    session: "PeerSession"
    channel: Any


@dataclass
class ChannelMessageEvent:
    session: "PeerSession"
    payload: Any


@dataclass
class ChannelClosedEvent:
    session: "PeerSession"


@dataclass
class NegotiationTimeoutEvent:
    session: "PeerSession"


@dataclass
class SendRequest:
    """A user send; the future resolves with the number of peers reached."""

    text: str
    future: "asyncio.Future[int]"
