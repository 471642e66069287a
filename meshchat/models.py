"""Data types shared across the mesh, signaling and presentation layers.

This module defines the value objects exchanged between components:

- RoomMembership: the local participant's identity within a room
- ChatMessage: one immutable entry in the append-only chat log
- SignalingEnvelope: the unit submitted to the signaling service
- JoinResult / PollResult / InboundSignal: decoded signaling responses
- PeerStatus / ConnectivitySummary: read-only views for presentation
"""

import itertools
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Sender used for orchestration and diagnostic messages in the chat log
SYSTEM_SENDER = "System"

_PEER_ID_ALPHABET = string.digits + string.ascii_lowercase
_PEER_ID_LENGTH = 13

_local_peer_id: Optional[str] = None
_message_sequence = itertools.count(1)


class PeerRole(str, Enum):
    """Which side of the offer/answer exchange a session plays."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


class PeerState(str, Enum):
    """Lifecycle states of a PeerSession."""

    NEW = "new"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting_answer"
    AWAITING_OFFER = "awaiting_offer"
    ANSWERING_SENT = "answering_sent"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PeerState.CLOSED, PeerState.FAILED)


class MessageOrigin(str, Enum):
    """Where a chat log entry came from."""

    OWN = "own"
    REMOTE = "remote"
    SYSTEM = "system"


class EnvelopeKind(str, Enum):
    """Kinds of signaling envelope.

    The values of OFFER, ANSWER and ICE_CANDIDATE are the ``type`` strings
    the signaling service accepts on submission.
    """

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    POLL = "poll"
    JOIN_ROOM = "join"


def generate_peer_id() -> str:
    """Generate a fresh opaque base-36 peer token."""
    return "".join(secrets.choice(_PEER_ID_ALPHABET) for _ in range(_PEER_ID_LENGTH))


def get_local_peer_id() -> str:
    """Return this process's peer id, generating it on first use."""
    global _local_peer_id
    if _local_peer_id is None:
        _local_peer_id = generate_peer_id()
    return _local_peer_id


def normalize_room_id(room_id: str) -> str:
    """Room codes are case-insensitive; the canonical form is upper case."""
    return room_id.strip().upper()


def default_display_name(peer_id: str) -> str:
    return f"peer-{peer_id[:6]}"


@dataclass(frozen=True)
class RoomMembership:
    """Identifies the local participant in an active room.

    Attributes:
        local_peer_id: Opaque token, stable for the process lifetime
        room_id: Normalized (upper-case) room identifier
        display_name: Name shown to other participants
    """

    local_peer_id: str
    room_id: str
    display_name: str


@dataclass(frozen=True)
class ChatMessage:
    """One entry in the chat log.

    Attributes:
        id: Unique id, ordered by creation within the process
        sender: Display name, or SYSTEM_SENDER for diagnostics
        content: Message text
        timestamp: Creation time (UTC)
        origin: OWN, REMOTE or SYSTEM
    """

    id: str
    sender: str
    content: str
    timestamp: datetime
    origin: MessageOrigin

    @classmethod
    def create(cls, sender: str, content: str, origin: MessageOrigin) -> "ChatMessage":
        """Build a message stamped with the current time and next sequence id."""
        message_id = f"{int(time.time() * 1000)}-{next(_message_sequence)}"
        return cls(
            id=message_id,
            sender=sender,
            content=content,
            timestamp=datetime.now(timezone.utc),
            origin=origin,
        )

    @property
    def is_system(self) -> bool:
        return self.origin is MessageOrigin.SYSTEM


@dataclass(frozen=True)
class SignalingEnvelope:
    """A message exchanged with the signaling service.

    Attributes:
        kind: Envelope kind
        sender: Local peer id
        to: Target peer id (None for POLL and JOIN_ROOM)
        payload: Session description or candidate, opaque to the mesh
    """

    kind: EnvelopeKind
    sender: str
    to: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    def to_wire(self, room_id: str) -> Dict[str, Any]:
        """Render the submission body expected by ``POST /signal``."""
        return {
            "type": self.kind.value,
            "to": self.to,
            "payload": self.payload,
            "roomId": room_id,
            "peerId": self.sender,
        }


@dataclass(frozen=True)
class InboundSignal:
    """An offer, answer or candidate received from a poll, tagged by origin."""

    peer_id: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class JoinResult:
    accepted: bool
    known_peers: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PollResult:
    """Everything one poll cycle returned.

    At most one offer and one answer per cycle, plus any queued candidates.
    """

    offer: Optional[InboundSignal] = None
    answer: Optional[InboundSignal] = None
    candidates: List[InboundSignal] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.offer is None and self.answer is None and not self.candidates


@dataclass(frozen=True)
class PeerStatus:
    peer_id: str
    display_name: str
    state: PeerState


@dataclass(frozen=True)
class ConnectivitySummary:
    """Aggregate connectivity derived from the session registry."""

    connected_count: int = 0

    @property
    def status_text(self) -> str:
        if self.connected_count == 0:
            return "Disconnected"
        return f"Connected to {self.connected_count} peer(s)"
