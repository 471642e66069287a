"""High-level API for presentation layers.

This module provides the surface a UI (or the bundled terminal chat) uses:
the three user operations and read-only views of room state. It wires a
SignalingTransport, a MessageBus and a MeshCoordinator together.

Example usage:
    >>> room = ChatRoom()
    >>> await room.join_room("alice", "abc123")
    >>> await room.send_message("hi")
    >>> [m.content for m in room.messages]
    >>> await room.leave_room()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple

from meshchat.config import Config, get_config
from meshchat.mesh.mesh_coordinator import MeshCoordinator
from meshchat.mesh.message_bus import MessageBus
from meshchat.signaling.transport import SignalingTransport

if TYPE_CHECKING:
    from meshchat.models import (
        ChatMessage,
        ConnectivitySummary,
        PeerStatus,
        RoomMembership,
    )

__all__ = ["ChatRoom"]


class ChatRoom:
    """One participant's view of a mesh chat room.

    None of the operations raise for user or network errors; those are
    appended to ``messages`` as System diagnostics.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        transport: Optional[SignalingTransport] = None,
        connection_factory: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self.transport = transport or SignalingTransport(self.config)
        self.bus = MessageBus()
        self.coordinator = MeshCoordinator(
            self.transport,
            self.bus,
            config=self.config,
            connection_factory=connection_factory,
        )

    # ===== Operations =====

    async def join_room(self, username: str, room_id: str) -> bool:
        """Join ``room_id`` as ``username``.

        Returns:
            True if the room was entered.
        """
        return await self.coordinator.join(username, room_id)

    async def leave_room(self) -> None:
        await self.coordinator.leave()

    async def send_message(self, text: str) -> int:
        """Send ``text`` to every connected peer.

        Returns:
            Number of peers reached (0 means nothing was sent).
        """
        return await self.coordinator.send(text)

    # ===== State =====

    @property
    def membership(self) -> Optional[RoomMembership]:
        return self.coordinator.membership

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return self.bus.messages

    @property
    def peer_statuses(self) -> List[PeerStatus]:
        return self.coordinator.peer_statuses()

    @property
    def connected_count(self) -> int:
        return self.coordinator.summary.connected_count

    @property
    def status_text(self) -> str:
        return self.coordinator.summary.status_text

    def subscribe(self, listener: Callable[[ChatMessage], None]) -> Callable[[], None]:
        """Receive every chat log entry as it is appended."""
        return self.bus.subscribe(listener)

    def subscribe_status(
        self, listener: Callable[[ConnectivitySummary], None]
    ) -> Callable[[], None]:
        """Receive the connectivity summary each time the connected count changes."""
        return self.coordinator.subscribe_summary(listener)

    def close(self) -> None:
        """Release the HTTP session. Call after ``leave_room``."""
        self.transport.close()
