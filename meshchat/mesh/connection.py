"""aiortc-backed connection primitive for peer sessions.

A ConnectionHandle wraps one RTCPeerConnection and its single ordered "chat"
data channel. It performs the description/candidate plumbing and translates
aiortc's callbacks into mesh events. It never mutates session state itself:
every notification is handed to the ``notify`` callable, which enqueues it
for the coordinator.

aiortc gathers ICE candidates before ``setLocalDescription`` returns, so
local candidates travel inside the offer/answer SDP. Remote candidates that
arrive separately (trickled by other implementations) are applied with
``add_candidate``.
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from meshchat.config import IceServerConfig
from meshchat.errors import NegotiationError
from meshchat.mesh.events import (
    ChannelClosedEvent,
    ChannelMessageEvent,
    ChannelOpenEvent,
    ConnectionStateEvent,
)

if TYPE_CHECKING:
    from meshchat.mesh.peer_session import PeerSession

logger = logging.getLogger(__name__)

CHAT_CHANNEL_LABEL = "chat"


class ConnectionHandle:
    """One peer connection and its chat channel, owned by a single session.

    Attributes:
        pc: The underlying RTCPeerConnection.
        channel: The chat data channel, once created or received.
    """

    def __init__(
        self,
        pc: RTCPeerConnection,
        session: "PeerSession",
        notify: Callable[[Any], None],
    ):
        self.pc = pc
        self.channel: Optional[RTCDataChannel] = None
        self._session = session
        self._notify = notify
        self._closed = False

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"Connection state with {session.peer_id}: {pc.connectionState}")
            self._notify(ConnectionStateEvent(session, pc.connectionState))

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(
                f"Received data channel from {session.peer_id}: {channel.label} "
                f"(state: {channel.readyState})"
            )
            self._attach_channel(channel)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    def open_channel(self) -> RTCDataChannel:
        """Create the reliable, ordered chat channel (initiator side)."""
        channel = self.pc.createDataChannel(CHAT_CHANNEL_LABEL, ordered=True)
        logger.info(
            f"Created data channel for {self._session.peer_id} (state: {channel.readyState})"
        )
        self._attach_channel(channel)
        return channel

    async def create_offer(self) -> Dict[str, str]:
        """Create an offer and set it as the local description."""
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return _describe(self.pc.localDescription)

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, str]:
        """Apply a remote offer, then create and set the local answer."""
        await self.pc.setRemoteDescription(self._to_description(offer, "offer"))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return _describe(self.pc.localDescription)

    async def apply_answer(self, answer: Dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(self._to_description(answer, "answer"))

    async def add_candidate(self, data: Dict[str, Any]) -> bool:
        """Apply a remote ICE candidate.

        Returns:
            False for an end-of-candidates marker, True once applied.
        """
        line = data.get("candidate") or ""
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        if not line:
            logger.debug(f"End of candidates from {self._session.peer_id}")
            return False

        try:
            candidate = candidate_from_sdp(line)
        except (AssertionError, IndexError, ValueError) as e:
            raise NegotiationError(
                f"Unparseable candidate: {line!r}", peer_id=self._session.peer_id
            ) from e
        candidate.sdpMid = data.get("sdpMid")
        candidate.sdpMLineIndex = data.get("sdpMLineIndex")
        await self.pc.addIceCandidate(candidate)
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.channel is not None and self.channel.readyState in ("connecting", "open"):
            self.channel.close()
        await self.pc.close()

    def _to_description(self, data: Dict[str, Any], expected_type: str) -> RTCSessionDescription:
        sdp = data.get("sdp") if isinstance(data, dict) else None
        if not isinstance(sdp, str) or not sdp:
            raise NegotiationError(
                f"Malformed {expected_type}: missing sdp", peer_id=self._session.peer_id
            )
        return RTCSessionDescription(sdp=sdp, type=data.get("type") or expected_type)

    def _attach_channel(self, channel: RTCDataChannel) -> None:
        self.channel = channel
        session = self._session

        @channel.on("open")
        def on_open():
            logger.info(f"Data channel now open with {session.peer_id}")
            self._notify(ChannelOpenEvent(session, channel))

        @channel.on("message")
        def on_message(message):
            self._notify(ChannelMessageEvent(session, message))

        @channel.on("close")
        def on_close():
            logger.warning(f"Data channel closed with {session.peer_id}")
            self._notify(ChannelClosedEvent(session))

        @channel.on("error")
        def on_error(error):
            logger.error(f"Data channel error with {session.peer_id}: {error}")

        # The responder may receive a channel that is already open, in which
        # case "open" will not fire again.
        if channel.readyState == "open":
            self._notify(ChannelOpenEvent(session, channel))


class ConnectionFactory:
    """Creates ConnectionHandles configured with the room's ICE servers."""

    def __init__(
        self,
        ice_servers: List[IceServerConfig],
        notify: Callable[[Any], None],
    ):
        self.ice_servers = ice_servers
        self.notify = notify

    def create(self, session: "PeerSession") -> ConnectionHandle:
        if self.ice_servers:
            ice_server_objects = [RTCIceServer(**s.to_dict()) for s in self.ice_servers]
            configuration = RTCConfiguration(iceServers=ice_server_objects)
            logger.info(
                f"Creating RTCPeerConnection for {session.peer_id} with "
                f"{len(ice_server_objects)} ICE server(s)"
            )
            pc = RTCPeerConnection(configuration=configuration)
        else:
            logger.warning("No ICE servers configured, using default RTCPeerConnection")
            pc = RTCPeerConnection()
        return ConnectionHandle(pc, session, self.notify)


def _describe(description: RTCSessionDescription) -> Dict[str, str]:
    return {"sdp": description.sdp, "type": description.type}
