"""Chat fan-out/fan-in and the append-only message log.

Outgoing text is serialized once and written to every connected session's
channel. Inbound payloads from any channel, plus System diagnostics, are
appended to a single ordered log and pushed to subscribers (the presentation
layer).

Wire format (one JSON object per data channel message)::

    {"sender": "alice", "content": "hi"}
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from meshchat.models import SYSTEM_SENDER, ChatMessage, MessageOrigin

if TYPE_CHECKING:
    from meshchat.mesh.peer_session import PeerSession

logger = logging.getLogger(__name__)

MessageListener = Callable[[ChatMessage], None]


class MessageBus:
    """Broadcast/receive path shared by all sessions in a room.

    Attributes:
        display_name: Sender name stamped on outgoing messages
    """

    def __init__(self, display_name: str = ""):
        self.display_name = display_name
        self._sessions: Dict[str, "PeerSession"] = {}
        self._log: List[ChatMessage] = []
        self._listeners: List[MessageListener] = []

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._log)

    @property
    def registered_peers(self) -> List[str]:
        return list(self._sessions)

    def register(self, session: "PeerSession") -> None:
        self._sessions[session.peer_id] = session
        logger.debug(f"Registered {session.peer_id} with message bus")

    def unregister(self, peer_id: str) -> None:
        if self._sessions.pop(peer_id, None) is not None:
            logger.debug(f"Unregistered {peer_id} from message bus")

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        """Call ``listener`` for every message appended from now on.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def system(self, content: str) -> ChatMessage:
        """Append a diagnostic. System messages never leave this process."""
        return self._append(ChatMessage.create(SYSTEM_SENDER, content, MessageOrigin.SYSTEM))

    def broadcast(self, text: str) -> int:
        """Send ``text`` to every connected session.

        A local echo is appended only if at least one send succeeded;
        otherwise a diagnostic is appended instead.

        Returns:
            Number of sessions the message was written to.
        """
        content = text.strip()
        if not content:
            self.system("Cannot send an empty message")
            return 0

        wire = json.dumps({"sender": self.display_name, "content": content})
        sent = 0
        for peer_id, session in list(self._sessions.items()):
            if not session.is_connected or not session.channel_ready:
                continue
            try:
                session.channel.send(wire)
                sent += 1
            except Exception as e:
                logger.error(f"Failed to send message to {peer_id}: {e}")

        if sent == 0:
            self.system("Not connected to any peers; message not sent")
            return 0

        logger.debug(f"Broadcast message to {sent} peer(s)")
        self._append(ChatMessage.create(self.display_name, content, MessageOrigin.OWN))
        return sent

    def deliver(self, session: "PeerSession", payload: Any) -> Optional[ChatMessage]:
        """Parse an inbound channel payload and append it to the log.

        Malformed payloads are logged and dropped.

        Returns:
            The appended message, or None if the payload was dropped.
        """
        parsed = _parse_payload(payload)
        if parsed is None:
            logger.warning(f"Dropping malformed payload from {session.peer_id}: {payload!r:.200}")
            return None

        sender, content = parsed
        session.refine_display_name(sender)
        session.touch()
        return self._append(ChatMessage.create(sender, content, MessageOrigin.REMOTE))

    def _append(self, message: ChatMessage) -> ChatMessage:
        self._log.append(message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Message listener raised: {e}")
        return message


def _parse_payload(payload: Any) -> Optional[Tuple[str, str]]:
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(payload, str):
        return None

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None

    if not isinstance(data, dict):
        return None
    sender = data.get("sender")
    content = data.get("content")
    if not isinstance(sender, str) or not isinstance(content, str):
        return None
    if not sender.strip() or sender.strip() == SYSTEM_SENDER:
        return None
    return sender.strip(), content
