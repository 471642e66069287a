"""Exceptions raised inside meshchat.

None of these escape the public operations of :class:`meshchat.api.ChatRoom`;
they are caught at the coordinator and turned into System diagnostics.
"""

from typing import Optional


class SignalingError(Exception):
    """Raised when a request to the signaling service fails.

    Covers network errors, non-2xx responses and undecodable bodies. Always
    transient from the mesh's point of view: the next poll cycle retries.
    """

    pass


class ConfigurationError(Exception):
    """Raised when a configuration value is invalid or cannot be read."""

    pass


class NegotiationError(Exception):
    """Raised when the connection primitive fails during a session transition.

    Attributes:
        peer_id: The remote peer whose session failed.
    """

    def __init__(self, message: str, peer_id: Optional[str] = None):
        super().__init__(message)
        self.peer_id = peer_id
