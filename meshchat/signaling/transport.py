"""HTTP client for the room signaling service.

The signaling service is a polling rendezvous: peers join a room, submit
offers/answers/candidates addressed to other peers, and periodically poll
for whatever has been queued for them. Every call is a single blocking
request/response; there is no retry loop here because the coordinator polls
on a fixed period anyway.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from meshchat.config import Config, get_config
from meshchat.errors import SignalingError
from meshchat.models import (
    InboundSignal,
    JoinResult,
    PollResult,
    SignalingEnvelope,
)

logger = logging.getLogger(__name__)


class SignalingTransport:
    """Request/response client for ``/join``, ``/poll`` and ``/signal``.

    Attributes:
        config: Config supplying the base URL and request timeout.
        session: Shared requests session (connection reuse across polls).
            Calls arrive from executor threads (the poll loop and signal
            sends), so every request holds ``_lock``.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or get_config()
        self.session = session or requests.Session()
        self._lock = threading.Lock()

    def join(self, room_id: str, peer_id: str) -> JoinResult:
        """Announce ``peer_id`` in ``room_id``.

        Returns:
            JoinResult with the ids of peers already present.

        Raises:
            SignalingError: If the request fails.
        """
        data = self._post("/join", {"roomId": room_id, "peerId": peer_id})
        peers = data.get("peers") or []
        if not isinstance(peers, list):
            raise SignalingError(f"Malformed join response: peers={peers!r}")

        known = [str(p) for p in peers if p and str(p) != peer_id]
        logger.info(
            f"Join {room_id} as {peer_id}: success={bool(data.get('success'))}, "
            f"{len(known)} known peer(s)"
        )
        return JoinResult(accepted=bool(data.get("success")), known_peers=known)

    def poll(self, room_id: str, peer_id: str) -> PollResult:
        """Fetch signaling messages queued for ``peer_id``.

        Raises:
            SignalingError: If the request fails or the body is malformed.
        """
        data = self._post("/poll", {"roomId": room_id, "peerId": peer_id})

        offer = _parse_signal(data.get("offer"), "offer")
        answer = _parse_signal(data.get("answer"), "answer")

        candidates: List[InboundSignal] = []
        for entry in data.get("iceCandidates") or []:
            candidate = _parse_signal(entry, "candidate")
            if candidate is not None:
                candidates.append(candidate)

        result = PollResult(offer=offer, answer=answer, candidates=candidates)
        if not result.is_empty:
            logger.debug(
                f"Poll returned offer={offer is not None}, answer={answer is not None}, "
                f"candidates={len(candidates)}"
            )
        return result

    def send(self, room_id: str, envelope: SignalingEnvelope) -> None:
        """Submit an offer, answer or candidate addressed to ``envelope.to``.

        Raises:
            SignalingError: If the request fails.
        """
        self._post("/signal", envelope.to_wire(room_id))
        logger.debug(f"Sent {envelope.kind.value} to {envelope.to}")

    def close(self) -> None:
        with self._lock:
            self.session.close()

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.config.get_http_endpoint(endpoint)
        try:
            with self._lock:
                response = self.session.post(
                    url, json=payload, timeout=self.config.request_timeout
                )
        except requests.RequestException as e:
            raise SignalingError(f"{endpoint} request failed: {e}") from e

        if response.status_code != 200:
            raise SignalingError(
                f"{endpoint} returned {response.status_code}: {response.text[:200]}"
            )

        if not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise SignalingError(f"{endpoint} returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise SignalingError(f"{endpoint} returned {type(data).__name__}, expected object")
        return data


def _parse_signal(entry: Any, key: str) -> Optional[InboundSignal]:
    """Decode ``{"from": ..., key: {...}}`` into an InboundSignal.

    Entries missing either field are dropped with a warning.
    """
    if not entry:
        return None
    if not isinstance(entry, dict):
        logger.warning(f"Dropping malformed {key} entry: {entry!r}")
        return None

    sender = entry.get("from")
    payload = entry.get(key)
    if not sender or not isinstance(payload, dict):
        logger.warning(f"Dropping {key} entry without sender or payload")
        return None
    return InboundSignal(peer_id=str(sender), payload=payload)
