"""Shared fakes for mesh tests.

FakeConnection stands in for the aiortc ConnectionHandle so state machine
tests run without network I/O; tests inject connectivity notifications
through the coordinator's queue exactly as aiortc callbacks would.
"""

from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from meshchat.config import Config
from meshchat.mesh.mesh_coordinator import MeshCoordinator
from meshchat.mesh.message_bus import MessageBus
from meshchat.models import JoinResult, PollResult
from meshchat.signaling.transport import SignalingTransport


class FakeChannel:
    def __init__(self, ready_state="open"):
        self.readyState = ready_state
        self.sent = []

    def send(self, data):
        if self.readyState != "open":
            raise RuntimeError("channel not open")
        self.sent.append(data)

    def close(self):
        self.readyState = "closed"


class FakeConnection:
    def __init__(self, session):
        self.session = session
        self.channel = FakeChannel()
        self.channel_opened = False
        self.offers_created = 0
        self.remote_descriptions = []
        self.candidates = []
        self.closed = False
        self.fail_on = set()

    def _maybe_fail(self, op):
        if op in self.fail_on:
            raise RuntimeError(f"{op} exploded")

    def open_channel(self):
        self.channel_opened = True
        return self.channel

    async def create_offer(self):
        self._maybe_fail("create_offer")
        self.offers_created += 1
        return {"sdp": "v=0 offer", "type": "offer"}

    async def accept_offer(self, offer):
        self._maybe_fail("accept_offer")
        self.remote_descriptions.append(offer)
        return {"sdp": "v=0 answer", "type": "answer"}

    async def apply_answer(self, answer):
        self._maybe_fail("apply_answer")
        self.remote_descriptions.append(answer)

    async def add_candidate(self, candidate):
        self._maybe_fail("add_candidate")
        if not candidate.get("candidate"):
            return False
        self.candidates.append(candidate)
        return True

    async def close(self):
        self._maybe_fail("close")
        self.closed = True


class FakeConnectionFactory:
    def __init__(self):
        self.connections = {}
        self.fail_on = set()

    def create(self, session):
        connection = FakeConnection(session)
        connection.fail_on = set(self.fail_on)
        self.connections.setdefault(session.peer_id, []).append(connection)
        return connection

    def latest(self, peer_id):
        return self.connections[peer_id][-1]


@pytest.fixture
def config():
    """Config with defaults only (no file or env lookups)."""
    cfg = Config()
    cfg.poll_interval = 60.0
    return cfg


@pytest.fixture
def transport():
    mock_transport = MagicMock(spec=SignalingTransport)
    mock_transport.join.return_value = JoinResult(accepted=True, known_peers=[])
    mock_transport.poll.return_value = PollResult()
    mock_transport.send.return_value = None
    return mock_transport


@pytest.fixture
def factory():
    return FakeConnectionFactory()


@pytest.fixture
def bus():
    return MessageBus(display_name="alice")


@pytest_asyncio.fixture
async def coordinator(transport, bus, config, factory):
    """MeshCoordinator that is always left at teardown."""
    mesh = MeshCoordinator(transport, bus, config=config, connection_factory=factory)
    yield mesh
    await mesh.leave()
