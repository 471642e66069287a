"""Tests for MeshCoordinator: join/leave, routing, lifecycle and fan-out.

Covers:
- Join validation and rejection handling
- Initiator and responder negotiation sequences
- Duplicate discovery / duplicate offers never producing a second session
- Negotiation deadline, connectivity failure and failure isolation
- send() echo and transmission counts
- Leave teardown
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock

import pytest

from meshchat.errors import SignalingError
from meshchat.mesh.events import (
    ChannelClosedEvent,
    ChannelMessageEvent,
    ChannelOpenEvent,
    ConnectionStateEvent,
    PollResultEvent,
)
from meshchat.models import (
    EnvelopeKind,
    InboundSignal,
    JoinResult,
    MessageOrigin,
    PeerRole,
    PeerState,
    PollResult,
)


# ── helpers ──────────────────────────────────────────────────────────────────

OFFER = {"sdp": "v=0 remote offer", "type": "offer"}
ANSWER = {"sdp": "v=0 remote answer", "type": "answer"}


async def join(coordinator, transport, peers=()):
    transport.join.return_value = JoinResult(accepted=True, known_peers=list(peers))
    assert await coordinator.join("alice", "ABC123")
    await coordinator.settle()


async def poll(coordinator, **kwargs):
    coordinator._enqueue(PollResultEvent(PollResult(**kwargs)))
    await coordinator.settle()


async def notify(coordinator, *events):
    for event in events:
        coordinator._enqueue(event)
    await coordinator.settle()


async def connect_initiator(coordinator, factory, peer_id):
    await poll(coordinator, answer=InboundSignal(peer_id, ANSWER))
    session = coordinator.sessions[peer_id]
    connection = factory.latest(peer_id)
    await notify(
        coordinator,
        ChannelOpenEvent(session, connection.channel),
        ConnectionStateEvent(session, "connected"),
    )
    return session


async def connect_responder(coordinator, factory, peer_id):
    await poll(coordinator, offer=InboundSignal(peer_id, OFFER))
    session = coordinator.sessions[peer_id]
    connection = factory.latest(peer_id)
    await notify(
        coordinator,
        ConnectionStateEvent(session, "connecting"),
        ChannelOpenEvent(session, connection.channel),
        ConnectionStateEvent(session, "connected"),
    )
    return session


def sent_envelopes(transport):
    return [c.args[1] for c in transport.send.call_args_list]


def system_texts(bus):
    return [m.content for m in bus.messages if m.origin is MessageOrigin.SYSTEM]


def mesh_tasks():
    """Consumer and poll tasks still pending on the running loop."""
    names = ("MeshCoordinator._consume_events", "MeshCoordinator._poll_loop")
    return [
        task
        for task in asyncio.all_tasks()
        if not task.done() and task.get_coro().__qualname__ in names
    ]


# ── join ─────────────────────────────────────────────────────────────────────


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_empty_room(self, coordinator, transport):
        """Joining with no known peers enters the room with zero sessions."""
        await join(coordinator, transport)

        assert coordinator.is_active
        assert coordinator.membership.room_id == "ABC123"
        assert coordinator.membership.display_name == "alice"
        assert coordinator.sessions == {}
        assert coordinator.summary.status_text == "Disconnected"

    @pytest.mark.asyncio
    async def test_room_id_is_normalized(self, coordinator, transport):
        assert await coordinator.join("alice", "  abc123 ")
        assert coordinator.membership.room_id == "ABC123"
        assert transport.join.call_args.args[0] == "ABC123"

    @pytest.mark.asyncio
    async def test_empty_username_rejected_before_network(self, coordinator, transport, bus):
        assert not await coordinator.join("   ", "ABC123")
        transport.join.assert_not_called()
        assert not coordinator.is_active
        assert "Please enter a username first" in system_texts(bus)

    @pytest.mark.asyncio
    async def test_empty_room_rejected_before_network(self, coordinator, transport, bus):
        assert not await coordinator.join("alice", "")
        transport.join.assert_not_called()
        assert "Please enter a room code first" in system_texts(bus)

    @pytest.mark.asyncio
    async def test_rejected_join_does_not_enter_room(self, coordinator, transport, bus):
        transport.join.return_value = JoinResult(accepted=False)
        assert not await coordinator.join("alice", "ABC123")
        assert not coordinator.is_active
        assert coordinator.membership is None
        assert any("rejected" in text for text in system_texts(bus))

    @pytest.mark.asyncio
    async def test_join_network_error_is_diagnostic(self, coordinator, transport, bus):
        transport.join.side_effect = SignalingError("connection refused")
        assert not await coordinator.join("alice", "ABC123")
        assert not coordinator.is_active
        assert any("connection refused" in text for text in system_texts(bus))

    @pytest.mark.asyncio
    async def test_known_peers_become_initiator_sessions(self, coordinator, transport):
        await join(coordinator, transport, peers=["p1", "p2"])

        assert set(coordinator.sessions) == {"p1", "p2"}
        for session in coordinator.sessions.values():
            assert session.role is PeerRole.INITIATOR
            assert session.state is PeerState.AWAITING_ANSWER


# ── initiator path ───────────────────────────────────────────────────────────


class TestInitiatorNegotiation:
    @pytest.mark.asyncio
    async def test_discovery_sends_offer(self, coordinator, transport, factory):
        await join(coordinator, transport)
        coordinator.discover(["p1"])
        await coordinator.settle()

        session = coordinator.sessions["p1"]
        assert session.history == [
            PeerState.NEW,
            PeerState.OFFERING,
            PeerState.AWAITING_ANSWER,
        ]
        assert factory.latest("p1").channel_opened

        envelopes = sent_envelopes(transport)
        assert len(envelopes) == 1
        assert envelopes[0].kind is EnvelopeKind.OFFER
        assert envelopes[0].to == "p1"
        assert envelopes[0].payload == {"sdp": "v=0 offer", "type": "offer"}

    @pytest.mark.asyncio
    async def test_answer_then_connected(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])

        await poll(coordinator, answer=InboundSignal("p1", ANSWER))
        session = coordinator.sessions["p1"]
        assert session.state is PeerState.NEGOTIATING
        assert factory.latest("p1").remote_descriptions == [ANSWER]

        await notify(coordinator, ConnectionStateEvent(session, "connected"))
        assert session.state is PeerState.CONNECTED
        assert coordinator.summary.connected_count == 1
        assert coordinator.summary.status_text == "Connected to 1 peer(s)"

    @pytest.mark.asyncio
    async def test_connected_before_answer_is_ignored(self, coordinator, transport):
        await join(coordinator, transport, peers=["p1"])
        session = coordinator.sessions["p1"]

        await notify(coordinator, ConnectionStateEvent(session, "connected"))
        assert session.state is PeerState.AWAITING_ANSWER
        assert coordinator.summary.connected_count == 0

    @pytest.mark.asyncio
    async def test_duplicate_answer_is_ignored(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        await poll(coordinator, answer=InboundSignal("p1", ANSWER))
        await poll(coordinator, answer=InboundSignal("p1", ANSWER))

        session = coordinator.sessions["p1"]
        assert session.state is PeerState.NEGOTIATING
        assert session.answers_received == 1
        assert len(factory.latest("p1").remote_descriptions) == 1

    @pytest.mark.asyncio
    async def test_connected_session_completed_one_exchange(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        session = await connect_initiator(coordinator, factory, "p1")

        assert session.offers_sent == 1
        assert session.answers_received == 1
        assert session.history.index(PeerState.OFFERING) < session.history.index(
            PeerState.NEGOTIATING
        )


# ── responder path ───────────────────────────────────────────────────────────


class TestResponderNegotiation:
    @pytest.mark.asyncio
    async def test_offer_from_unseen_peer_creates_responder(self, coordinator, transport, factory):
        await join(coordinator, transport)
        await poll(coordinator, offer=InboundSignal("p2", OFFER))

        session = coordinator.sessions["p2"]
        assert session.role is PeerRole.RESPONDER
        assert session.history == [
            PeerState.NEW,
            PeerState.AWAITING_OFFER,
            PeerState.ANSWERING_SENT,
        ]
        assert factory.latest("p2").remote_descriptions == [OFFER]

        envelopes = sent_envelopes(transport)
        assert [e.kind for e in envelopes] == [EnvelopeKind.ANSWER]
        assert envelopes[0].to == "p2"

    @pytest.mark.asyncio
    async def test_responder_reaches_connected(self, coordinator, transport, factory):
        await join(coordinator, transport)
        session = await connect_responder(coordinator, factory, "p2")

        assert session.state is PeerState.CONNECTED
        assert PeerState.NEGOTIATING in session.history
        assert session.offers_received == 1
        assert session.answers_sent == 1

    @pytest.mark.asyncio
    async def test_duplicate_offer_is_ignored(self, coordinator, transport, factory):
        await join(coordinator, transport)
        await poll(coordinator, offer=InboundSignal("p2", OFFER))
        await poll(coordinator, offer=InboundSignal("p2", OFFER))

        assert len(factory.connections["p2"]) == 1
        assert len(sent_envelopes(transport)) == 1

    @pytest.mark.asyncio
    async def test_offer_from_peer_with_outgoing_session_is_ignored(
        self, coordinator, transport, factory
    ):
        await join(coordinator, transport, peers=["p1"])
        await poll(coordinator, offer=InboundSignal("p1", OFFER))

        session = coordinator.sessions["p1"]
        assert session.role is PeerRole.INITIATOR
        assert len(factory.connections["p1"]) == 1

    @pytest.mark.asyncio
    async def test_candidates_in_same_poll_as_offer_are_applied(
        self, coordinator, transport, factory
    ):
        await join(coordinator, transport)
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0"}
        await poll(
            coordinator,
            offer=InboundSignal("p2", OFFER),
            candidates=[InboundSignal("p2", candidate)],
        )

        assert factory.latest("p2").candidates == [candidate]

    @pytest.mark.asyncio
    async def test_answer_to_responder_is_ignored(self, coordinator, transport):
        await join(coordinator, transport)
        await poll(coordinator, offer=InboundSignal("p2", OFFER))
        await poll(coordinator, answer=InboundSignal("p2", ANSWER))

        assert coordinator.sessions["p2"].state is PeerState.ANSWERING_SENT


# ── unknown peers & candidates ───────────────────────────────────────────────


class TestRouting:
    @pytest.mark.asyncio
    async def test_answer_for_unknown_peer_is_ignored(self, coordinator, transport):
        await join(coordinator, transport)
        await poll(coordinator, answer=InboundSignal("ghost", ANSWER))
        assert coordinator.sessions == {}

    @pytest.mark.asyncio
    async def test_candidate_for_unknown_peer_is_discarded(self, coordinator, transport):
        await join(coordinator, transport)
        await poll(coordinator, candidates=[InboundSignal("ghost", {"candidate": "candidate:x"})])
        assert coordinator.sessions == {}

    @pytest.mark.asyncio
    async def test_candidate_applied_to_known_session(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host"}
        await poll(coordinator, candidates=[InboundSignal("p1", candidate)])
        assert factory.latest("p1").candidates == [candidate]

    @pytest.mark.asyncio
    async def test_no_duplicate_sessions_per_peer(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1", "p1", "p2"])
        coordinator.discover(["p1", "p2", "p3"])
        await poll(coordinator, offer=InboundSignal("p3", OFFER))
        await coordinator.settle()

        assert set(coordinator.sessions) == {"p1", "p2", "p3"}
        assert len(coordinator.sessions) <= len(coordinator.seen_peers)
        assert all(len(conns) == 1 for conns in factory.connections.values())

    @pytest.mark.asyncio
    async def test_own_peer_id_is_never_a_session(self, coordinator, transport):
        await join(coordinator, transport)
        me = coordinator.membership.local_peer_id
        coordinator.discover([me])
        await poll(coordinator, offer=InboundSignal(me, OFFER))
        assert coordinator.sessions == {}


# ── failure handling ─────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_negotiation_timeout_fails_session(self, coordinator, transport, config, bus):
        config.negotiation_timeout = 0.05
        await join(coordinator, transport, peers=["p1"])

        await asyncio.sleep(0.2)
        await coordinator.settle()

        assert "p1" not in coordinator.sessions
        assert any("timed out" in text for text in system_texts(bus))

    @pytest.mark.asyncio
    async def test_timeout_cancelled_once_connected(self, coordinator, transport, factory, config):
        config.negotiation_timeout = 0.1
        await join(coordinator, transport, peers=["p1"])
        session = await connect_initiator(coordinator, factory, "p1")

        await asyncio.sleep(0.25)
        await coordinator.settle()

        assert coordinator.sessions["p1"] is session
        assert session.state is PeerState.CONNECTED

    @pytest.mark.asyncio
    async def test_connectivity_failure_removes_session(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        session = coordinator.sessions["p1"]

        await notify(coordinator, ConnectionStateEvent(session, "failed"))

        assert session.state is PeerState.FAILED
        assert "p1" not in coordinator.sessions
        assert factory.latest("p1").closed

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1", "p2"])
        await connect_initiator(coordinator, factory, "p1")
        p2 = await connect_initiator(coordinator, factory, "p2")
        assert coordinator.summary.connected_count == 2

        await notify(coordinator, ConnectionStateEvent(coordinator.sessions["p1"], "disconnected"))

        assert list(coordinator.sessions) == ["p2"]
        assert p2.state is PeerState.CONNECTED
        assert coordinator.summary.connected_count == 1

    @pytest.mark.asyncio
    async def test_remote_channel_close_closes_session(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        session = await connect_initiator(coordinator, factory, "p1")

        await notify(coordinator, ChannelClosedEvent(session))

        assert session.state is PeerState.CLOSED
        assert coordinator.sessions == {}
        assert coordinator.summary.status_text == "Disconnected"

    @pytest.mark.asyncio
    async def test_peer_can_renegotiate_after_failure(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        old = coordinator.sessions["p1"]
        await notify(coordinator, ConnectionStateEvent(old, "failed"))

        await poll(coordinator, offer=InboundSignal("p1", OFFER))

        new = coordinator.sessions["p1"]
        assert new is not old
        assert new.role is PeerRole.RESPONDER
        assert len(coordinator.seen_peers) == 1

    @pytest.mark.asyncio
    async def test_events_from_replaced_session_are_dropped(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        old = coordinator.sessions["p1"]
        await notify(coordinator, ConnectionStateEvent(old, "failed"))
        await poll(coordinator, offer=InboundSignal("p1", OFFER))

        await notify(coordinator, ConnectionStateEvent(old, "failed"))

        assert coordinator.sessions["p1"].state is PeerState.ANSWERING_SENT

    @pytest.mark.asyncio
    async def test_primitive_error_fails_only_that_session(
        self, coordinator, transport, factory, bus
    ):
        await join(coordinator, transport, peers=["p1"])
        factory.fail_on = {"create_offer"}
        coordinator.discover(["p2"])
        await coordinator.settle()

        assert "p2" not in coordinator.sessions
        assert coordinator.sessions["p1"].state is PeerState.AWAITING_ANSWER
        assert any("Could not create offer" in text for text in system_texts(bus))

    @pytest.mark.asyncio
    async def test_signal_send_failure_is_diagnostic(self, coordinator, transport, bus):
        transport.send.side_effect = SignalingError("503")
        await join(coordinator, transport, peers=["p1"])

        assert coordinator.sessions["p1"].state is PeerState.AWAITING_ANSWER
        assert any("Could not send offer" in text for text in system_texts(bus))

    @pytest.mark.asyncio
    async def test_poll_failure_reported_once(self, coordinator, transport, config, bus):
        config.poll_interval = 0.01
        transport.poll.side_effect = SignalingError("timeout")
        await join(coordinator, transport)

        await asyncio.sleep(0.1)
        await coordinator.settle()

        unreachable = [t for t in system_texts(bus) if "unreachable" in t]
        assert len(unreachable) == 1
        assert transport.poll.call_count > 1
        assert coordinator.is_active


    @pytest.mark.asyncio
    async def test_handler_error_still_reaps_and_recomputes(
        self, coordinator, transport, factory
    ):
        """A handler that raises after failing its session leaves no stale entry."""
        await join(coordinator, transport, peers=["p1"])
        session = await connect_initiator(coordinator, factory, "p1")
        assert coordinator.summary.connected_count == 1

        async def half_done_close():
            session.state = PeerState.FAILED
            raise RuntimeError("release exploded")

        session.handle_channel_closed = half_done_close
        await notify(coordinator, ChannelClosedEvent(session))

        assert "p1" not in coordinator.sessions
        assert coordinator.summary.connected_count == 0


# ── messaging ────────────────────────────────────────────────────────────────


class TestSend:
    @pytest.mark.asyncio
    async def test_send_with_no_connected_peers(self, coordinator, transport, factory, bus):
        await join(coordinator, transport, peers=["p1"])

        assert await coordinator.send("hi") == 0

        assert not [m for m in bus.messages if m.origin is MessageOrigin.OWN]
        assert factory.latest("p1").channel.sent == []
        assert any("Not connected" in text for text in system_texts(bus))

    @pytest.mark.asyncio
    async def test_send_to_one_peer(self, coordinator, transport, factory, bus):
        await join(coordinator, transport, peers=["p1"])
        await connect_initiator(coordinator, factory, "p1")

        assert await coordinator.send("hi") == 1

        sent = factory.latest("p1").channel.sent
        assert len(sent) == 1
        assert json.loads(sent[0]) == {"sender": "alice", "content": "hi"}
        own = [m for m in bus.messages if m.origin is MessageOrigin.OWN]
        assert len(own) == 1
        assert own[0].content == "hi"
        assert own[0].sender == "alice"

    @pytest.mark.asyncio
    async def test_send_fans_out_to_every_connected_peer(self, coordinator, transport, factory, bus):
        await join(coordinator, transport, peers=["p1", "p3"])
        await connect_initiator(coordinator, factory, "p1")
        await connect_responder(coordinator, factory, "p2")

        assert await coordinator.send("hello all") == 2

        assert len(factory.latest("p1").channel.sent) == 1
        assert len(factory.latest("p2").channel.sent) == 1
        assert factory.latest("p3").channel.sent == []
        assert len([m for m in bus.messages if m.origin is MessageOrigin.OWN]) == 1

    @pytest.mark.asyncio
    async def test_send_before_join(self, coordinator, bus):
        assert await coordinator.send("hi") == 0
        assert "Join a room before sending messages" in system_texts(bus)

    @pytest.mark.asyncio
    async def test_send_empty_message(self, coordinator, transport, bus):
        await join(coordinator, transport)
        assert await coordinator.send("   ") == 0
        assert "Cannot send an empty message" in system_texts(bus)


class TestReceive:
    @pytest.mark.asyncio
    async def test_inbound_message_appended(self, coordinator, transport, factory, bus):
        await join(coordinator, transport, peers=["p1"])
        session = await connect_initiator(coordinator, factory, "p1")

        payload = json.dumps({"sender": "bob", "content": "hey"})
        await notify(coordinator, ChannelMessageEvent(session, payload))

        remote = [m for m in bus.messages if m.origin is MessageOrigin.REMOTE]
        assert [(m.sender, m.content) for m in remote] == [("bob", "hey")]
        assert session.display_name == "bob"

    @pytest.mark.asyncio
    async def test_malformed_payload_dropped(self, coordinator, transport, factory, bus):
        await join(coordinator, transport, peers=["p1"])
        session = await connect_initiator(coordinator, factory, "p1")
        before = len(bus.messages)

        await notify(coordinator, ChannelMessageEvent(session, "{not json"))

        assert len(bus.messages) == before
        assert session.state is PeerState.CONNECTED
        assert coordinator.sessions["p1"] is session


# ── leave ────────────────────────────────────────────────────────────────────


class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_closes_every_session(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1", "p2"])
        s1 = await connect_initiator(coordinator, factory, "p1")
        s2 = coordinator.sessions["p2"]

        await coordinator.leave()

        assert s1.state is PeerState.CLOSED
        assert s2.state is PeerState.CLOSED
        assert factory.latest("p1").closed and factory.latest("p2").closed
        assert coordinator.sessions == {}
        assert coordinator.summary.connected_count == 0
        assert coordinator.membership is None
        assert not coordinator.is_active

    @pytest.mark.asyncio
    async def test_leave_continues_past_close_errors(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1", "p2"])
        s1 = coordinator.sessions["p1"]
        s1.close = AsyncMock(side_effect=RuntimeError("close failed"))
        s2 = coordinator.sessions["p2"]

        await coordinator.leave()

        assert s2.state is PeerState.CLOSED
        assert coordinator.sessions == {}

    @pytest.mark.asyncio
    async def test_leave_closes_failed_session(self, coordinator, transport, factory):
        await join(coordinator, transport, peers=["p1"])
        session = coordinator.sessions["p1"]
        await session.fail("test")

        await coordinator.leave()

        assert session.state is PeerState.CLOSED

    @pytest.mark.asyncio
    async def test_results_after_leave_are_ignored(self, coordinator, transport):
        await join(coordinator, transport)
        await coordinator.leave()

        coordinator._enqueue(PollResultEvent(PollResult(offer=InboundSignal("p9", OFFER))))
        await asyncio.sleep(0)

        assert coordinator.sessions == {}
        assert await coordinator.send("hi") == 0

    @pytest.mark.asyncio
    async def test_rejoin_after_leave(self, coordinator, transport):
        await join(coordinator, transport, peers=["p1"])
        await coordinator.leave()
        await join(coordinator, transport, peers=["p2"])

        assert set(coordinator.sessions) == {"p2"}

    @pytest.mark.asyncio
    async def test_overlapping_joins_start_one_room(self, coordinator, transport):
        results = await asyncio.gather(
            coordinator.join("alice", "ABC123"), coordinator.join("alice", "ABC123")
        )

        assert sorted(results) == [False, True]
        assert transport.join.call_count == 1

        await coordinator.leave()

        assert mesh_tasks() == []

    @pytest.mark.asyncio
    async def test_leave_during_join_leaves_the_room(self, coordinator, transport):
        def slow_join(room_id, peer_id):
            time.sleep(0.05)
            return JoinResult(accepted=True, known_peers=["p1"])

        transport.join.side_effect = slow_join
        join_task = asyncio.create_task(coordinator.join("alice", "ABC123"))
        await asyncio.sleep(0.01)

        await coordinator.leave()

        assert await join_task
        assert not coordinator.is_active
        assert coordinator.membership is None
        assert coordinator.sessions == {}
        assert mesh_tasks() == []
