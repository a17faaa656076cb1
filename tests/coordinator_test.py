from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator
from typing import NamedTuple

import pytest
import pytest_asyncio

from peermesh.coordinator import DEFAULT_ICE_SERVERS
from peermesh.coordinator import NegotiationCoordinator
from peermesh.events import AddPeer
from peermesh.events import IceCandidate
from peermesh.events import IceCandidateEvent
from peermesh.events import RemovePeer
from peermesh.events import SessionDescription
from peermesh.events import SessionDescriptionEvent
from peermesh.exceptions import NegotiationError
from peermesh.exceptions import UnknownPeerError
from peermesh.notifications import ConnectionStateChanged
from peermesh.notifications import NewPeerReady
from peermesh.notifications import Notification
from peermesh.notifications import PeerDataReceived
from testing.engine import FakeConnection
from testing.engine import FakeEngine
from testing.signaling import InMemorySignalingChannel
from testing.signaling import InMemorySignalingHub
from testing.signaling import settle
from testing.utils import wait_until

CANDIDATE = IceCandidate(
    candidate='candidate:9 1 udp 2130706431 10.0.0.1 9 typ host',
    sdp_mid='0',
    sdp_mline_index=0,
)


def _offer(sender: str = 'remote') -> SessionDescription:
    sdp = json.dumps({'from': sender, 'seq': 1, 'channels': ['updates']})
    return SessionDescription(type='offer', sdp=sdp)


class Client(NamedTuple):
    hub: InMemorySignalingHub
    coordinator: NegotiationCoordinator
    signaling: InMemorySignalingChannel
    engine: FakeEngine
    notifications: list[Notification]


def _client(hub: InMemorySignalingHub, client_id: str) -> Client:
    signaling = hub.channel(client_id)
    engine = FakeEngine(client_id)
    coordinator = NegotiationCoordinator(signaling, engine)
    notifications: list[Notification] = []
    coordinator.bus.subscribe(notifications.append)
    return Client(hub, coordinator, signaling, engine, notifications)


@pytest_asyncio.fixture()
async def clients() -> AsyncGenerator[tuple[Client, Client], None]:
    hub = InMemorySignalingHub()
    a = _client(hub, 'a')
    b = _client(hub, 'b')
    yield a, b
    await a.coordinator.close()
    await b.coordinator.close()


def _connection(client: Client, index: int = -1) -> FakeConnection:
    return client.engine.connections[index]


@pytest.mark.asyncio()
async def test_polite_side_offers_then_relays_candidates(clients) -> None:
    a, _ = clients
    a.coordinator.dispatch(AddPeer('b', polite=True))
    await a.coordinator.drain()

    connection = _connection(a)
    assert 'updates' in connection.channels
    assert connection.ice_servers == list(DEFAULT_ICE_SERVERS)

    events = [(peer, event) for peer, event, _ in a.signaling.sent]
    assert events == [
        ('b', 'session-description'),
        ('b', 'ice-candidate'),
        ('b', 'ice-candidate'),
    ]
    offer = a.signaling.sent[0][2]
    assert offer == connection.local_description
    assert isinstance(offer, SessionDescription)
    assert offer.type == 'offer'
    # End of gathering is relayed as a None candidate
    assert a.signaling.sent[-1][2] is None
    assert not a.coordinator.registry.get('b').state.making_offer


@pytest.mark.asyncio()
async def test_negotiation_between_two_peers(clients) -> None:
    a, b = clients
    a.hub.introduce('a', 'b')
    a.coordinator.start()
    b.coordinator.start()
    await settle(a.coordinator, b.coordinator)

    conn_a = _connection(a)
    conn_b = _connection(b)
    assert conn_a.history == ['local-offer', 'remote-answer']
    assert conn_b.history == ['remote-offer', 'local-answer']
    assert conn_a.signaling_state == conn_b.signaling_state == 'stable'
    assert conn_a.local_description == conn_b.remote_description
    assert conn_b.local_description == conn_a.remote_description

    # Candidates were applied only after the remote description so none
    # failed, and each side got one candidate plus end-of-candidates.
    assert conn_a.candidates[-1] is None
    assert conn_b.candidates[-1] is None
    assert len(conn_a.candidates) == len(conn_b.candidates) == 2

    # Impolite side surfaces the channel as soon as it arrives
    assert [
        n.peer_id for n in b.notifications if isinstance(n, NewPeerReady)
    ] == ['a']
    # Polite side surfaces its own channel only once it opens
    assert not any(isinstance(n, NewPeerReady) for n in a.notifications)
    conn_a.channels['updates'].open()
    ready = [n for n in a.notifications if isinstance(n, NewPeerReady)]
    assert [n.peer_id for n in ready] == ['b']
    assert a.coordinator.registry.channels() == {'b': ready[0].channel}


@pytest.mark.parametrize('polite_id', ('a', 'b'))
@pytest.mark.asyncio()
async def test_glare_converges(clients, polite_id: str) -> None:
    a, b = clients
    polite, impolite = (a, b) if polite_id == 'a' else (b, a)
    polite_peer = 'b' if polite_id == 'a' else 'a'
    await polite.coordinator.on_add_peer(polite_peer, polite=True)
    await impolite.coordinator.on_add_peer(polite_id, polite=False)
    # Both sides now want to negotiate at the same time
    _connection(impolite).create_data_channel('extra')

    a.coordinator.start()
    b.coordinator.start()
    await settle(a.coordinator, b.coordinator)

    conn_polite = _connection(polite)
    conn_impolite = _connection(impolite)
    # The polite side rolled back its offer and answered the impolite one
    assert conn_polite.history == [
        'local-offer',
        'rollback',
        'remote-offer',
        'local-answer',
    ]
    assert conn_impolite.history == ['local-offer', 'remote-answer']
    assert conn_polite.signaling_state == 'stable'
    assert conn_impolite.signaling_state == 'stable'
    assert conn_polite.remote_description == conn_impolite.local_description
    assert conn_impolite.remote_description == conn_polite.local_description

    # Whichever side is impolite, its offer is the one that survives
    surviving = conn_polite.remote_description
    assert surviving is not None
    assert surviving.type == 'offer'
    assert json.loads(surviving.sdp)['from'] == conn_impolite.name

    # Candidates for the polite side's discarded offer were dropped by
    # the impolite side and only those gathered for the answer remain.
    foundations = [
        None if c is None else c.candidate.split()[0]
        for c in conn_impolite.candidates
    ]
    assert foundations == ['candidate:2', None]

    state_polite = polite.coordinator.registry.get(polite_peer).state
    state_impolite = impolite.coordinator.registry.get(polite_id).state
    for state in (state_polite, state_impolite):
        assert not state.making_offer
        assert not state.is_setting_remote_answer_pending


@pytest.mark.asyncio()
async def test_impolite_peer_ignores_colliding_offer(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    connection = _connection(b)
    await connection.set_local_description()
    b.signaling.sent.clear()

    await b.coordinator.on_remote_session_description('a', _offer())

    assert b.coordinator.registry.get('a').state.ignore_offer
    assert connection.history == ['local-offer']
    assert connection.signaling_state == 'have-local-offer'
    assert b.signaling.sent == []

    # Candidates for the ignored offer fail to apply but are suppressed
    await b.coordinator.on_remote_ice_candidate('a', CANDIDATE)
    assert connection.candidates == []


@pytest.mark.asyncio()
async def test_polite_peer_accepts_colliding_offer(clients) -> None:
    a, _ = clients
    a.coordinator.dispatch(AddPeer('b', polite=True))
    await a.coordinator.drain()
    connection = _connection(a)
    assert connection.signaling_state == 'have-local-offer'
    a.signaling.sent.clear()

    await a.coordinator.on_remote_session_description('b', _offer('b'))

    assert not a.coordinator.registry.get('b').state.ignore_offer
    assert connection.history == [
        'local-offer',
        'rollback',
        'remote-offer',
        'local-answer',
    ]
    peer, event, answer = a.signaling.sent[0]
    assert (peer, event) == ('b', 'session-description')
    assert answer == connection.local_description
    assert isinstance(answer, SessionDescription)
    assert answer.type == 'answer'


@pytest.mark.asyncio()
async def test_offer_collision_while_making_offer(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    session = b.coordinator.registry.get('a')
    session.state.making_offer = True

    await b.coordinator.on_remote_session_description('a', _offer())

    # Stable but mid-offer still counts as a collision
    assert session.state.ignore_offer
    assert _connection(b).history == []


@pytest.mark.asyncio()
async def test_unexpected_answer_raises(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    answer = SessionDescription(type='answer', sdp='{}')

    with pytest.raises(NegotiationError, match='answer'):
        await b.coordinator.on_remote_session_description('a', answer)

    state = b.coordinator.registry.get('a').state
    assert not state.is_setting_remote_answer_pending


@pytest.mark.asyncio()
async def test_candidate_failure_raises_without_ignore_offer(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)

    # No remote description yet so the candidate cannot be applied
    with pytest.raises(NegotiationError, match='ICE candidate'):
        await b.coordinator.on_remote_ice_candidate('a', CANDIDATE)


@pytest.mark.asyncio()
async def test_candidate_failure_is_logged_by_queue(clients, caplog) -> None:
    caplog.set_level(logging.ERROR)
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    _connection(b).fail_candidates = True

    b.coordinator.dispatch(SessionDescriptionEvent('a', _offer('a')))
    b.coordinator.dispatch(IceCandidateEvent('a', CANDIDATE))
    await b.coordinator.drain()

    assert _connection(b).history == ['remote-offer', 'local-answer']
    assert any(
        'Failed to apply ICE candidate' in r.message for r in caplog.records
    )


@pytest.mark.asyncio()
async def test_candidates_applied_in_order(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    await b.coordinator.on_remote_session_description('a', _offer('a'))

    second = IceCandidate('candidate:2 1 udp 1 10.0.0.2 9 typ host', '0', 0)
    await b.coordinator.on_remote_ice_candidate('a', CANDIDATE)
    await b.coordinator.on_remote_ice_candidate('a', second)
    await b.coordinator.on_remote_ice_candidate('a', None)

    assert _connection(b).candidates == [CANDIDATE, second, None]


@pytest.mark.asyncio()
async def test_offer_failure_is_logged_and_resets_flag(
    clients,
    caplog,
) -> None:
    caplog.set_level(logging.ERROR)
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    _connection(b).fail_offer = True

    await b.coordinator.on_negotiation_needed('a')

    assert not b.coordinator.registry.get('a').state.making_offer
    assert b.signaling.sent == []
    assert any('failed to create offer' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_relay_failure_is_logged(clients, caplog) -> None:
    caplog.set_level(logging.ERROR)
    a, _ = clients
    a.signaling.fail_sends = True

    a.coordinator.dispatch(AddPeer('b', polite=True))
    await a.coordinator.drain()

    assert not a.coordinator.registry.get('b').state.making_offer
    assert any('failed to relay' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_event_for_unknown_peer(clients, caplog) -> None:
    caplog.set_level(logging.WARNING)
    _, b = clients

    with pytest.raises(UnknownPeerError):
        await b.coordinator.on_remote_session_description('x', _offer())

    b.coordinator.dispatch(SessionDescriptionEvent('x', _offer()))
    await b.coordinator.drain()

    assert any('dropping' in r.message for r in caplog.records)
    assert len(b.engine.connections) == 0


@pytest.mark.asyncio()
async def test_duplicate_add_peer_is_ignored(clients, caplog) -> None:
    caplog.set_level(logging.WARNING)
    _, b = clients
    b.coordinator.dispatch(AddPeer('a', polite=False))
    b.coordinator.dispatch(AddPeer('a', polite=True))
    await b.coordinator.drain()

    assert len(b.engine.connections) == 1
    assert not b.coordinator.registry.get('a').polite
    assert any('already exists' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_terminal_state_removes_session(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    connection = _connection(b)

    connection.set_connection_state('connected')
    await b.coordinator.drain()
    assert 'a' in b.coordinator.registry

    connection.set_connection_state('failed')
    await b.coordinator.drain()
    assert 'a' not in b.coordinator.registry
    assert connection.closed

    states = [
        n.state
        for n in b.notifications
        if isinstance(n, ConnectionStateChanged)
    ]
    assert states == ['connected', 'failed']


@pytest.mark.asyncio()
async def test_connection_state_for_unknown_peer_is_published(clients) -> None:
    _, b = clients
    await b.coordinator.on_connection_state_change('x', 'closed')
    assert b.notifications == [ConnectionStateChanged('x', 'closed')]


@pytest.mark.asyncio()
async def test_remove_peer_is_idempotent(clients) -> None:
    _, b = clients
    b.coordinator.dispatch(AddPeer('a', polite=False))
    b.coordinator.dispatch(RemovePeer('a'))
    b.coordinator.dispatch(RemovePeer('a'))
    await b.coordinator.drain()

    assert 'a' not in b.coordinator.registry
    assert _connection(b).closed
    assert b.notifications == [ConnectionStateChanged('a', 'closed')]


@pytest.mark.asyncio()
async def test_readded_peer_gets_fresh_session(clients) -> None:
    _, b = clients
    b.coordinator.dispatch(AddPeer('a', polite=False))
    await b.coordinator.drain()
    old = _connection(b)
    old_session = b.coordinator.registry.get('a')
    old_session.state.ignore_offer = True

    b.coordinator.dispatch(RemovePeer('a'))
    b.coordinator.dispatch(AddPeer('a', polite=False))
    await b.coordinator.drain()

    session = b.coordinator.registry.get('a')
    assert session is not old_session
    assert not session.state.ignore_offer
    assert _connection(b) is not old

    # Callbacks from the old connection no longer reach the coordinator
    b.signaling.sent.clear()
    old.emit('icecandidate', CANDIDATE)
    old.set_connection_state('failed')
    await b.coordinator.drain()
    assert b.signaling.sent == []
    assert b.coordinator.registry.get('a') is session


@pytest.mark.asyncio()
async def test_readded_peer_events_stay_ordered(clients) -> None:
    _, b = clients
    b.engine.description_delay = 0.05
    b.coordinator.dispatch(AddPeer('p', polite=False))
    await b.coordinator.drain()

    b.coordinator.dispatch(RemovePeer('p'))
    b.coordinator.dispatch(AddPeer('p', polite=False))
    b.coordinator.dispatch(SessionDescriptionEvent('p', _offer('p')))
    # Let the removal finish while the offer is still being applied
    for _ in range(5):
        await asyncio.sleep(0)
    b.coordinator.dispatch(IceCandidateEvent('p', CANDIDATE))
    await b.coordinator.drain()

    connection = _connection(b)
    assert connection.history == ['remote-offer', 'local-answer']
    assert connection.candidates == [CANDIDATE]


@pytest.mark.asyncio()
async def test_queue_forgotten_after_peer_removed(clients) -> None:
    _, b = clients
    b.coordinator.dispatch(AddPeer('p', polite=False))
    b.coordinator.dispatch(RemovePeer('p'))
    await b.coordinator.drain()
    await wait_until(lambda: 'p' not in b.coordinator._queues)

    # A later event for the same id gets a working queue again
    b.coordinator.dispatch(AddPeer('p', polite=False))
    await b.coordinator.drain()
    assert 'p' in b.coordinator.registry


@pytest.mark.asyncio()
async def test_data_channel_messages_are_published(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    await b.coordinator.on_remote_session_description('a', _offer('a'))

    ready = [n for n in b.notifications if isinstance(n, NewPeerReady)]
    assert len(ready) == 1
    assert ready[0].channel.label == 'updates'

    _connection(b).remote_channels['updates'].receive(b'hello')
    assert PeerDataReceived('a', b'hello') in b.notifications


@pytest.mark.asyncio()
async def test_run_skips_bad_messages(clients, caplog) -> None:
    caplog.set_level(logging.ERROR)
    _, b = clients
    b.hub.deliver('b', '{not json')
    b.hub.deliver('b', {'event': 'ping', 'peer': 'a'})
    b.hub.deliver('b', {'event': 'add-peer', 'peer': 'a', 'polite': False})

    b.coordinator.start()
    await settle(b.coordinator)

    assert 'a' in b.coordinator.registry
    assert sum('skipping' in r.message for r in caplog.records) == 2


@pytest.mark.asyncio()
async def test_run_exits_when_signaling_closes(clients) -> None:
    _, b = clients
    await b.signaling.close()
    await asyncio.wait_for(b.coordinator.run(), 1)


@pytest.mark.asyncio()
async def test_close_removes_all_sessions(clients) -> None:
    _, b = clients
    await b.coordinator.on_add_peer('a', polite=False)
    await b.coordinator.on_add_peer('c', polite=False)
    b.coordinator.start()

    await b.coordinator.close()

    assert len(b.coordinator.registry) == 0
    assert all(c.closed for c in b.engine.connections)
