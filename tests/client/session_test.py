from __future__ import annotations

import asyncio
from typing import Any
from unittest import mock

import pytest

from pairlink.client.session import ConnectionSession
from pairlink.client.session import Role
from pairlink.client.session import SessionState
from pairlink.events import EventName
from pairlink.exceptions import PeerConnectionError
from pairlink.exceptions import RoomFullError
from pairlink.exceptions import SignalApplyError
from pairlink.exceptions import TransportDisconnectedError
from testing.fakes import ANSWER
from testing.fakes import BAD_SIGNAL
from testing.fakes import FakePeerFactory
from testing.fakes import FakeTransport
from testing.fakes import OFFER
from testing.utils import settle

_RECONNECT_DELAY = 0.01
_REMOTE = 'remote-member'


class _Recorder:
    def __init__(self, session: ConnectionSession) -> None:
        self.states: list[SessionState] = []
        self.connection_states: list[str] = []
        self.data: list[Any] = []
        self.streams: list[Any] = []
        self.room_full: list[RoomFullError] = []
        session.on('state', self.states.append)
        session.on('connection_state', self.connection_states.append)
        session.on('data', self.data.append)
        session.on('stream', self.streams.append)
        session.on('room_full', self.room_full.append)


def make_session(
    **kwargs: Any,
) -> tuple[ConnectionSession, FakeTransport, FakePeerFactory, _Recorder]:
    transport = FakeTransport()
    factory = FakePeerFactory()
    session = ConnectionSession(
        transport,  # type: ignore[arg-type]
        'R',
        peer_factory=factory,
        reconnect_delay=_RECONNECT_DELAY,
        **kwargs,
    )
    return session, transport, factory, _Recorder(session)


async def connect_as_caller(
    session: ConnectionSession,
    transport: FakeTransport,
    factory: FakePeerFactory,
) -> None:
    await session.join()
    transport.deliver(EventName.other_user, _REMOTE)
    await settle()
    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': ANSWER})
    await settle()
    factory.latest.fire('connect')
    await settle()
    assert session.state is SessionState.CONNECTED


async def connect_as_callee(
    session: ConnectionSession,
    transport: FakeTransport,
    factory: FakePeerFactory,
) -> None:
    await session.join()
    transport.deliver(EventName.user_joined, _REMOTE)
    await settle()
    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': OFFER})
    await settle()
    factory.latest.fire('connect')
    await settle()
    assert session.state is SessionState.CONNECTED


@pytest.mark.asyncio()
async def test_join_requests_room() -> None:
    session, transport, _, recorder = make_session()
    assert session.state is SessionState.IDLE

    await session.join()

    transport.connect.assert_awaited_once()
    assert transport.emitted == [('join room', 'R')]
    assert session.state is SessionState.AWAITING_PEER
    assert recorder.states == [SessionState.AWAITING_PEER]
    assert session.role is None
    assert session.peer is None


@pytest.mark.asyncio()
async def test_join_twice_raises() -> None:
    session, _, _, _ = make_session()
    await session.join()

    with pytest.raises(RuntimeError, match='already joined'):
        await session.join()


@pytest.mark.asyncio()
async def test_caller_negotiation() -> None:
    session, transport, factory, recorder = make_session()
    await session.join()

    transport.deliver(EventName.other_user, _REMOTE)
    await settle()

    assert session.role is Role.CALLER
    assert session.remote_id == _REMOTE
    assert session.state is SessionState.NEGOTIATING
    assert len(factory.peers) == 1
    peer = factory.latest
    assert peer.initiator
    assert peer.started == 1
    assert transport.signals() == [{'target': _REMOTE, 'signal': OFFER}]

    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': ANSWER})
    await settle()
    assert peer.applied == [ANSWER]

    peer.fire('connect')
    await settle()
    assert session.state is SessionState.CONNECTED
    assert recorder.connection_states == ['connecting', 'connected']
    assert recorder.states == [
        SessionState.AWAITING_PEER,
        SessionState.NEGOTIATING,
        SessionState.CONNECTED,
    ]


@pytest.mark.asyncio()
async def test_callee_negotiation() -> None:
    session, transport, factory, recorder = make_session()
    await session.join()

    transport.deliver(EventName.user_joined, _REMOTE)
    await settle()

    assert session.role is Role.CALLEE
    assert session.remote_id == _REMOTE
    assert session.state is SessionState.NEGOTIATING
    assert factory.peers == []
    assert recorder.connection_states == ['connecting']

    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': OFFER})
    await settle()

    assert len(factory.peers) == 1
    peer = factory.latest
    assert not peer.initiator
    assert peer.started == 0
    assert peer.applied == [OFFER]
    assert transport.signals() == [{'target': _REMOTE, 'signal': ANSWER}]

    peer.fire('connect')
    await settle()
    assert session.state is SessionState.CONNECTED


@pytest.mark.asyncio()
async def test_offer_before_pairing_notification() -> None:
    session, transport, factory, _ = make_session()
    await session.join()

    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': OFFER})
    await settle()
    transport.deliver(EventName.user_joined, _REMOTE)
    await settle()

    assert session.role is Role.CALLEE
    assert session.remote_id == _REMOTE
    assert len(factory.peers) == 1
    assert factory.latest.destroyed == 0
    assert session.peer is factory.latest
    assert transport.signals() == [{'target': _REMOTE, 'signal': ANSWER}]


@pytest.mark.asyncio()
async def test_peer_left_during_negotiation() -> None:
    session, transport, factory, recorder = make_session()
    await session.join()
    transport.deliver(EventName.other_user, _REMOTE)
    await settle()
    peer = factory.latest

    transport.deliver(EventName.user_left)
    await settle()

    assert session.state is SessionState.CLOSED
    assert session.remote_id is None
    assert session.role is None
    assert session.peer is None
    assert peer.destroyed == 1
    assert recorder.connection_states[-1] == 'disconnected'

    # Late events from the destroyed peer are ignored
    peer.fire('close')
    peer.fire('data', 'late')
    await settle()
    assert peer.destroyed == 1
    assert recorder.data == []
    assert not session.reconnect_pending


@pytest.mark.asyncio()
async def test_repair_after_peer_left() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_caller(session, transport, factory)

    transport.deliver(EventName.user_left)
    await settle()
    assert session.state is SessionState.CLOSED

    transport.deliver(EventName.user_joined, 'new-member')
    await settle()
    assert session.role is Role.CALLEE
    assert session.remote_id == 'new-member'
    assert session.state is SessionState.NEGOTIATING

    transport.deliver(
        EventName.signal,
        {'caller': 'new-member', 'signal': OFFER},
    )
    await settle()
    assert len(factory.peers) == 2
    assert not factory.latest.initiator


@pytest.mark.asyncio()
async def test_caller_reconnects_after_close() -> None:
    session, transport, factory, recorder = make_session()
    await connect_as_caller(session, transport, factory)
    peer = factory.latest

    peer.fire('close')
    # A second close of the same peer must not schedule another attempt
    peer.fire('close')
    await settle()

    assert session.state is SessionState.AWAITING_PEER
    assert session.peer is None
    assert session.reconnect_pending
    assert peer.destroyed == 1
    assert recorder.connection_states[-1] == 'disconnected'

    await asyncio.sleep(_RECONNECT_DELAY * 5)
    await settle()

    assert len(factory.peers) == 2
    assert factory.latest.initiator
    assert factory.latest.started == 1
    assert session.state is SessionState.NEGOTIATING
    assert transport.signals() == [
        {'target': _REMOTE, 'signal': OFFER},
        {'target': _REMOTE, 'signal': OFFER},
    ]
    assert not session.reconnect_pending


@pytest.mark.asyncio()
async def test_callee_waits_after_close() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_callee(session, transport, factory)
    peer = factory.latest

    peer.fire('close')
    await settle()
    await asyncio.sleep(_RECONNECT_DELAY * 5)
    await settle()

    assert session.state is SessionState.AWAITING_PEER
    assert not session.reconnect_pending
    assert len(factory.peers) == 1

    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': OFFER})
    await settle()
    assert len(factory.peers) == 2
    assert session.state is SessionState.NEGOTIATING


@pytest.mark.asyncio()
async def test_callee_renegotiates_on_new_offer() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_callee(session, transport, factory)
    old_peer = factory.latest

    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': OFFER})
    await settle()

    assert old_peer.destroyed == 1
    assert len(factory.peers) == 2
    assert session.peer is factory.latest
    assert session.state is SessionState.NEGOTIATING


@pytest.mark.asyncio()
async def test_reconnect_cancelled_by_leave() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_caller(session, transport, factory)

    factory.latest.fire('close')
    await settle()
    assert session.reconnect_pending

    await session.leave()
    await asyncio.sleep(_RECONNECT_DELAY * 5)
    await settle()

    assert len(factory.peers) == 1
    assert not session.reconnect_pending
    assert session.state is SessionState.CLOSED


@pytest.mark.asyncio()
async def test_reconnect_cancelled_by_peer_left() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_caller(session, transport, factory)

    factory.latest.fire('close')
    await settle()
    transport.deliver(EventName.user_left)
    await settle()
    await asyncio.sleep(_RECONNECT_DELAY * 5)
    await settle()

    assert len(factory.peers) == 1
    assert session.state is SessionState.CLOSED


@pytest.mark.asyncio()
async def test_room_full() -> None:
    session, transport, _, recorder = make_session()
    await session.join()

    transport.deliver(EventName.room_full)
    await settle()

    assert len(recorder.room_full) == 1
    assert isinstance(recorder.room_full[0], RoomFullError)
    assert session.state is SessionState.CLOSED
    transport.disconnect.assert_awaited_once()
    await asyncio.wait_for(session.wait_closed(), 1)

    # Events after closing are ignored
    transport.deliver(EventName.other_user, _REMOTE)
    await settle()
    assert session.peer is None


@pytest.mark.asyncio()
async def test_transport_disconnect_closes_session() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_caller(session, transport, factory)

    transport.drop()
    await settle()

    assert session.state is SessionState.CLOSED
    assert isinstance(session.last_error, TransportDisconnectedError)
    assert factory.latest.destroyed == 1
    await asyncio.wait_for(session.wait_closed(), 1)


@pytest.mark.asyncio()
async def test_leave_is_idempotent() -> None:
    track = mock.MagicMock()
    session, transport, factory, _ = make_session(local_tracks=[track])
    await connect_as_caller(session, transport, factory)
    assert factory.latest.tracks == (track,)

    await session.leave()
    await session.leave()

    assert session.state is SessionState.CLOSED
    assert factory.latest.destroyed == 1
    track.stop.assert_called_once()
    transport.disconnect.assert_awaited_once()
    await asyncio.wait_for(session.wait_closed(), 1)


@pytest.mark.asyncio()
async def test_callee_bad_offer() -> None:
    session, transport, factory, recorder = make_session()
    await session.join()
    transport.deliver(EventName.user_joined, _REMOTE)
    await settle()

    transport.deliver(
        EventName.signal,
        {'caller': _REMOTE, 'signal': BAD_SIGNAL},
    )
    await settle()

    assert isinstance(session.last_error, SignalApplyError)
    assert factory.latest.destroyed == 1
    assert session.peer is None
    assert session.state is SessionState.AWAITING_PEER
    assert recorder.connection_states[-1] == 'disconnected'
    assert not session.reconnect_pending


@pytest.mark.asyncio()
async def test_caller_bad_answer_renegotiates() -> None:
    session, transport, factory, _ = make_session()
    await session.join()
    transport.deliver(EventName.other_user, _REMOTE)
    await settle()

    transport.deliver(
        EventName.signal,
        {'caller': _REMOTE, 'signal': BAD_SIGNAL},
    )
    await settle()
    assert isinstance(session.last_error, SignalApplyError)
    assert session.state is SessionState.AWAITING_PEER

    await asyncio.sleep(_RECONNECT_DELAY * 5)
    await settle()
    assert len(factory.peers) == 2
    assert session.state is SessionState.NEGOTIATING


@pytest.mark.asyncio()
async def test_caller_drops_stale_answer() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_caller(session, transport, factory)
    factory.latest.fire('close')
    await settle()

    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': ANSWER})
    await settle()

    assert session.peer is None
    assert len(factory.peers) == 1


@pytest.mark.asyncio()
async def test_signal_from_unexpected_member_ignored() -> None:
    session, transport, factory, _ = make_session()
    await session.join()
    transport.deliver(EventName.other_user, _REMOTE)
    await settle()

    transport.deliver(EventName.signal, {'caller': 'intruder', 'signal': {}})
    transport.deliver(EventName.signal, 'not an envelope')
    await settle()

    assert factory.latest.applied == []
    assert session.remote_id == _REMOTE


@pytest.mark.asyncio()
async def test_send_and_receive_data() -> None:
    session, transport, factory, recorder = make_session()

    with pytest.raises(PeerConnectionError):
        session.send('too early')

    await connect_as_caller(session, transport, factory)
    peer = factory.latest

    session.send('hello')
    peer.fire('data', 'hi back')
    peer.fire('stream', 'track')
    await settle()

    assert peer.sent == ['hello']
    assert recorder.data == ['hi back']
    assert recorder.streams == ['track']


@pytest.mark.asyncio()
async def test_peer_error_is_recorded() -> None:
    session, transport, factory, _ = make_session()
    await connect_as_caller(session, transport, factory)

    error = PeerConnectionError('Peer connection entered failed state.')
    factory.latest.fire('error', error)
    await settle()

    assert session.last_error is error


@pytest.mark.asyncio()
async def test_listeners_survive_join() -> None:
    transport = FakeTransport()
    session = ConnectionSession(
        transport,  # type: ignore[arg-type]
        'R',
        peer_factory=FakePeerFactory(),
    )
    states: list[SessionState] = []
    session.on('state', states.append)

    await session.join()
    session.on('data', print)
    session.remove_listener('data', print)

    assert states == [SessionState.AWAITING_PEER]


@pytest.mark.asyncio()
async def test_callee_replaces_answered_peer_on_new_offer() -> None:
    session, transport, factory, _ = make_session()
    await session.join()
    transport.deliver(EventName.user_joined, _REMOTE)
    await settle()
    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': OFFER})
    await settle()
    answered = factory.latest
    assert session.state is SessionState.NEGOTIATING

    # The caller abandoned its first attempt and sends a fresh offer
    transport.deliver(EventName.signal, {'caller': _REMOTE, 'signal': OFFER})
    await settle()

    assert len(factory.peers) == 2
    assert answered.destroyed == 1
    assert answered.applied == [OFFER]
    assert session.peer is factory.latest
    assert factory.latest.applied == [OFFER]
    assert session.state is SessionState.NEGOTIATING
    assert transport.signals() == [
        {'target': _REMOTE, 'signal': ANSWER},
        {'target': _REMOTE, 'signal': ANSWER},
    ]
