"""Client-side state machine which pairs with a remote peer through a room."""
from __future__ import annotations

import asyncio
import enum
import functools
import logging
from typing import Any
from typing import Sequence

from aiortc.mediastreams import MediaStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

from pairlink.client.peer import AiortcPeer
from pairlink.client.peer import Peer
from pairlink.client.peer import PeerFactory
from pairlink.client.transport import DISCONNECT_EVENT
from pairlink.client.transport import SignalingTransport
from pairlink.events import EventName
from pairlink.exceptions import PeerConnectionError
from pairlink.exceptions import RoomFullError
from pairlink.exceptions import SignalApplyError
from pairlink.exceptions import TransportDisconnectedError
from pairlink.utils.tasks import cancel_and_wait
from pairlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 1.0


class SessionState(enum.Enum):
    """States of a [`ConnectionSession`][pairlink.client.session.ConnectionSession]."""

    IDLE = 'idle'
    AWAITING_PEER = 'awaiting_peer'
    NEGOTIATING = 'negotiating'
    CONNECTED = 'connected'
    CLOSED = 'closed'


class Role(enum.Enum):
    """Negotiation role assigned by arrival order in the room."""

    CALLER = 'caller'
    """Completed the pair (told `other user`) and sends the offer."""
    CALLEE = 'callee'
    """Was waiting in the room (told `user joined`) and answers."""


class ConnectionSession(AsyncIOEventEmitter):
    """Session which joins a room and connects directly to the other member.

    The session owns at most one peer object at a time. Entering negotiation
    always destroys the previously owned peer before creating its
    replacement. Every notification (pairing events from the server, relayed
    signals, and peer lifecycle events) is applied one at a time in arrival
    order, and events raised by a peer that has since been replaced are
    ignored.

    The session emits the following events for the UI layer.

    - `state`: the new [`SessionState`][pairlink.client.session.SessionState].
    - `connection_state`: one of `'connecting'`, `'connected'`, or
      `'disconnected'`.
    - `data`: application data received from the remote peer.
    - `stream`: a remote media track.
    - `room_full`: a [`RoomFullError`][pairlink.exceptions.RoomFullError]
      when admission to the room is rejected.

    Example:
        ```python
        transport = SignalingTransport('ws://localhost:8000')
        session = ConnectionSession(transport, 'my-room')
        session.on('data', print)

        await session.join()
        ...
        session.send('hello')
        await session.leave()
        ```

    Args:
        transport: Transport to the signaling server. It is connected by
            [`join()`][pairlink.client.session.ConnectionSession.join] if
            needed and disconnected when the session is left.
        room_id: Room to join.
        peer_factory: Callable which creates peer objects.
        local_tracks: Local media tracks attached to every peer object. They
            are stopped when the session is left.
        reconnect_delay: Seconds to wait before renegotiating after the peer
            connection closes while the remote member is still in the room.
    """

    def __init__(
        self,
        transport: SignalingTransport,
        room_id: str,
        *,
        peer_factory: PeerFactory = AiortcPeer,
        local_tracks: Sequence[MediaStreamTrack] = (),
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    ) -> None:
        super().__init__()
        self._transport = transport
        self._room_id = room_id
        self._peer_factory = peer_factory
        self._local_tracks = tuple(local_tracks)
        self._reconnect_delay = reconnect_delay

        self._session_lock = asyncio.Lock()
        self._state = SessionState.IDLE
        self._role: Role | None = None
        self._remote_id: str | None = None
        self._peer: Peer | None = None
        self._answered_peer: Peer | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._left = asyncio.Event()
        self._last_error: Exception | None = None

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(room_id={self._room_id}, '
            f'state={self._state.name}, role={self._role}, '
            f'remote_id={self._remote_id})'
        )

    @property
    def room_id(self) -> str:
        """ID of the room this session joins."""
        return self._room_id

    @property
    def state(self) -> SessionState:
        """Current state of the session."""
        return self._state

    @property
    def role(self) -> Role | None:
        """Negotiation role, or `None` if not yet paired."""
        return self._role

    @property
    def remote_id(self) -> str | None:
        """Member ID of the remote peer if it is believed to be present."""
        return self._remote_id

    @property
    def peer(self) -> Peer | None:
        """Currently owned peer object."""
        return self._peer

    @property
    def last_error(self) -> Exception | None:
        """Most recent negotiation or peer connection error."""
        return self._last_error

    @property
    def reconnect_pending(self) -> bool:
        """If a reconnection is scheduled but has not started yet."""
        task = self._reconnect_task
        return task is not None and not task.done()

    async def join(self) -> None:
        """Connect the transport and request admission to the room.

        Raises:
            RuntimeError: If the session has already joined.
        """
        async with self._session_lock:
            if self._state is not SessionState.IDLE or self._left.is_set():
                raise RuntimeError(f'{self!r} has already joined a room.')

            self._transport.on(EventName.other_user, self._on_other_user)
            self._transport.on(EventName.user_joined, self._on_user_joined)
            self._transport.on(EventName.user_left, self._on_user_left)
            self._transport.on(EventName.room_full, self._on_room_full)
            self._transport.on(EventName.signal, self._on_signal)
            self._transport.on(DISCONNECT_EVENT, self._on_transport_disconnect)

            await self._transport.connect()
            self._set_state(SessionState.AWAITING_PEER)
            await self._transport.emit(EventName.join_room, self._room_id)
            logger.info(f'{self!r}: requested to join room')

    async def leave(self) -> None:
        """Leave the room and release all resources.

        Destroys the peer object, stops the local media tracks, and
        disconnects the transport, which makes the server tell the remote
        member `user left`. Safe to call more than once.
        """
        async with self._session_lock:
            if self._left.is_set():
                return
            logger.info(f'{self!r}: leaving room')
            await self._shutdown()

    async def wait_closed(self) -> None:
        """Wait until the session has been left for good.

        This happens after [`leave()`][pairlink.client.session.ConnectionSession.leave],
        after the room is full, or after the transport disconnects.
        """
        await self._left.wait()

    def send(self, data: str | bytes) -> None:
        """Send application data to the remote peer.

        Raises:
            PeerConnectionError: If the session is not connected.
        """
        if self._peer is None or self._state is not SessionState.CONNECTED:
            raise PeerConnectionError(
                f'{self!r} is not connected to a remote peer.',
            )
        self._peer.send(data)

    # Transport notifications

    async def _on_other_user(self, member_id: str) -> None:
        async with self._session_lock:
            if self._left.is_set():
                return
            logger.info(f'{self!r}: paired with {member_id} as caller')
            self._role = Role.CALLER
            self._remote_id = member_id
            await self._negotiate_as_caller()

    async def _on_user_joined(self, member_id: str) -> None:
        async with self._session_lock:
            if self._left.is_set():
                return
            if (
                self._role is Role.CALLEE
                and self._remote_id == member_id
                and self._peer is not None
            ):
                # The caller's offer was relayed ahead of this notification
                logger.debug(f'{self!r}: already negotiating with {member_id}')
                return
            logger.info(f'{self!r}: paired with {member_id} as callee')
            self._role = Role.CALLEE
            self._remote_id = member_id
            await self._cancel_reconnect()
            await self._release_peer()
            self._set_state(SessionState.NEGOTIATING)
            self.emit('connection_state', 'connecting')

    async def _on_user_left(self) -> None:
        async with self._session_lock:
            if self._left.is_set():
                return
            logger.info(f'{self!r}: remote member left')
            await self._reset()

    async def _on_room_full(self) -> None:
        async with self._session_lock:
            if self._left.is_set():
                return
            logger.warning(f'{self!r}: room is full')
            self.emit(
                'room_full',
                RoomFullError(f'Room {self._room_id} is full.'),
            )
            await self._shutdown()

    async def _on_signal(self, envelope: Any) -> None:
        async with self._session_lock:
            if self._left.is_set():
                return
            if not isinstance(envelope, dict) or 'caller' not in envelope:
                logger.error(f'{self!r}: malformed signal envelope ignored')
                return

            caller = envelope['caller']
            if self._remote_id is not None and caller != self._remote_id:
                logger.warning(
                    f'{self!r}: ignoring signal from unexpected member '
                    f'{caller}',
                )
                return

            if self._role is Role.CALLER and self._peer is None:
                # Answer to an offer from a peer that was already destroyed
                logger.debug(f'{self!r}: dropping stale signal from {caller}')
                return

            peer = self._peer
            if peer is None or self._needs_callee_peer(peer):
                # Signals can arrive before the pairing notification or after
                # the caller restarted negotiation, so the callee side is
                # created on demand.
                logger.info(f'{self!r}: creating callee peer for {caller}')
                if self._role is None:
                    self._role = Role.CALLEE
                self._remote_id = caller
                await self._cancel_reconnect()
                self._set_state(SessionState.NEGOTIATING)
                self.emit('connection_state', 'connecting')
                peer = await self._replace_peer(initiator=False)

            try:
                await peer.signal(envelope.get('signal'))
            except SignalApplyError as e:
                logger.error(f'{self!r}: abandoning negotiation. {e}')
                await self._abandon_negotiation(e)

    async def _on_transport_disconnect(self) -> None:
        async with self._session_lock:
            if self._left.is_set():
                return
            error = TransportDisconnectedError(
                'Lost connection to the signaling server.',
            )
            logger.error(f'{self!r}: {error}')
            self._last_error = error
            await self._shutdown()

    # Peer lifecycle events

    async def _on_peer_signal(self, peer: Peer, payload: Any) -> None:
        async with self._session_lock:
            if peer is not self._peer or self._remote_id is None:
                return
            if not peer.initiator:
                self._answered_peer = peer
            try:
                await self._transport.emit(
                    EventName.signal,
                    {'target': self._remote_id, 'signal': payload},
                )
            except TransportDisconnectedError as e:
                logger.error(f'{self!r}: failed to send signal. {e}')

    async def _on_peer_connect(self, peer: Peer) -> None:
        async with self._session_lock:
            if peer is not self._peer:
                return
            logger.info(f'{self!r}: peer connection established')
            self._set_state(SessionState.CONNECTED)
            self.emit('connection_state', 'connected')

    def _on_peer_data(self, peer: Peer, data: str | bytes) -> None:
        if peer is self._peer:
            self.emit('data', data)

    def _on_peer_stream(self, peer: Peer, track: MediaStreamTrack) -> None:
        if peer is self._peer:
            self.emit('stream', track)

    def _on_peer_error(self, peer: Peer, error: Exception) -> None:
        if peer is self._peer:
            logger.error(f'{self!r}: peer connection error. {error}')
            self._last_error = error

    async def _on_peer_close(self, peer: Peer) -> None:
        async with self._session_lock:
            if peer is not self._peer:
                return
            logger.warning(f'{self!r}: peer connection closed')
            await self._release_peer()
            self.emit('connection_state', 'disconnected')
            if self._remote_id is None:
                self._set_state(SessionState.CLOSED)
                return
            self._set_state(SessionState.AWAITING_PEER)
            if self._role is Role.CALLER:
                self._schedule_reconnect()

    # Helpers. Callers must hold the lock.

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug(f'{self!r}: entering {state.name}')
            self._state = state
            self.emit('state', state)

    def _needs_callee_peer(self, peer: Peer) -> bool:
        if self._role is Role.CALLER:
            return False
        # Any signal after the answer is a fresh offer from a caller that
        # restarted negotiation
        return (
            peer is self._answered_peer
            or self._state is SessionState.CONNECTED
        )

    async def _replace_peer(self, initiator: bool) -> Peer:
        await self._release_peer()
        peer = self._peer_factory(initiator, self._local_tracks)
        peer.on('signal', functools.partial(self._on_peer_signal, peer))
        peer.on('connect', functools.partial(self._on_peer_connect, peer))
        peer.on('data', functools.partial(self._on_peer_data, peer))
        peer.on('stream', functools.partial(self._on_peer_stream, peer))
        peer.on('error', functools.partial(self._on_peer_error, peer))
        peer.on('close', functools.partial(self._on_peer_close, peer))
        self._peer = peer
        return peer

    async def _release_peer(self) -> None:
        peer, self._peer = self._peer, None
        self._answered_peer = None
        if peer is not None:
            await peer.destroy()

    async def _negotiate_as_caller(self) -> None:
        await self._cancel_reconnect()
        self._set_state(SessionState.NEGOTIATING)
        self.emit('connection_state', 'connecting')
        peer = await self._replace_peer(initiator=True)
        try:
            await peer.start()
        except PeerConnectionError as e:
            logger.error(f'{self!r}: failed to start negotiation. {e}')
            await self._abandon_negotiation(e)

    async def _abandon_negotiation(self, error: Exception) -> None:
        self._last_error = error
        await self._release_peer()
        self.emit('connection_state', 'disconnected')
        self._set_state(SessionState.AWAITING_PEER)
        if self._role is Role.CALLER and self._remote_id is not None:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        logger.info(
            f'{self!r}: renegotiating in {self._reconnect_delay} seconds',
        )
        self._reconnect_task = spawn_guarded_background_task(
            self._reconnect,
            name=f'session-reconnect-{self._room_id}',
        )

    async def _reconnect(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        async with self._session_lock:
            self._reconnect_task = None
            if (
                self._left.is_set()
                or self._remote_id is None
                or self._peer is not None
                or self._state is not SessionState.AWAITING_PEER
            ):
                return
            logger.info(f'{self!r}: renegotiating with {self._remote_id}')
            await self._negotiate_as_caller()

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            await cancel_and_wait(task)

    async def _reset(self) -> None:
        # The remote member is gone but this member is still seated, so a
        # later pairing notification may start a new negotiation.
        connected = self._peer is not None
        await self._cancel_reconnect()
        await self._release_peer()
        self._remote_id = None
        self._role = None
        if connected or self._state is SessionState.NEGOTIATING:
            self.emit('connection_state', 'disconnected')
        self._set_state(SessionState.CLOSED)

    async def _shutdown(self) -> None:
        self._left.set()
        await self._reset()
        for track in self._local_tracks:
            track.stop()
        await self._transport.disconnect()
        logger.info(f'{self!r}: session closed')
