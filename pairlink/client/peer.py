"""Peer connection objects driven by a connection session.

A peer object wraps one WebRTC peer connection and exposes a small
event-based contract which the
[`ConnectionSession`][pairlink.client.session.ConnectionSession] consumes.

| Event     | Arguments            | Meaning                                   |
| --------- | -------------------- | ----------------------------------------- |
| `signal`  | payload              | Handshake payload to relay to the remote. |
| `connect` |                      | Direct link established.                  |
| `stream`  | remote track         | Remote media track received.              |
| `data`    | `str` or `bytes`     | Application data received.                |
| `error`   | exception            | Negotiation or transport failure.         |
| `close`   |                      | Connection closed by the remote or lost.  |
"""
from __future__ import annotations

import logging
import warnings
from typing import Any
from typing import Callable
from typing import Protocol
from typing import Sequence
from typing import runtime_checkable

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidAccessError
from aiortc.exceptions import InvalidStateError
from aiortc.mediastreams import MediaStreamTrack
from cryptography.utils import CryptographyDeprecationWarning
from pyee.asyncio import AsyncIOEventEmitter

from pairlink.exceptions import PeerConnectionError
from pairlink.exceptions import SignalApplyError

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = 'pairlink'


@runtime_checkable
class Peer(Protocol):
    """Contract of a peer connection object owned by a session."""

    @property
    def initiator(self) -> bool:
        """If this peer creates the offer."""
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        """Register a handler for one of the peer events."""
        ...

    async def start(self) -> None:
        """Begin negotiation. Initiators emit their offer as a `signal`."""
        ...

    async def signal(self, payload: Any) -> None:
        """Apply a handshake payload received from the remote peer.

        Raises:
            SignalApplyError: If the payload is malformed or arrives in an
                order the peer connection cannot accept.
        """
        ...

    def send(self, data: str | bytes) -> None:
        """Send application data to the remote peer."""
        ...

    async def destroy(self) -> None:
        """Release the peer connection. Emits no further events."""
        ...


class PeerFactory(Protocol):
    """Callable which constructs a new [`Peer`][pairlink.client.peer.Peer]."""

    def __call__(
        self,
        initiator: bool,
        tracks: Sequence[MediaStreamTrack] = (),
    ) -> Peer:
        """Create a peer with the given role and local media tracks."""
        ...


def description_to_payload(description: RTCSessionDescription) -> dict[str, str]:
    """Convert a session description into a JSON-serializable payload."""
    return {'type': description.type, 'sdp': description.sdp}


def payload_to_description(payload: Any) -> RTCSessionDescription:
    """Convert a signal payload into a session description.

    Raises:
        SignalApplyError: If the payload is not an offer or answer.
    """
    if (
        not isinstance(payload, dict)
        or payload.get('type') not in ('offer', 'answer')
        or not isinstance(payload.get('sdp'), str)
    ):
        raise SignalApplyError(
            'Signal payload is not a session description offer or answer.',
        )
    return RTCSessionDescription(sdp=payload['sdp'], type=payload['type'])


class AiortcPeer(AsyncIOEventEmitter):
    """Peer connection built on aiortc.

    Negotiation is not trickled: aiortc gathers every ICE candidate while
    setting the local description, so a single offer and a single answer
    carry everything the two sides need. Application data flows over one
    ordered data channel and local media tracks are attached when the
    connection is negotiated.

    Example:
        ```python
        caller = AiortcPeer(initiator=True)
        callee = AiortcPeer(initiator=False)

        caller.on('signal', lambda p: asyncio.ensure_future(callee.signal(p)))
        callee.on('signal', lambda p: asyncio.ensure_future(caller.signal(p)))
        callee.on('data', print)

        await caller.start()
        ...
        caller.send('hello')
        ```

    Args:
        initiator: If this side creates the offer and the data channel.
        tracks: Local media tracks to send to the remote peer.
        ice_servers: Optional STUN/TURN server URLs.
    """

    def __init__(
        self,
        initiator: bool,
        tracks: Sequence[MediaStreamTrack] = (),
        *,
        ice_servers: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        self._initiator = initiator
        self._tracks = tuple(tracks)
        self._tracks_added = False

        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(url) for url in ice_servers or ()],
        )
        self._pc = RTCPeerConnection(configuration)
        self._pc.on('connectionstatechange', self._on_connection_state_change)
        self._pc.on('track', self._on_track)
        self._pc.on('datachannel', self._on_datachannel)

        self._channel: RTCDataChannel | None = None
        self._connected = False
        self._close_emitted = False
        self._destroyed = False

    def __repr__(self) -> str:
        role = 'initiator' if self._initiator else 'responder'
        return f'{self.__class__.__name__}({role}, state={self.state})'

    @property
    def initiator(self) -> bool:
        """If this peer creates the offer."""
        return self._initiator

    @property
    def state(self) -> str:
        """Get the current connection state.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    async def start(self) -> None:
        """Begin negotiation.

        Initiators open the data channel, attach local tracks, and emit their
        offer as a `signal`. Responders wait for the offer.
        """
        if not self._initiator:
            return

        self._add_tracks()
        channel = self._pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True)
        channel.on('open', self._on_channel_open)
        self._bind_channel(channel)

        await self._pc.setLocalDescription(await self._pc.createOffer())
        logger.debug(f'{self!r}: created offer')
        self.emit('signal', description_to_payload(self._pc.localDescription))

    async def signal(self, payload: Any) -> None:
        """Apply a handshake payload received from the remote peer.

        An offer is answered by emitting the answer as a `signal`.

        Raises:
            SignalApplyError: If the payload is malformed or cannot be applied
                in the current negotiation state.
        """
        description = payload_to_description(payload)
        try:
            await self._pc.setRemoteDescription(description)
            if description.type == 'offer':
                self._add_tracks()
                await self._pc.setLocalDescription(
                    await self._pc.createAnswer(),
                )
        except (InvalidAccessError, InvalidStateError, ValueError) as e:
            raise SignalApplyError(
                f'Failed to apply {description.type}: {e}',
            ) from e

        logger.debug(f'{self!r}: applied remote {description.type}')
        if description.type == 'offer':
            self.emit(
                'signal',
                description_to_payload(self._pc.localDescription),
            )

    def send(self, data: str | bytes) -> None:
        """Send application data over the data channel.

        Raises:
            PeerConnectionError: If the data channel is not open.
        """
        if self._channel is None or self._channel.readyState != 'open':
            raise PeerConnectionError('Data channel to peer is not open.')
        self._channel.send(data)

    async def destroy(self) -> None:
        """Close the peer connection.

        No events are emitted after this is called, including `close`.
        Local media tracks are not stopped because the caller owns them.
        """
        if self._destroyed:
            return
        self._destroyed = True
        if self._channel is not None:
            self._channel.close()
        await self._pc.close()
        self.remove_all_listeners()
        logger.debug(f'{self!r}: destroyed')

    def _add_tracks(self) -> None:
        if self._tracks_added:
            return
        self._tracks_added = True
        for track in self._tracks:
            self._pc.addTrack(track)

    def _bind_channel(self, channel: RTCDataChannel) -> None:
        self._channel = channel
        channel.on('message', self._on_message)
        channel.on('close', self._emit_close)

    def _on_channel_open(self) -> None:
        # Only used on the initiator's side
        self._emit_connect()

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        # Only used on the responder's side; the channel is already open
        self._bind_channel(channel)
        self._emit_connect()

    def _on_message(self, message: str | bytes) -> None:
        if not self._destroyed:
            self.emit('data', message)

    def _on_track(self, track: MediaStreamTrack) -> None:
        if not self._destroyed:
            logger.debug(f'{self!r}: received remote {track.kind} track')
            self.emit('stream', track)

    async def _on_connection_state_change(self) -> None:
        state = self._pc.connectionState
        if self._destroyed:
            return
        if state == 'failed':
            self.emit(
                'error',
                PeerConnectionError('Peer connection entered failed state.'),
            )
            self._emit_close()
        elif state == 'closed':
            self._emit_close()

    def _emit_connect(self) -> None:
        if not self._connected and not self._destroyed:
            self._connected = True
            self.emit('connect')

    def _emit_close(self) -> None:
        if self._close_emitted or self._destroyed:
            return
        self._close_emitted = True
        self.emit('close')
