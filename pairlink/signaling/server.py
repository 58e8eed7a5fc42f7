"""Signaling server implementation for pairing two WebRTC peers.

The signaling server is a lightweight server accessible by both peers (e.g.,
has a public IP address). It seats clients in rooms of at most two members,
tells each member of a pair about the other, and forwards the opaque
session descriptions the peers need to connect to each other directly.
"""
from __future__ import annotations

import logging
import sys
from typing import Any
from typing import Iterable

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from pairlink.events import decode_event
from pairlink.events import encode_event
from pairlink.events import Event
from pairlink.events import EventDecodeError
from pairlink.events import EventEncodeError
from pairlink.events import EventName
from pairlink.signaling.connections import Connection
from pairlink.signaling.connections import ConnectionManager
from pairlink.signaling.connections import new_member_id
from pairlink.signaling.exceptions import BadRequestError
from pairlink.signaling.registry import JoinOutcome
from pairlink.signaling.registry import Notification
from pairlink.signaling.registry import RoomRegistry

logger = logging.getLogger(__name__)


class SignalingServer:
    """WebRTC signaling server for two-member rooms.

    Each accepted websocket is assigned a fresh member ID. Clients then send
    `join room` to be seated in a room and `signal` to forward handshake
    payloads to the other member. The server never inspects the handshake
    payloads; it only stamps the authenticated sender ID on them as `caller`.
    Once two peers are connected they no longer need the server.

    The server is built on websockets and designed to be served using
    [`serve()`][pairlink.signaling.run.serve].

    Args:
        registry: Room registry to seat members in. A new one is created
            if not provided.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        registry: RoomRegistry | None = None,
        *,
        max_message_bytes: int | None = None,
    ) -> None:
        self._registry = RoomRegistry() if registry is None else registry
        self._connection_manager = ConnectionManager()
        self._max_message_bytes = max_message_bytes

    @property
    def registry(self) -> RoomRegistry:
        """Registry of rooms and their members."""
        return self._registry

    @property
    def connection_manager(self) -> ConnectionManager:
        """Manager of open client connections."""
        return self._connection_manager

    async def send(
        self,
        connection: Connection,
        name: EventName,
        data: Any = None,
    ) -> None:
        """Send an event on the connection's socket.

        Encoding errors and closed sockets are logged rather than raised
        because a fault in one connection must not affect others.

        Args:
            connection: Connection to send the event to.
            name: Event name.
            data: Event payload.
        """
        try:
            message = encode_event(name, data)
        except EventEncodeError as e:
            logger.error(f'Failed to encode event: {e}')
            return

        try:
            await connection.websocket.send(message)
        except websockets.exceptions.ConnectionClosed:
            logger.warning(
                f'Connection to {connection.member_id} closed while '
                f'attempting to send {name.value} event',
            )

    async def deliver(self, notifications: Iterable[Notification]) -> None:
        """Deliver registry notifications to their recipients.

        Notifications addressed to members that have since disconnected are
        dropped.
        """
        for notification in notifications:
            recipient = self.connection_manager.get_connection_by_member_id(
                notification.recipient,
            )
            if recipient is None:
                logger.debug(
                    f'Dropping {notification.event.value} event for '
                    f'disconnected member {notification.recipient}',
                )
                continue
            await self.send(recipient, notification.event, notification.data)

    async def connect(self, websocket: ServerConnection) -> Connection:
        """Accept a new client and assign it a member ID."""
        connection = Connection(member_id=new_member_id(), websocket=websocket)
        self.connection_manager.add_connection(connection)
        logger.info(f'Accepted connection: {connection}')
        return connection

    async def disconnect(self, connection: Connection, expected: bool) -> None:
        """Forget a client and remove it from its room.

        The room counterpart, if any, is told `user left`. Safe to call more
        than once for the same connection.

        Args:
            connection: Connection which closed.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        reason = 'ok' if expected else 'unexpected'
        logger.info(
            f'Removing connection {connection.member_id} for {reason} reason',
        )
        self.connection_manager.remove_connection(connection)
        await self.leave(connection)

    async def join(self, connection: Connection, room_id: str) -> JoinOutcome:
        """Seat a connection in a room and notify the affected members.

        Args:
            connection: Connection requesting admission.
            room_id: Room to join.

        Returns:
            Outcome of the join.
        """
        outcome = await self.registry.join(connection.member_id, room_id)
        await self.deliver(outcome.notifications)
        return outcome

    async def leave(self, connection: Connection) -> None:
        """Remove a connection from its room and notify the counterpart."""
        notifications = await self.registry.leave(connection.member_id)
        await self.deliver(notifications)

    async def relay(
        self,
        source: Connection,
        target_id: str,
        payload: Any,
    ) -> bool:
        """Forward a signal payload to another member.

        The payload is forwarded unmodified as `{caller, signal}` where
        `caller` is always the source's member ID. If the target is not
        connected, the payload is dropped; the target's eventual `user left`
        is what informs the sender.

        Args:
            source: Connection which sent the signal.
            target_id: Member ID of the intended recipient.
            payload: Opaque signal payload.

        Returns:
            If the payload was handed to the target's socket.
        """
        target = self.connection_manager.get_connection_by_member_id(target_id)
        if target is None:
            logger.debug(
                f'Dropping signal from {source.member_id} to unknown member '
                f'{target_id}',
            )
            return False

        logger.debug(
            f'Relaying signal from {source.member_id} to {target.member_id}',
        )
        await self.send(
            target,
            EventName.signal,
            {'caller': source.member_id, 'signal': payload},
        )
        return True

    async def _process_event(self, connection: Connection, event: Event) -> None:
        # Dispatches the event to the correct method depending on the name
        if event.name == EventName.join_room.value:
            if not isinstance(event.data, str):
                raise BadRequestError(
                    'Room ID must be a string. '
                    f'Got {type(event.data).__name__}.',
                )
            await self.join(connection, event.data)
        elif event.name == EventName.signal.value:
            if not isinstance(event.data, dict) or not isinstance(
                event.data.get('target'),
                str,
            ):
                raise BadRequestError(
                    'Signal event must contain a string target.',
                )
            await self.relay(
                connection,
                event.data['target'],
                event.data.get('signal'),
            )
        else:
            raise BadRequestError(f'Unknown event: {event.name}.')

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        The handler will close the connection for the following reasons.

        - An undecodable message is received (code 4000).
        - The client sends a message larger than the allowed size (code 4003).

        Events with malformed payloads are logged and skipped. However the
        connection ends, the client is removed from its room on the way out.

        Args:
            websocket: Websocket of the newly accepted client.
        """
        connection = await self.connect(websocket)
        expected = True
        try:
            while True:
                try:
                    message = await websocket.recv()
                except websockets.exceptions.ConnectionClosedOK:
                    break
                except websockets.exceptions.ConnectionClosedError:
                    expected = False
                    break

                if (
                    self._max_message_bytes is not None
                    and sys.getsizeof(message) > self._max_message_bytes
                ):
                    await websocket.close(
                        4003,
                        reason='Message length exceeds limit.',
                    )
                    logger.warning(
                        f'Client {connection.member_id} sent message with '
                        f'size {sys.getsizeof(message)} bytes which exceeds '
                        f'the max configured size of {self._max_message_bytes}'
                        ' bytes. Connection closed with error code 4003',
                    )
                    expected = False
                    break

                try:
                    event = decode_event(message)
                except EventDecodeError as e:
                    logger.error(
                        'Closing websocket because deserialization error was '
                        f'caught on message received from '
                        f'{connection.member_id}. {e}',
                    )
                    await websocket.close(4000, reason='Unknown message type.')
                    expected = False
                    break

                try:
                    await self._process_event(connection, event)
                except BadRequestError as e:
                    logger.warning(
                        f'Ignoring bad request from {connection.member_id}. '
                        f'{e}',
                    )
        finally:
            await self.disconnect(connection, expected)
