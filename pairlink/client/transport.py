"""Client interface to a signaling server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType
from typing import Any
from typing import Callable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from pyee.asyncio import AsyncIOEventEmitter
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websockets_connect

from pairlink.events import decode_event
from pairlink.events import encode_event
from pairlink.events import EventDecodeError
from pairlink.events import EventName
from pairlink.exceptions import TransportDisconnectedError
from pairlink.utils.tasks import cancel_and_wait
from pairlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DISCONNECT_EVENT = 'disconnect'
"""Local event emitted when the server connection closes unexpectedly."""


class SignalingTransport:
    """Event channel between a client and the signaling server.

    The transport is a thin pass-through: it encodes events emitted with
    [`emit()`][pairlink.client.transport.SignalingTransport.emit] onto the
    websocket and dispatches events received from the server to handlers
    registered with [`on()`][pairlink.client.transport.SignalingTransport.on].
    Handlers may be plain functions or coroutine functions and are invoked
    in the order events arrive. If the websocket closes without
    [`disconnect()`][pairlink.client.transport.SignalingTransport.disconnect]
    being called, handlers of the `disconnect` event are invoked.

    Tip:
        This class can be used as an async context manager!
        ```python
        from pairlink.client.transport import SignalingTransport

        async with SignalingTransport('ws://localhost:8000') as transport:
            transport.on('other user', print)
            await transport.emit('join room', 'my-room')
        ```

    Args:
        address: Address of the signaling server. Should start with `ws://`
            or `wss://`.
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A TLS
            context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on opening the connection.
        verify_certificate: Verify the server's SSL certificate. Only used if
            `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Signaling server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._emitter = AsyncIOEventEmitter()
        self._emitter.on('error', self._on_handler_error)
        self._websocket: ClientConnection | None = None
        self._recv_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.disconnect()

    @property
    def address(self) -> str:
        """Address of the signaling server."""
        return self._address

    @property
    def connected(self) -> bool:
        """If the websocket connection is open."""
        return self._websocket is not None and self._recv_task is not None

    async def connect(self) -> None:
        """Open the websocket connection and start dispatching events.

        No-op if the connection is already open.

        Raises:
            OSError: If the server could not be reached.
            TimeoutError: If the opening handshake did not complete in time.
        """
        if self.connected:
            return

        self._websocket = await websockets_connect(
            self._address,
            open_timeout=self._timeout,
            ssl=self._ssl_context,
        )
        self._recv_task = spawn_guarded_background_task(
            self._recv_loop,
            self._websocket,
            name='signaling-transport-recv',
        )
        logger.info(f'Connected to signaling server at {self._address}')

    async def disconnect(self) -> None:
        """Close the connection to the signaling server.

        The `disconnect` handlers are not invoked for an intentional close.
        Safe to call more than once.
        """
        recv_task, self._recv_task = self._recv_task, None
        websocket, self._websocket = self._websocket, None
        await cancel_and_wait(recv_task)
        if websocket is not None:
            await websocket.close()
            logger.info(
                f'Disconnected from signaling server at {self._address}',
            )

    def on(self, name: str | EventName, handler: Callable[..., Any]) -> None:
        """Register a handler for an event received from the server.

        Args:
            name: Event name.
            handler: Function or coroutine function called with the event
                payload, or with no arguments for events without payloads.
        """
        self._emitter.on(_event_key(name), handler)

    async def emit(self, name: str | EventName, data: Any = None) -> None:
        """Send an event to the signaling server.

        Args:
            name: Event name.
            data: JSON-serializable payload.

        Raises:
            TransportDisconnectedError: If the transport is not connected.
        """
        message = encode_event(_event_key(name), data)
        if self._websocket is None:
            raise TransportDisconnectedError(
                'Transport is not connected to the signaling server. '
                'Try calling connect() first.',
            )
        try:
            await self._websocket.send(message)
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportDisconnectedError(
                f'Connection to {self._address} closed while sending.',
            ) from e

    def _dispatch(self, name: str, data: Any) -> None:
        if data is None:
            self._emitter.emit(name)
        else:
            self._emitter.emit(name, data)

    def _on_handler_error(self, error: Exception) -> None:
        logger.error(
            f'Unhandled {type(error).__name__} in event handler: {error}',
            exc_info=error,
        )

    async def _recv_loop(self, websocket: ClientConnection) -> None:
        while True:
            try:
                message = await websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(
                    f'Connection to signaling server at {self._address} '
                    f'closed: {e}',
                )
                break

            try:
                event = decode_event(message)
            except EventDecodeError as e:
                logger.error(
                    'Error decoding event from signaling server: '
                    f'{e} ...skipping message',
                )
                continue

            logger.debug(f'Received {event.name} event from signaling server')
            self._dispatch(event.name, event.data)

        # Only reached if the server side closed the connection. An
        # intentional disconnect() cancels this task instead.
        self._recv_task = None
        self._websocket = None
        self._emitter.emit(DISCONNECT_EVENT)


def _event_key(name: str | EventName) -> str:
    return name.value if isinstance(name, EventName) else name
