"""CLI for chatting with the other member of a room over a data channel."""
from __future__ import annotations

import asyncio
import functools
import logging
import sys
import threading

import click
from aiortc.contrib.media import MediaPlayer

from pairlink.client.config import ClientConfig
from pairlink.client.peer import AiortcPeer
from pairlink.client.session import ConnectionSession
from pairlink.client.transport import SignalingTransport
from pairlink.exceptions import PeerConnectionError
from pairlink.exceptions import RoomFullError
from pairlink.signaling.run import configure_logging

logger = logging.getLogger(__name__)


def build_session(
    config: ClientConfig,
    room_id: str,
    player: MediaPlayer | None = None,
) -> ConnectionSession:
    """Create a session for a room from a client configuration.

    Args:
        config: Client configuration.
        room_id: Room to join.
        player: Optional media source whose audio and video tracks are sent
            to the remote peer.
    """
    transport = SignalingTransport(
        config.address,
        timeout=config.timeout,
        verify_certificate=config.verify_certificate,
    )
    tracks = []
    if player is not None:
        tracks = [t for t in (player.audio, player.video) if t is not None]
    return ConnectionSession(
        transport,
        room_id,
        peer_factory=functools.partial(
            AiortcPeer,
            ice_servers=config.ice_servers,
        ),
        local_tracks=tracks,
        reconnect_delay=config.reconnect_delay,
    )


def _read_stdin(
    loop: asyncio.AbstractEventLoop,
    lines: asyncio.Queue[str | None],
) -> None:
    # Runs in a daemon thread so a blocked read never holds up shutdown
    for line in sys.stdin:
        loop.call_soon_threadsafe(lines.put_nowait, line)
    loop.call_soon_threadsafe(lines.put_nowait, None)


async def chat(session: ConnectionSession) -> None:
    """Forward stdin lines to the peer and print the peer's messages.

    Returns when stdin is exhausted or the session is closed.
    """

    def _on_room_full(error: RoomFullError) -> None:
        click.echo(f'Error: {error}', err=True)

    session.on('data', lambda data: click.echo(f'peer> {data}'))
    session.on('connection_state', lambda s: click.echo(f'[{s}]', err=True))
    session.on('room_full', _on_room_full)

    await session.join()

    lines: asyncio.Queue[str | None] = asyncio.Queue()
    threading.Thread(
        target=_read_stdin,
        args=(asyncio.get_running_loop(), lines),
        name='pairlink-chat-stdin',
        daemon=True,
    ).start()

    closed = asyncio.ensure_future(session.wait_closed())
    try:
        while True:
            read = asyncio.ensure_future(lines.get())
            done, _ = await asyncio.wait(
                {read, closed},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if closed in done:
                read.cancel()
                break
            line = read.result()
            if line is None:
                break
            try:
                session.send(line.rstrip('\n'))
            except PeerConnectionError:
                click.echo('[not connected, message dropped]', err=True)
    finally:
        closed.cancel()
        await session.leave()


@click.command()
@click.argument('room_id')
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--address', metavar='URL', help='Signaling server address.')
@click.option(
    '--play',
    metavar='PATH',
    help='Media file or device to send to the peer.',
)
@click.option(
    '--log-level',
    default='WARNING',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    room_id: str,
    config_path: str | None,
    address: str | None,
    play: str | None,
    log_level: str,
) -> None:
    """Join ROOM_ID and chat with the other member.

    Each line read from stdin is sent to the peer once the direct connection
    is established. Messages from the peer are printed to stdout.
    """
    config = (
        ClientConfig()
        if config_path is None
        else ClientConfig.from_toml(config_path)
    )
    if address is not None:
        config.address = address

    configure_logging(log_level.upper())

    player = MediaPlayer(play) if play is not None else None
    session = build_session(config, room_id, player)
    asyncio.run(chat(session))
