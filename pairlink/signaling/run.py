"""CLI and serving functions for running a signaling server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from pairlink.signaling.config import ServerConfig
from pairlink.signaling.server import SignalingServer
from pairlink.utils.tasks import cancel_and_wait
from pairlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def periodic_room_logger(
    server: SignalingServer,
    interval: float = 60,
    limit: int | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs the current rooms.

    Args:
        server: Signaling server instance to log the rooms of.
        interval: Seconds between logging rooms.
        limit: Only log the detailed room list if the number of rooms is
            less than this number. Avoids clobbering the logs when thousands
            of rooms are open.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            rooms = server.registry.rooms()
            connections = len(server.connection_manager)
            message = (
                f'Open rooms: {len(rooms)}, connected members: {connections}'
            )
            if limit is not None and 0 < len(rooms) < limit:
                details = '\n'.join(
                    f'{room_id}: {list(members)}'
                    for room_id, members in sorted(rooms.items())
                )
                message = f'{message}\n{details}'
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='signaling-server-room-logger',
    )


async def serve(config: ServerConfig) -> None:
    """Run the signaling server until SIGINT or SIGTERM.

    Initializes a [`SignalingServer`][pairlink.signaling.server.SignalingServer]
    and starts a websocket server listening for new connections.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`ServerConfig.logging`][pairlink.signaling.config.ServerConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = SignalingServer(max_message_bytes=config.max_message_bytes)

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    room_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_rooms_interval is not None:
        level = config.logging.default_level
        if isinstance(level, str):
            level = logging.getLevelName(level)
        room_logger_task = periodic_room_logger(
            server,
            config.logging.current_rooms_interval,
            config.logging.current_rooms_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Signaling server configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        ssl=ssl_context,
    ):
        logger.info(f'Signaling server listening on port {config.port}')
        logger.info('Use ctrl-C to stop')
        await stop

    await cancel_and_wait(room_logger_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Signaling server shutdown')


def configure_logging(
    level: int | str,
    log_dir: str | None = None,
    websockets_level: int | str = logging.WARNING,
    filename: str = 'server.log',
) -> None:
    """Configure the root logger for a pairlink process.

    Logs go to stdout and, if `log_dir` is given, to a file in `log_dir`
    which is rotated weekly.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(log_dir, filename),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=level,
        handlers=handlers,
        force=True,
    )
    logging.getLogger('websockets').setLevel(websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a signaling server instance.

    The signaling server pairs two clients per room and relays the messages
    they need to establish a peer-to-peer WebRTC connection. If no
    configuration file is provided, the defaults of
    [`ServerConfig()`][pairlink.signaling.config.ServerConfig] are used.
    The remaining CLI options override the options in the configuration.
    """
    config = (
        ServerConfig()
        if config_path is None
        else ServerConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    configure_logging(
        config.logging.default_level,
        log_dir=config.logging.log_dir,
        websockets_level=config.logging.websockets_level,
    )

    asyncio.run(serve(config))
