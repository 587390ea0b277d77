"""CLI and serving functions for running a rendezvous server."""
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
from typing import Any

import click
from websockets.asyncio.server import serve as websockets_serve

from rendezvous.config import RendezvousServingConfig
from rendezvous.server import RendezvousServer
from rendezvous.utils.tasks import cancel_and_wait
from rendezvous.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_client_logger(
    server: RendezvousServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently signed-in clients.

    Args:
        server: Rendezvous server instance to log signed-in clients of.
        interval: Seconds between logging signed-in clients.
        limit: Only log detailed client list if the number of clients is
            less than this number. Useful for debugging or avoiding
            clobbering the logs by printing thousands of clients.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            records = server.registry.get_records()
            records = sorted(records, key=lambda record: str(record.identity))
            message = f'Connected clients: {len(records)}'
            if limit is not None and 0 < len(records) < limit:
                records_repr = '\n'.join(repr(record) for record in records)
                message = f'{message}\n{records_repr}'
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='rendezvous-server-client-logger',
    )


async def serve(config: RendezvousServingConfig) -> None:
    """Run the rendezvous server.

    Initializes a [`RendezvousServer`][rendezvous.server.RendezvousServer]
    and starts a websocket server listening for new connections
    and incoming messages until SIGINT or SIGTERM is received.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RendezvousServingConfig.logging`][rendezvous.config.RendezvousServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = RendezvousServer(config.max_queued_messages)

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    client_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        client_logger_task = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Rendezvous serving configuration:\n{config_repr}')

    serve_kwargs: dict[str, Any] = {}
    if config.max_message_bytes is not None:
        serve_kwargs['max_size'] = config.max_message_bytes

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        ssl=ssl_context,
        **serve_kwargs,
    ):
        logger.info(f'Rendezvous server listening on port {config.port}')
        logger.info('Use ctrl-C to stop')
        await stop

    await cancel_and_wait(client_logger_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Rendezvous server shutdown')


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
    """Run a rendezvous server instance.

    The rendezvous server is used by clients to discover peers by topic and
    relay signaling messages to each other. If no configuration file is
    provided, a default configuration will be created from
    [`RendezvousServingConfig()`][rendezvous.config.RendezvousServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        RendezvousServingConfig()
        if config_path is None
        else RendezvousServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)

    asyncio.run(serve(config))
