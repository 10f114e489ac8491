"""CLI and serving functions for running a relay server."""
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

from signalrelay.config import RelayServingConfig
from signalrelay.registry import SessionRegistry
from signalrelay.server import RelayServer
from signalrelay.utils.tasks import log_unhandled_exception
from signalrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_reaper(
    registry: SessionRegistry,
    interval: float = 60,
) -> asyncio.Task[None]:
    """Create an asyncio task which evicts clients with closed sessions.

    Connections normally unregister their client when they close so the
    reaper only finds entries whose close notification was missed.

    Args:
        registry: Registry to scan.
        interval: Seconds between scans.

    Returns:
        Asyncio task.
    """

    async def _reap() -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                reaped = registry.reap_closed()
            except Exception:
                logger.exception('Failed to reap closed client sessions')
                continue
            if len(reaped) > 0:
                logger.info(
                    f'Reaped {len(reaped)} client(s) with closed '
                    f'connections: {", ".join(sorted(reaped))}',
                )

    task = spawn_guarded_background_task(_reap)
    task.set_name('relay-server-reaper')

    return task


def periodic_client_logger(
    server: RelayServer,
    interval: float = 60,
    limit: int | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently connected clients.

    Args:
        server: Relay server instance to log connected clients of.
        interval: Seconds between logging connected clients.
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
            entries = server.registry.entries()
            entries = sorted(entries, key=lambda entry: entry.identifier)
            entries_repr = (
                '\n'.join(repr(entry) for entry in entries)
                if limit is not None
                else None
            )
            message = (
                f'Connected clients: {len(server.sessions)} '
                f'(registered: {len(entries)})'
            )
            message = (
                f'{message}\n{entries_repr}'
                if (
                    entries_repr is not None
                    and limit is not None
                    and 0 < len(entries) < limit
                )
                else message
            )
            logger.log(level, message)

    task = spawn_guarded_background_task(_log)
    task.set_name('relay-server-client-logger')

    return task


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server.

    Initializes a [`RelayServer`][signalrelay.server.RelayServer]
    with an empty registry and starts a websocket server listening for new
    connections and incoming messages. A reaper task periodically evicts
    registry entries whose connection is no longer open.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RelayServingConfig.logging`][signalrelay.config.RelayServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = RelayServer(
        SessionRegistry(),
        path=config.path,
        max_queued_frames=config.max_queued_frames,
        trust_forwarded_for=config.trust_forwarded_for,
    )

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(log_unhandled_exception)
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    tasks = [periodic_reaper(server.registry, config.reap_interval)]
    if config.logging.current_client_interval is not None:  # pragma: no branch
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        tasks.append(
            periodic_client_logger(
                server,
                config.logging.current_client_interval,
                config.logging.current_client_limit,
                level=level,
            ),
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        process_request=server.process_request,
        max_size=config.max_message_bytes,
        ssl=ssl_context,
    ):
        logger.info(
            f'Relay server listening on port {config.port} '
            f'(path: {config.path})',
        )
        logger.info('Use ctrl-C to stop')
        await stop

    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)
    loop.set_exception_handler(None)

    logger.info('Relay server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option(
    '--port',
    type=int,
    metavar='PORT',
    envvar='PORT',
    help='Port to bind to. Read from $PORT if not given.',
)
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
    """Run a relay server instance.

    The relay server is used by clients to discover each other and
    exchange connection requests and file transfer messages. If no
    configuration file is provided, a default configuration will be created
    from [`RelayServingConfig()`][signalrelay.config.RelayServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level)

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
