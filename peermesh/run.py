"""CLI for running a peer mesh client."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import sys

import click

from peermesh.bridge import UnixSocketBridge
from peermesh.config import create_signaling_channel
from peermesh.config import LoggingConfig
from peermesh.config import MeshConfig
from peermesh.engine.aiortc_engine import AiortcEngine
from peermesh.mesh import PeerMesh
from peermesh.notifications import ConnectionStateChanged
from peermesh.notifications import NewPeerReady
from peermesh.notifications import Notification

logger = logging.getLogger(__name__)


def _log_peer_events(notification: Notification) -> None:
    if isinstance(notification, NewPeerReady):
        logger.info(f'Peer {notification.peer_id} is ready')
    elif isinstance(notification, ConnectionStateChanged):
        logger.info(
            f'Peer {notification.peer_id} connection is '
            f'{notification.state}',
        )


async def serve(config: MeshConfig) -> None:
    """Run a peer mesh client until SIGINT or SIGTERM.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`MeshConfig.logging`][peermesh.config.MeshConfig] is the
        responsibility of the caller.

    Args:
        config: Mesh configuration.
    """
    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Peer mesh configuration:\n{config_repr}')

    mesh = PeerMesh(
        create_signaling_channel(config),
        AiortcEngine(),
        ice_servers=config.engine_ice_servers(),
        channel_label=config.channel_label,
    )
    mesh.subscribe(_log_peer_events, NewPeerReady, ConnectionStateChanged)

    bridge: UnixSocketBridge | None = None
    if config.socket_dir is not None:
        bridge = UnixSocketBridge(mesh.bus, config.socket_dir)
        bridge.start()

    async with mesh:
        logger.info(f'Peer mesh client {mesh.client_id} running')
        logger.info('Use ctrl-C to stop')
        await stop

    if bridge is not None:
        await bridge.close()

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Peer mesh client shutdown')


def configure_logging(config: LoggingConfig) -> None:
    """Configure the root, websockets and aiortc loggers."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, 'peermesh.log'),
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
        level=config.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.websockets_level)
    logging.getLogger('aiortc').setLevel(config.aiortc_level)
    logging.getLogger('aioice').setLevel(config.aiortc_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--relay', metavar='ADDR', help='Relay address.')
@click.option(
    '--carrier',
    type=click.Choice(['websocket', 'eventsource'], case_sensitive=False),
    help='Signaling carrier. Inferred from the relay address by default.',
)
@click.option('--client-id', metavar='ID', help='Client identity.')
@click.option(
    '--socket-dir',
    metavar='PATH',
    help='Directory to create per-peer unix sockets in.',
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
    relay: str | None,
    carrier: str | None,
    client_id: str | None,
    socket_dir: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a peer mesh client.

    The client connects to the signaling relay and opens a data channel to
    every peer the relay announces. The relay address must be given with
    `--relay` or in the configuration file. The remaining CLI options will
    override the options provided in the configuration file.
    """
    if config_path is not None:
        config = MeshConfig.from_toml(config_path)
    elif relay is not None:
        config = MeshConfig(relay_address=relay)
    else:
        raise click.UsageError('One of --config or --relay is required.')

    # Override config with CLI options if given. Validation runs again so
    # an address and carrier mismatch is reported.
    overrides: dict[str, object] = {}
    if relay is not None:
        overrides['relay_address'] = relay
    if carrier is not None:
        overrides['carrier'] = carrier.lower()
    if client_id is not None:
        overrides['client_id'] = client_id
    if socket_dir is not None:
        overrides['socket_dir'] = socket_dir
    config = MeshConfig.model_validate({**dict(config), **overrides})

    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(
            log_level.upper(),
        )

    configure_logging(config.logging)

    asyncio.run(serve(config))
