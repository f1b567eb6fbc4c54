"""`signalbox` command-line interface."""
from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any
from typing import ClassVar

import click

import signalbox
from signalbox.config import PeerConfig
from signalbox.engine import NegotiationEngine
from signalbox.exceptions import NegotiationError
from signalbox.peer import create_peer_connection
from signalbox.relay.client import HTTPRelayClient
from signalbox.transport import SignalingTransport

logger = logging.getLogger(__name__)


class _CLIFormatter(logging.Formatter):
    """Custom format for CLI printing."""

    red = '\x1b[0;31m'
    green = '\x1b[0;32m'
    yellow = '\x1b[0;33m'
    cyan = '\x1b[0;36m'
    bold_red = '\x1b[1;31m'
    reset = '\x1b[0m'

    FORMATS: ClassVar[dict[int, str]] = {
        logging.DEBUG: f'{cyan}DEBUG:{reset} %(message)s',
        logging.INFO: f'{green}INFO:{reset} %(message)s',
        logging.WARNING: f'{yellow}WARNING:{reset} %(message)s',
        logging.ERROR: f'{red}ERROR:{reset} %(message)s',
        logging.CRITICAL: f'{bold_red}CRITICAL:{reset} %(message)s',
    }

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover
        formatter = logging.Formatter(self.FORMATS[record.levelno])
        return formatter.format(record)


async def negotiate(config: PeerConfig, session_name: str) -> int:
    """Negotiate a peer connection and report the outcome.

    Args:
        config: Peer configuration. `relay_address` must be set.
        session_name: Name of the session shared with the peer.

    Returns:
        Exit code: `0` if the peer connection was established, `1`
        otherwise.
    """
    assert config.relay_address is not None
    relay = HTTPRelayClient(
        config.relay_address,
        timeout=config.request_timeout,
    )
    transport = SignalingTransport(relay, poll_interval=config.poll_interval)
    engine = NegotiationEngine(
        transport,
        timeout=config.negotiation_timeout,
        peer_factory=lambda: create_peer_connection(config.ice_servers),
        channel_label=config.channel_label,
    )
    engine.on(
        'statechange',
        lambda state: logger.debug(f'Negotiation state: {state.value}'),
    )

    try:
        started = await engine.start_negotiation(session_name)
    except NegotiationError as e:
        logger.error(f'Negotiation of {session_name} failed: {e}')
        return 1
    finally:
        await engine.close()

    if not started:  # pragma: no cover
        logger.error(f'Negotiation of {session_name} already in progress.')
        return 1
    logger.info(f'Established peer connection in session {session_name}.')
    return 0


@click.group()
@click.option(
    '--log-level',
    default='INFO',
    type=click.Choice(
        ['ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(log_level: str) -> None:
    """Negotiate peer connections over a signalbox relay."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_CLIFormatter())
    logging.basicConfig(level=log_level.upper(), handlers=[handler])


@cli.command()
def version() -> None:
    """Show the signalbox version."""
    click.echo(f'signalbox v{signalbox.__version__}')


@cli.command()
@click.argument('path', metavar='PATH', required=True)
@click.option(
    '--relay-address',
    metavar='ADDR',
    help='Relay server address.',
)
@click.option(
    '--poll-interval',
    type=float,
    metavar='SECONDS',
    help='Seconds between polls of the relay.',
)
@click.option(
    '--timeout',
    type=float,
    metavar='SECONDS',
    help='Negotiation timeout.',
)
def configure(
    path: str,
    relay_address: str | None,
    poll_interval: float | None,
    timeout: float | None,
) -> None:
    """Write a peer configuration file."""
    options = {
        'relay_address': relay_address,
        'poll_interval': poll_interval,
        'negotiation_timeout': timeout,
    }
    try:
        config = PeerConfig(
            **{k: v for k, v in options.items() if v is not None},
        )
    except ValueError as e:
        logger.error(e)
        raise SystemExit(1) from None
    config.write_toml(path)
    logger.info(f'Wrote peer configuration to {path}.')


@cli.command(name='negotiate')
@click.argument('relay_address', metavar='RELAY_ADDRESS', required=True)
@click.argument('session', metavar='SESSION', required=True)
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option(
    '--poll-interval',
    type=float,
    metavar='SECONDS',
    help='Seconds between polls of the relay.',
)
@click.option(
    '--timeout',
    type=float,
    metavar='SECONDS',
    help='Negotiation timeout.',
)
def negotiate_command(
    relay_address: str,
    session: str,
    config_path: str | None,
    poll_interval: float | None,
    timeout: float | None,
) -> None:
    """Negotiate a peer connection with a peer in SESSION.

    The first peer to start offers and the second peer answers. Exits with
    a non-zero code if the connection is not established before the
    timeout.
    """
    try:
        config = (
            PeerConfig()
            if config_path is None
            else PeerConfig.from_toml(config_path)
        )
        # Override config with CLI options if given
        update: dict[str, Any] = {'relay_address': relay_address}
        if poll_interval is not None:
            update['poll_interval'] = poll_interval
        if timeout is not None:
            update['negotiation_timeout'] = timeout
        config = PeerConfig.model_validate(
            {**config.model_dump(), **update},
        )
    except ValueError as e:
        logger.error(e)
        raise SystemExit(1) from None

    raise SystemExit(asyncio.run(negotiate(config, session)))
