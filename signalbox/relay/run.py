"""CLI and serving functions for running a relay server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import sys

import click
import uvicorn

from signalbox.config import RelayServingConfig
from signalbox.relay.server import create_app
from signalbox.relay.storage import MemorySignalLog
from signalbox.relay.storage import SignalLog
from signalbox.relay.storage import SQLiteSignalLog

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def get_signal_log(config: RelayServingConfig) -> SignalLog:
    """Create the signal log described by the configuration."""
    if config.database_path is not None:
        logger.info(
            'Using SQLite database for pending records '
            f'(path: {config.database_path})',
        )
        return SQLiteSignalLog(config.database_path)
    logger.warning(
        'Database path not provided. Pending records will not be persisted',
    )
    return MemorySignalLog()


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RelayServingConfig.logging`][signalbox.config.RelayServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    app = create_app(get_signal_log(config))

    server_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_config=None,
        access_log=False,
    )
    server = uvicorn.Server(server_config)

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')
    logger.info(f'Relay server listening on {config.host}:{config.port}')

    await server.serve()

    logger.info('Relay server shutdown')


def configure_logging(config: RelayServingConfig) -> None:
    """Configure the root logger according to the serving config."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'relay.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        level=config.logging.default_level,
        handlers=handlers,
        force=True,
    )

    for name in ('uvicorn', 'uvicorn.error', 'uvicorn.access'):
        logging.getLogger(name).setLevel(config.logging.uvicorn_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option(
    '--database',
    metavar='PATH',
    help='SQLite database file for pending records.',
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
    database: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a relay server instance.

    The relay server is a polling mailbox peers use to exchange offers,
    answers, and candidates. If no configuration file is provided, a default
    configuration will be created from
    [`RelayServingConfig()`][signalbox.config.RelayServingConfig].
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
    if database is not None:
        config.database_path = database
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    configure_logging(config)

    asyncio.run(serve(config))
