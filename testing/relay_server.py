"""Tools for running a relay server for unit tests."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from multiprocessing import Process
from typing import AsyncGenerator
from typing import Generator
from typing import NamedTuple

import pytest
import pytest_asyncio
import requests

from signalbox.config import RelayServingConfig
from signalbox.relay.client import LocalRelayClient
from signalbox.relay.run import serve
from signalbox.relay.storage import MemorySignalLog
from testing.utils import open_port


class RelayServerInfo(NamedTuple):
    """NamedTuple returned by relay_server fixture."""

    config: RelayServingConfig
    address: str


def serve_relay_silent(config: RelayServingConfig) -> None:
    """Serve relay and suppress all output.

    Warning:
        This should be run in a subprocess.
    """
    with contextlib.redirect_stdout(None), contextlib.redirect_stderr(None):
        logging.disable(100000)
        asyncio.run(serve(config))


def wait_for_relay(address: str, max_time_s: float = 5) -> None:
    """Wait for the relay at address to be available."""
    waited_s = 0.0
    sleep_s = 0.01

    while True:
        try:
            r = requests.get(
                address,
                params={
                    'action': 'isOffering',
                    'sessionName': 'ping',
                    'recipientId': 'ping',
                },
            )
        except requests.exceptions.ConnectionError as e:
            if waited_s >= max_time_s:  # pragma: no cover
                raise RuntimeError(
                    'Unable to connect to relay within the timeout '
                    f'({max_time_s} seconds).',
                ) from e
            time.sleep(sleep_s)
            waited_s += sleep_s
            continue
        if r.status_code == 200:  # pragma: no branch
            break


@pytest.fixture(scope='session')
def relay_server() -> Generator[RelayServerInfo, None, None]:
    """Launch relay server in subprocess.

    Warning:
        This fixture has session scope so the relay server will be shared
        between many tests. Tests should use unique session names.
    """
    config = RelayServingConfig(host='localhost', port=open_port())
    server_handle = Process(target=serve_relay_silent, args=[config])
    server_handle.start()

    address = f'http://{config.host}:{config.port}'
    wait_for_relay(address)

    yield RelayServerInfo(config=config, address=address)

    server_handle.terminate()
    server_handle.join()


@pytest_asyncio.fixture()
async def signal_log() -> AsyncGenerator[MemorySignalLog, None]:
    """In-memory signal log closed after the test."""
    log = MemorySignalLog()
    yield log
    await log.close()


@pytest.fixture()
def local_relay(signal_log: MemorySignalLog) -> LocalRelayClient:
    """Relay client operating on the `signal_log` fixture."""
    return LocalRelayClient(signal_log)
