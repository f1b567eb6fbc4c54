from __future__ import annotations

import logging
import pathlib
from typing import Generator
from unittest import mock

import pytest
from click.testing import CliRunner

import signalbox
from signalbox.cli import cli
from signalbox.cli import negotiate
from signalbox.config import PeerConfig
from signalbox.exceptions import OfferingTimeoutError


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Generator[None, None, None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def test_version() -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ['version'])
    assert result.exit_code == 0
    assert signalbox.__version__ in result.output


def test_configure(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'config' / 'peer.toml'
    runner = CliRunner()
    result = runner.invoke(
        cli,
        [
            'configure',
            str(filepath),
            '--relay-address',
            'http://localhost:9000',
            '--timeout',
            '5',
        ],
    )
    assert result.exit_code == 0

    config = PeerConfig.from_toml(filepath)
    assert config.relay_address == 'http://localhost:9000'
    assert config.negotiation_timeout == 5
    assert config.poll_interval == PeerConfig().poll_interval


def test_configure_bad_address(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'peer.toml'
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ['configure', str(filepath), '--relay-address', 'localhost:9000'],
    )
    assert result.exit_code == 1
    assert not filepath.exists()


@pytest.mark.parametrize('code', (0, 1))
def test_negotiate_command(code: int) -> None:
    runner = CliRunner()
    with mock.patch(
        'signalbox.cli.negotiate',
        mock.AsyncMock(return_value=code),
    ) as mock_negotiate:
        result = runner.invoke(
            cli,
            ['negotiate', 'http://localhost:8765', 'room1', '--timeout', '3'],
        )

    assert result.exit_code == code
    mock_negotiate.assert_awaited_once()
    config, session = mock_negotiate.await_args.args
    assert session == 'room1'
    assert config.relay_address == 'http://localhost:8765'
    assert config.negotiation_timeout == 3


def test_negotiate_command_config_file(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'peer.toml'
    PeerConfig(poll_interval=0.5, channel_label='game').write_toml(filepath)

    runner = CliRunner()
    with mock.patch(
        'signalbox.cli.negotiate',
        mock.AsyncMock(return_value=0),
    ) as mock_negotiate:
        result = runner.invoke(
            cli,
            [
                'negotiate',
                'http://localhost:8765',
                'room1',
                '--config',
                str(filepath),
            ],
        )

    assert result.exit_code == 0
    config, _ = mock_negotiate.await_args.args
    assert config.poll_interval == 0.5
    assert config.channel_label == 'game'
    assert config.relay_address == 'http://localhost:8765'


@pytest.mark.parametrize(
    'args',
    (
        ['localhost:8765', 'room1'],
        ['http://localhost:8765', 'room1', '--poll-interval', '0'],
        ['http://localhost:8765', 'room1', '--timeout', '-1'],
    ),
)
def test_negotiate_command_bad_options(args: list[str]) -> None:
    runner = CliRunner()
    with mock.patch('signalbox.cli.negotiate') as mock_negotiate:
        result = runner.invoke(cli, ['negotiate', *args])

    assert result.exit_code == 1
    mock_negotiate.assert_not_called()


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    ('outcome', 'expected'),
    ((True, 0), (OfferingTimeoutError('timeout'), 1)),
)
async def test_negotiate(outcome: bool | Exception, expected: int) -> None:
    config = PeerConfig(relay_address='http://localhost:8765')
    engine = mock.MagicMock()
    engine.start_negotiation = mock.AsyncMock(side_effect=[outcome])
    engine.close = mock.AsyncMock()

    with mock.patch('signalbox.cli.HTTPRelayClient'), mock.patch(
        'signalbox.cli.NegotiationEngine',
        return_value=engine,
    ):
        assert await negotiate(config, 'room1') == expected

    engine.start_negotiation.assert_awaited_once_with('room1')
    engine.close.assert_awaited_once()
