from __future__ import annotations

import logging
import pathlib

import pytest
from pydantic import ValidationError

from signalbox.config import DEFAULT_ICE_SERVERS
from signalbox.config import PeerConfig
from signalbox.config import RelayServingConfig


def test_relay_config_defaults() -> None:
    config = RelayServingConfig()
    assert config.host == '127.0.0.1'
    assert config.port == 8765
    assert config.database_path is None
    assert config.logging.log_dir is None
    assert config.logging.default_level == logging.INFO
    assert config.logging.uvicorn_level == logging.WARNING


@pytest.mark.parametrize('port', (0, 65536))
def test_relay_config_bad_port(port: int) -> None:
    with pytest.raises(ValidationError, match='Port'):
        RelayServingConfig(port=port)


def test_relay_config_forbids_extra() -> None:
    with pytest.raises(ValidationError):
        RelayServingConfig(hostname='localhost')  # type: ignore[call-arg]


def test_relay_config_from_toml(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    with open(filepath, 'w') as f:
        f.write(
            'host = "0.0.0.0"\n'
            'port = 9000\n'
            'database_path = "/tmp/relay.db"\n\n'
            '[logging]\n'
            'log_dir = "/tmp/logs"\n'
            'default_level = "DEBUG"\n',
        )

    config = RelayServingConfig.from_toml(filepath)
    assert config.host == '0.0.0.0'
    assert config.port == 9000
    assert config.database_path == '/tmp/relay.db'
    assert config.logging.log_dir == '/tmp/logs'
    assert config.logging.default_level == 'DEBUG'
    assert config.logging.uvicorn_level == logging.WARNING


def test_peer_config_defaults() -> None:
    config = PeerConfig()
    assert config.relay_address is None
    assert config.poll_interval == 1.0
    assert config.negotiation_timeout == 60.0
    assert config.ice_servers == DEFAULT_ICE_SERVERS
    # Default list is copied
    assert config.ice_servers is not DEFAULT_ICE_SERVERS


def test_peer_config_bad_address() -> None:
    with pytest.raises(ValidationError, match='http'):
        PeerConfig(relay_address='ws://localhost:8765')


@pytest.mark.parametrize(
    'field',
    ('poll_interval', 'negotiation_timeout', 'request_timeout'),
)
def test_peer_config_bad_duration(field: str) -> None:
    with pytest.raises(ValidationError, match='greater than zero'):
        PeerConfig(**{field: 0})


def test_peer_config_toml_round_trip(tmp_path: pathlib.Path) -> None:
    config = PeerConfig(
        relay_address='https://relay.example.com',
        poll_interval=0.5,
        negotiation_timeout=30,
        ice_servers=[],
    )
    filepath = tmp_path / 'nested' / 'peer.toml'
    config.write_toml(filepath)

    assert PeerConfig.from_toml(filepath) == config


def test_peer_config_write_without_address(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'peer.toml'
    PeerConfig().write_toml(filepath)

    with open(filepath) as f:
        assert 'relay_address' not in f.read()
    assert PeerConfig.from_toml(filepath) == PeerConfig()
