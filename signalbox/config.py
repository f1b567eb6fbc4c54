"""Relay server and peer configuration."""
from __future__ import annotations

import logging
import pathlib
import sys
from typing import List
from typing import Optional
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from signalbox.utils.config import dump
from signalbox.utils.config import load

DEFAULT_ICE_SERVERS = ['stun:stun.l.google.com:19302']


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Optional directory to write rotating log files to.
        default_level: Default logging level for the root logger.
        uvicorn_level: Log level for the `uvicorn` loggers. Uvicorn logs
            every poll request so it is suggested to set this to `WARNING`
            or higher.
    """

    log_dir: Optional[str] = None  # noqa: UP007
    default_level: Union[int, str] = logging.INFO  # noqa: UP007
    uvicorn_level: Union[int, str] = logging.WARNING  # noqa: UP007


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        database_path: Optional path to a SQLite database used to store
            pending signal records. If `None`, records are only stored
            in-memory.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    host: str = '127.0.0.1'
    port: int = 8765
    database_path: Optional[str] = None  # noqa: UP007
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)

    @field_validator('port')
    @classmethod
    def _port_validator(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError('Port must be in the range [1, 65535].')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="relay.toml"
            host = "0.0.0.0"
            port = 8765
            database_path = "/var/lib/signalbox/relay.db"

            [logging]
            log_dir = "/var/log/signalbox"
            default_level = "INFO"
            uvicorn_level = "WARNING"
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)


class PeerConfig(BaseModel):
    """Peer negotiation configuration.

    Attributes:
        relay_address: HTTP(S) address of the relay server.
        poll_interval: Seconds between polls of the relay while negotiating.
        negotiation_timeout: Seconds to wait for an offering or answering
            attempt to complete before aborting.
        request_timeout: Seconds to wait on a single relay request.
        ice_servers: STUN/TURN server URLs passed to the peer connection.
        channel_label: Label of the data channel opened by the offerer.

    Raises:
        ValueError: If the relay address is not an HTTP(S) address or if a
            duration is not positive.
    """

    model_config = ConfigDict(extra='forbid')

    relay_address: Optional[str] = None  # noqa: UP007
    poll_interval: float = 1.0
    negotiation_timeout: float = 60.0
    request_timeout: float = 10.0
    ice_servers: List[str] = Field(  # noqa: UP006
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )
    channel_label: str = 'signalbox'

    @field_validator('relay_address')
    @classmethod
    def _address_validator(cls, v: str | None) -> str | None:
        if v is not None and not (
            v.startswith('http://') or v.startswith('https://')
        ):
            raise ValueError(
                'Relay address must start with http:// or https://.',
            )
        return v

    @field_validator('poll_interval', 'negotiation_timeout', 'request_timeout')
    @classmethod
    def _positive_validator(cls, v: float) -> float:
        if v <= 0:
            raise ValueError('Durations must be greater than zero.')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="peer.toml"
            relay_address = "http://localhost:8765"
            poll_interval = 1.0
            negotiation_timeout = 60.0
            ice_servers = ["stun:stun.l.google.com:19302"]
            ```
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the config to a TOML file.

        Parent directories are created if needed.
        """
        path = pathlib.Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb') as f:
            dump(self, f)
