"""Peer mesh configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys
from typing import Any
from typing import Literal

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator

from peermesh.coordinator import DEFAULT_CHANNEL_LABEL
from peermesh.signaling.eventsource import EventSourceSignalingChannel
from peermesh.signaling.protocols import SignalingChannel
from peermesh.signaling.websocket import WebSocketSignalingChannel
from peermesh.utils.config import dump
from peermesh.utils.config import load

CarrierType = Literal['websocket', 'eventsource']

_SCHEME_CARRIERS: dict[str, CarrierType] = {
    'ws://': 'websocket',
    'wss://': 'websocket',
    'http://': 'eventsource',
    'https://': 'eventsource',
}


class IceServerConfig(BaseModel):
    """ICE (STUN or TURN) server configuration.

    Attributes:
        urls: One or more server URLs (e.g., `stun:stun.example.org:3478`).
        username: Username for TURN servers.
        credential: Credential for TURN servers. Excluded from the
            [`repr()`][repr] of this class.
    """

    model_config = ConfigDict(extra='forbid')

    urls: str | list[str]
    username: str | None = None
    credential: str | None = Field(default=None, repr=False)

    def to_engine(self) -> dict[str, Any]:
        """Get the keyword arguments passed to the engine."""
        return self.model_dump(exclude_none=True)


def _default_ice_servers() -> list[IceServerConfig]:
    return [IceServerConfig(urls='stun:stun.l.google.com:19302')]


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        log_dir: Directory to write rotating log files to. Logs only go
            to stdout if `None`.
        default_level: Logging level for the root logger.
        websockets_level: Log level for the `websockets` logger.
        aiortc_level: Log level for the `aiortc` logger. aiortc logs every
            ICE check at debug level so `WARNING` or higher is suggested.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    aiortc_level: int | str = logging.WARNING


class MeshConfig(BaseModel):
    """Peer mesh client configuration.

    Attributes:
        relay_address: Address of the signaling relay.
        carrier: Signaling carrier. Inferred from the scheme of
            `relay_address` if `None`.
        client_id: Identity of this client. Generated if `None`.
        ice_servers: ICE servers used by peer connections.
        channel_label: Label of the data channel opened to each peer.
        socket_dir: Directory to create per-peer unix sockets in. The unix
            socket bridge is disabled if `None`.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    relay_address: str
    carrier: CarrierType | None = None
    client_id: str | None = None
    ice_servers: list[IceServerConfig] = Field(
        default_factory=_default_ice_servers,
    )
    channel_label: str = DEFAULT_CHANNEL_LABEL
    socket_dir: str | None = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('relay_address')
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        if not any(value.startswith(scheme) for scheme in _SCHEME_CARRIERS):
            raise ValueError(
                'Relay address must start with one of '
                f'{", ".join(_SCHEME_CARRIERS)}. Got {value}.',
            )
        return value

    @model_validator(mode='after')
    def _check_carrier(self) -> Self:
        inferred = self.resolved_carrier
        if self.carrier is not None and self.carrier != inferred:
            raise ValueError(
                f'Carrier {self.carrier} cannot be used with relay address '
                f'{self.relay_address}.',
            )
        return self

    @property
    def resolved_carrier(self) -> CarrierType:
        """Carrier implied by the scheme of the relay address."""
        for scheme, carrier in _SCHEME_CARRIERS.items():
            if self.relay_address.startswith(scheme):
                return carrier
        raise AssertionError('Unreachable.')

    def engine_ice_servers(self) -> list[dict[str, Any]]:
        """Get the ICE server configurations passed to the engine."""
        return [server.to_engine() for server in self.ice_servers]

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="mesh.toml"
            relay_address = "wss://relay.example.org"
            client_id = "node-1"
            socket_dir = "/tmp/peermesh"

            [[ice_servers]]
            urls = "stun:stun.l.google.com:19302"

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            ```

            ```python
            from peermesh.config import MeshConfig

            config = MeshConfig.from_toml('mesh.toml')
            assert config.resolved_carrier == 'websocket'
            ```
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)

    def to_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file."""
        with open(filepath, 'wb') as f:
            dump(self, f)


def create_signaling_channel(config: MeshConfig) -> SignalingChannel:
    """Create the signaling channel a configuration describes.

    The returned channel is not connected.
    """
    if config.resolved_carrier == 'websocket':
        return WebSocketSignalingChannel(
            config.relay_address,
            client_id=config.client_id,
        )
    return EventSourceSignalingChannel(
        config.relay_address,
        client_id=config.client_id,
    )
