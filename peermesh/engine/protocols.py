"""Transport engine interface protocols.

The negotiation coordinator never touches a WebRTC implementation directly.
It drives connections through these protocols, which follow the
`RTCPeerConnection` capability set. Event handlers are registered
[pyee](https://pyee.readthedocs.io/) style with `on(event, handler)`.

Connection events:

* `icecandidate(candidate: IceCandidate | None)`: a local candidate was
  gathered; `None` marks the end of gathering.
* `negotiationneeded()`: a new offer should be generated.
* `connectionstatechange(state: str)`: one of `new`, `checking`,
  `connected`, `completed`, `disconnected`, `failed`, or `closed`.
* `datachannel(channel: DataChannel)`: the remote peer opened a channel.

Data channel events: `open()`, `message(data)`, and `close()`.
"""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import Sequence

from peermesh.events import IceCandidate
from peermesh.events import SessionDescription

TERMINAL_STATES = frozenset({'closed', 'disconnected', 'failed'})
"""Connection states after which a session is discarded."""


@runtime_checkable
class DataChannel(Protocol):
    """Data channel handle."""

    @property
    def label(self) -> str:
        """Channel label."""
        ...

    @property
    def ready_state(self) -> str:
        """One of `connecting`, `open`, `closing`, or `closed`."""
        ...

    def on(self, event: str, handler: Callable[..., Any]) -> Any:
        """Register an event handler."""
        ...

    def send(self, data: bytes | str) -> None:
        """Send a message on the channel."""
        ...

    def close(self) -> None:
        """Close the channel."""
        ...


@runtime_checkable
class EngineConnection(Protocol):
    """Peer connection handle."""

    @property
    def signaling_state(self) -> str:
        """Signaling state (e.g., `stable` or `have-local-offer`)."""
        ...

    @property
    def connection_state(self) -> str:
        """Current connection state."""
        ...

    @property
    def local_description(self) -> SessionDescription | None:
        """Current local description."""
        ...

    def on(self, event: str, handler: Callable[..., Any]) -> Any:
        """Register an event handler."""
        ...

    async def set_local_description(self) -> None:
        """Create and apply the offer or answer the current state requires."""
        ...

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply a remote description.

        Applying a remote offer while a local offer is pending must
        discard (roll back) the local offer first.
        """
        ...

    async def add_ice_candidate(self, candidate: IceCandidate | None) -> None:
        """Apply a remote candidate. `None` signals end-of-candidates."""
        ...

    def create_data_channel(self, label: str) -> DataChannel:
        """Create a data channel negotiated in-band."""
        ...

    async def close(self) -> None:
        """Close the connection and all of its channels."""
        ...


@runtime_checkable
class Engine(Protocol):
    """Factory of peer connections."""

    def create_connection(
        self,
        ice_servers: Sequence[dict[str, Any]],
    ) -> EngineConnection:
        """Create a new peer connection.

        Args:
            ice_servers: ICE server configurations each with a `urls` key
                and optional `username` and `credential` keys.
        """
        ...
