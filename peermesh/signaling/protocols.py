"""Signaling channel interface protocol."""
from __future__ import annotations

from typing import Protocol
from typing import runtime_checkable

from peermesh.events import Payload
from peermesh.events import SignalingEvent
from peermesh.events import SignalingEventDecodeError  # noqa: F401
from peermesh.events import SignalingEventType


@runtime_checkable
class SignalingChannel(Protocol):
    """Carrier of signaling events between this client and the relay.

    Messages to and from the same peer keep their order. There is no
    ordering guarantee across peers and no delivery retry.
    """

    @property
    def client_id(self) -> str:
        """Identity of this client on the relay."""
        ...

    async def connect(self) -> None:
        """Connect to the relay and start receiving events."""
        ...

    async def close(self) -> None:
        """Close the connection to the relay."""
        ...

    async def recv(self) -> SignalingEvent:
        """Receive the next signaling event.

        Returns:
            The next event relayed to this client.

        Raises:
            SignalingEventDecodeError: If the message received cannot be
                decoded. The caller may continue receiving.
            SignalingClosedError: If the channel has been closed.
        """
        ...

    async def send(
        self,
        peer_id: str,
        event: SignalingEventType | str,
        payload: Payload,
    ) -> None:
        """Relay a message to a peer.

        Args:
            peer_id: Destination peer.
            event: Event name.
            payload: Description or candidate to relay.

        Raises:
            SignalingSendError: If the message could not be delivered to
                the relay.
        """
        ...
