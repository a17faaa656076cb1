"""Per-peer session records."""
from __future__ import annotations

import dataclasses
import logging

from peermesh.engine.protocols import DataChannel
from peermesh.engine.protocols import EngineConnection
from peermesh.notifications import NotificationBus
from peermesh.notifications import PeerSendCompleted

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class NegotiationState:
    """Perfect negotiation flags for one peer.

    Attributes:
        making_offer: A local offer is being generated and relayed.
        ignore_offer: The last remote offer was dropped because of a
            collision on the impolite side.
        is_setting_remote_answer_pending: A remote answer is being applied.
    """

    making_offer: bool = False
    ignore_offer: bool = False
    is_setting_remote_answer_pending: bool = False


class PeerChannel:
    """Data channel owned by a peer session.

    Sending through this adapter transfers the message and publishes a
    [`PeerSendCompleted`][peermesh.notifications.PeerSendCompleted]
    notification in one step.

    Args:
        peer_id: Remote peer the channel connects to.
        channel: Engine data channel handle.
        bus: Bus to publish send notifications on.
    """

    def __init__(
        self,
        peer_id: str,
        channel: DataChannel,
        bus: NotificationBus,
    ) -> None:
        self._peer_id = peer_id
        self._channel = channel
        self._bus = bus

    def __repr__(self) -> str:
        return (
            f'{type(self).__name__}(peer_id={self._peer_id!r}, '
            f'label={self.label!r}, ready_state={self.ready_state!r})'
        )

    @property
    def peer_id(self) -> str:
        """Remote peer the channel connects to."""
        return self._peer_id

    @property
    def label(self) -> str:
        """Channel label."""
        return self._channel.label

    @property
    def ready_state(self) -> str:
        """One of `connecting`, `open`, `closing`, or `closed`."""
        return self._channel.ready_state

    def send(self, data: bytes | str) -> None:
        """Send a message to the peer.

        Raises:
            Exception: Any error raised by the engine channel. No
                notification is published in that case.
        """
        self._channel.send(data)
        self._bus.publish(PeerSendCompleted(peer_id=self._peer_id))

    def close(self) -> None:
        """Close the underlying channel."""
        self._channel.close()


@dataclasses.dataclass(eq=False)
class PeerSession:
    """Negotiation session with one remote peer.

    Attributes:
        peer_id: Remote peer identity.
        polite: If the local side yields its own offer on collision.
        connection: Engine connection owned by this session.
        state: Negotiation flags.
        channel: Data channel, only set once the channel is ready.
    """

    peer_id: str
    polite: bool
    connection: EngineConnection
    state: NegotiationState = dataclasses.field(
        default_factory=NegotiationState,
    )
    channel: PeerChannel | None = None

    async def close(self) -> None:
        """Release the channel and connection handles."""
        if self.channel is not None:
            try:
                self.channel.close()
            except Exception as e:
                logger.warning(
                    f'Error closing channel to {self.peer_id}: {e!r}',
                )
            self.channel = None
        await self.connection.close()
