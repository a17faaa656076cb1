"""Notifications published to application subscribers."""
from __future__ import annotations

import dataclasses
import logging
from typing import Callable
from typing import TYPE_CHECKING
from typing import Union

if TYPE_CHECKING:
    from peermesh.session import PeerChannel

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ConnectionStateChanged:
    """Connection state of a peer changed.

    Attributes:
        peer_id: Remote peer.
        state: New engine connection state.
    """

    peer_id: str
    state: str


@dataclasses.dataclass(frozen=True)
class PeerDataReceived:
    """Message received on a peer's data channel."""

    peer_id: str
    data: bytes | str


@dataclasses.dataclass(frozen=True)
class PeerSendCompleted:
    """Message handed to a peer's data channel."""

    peer_id: str


@dataclasses.dataclass(frozen=True)
class NewPeerReady:
    """Data channel to a peer is ready for use."""

    peer_id: str
    channel: PeerChannel


Notification = Union[
    ConnectionStateChanged,
    PeerDataReceived,
    PeerSendCompleted,
    NewPeerReady,
]
NotificationCallback = Callable[[Notification], None]


class NotificationBus:
    """Fan-out of notifications to registered subscribers.

    Subscribers are plain callables invoked synchronously in registration
    order. An exception raised by one subscriber is logged and does not
    prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: list[
            tuple[NotificationCallback, tuple[type[Notification], ...]]
        ] = []

    def subscribe(
        self,
        callback: NotificationCallback,
        *kinds: type[Notification],
    ) -> Callable[[], None]:
        """Register a subscriber.

        Args:
            callback: Callable invoked with each notification.
            kinds: Notification types to deliver. All types are delivered
                if none are given.

        Returns:
            Function that removes the subscription when called.
        """
        entry = (callback, kinds)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, notification: Notification) -> None:
        """Deliver a notification to matching subscribers."""
        for callback, kinds in list(self._subscribers):
            if kinds and not isinstance(notification, kinds):
                continue
            try:
                callback(notification)
            except Exception as e:
                logger.exception(
                    f'Subscriber {callback!r} raised while handling '
                    f'{type(notification).__name__}: {e!r}',
                )
