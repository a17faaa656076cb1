"""Mesh of data channels to every peer announced by a relay."""
from __future__ import annotations

import asyncio
import logging
import sys
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Generator
from typing import Sequence

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from peermesh.broadcast import BroadcastRouter
from peermesh.coordinator import DEFAULT_CHANNEL_LABEL
from peermesh.coordinator import DEFAULT_ICE_SERVERS
from peermesh.coordinator import NegotiationCoordinator
from peermesh.engine.protocols import Engine
from peermesh.notifications import NewPeerReady
from peermesh.notifications import Notification
from peermesh.notifications import NotificationBus
from peermesh.notifications import NotificationCallback
from peermesh.notifications import PeerDataReceived
from peermesh.registry import PeerRegistry
from peermesh.session import PeerChannel
from peermesh.signaling.protocols import SignalingChannel

logger = logging.getLogger(__name__)


class PeerMesh:
    """Mesh of peer data channels coordinated over a signaling relay.

    The mesh owns the signaling channel, the peer registry and the
    negotiation coordinator. Once started, a data channel is negotiated with
    every peer the relay announces.

    Example:
        ```python
        from peermesh.engine.aiortc_engine import AiortcEngine
        from peermesh.mesh import PeerMesh
        from peermesh.signaling import WebSocketSignalingChannel

        signaling = WebSocketSignalingChannel('ws://relay:8080')
        async with PeerMesh(signaling, AiortcEngine()) as mesh:
            await mesh.wait_for_peer()
            mesh.broadcast(b'hello')
            message = await mesh.recv()
        ```

    Note:
        The mesh can be started with `await PeerMesh(...)` or used as an
        async context manager.

    Args:
        signaling: Signaling channel to the relay. Connected on start and
            closed on close.
        engine: Engine used to create peer connections. Defaults to
            [`AiortcEngine`][peermesh.engine.aiortc_engine.AiortcEngine].
        ice_servers: ICE server configurations passed to the engine.
        channel_label: Label of the data channel opened to each peer.
    """

    def __init__(
        self,
        signaling: SignalingChannel,
        engine: Engine | None = None,
        *,
        ice_servers: Sequence[dict[str, Any]] = DEFAULT_ICE_SERVERS,
        channel_label: str = DEFAULT_CHANNEL_LABEL,
    ) -> None:
        if engine is None:
            from peermesh.engine.aiortc_engine import AiortcEngine

            engine = AiortcEngine()

        self._signaling = signaling
        self._registry = PeerRegistry()
        self._bus = NotificationBus()
        self._coordinator = NegotiationCoordinator(
            signaling,
            engine,
            registry=self._registry,
            bus=self._bus,
            ice_servers=ice_servers,
            channel_label=channel_label,
        )
        self._router = BroadcastRouter(self._registry)

        self._messages: asyncio.Queue[PeerDataReceived] = asyncio.Queue()
        self._peer_ready = asyncio.Event()
        self._unsubscribe = self._bus.subscribe(
            self._on_notification,
            PeerDataReceived,
            NewPeerReady,
        )
        self._started = False

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self.client_id}]'

    @property
    def client_id(self) -> str:
        """Identity of this client on the relay."""
        return self._signaling.client_id

    @property
    def bus(self) -> NotificationBus:
        """Bus notifications of the mesh are published on."""
        return self._bus

    @property
    def coordinator(self) -> NegotiationCoordinator:
        """Negotiation coordinator of the mesh."""
        return self._coordinator

    @property
    def registry(self) -> PeerRegistry:
        """Registry of peer sessions."""
        return self._registry

    def _on_notification(self, notification: Notification) -> None:
        if isinstance(notification, PeerDataReceived):
            self._messages.put_nowait(notification)
        elif isinstance(notification, NewPeerReady):
            self._peer_ready.set()

    async def start(self) -> None:
        """Connect to the relay and start negotiating with peers."""
        if self._started:
            return
        await self._signaling.connect()
        self._coordinator.start()
        self._started = True
        logger.info(f'{self._log_prefix}: peer mesh started')

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, Self]:
        return self.__aenter__().__await__()

    def broadcast(self, payload: bytes | str) -> int:
        """Send a payload to every peer with an open channel.

        Returns:
            Number of peers the payload was sent to.
        """
        return self._router.broadcast(payload)

    def subscribe(
        self,
        callback: NotificationCallback,
        *kinds: type[Notification],
    ) -> Callable[[], None]:
        """Register a notification subscriber.

        Args:
            callback: Callable invoked with each notification.
            kinds: Notification types to deliver. All types are delivered
                if none are given.

        Returns:
            Function that removes the subscription when called.
        """
        return self._bus.subscribe(callback, *kinds)

    async def recv(self) -> PeerDataReceived:
        """Get the next message received from any peer."""
        return await self._messages.get()

    def ready_channels(self) -> dict[str, PeerChannel]:
        """Get the ready data channels keyed by peer id."""
        return self._registry.channels()

    async def wait_for_peer(self, timeout: float | None = None) -> None:
        """Wait until a data channel to at least one peer is ready.

        Raises:
            asyncio.TimeoutError: If no channel is ready within `timeout`
                seconds.
        """
        if self._registry.channels():
            return
        self._peer_ready.clear()
        await asyncio.wait_for(self._peer_ready.wait(), timeout)

    async def close(self) -> None:
        """Close every peer connection and the signaling channel."""
        await self._coordinator.close()
        await self._signaling.close()
        self._unsubscribe()
        self._started = False
        logger.info(f'{self._log_prefix}: peer mesh closed')
