"""Perfect negotiation of peer connections driven by signaling events.

Both sides of a pair may start negotiating at the same time. The relay
assigns one side of every pair to be polite and the other impolite. When
offers collide, the impolite side ignores the incoming offer and the polite
side discards its own offer and answers instead, so both sides converge on
one negotiation without extra round trips.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Sequence

from peermesh.engine.protocols import DataChannel
from peermesh.engine.protocols import Engine
from peermesh.engine.protocols import TERMINAL_STATES
from peermesh.events import AddPeer
from peermesh.events import IceCandidate
from peermesh.events import IceCandidateEvent
from peermesh.events import Payload
from peermesh.events import RemovePeer
from peermesh.events import SessionDescription
from peermesh.events import SessionDescriptionEvent
from peermesh.events import SignalingEvent
from peermesh.events import SignalingEventDecodeError
from peermesh.events import SignalingEventType
from peermesh.exceptions import NegotiationError
from peermesh.exceptions import UnknownPeerError
from peermesh.notifications import ConnectionStateChanged
from peermesh.notifications import NewPeerReady
from peermesh.notifications import NotificationBus
from peermesh.notifications import PeerDataReceived
from peermesh.registry import PeerRegistry
from peermesh.session import PeerChannel
from peermesh.session import PeerSession
from peermesh.signaling.exceptions import SignalingClosedError
from peermesh.signaling.exceptions import SignalingSendError
from peermesh.signaling.protocols import SignalingChannel
from peermesh.utils.tasks import SerialTaskQueue
from peermesh.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS: tuple[dict[str, Any], ...] = (
    {'urls': 'stun:stun.l.google.com:19302'},
)
"""ICE servers used when none are configured."""
DEFAULT_CHANNEL_LABEL = 'updates'
"""Label of the data channel opened by the polite side."""

_Handler = Callable[..., Awaitable[None]]


class NegotiationCoordinator:
    """Coordinator of peer connections for one signaling client.

    Signaling events and engine callbacks for the same peer are handled one
    at a time in arrival order by a per-peer
    [`SerialTaskQueue`][peermesh.utils.tasks.SerialTaskQueue]. Handlers for
    different peers run independently.

    Example:
        ```python
        from peermesh.coordinator import NegotiationCoordinator
        from peermesh.engine.aiortc_engine import AiortcEngine
        from peermesh.signaling import WebSocketSignalingChannel

        signaling = await WebSocketSignalingChannel('ws://relay:8080')
        coordinator = NegotiationCoordinator(signaling, AiortcEngine())
        coordinator.start()
        ...
        await coordinator.close()
        ```

    Args:
        signaling: Connected signaling channel to receive events from and
            relay descriptions and candidates over.
        engine: Engine used to create peer connections.
        registry: Registry to store sessions in. A new one is created if
            `None`.
        bus: Bus to publish notifications on. A new one is created if
            `None`.
        ice_servers: ICE server configurations passed to the engine.
        channel_label: Label of the data channel the polite side creates.
    """

    def __init__(
        self,
        signaling: SignalingChannel,
        engine: Engine,
        *,
        registry: PeerRegistry | None = None,
        bus: NotificationBus | None = None,
        ice_servers: Sequence[dict[str, Any]] = DEFAULT_ICE_SERVERS,
        channel_label: str = DEFAULT_CHANNEL_LABEL,
    ) -> None:
        self._signaling = signaling
        self._engine = engine
        self._registry = PeerRegistry() if registry is None else registry
        self._bus = NotificationBus() if bus is None else bus
        self._ice_servers = list(ice_servers)
        self._channel_label = channel_label

        self._queues: dict[str, SerialTaskQueue] = {}
        self._receive_task: asyncio.Task[Any] | None = None

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._signaling.client_id}]'

    @property
    def registry(self) -> PeerRegistry:
        """Registry of peer sessions."""
        return self._registry

    @property
    def bus(self) -> NotificationBus:
        """Bus notifications are published on."""
        return self._bus

    @property
    def signaling(self) -> SignalingChannel:
        """Signaling channel events are received from."""
        return self._signaling

    def _queue(self, peer_id: str) -> SerialTaskQueue:
        queue = self._queues.get(peer_id)
        if queue is None or queue.stopped:
            # Work still queued on a stopped queue for the same peer runs
            # before anything submitted to its replacement.
            queue = SerialTaskQueue(f'peer-queue-{peer_id}', after=queue)
            self._queues[peer_id] = queue
        return queue

    def _stop_queue(self, peer_id: str) -> None:
        queue = self._queues.get(peer_id)
        if queue is not None and not queue.stopped:
            queue.stop()
            queue.add_done_callback(
                lambda stopped: self._forget_queue(peer_id, stopped),
            )

    def _forget_queue(self, peer_id: str, queue: SerialTaskQueue) -> None:
        if self._queues.get(peer_id) is queue:
            del self._queues[peer_id]

    def _submit(self, peer_id: str, handler: _Handler, *args: Any) -> None:
        self._queue(peer_id).submit(self._guarded, handler, peer_id, *args)

    async def _guarded(
        self,
        handler: _Handler,
        peer_id: str,
        *args: Any,
    ) -> None:
        try:
            await handler(peer_id, *args)
        except UnknownPeerError as e:
            logger.warning(
                f'{self._log_prefix}: dropping {handler.__name__} for '
                f'{peer_id}: {e}',
            )
        except NegotiationError as e:
            logger.error(f'{self._log_prefix}: {e}')

    def _bind(self, session: PeerSession, handler: _Handler) -> Callable:
        # Engine callbacks only reach the handler while the session is the
        # registered one for its peer id.
        def _callback(*args: Any) -> None:
            if not self._registry.is_current(session):
                logger.debug(
                    f'{self._log_prefix}: dropping {handler.__name__} from '
                    f'stale session for {session.peer_id}',
                )
                return
            self._submit(session.peer_id, handler, *args)

        return _callback

    async def _relay(
        self,
        peer_id: str,
        event: SignalingEventType,
        payload: Payload,
    ) -> None:
        try:
            await self._signaling.send(peer_id, event, payload)
        except SignalingSendError as e:
            logger.error(
                f'{self._log_prefix}: failed to relay {event.value} to '
                f'{peer_id}: {e}',
            )

    def _surface(self, session: PeerSession, channel: PeerChannel) -> None:
        if self._registry.surface_channel(session, channel):
            logger.info(
                f'{self._log_prefix}: data channel to {session.peer_id} '
                'is ready',
            )
            self._bus.publish(NewPeerReady(session.peer_id, channel))

    def _wire_channel(
        self,
        session: PeerSession,
        channel: DataChannel,
        *,
        wait_for_open: bool,
    ) -> None:
        peer_id = session.peer_id
        peer_channel = PeerChannel(peer_id, channel, self._bus)

        def _on_message(data: bytes | str) -> None:
            if self._registry.is_current(session):
                self._bus.publish(PeerDataReceived(peer_id, data))

        channel.on('message', _on_message)

        if wait_for_open and channel.ready_state != 'open':
            channel.on('open', lambda: self._surface(session, peer_channel))
        else:
            self._surface(session, peer_channel)

    async def on_add_peer(self, peer_id: str, polite: bool) -> None:
        """Create a session and connection for a new peer.

        The polite side creates the data channel which starts negotiation.
        The impolite side waits for the channel to arrive from the peer.

        Args:
            peer_id: Identity of the new peer.
            polite: If the local side is polite towards this peer.
        """
        if peer_id in self._registry:
            logger.warning(
                f'{self._log_prefix}: ignoring add-peer for {peer_id} '
                'because a session already exists',
            )
            return

        connection = self._engine.create_connection(self._ice_servers)
        session = PeerSession(
            peer_id=peer_id,
            polite=polite,
            connection=connection,
        )
        self._registry.add(session)
        logger.info(
            f'{self._log_prefix}: added peer {peer_id} '
            f'({"polite" if polite else "impolite"})',
        )

        connection.on(
            'icecandidate',
            self._bind(session, self.on_ice_candidate_generated),
        )
        connection.on(
            'negotiationneeded',
            self._bind(session, self.on_negotiation_needed),
        )
        connection.on(
            'connectionstatechange',
            self._bind(session, self.on_connection_state_change),
        )

        if polite:
            channel = connection.create_data_channel(self._channel_label)
            self._wire_channel(session, channel, wait_for_open=True)
        else:

            def _on_datachannel(channel: DataChannel) -> None:
                if self._registry.is_current(session):
                    self._wire_channel(session, channel, wait_for_open=False)

            connection.on('datachannel', _on_datachannel)

    async def on_remove_peer(self, peer_id: str) -> None:
        """Remove the session for a peer if it exists."""
        if await self._registry.remove(peer_id):
            logger.info(f'{self._log_prefix}: removed peer {peer_id}')
            self._bus.publish(ConnectionStateChanged(peer_id, 'closed'))
            self._stop_queue(peer_id)
        else:
            logger.debug(
                f'{self._log_prefix}: remove-peer for unregistered peer '
                f'{peer_id}',
            )

    async def on_negotiation_needed(self, peer_id: str) -> None:
        """Generate and relay a local offer.

        Failures are logged and do not propagate.

        Raises:
            UnknownPeerError: If the peer is not registered.
        """
        session = self._registry.get(peer_id)
        connection = session.connection
        try:
            session.state.making_offer = True
            await connection.set_local_description()
            await self._relay(
                peer_id,
                SignalingEventType.session_description,
                connection.local_description,
            )
        except Exception as e:
            logger.error(
                f'{self._log_prefix}: failed to create offer for '
                f'{peer_id}: {e!r}',
            )
        finally:
            session.state.making_offer = False

    async def on_ice_candidate_generated(
        self,
        peer_id: str,
        candidate: IceCandidate | None,
    ) -> None:
        """Relay a locally gathered candidate to the peer.

        Raises:
            UnknownPeerError: If the peer is not registered.
        """
        self._registry.get(peer_id)
        await self._relay(peer_id, SignalingEventType.ice_candidate, candidate)

    async def on_remote_session_description(
        self,
        peer_id: str,
        description: SessionDescription,
    ) -> None:
        """Apply a remote offer or answer, resolving offer collisions.

        Raises:
            UnknownPeerError: If the peer is not registered.
            NegotiationError: If the engine fails to apply the description
                or generate the answer.
        """
        session = self._registry.get(peer_id)
        state = session.state
        connection = session.connection

        ready_for_offer = not state.making_offer and (
            connection.signaling_state == 'stable'
            or state.is_setting_remote_answer_pending
        )
        offer_collision = description.type == 'offer' and not ready_for_offer
        state.ignore_offer = not session.polite and offer_collision
        if state.ignore_offer:
            logger.info(
                f'{self._log_prefix}: ignoring colliding offer from '
                f'{peer_id}',
            )
            return

        state.is_setting_remote_answer_pending = description.type == 'answer'
        try:
            await connection.set_remote_description(description)
        except Exception as e:
            raise NegotiationError(
                f'Failed to apply {description.type} from {peer_id}: {e!r}',
            ) from e
        finally:
            state.is_setting_remote_answer_pending = False

        if description.type == 'offer':
            try:
                await connection.set_local_description()
            except Exception as e:
                raise NegotiationError(
                    f'Failed to create answer for {peer_id}: {e!r}',
                ) from e
            await self._relay(
                peer_id,
                SignalingEventType.session_description,
                connection.local_description,
            )

    async def on_remote_ice_candidate(
        self,
        peer_id: str,
        candidate: IceCandidate | None,
    ) -> None:
        """Apply a candidate received from the peer.

        Raises:
            UnknownPeerError: If the peer is not registered.
            NegotiationError: If the engine fails to apply the candidate and
                the last offer from the peer was not ignored.
        """
        session = self._registry.get(peer_id)
        try:
            await session.connection.add_ice_candidate(candidate)
        except Exception as e:
            if session.state.ignore_offer:
                logger.debug(
                    f'{self._log_prefix}: suppressed candidate error for '
                    f'ignored offer from {peer_id}: {e!r}',
                )
                return
            raise NegotiationError(
                f'Failed to apply ICE candidate from {peer_id}: {e!r}',
            ) from e

    async def on_connection_state_change(
        self,
        peer_id: str,
        state: str,
    ) -> None:
        """Publish a connection state change and discard dead sessions."""
        logger.info(
            f'{self._log_prefix}: connection to {peer_id} is {state}',
        )
        if state in TERMINAL_STATES:
            await self._registry.remove(peer_id)
            self._stop_queue(peer_id)
        self._bus.publish(ConnectionStateChanged(peer_id, state))

    def dispatch(self, event: SignalingEvent) -> None:
        """Queue the handler for a signaling event on its peer's queue."""
        if isinstance(event, AddPeer):
            self._submit(event.peer_id, self.on_add_peer, event.polite)
        elif isinstance(event, RemovePeer):
            self._submit(event.peer_id, self.on_remove_peer)
        elif isinstance(event, SessionDescriptionEvent):
            self._submit(
                event.peer_id,
                self.on_remote_session_description,
                event.description,
            )
        elif isinstance(event, IceCandidateEvent):
            self._submit(
                event.peer_id,
                self.on_remote_ice_candidate,
                event.candidate,
            )
        else:
            logger.error(
                f'{self._log_prefix}: received unknown event type '
                f'{type(event).__name__}',
            )

    async def run(self) -> None:
        """Receive and dispatch signaling events until the channel closes."""
        logger.info(f'{self._log_prefix}: listening for signaling events')
        while True:
            try:
                event = await self._signaling.recv()
            except SignalingClosedError:
                logger.info(f'{self._log_prefix}: signaling channel closed')
                return
            except SignalingEventDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: error decoding signaling event: '
                    f'{e} ...skipping event',
                )
                continue

            logger.debug(
                f'{self._log_prefix}: received {type(event).__name__} '
                f'for {event.peer_id}',
            )
            self.dispatch(event)

    def start(self) -> None:
        """Start the receive loop in a background task."""
        if self._receive_task is None:
            self._receive_task = spawn_guarded_background_task(self.run)
            self._receive_task.set_name(
                f'negotiation-coordinator-{self._signaling.client_id}',
            )

    @property
    def idle(self) -> bool:
        """If no handler is queued or running for any peer."""
        return all(queue.idle for queue in self._queues.values())

    async def drain(self) -> None:
        """Wait until every queued handler has finished."""
        while True:
            queues = list(self._queues.values())
            await asyncio.gather(*(queue.join() for queue in queues))
            # Engine callbacks scheduled by the handlers may queue more work.
            await asyncio.sleep(0)
            if self.idle:
                return

    async def close(self) -> None:
        """Stop the receive loop and peer queues and remove all sessions."""
        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        for queue in list(self._queues.values()):
            await queue.close()
        self._queues.clear()

        await self._registry.clear()
        logger.info(f'{self._log_prefix}: coordinator closed')
