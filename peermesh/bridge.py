"""Bridge peer data channels to local unix domain sockets.

For every peer with a ready data channel, the bridge listens on
`<socket_dir>/<peer_id>.sock`. Bytes written by a local client to the
socket are sent to the peer and messages received from the peer are
written to every client connected to that peer's socket.

Example:
    ```python
    from peermesh.bridge import UnixSocketBridge

    async with PeerMesh(signaling) as mesh:
        async with UnixSocketBridge(mesh.bus, '/tmp/peermesh'):
            ...
    ```

    ```bash
    $ echo "hello" | nc -U /tmp/peermesh/<peer-id>.sock
    ```
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Coroutine

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from peermesh.engine.protocols import TERMINAL_STATES
from peermesh.notifications import ConnectionStateChanged
from peermesh.notifications import NewPeerReady
from peermesh.notifications import Notification
from peermesh.notifications import NotificationBus
from peermesh.notifications import PeerDataReceived
from peermesh.session import PeerChannel
from peermesh.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = 16 * 1024
"""Max bytes read from a local client before sending to the peer."""


class UnixSocketBridge:
    """Expose peer data channels as unix domain sockets.

    Args:
        bus: Notification bus of the mesh whose peers are bridged.
        socket_dir: Directory to create sockets in. Created if it does not
            exist.
        read_size: Max bytes read from a local client per message sent to
            the peer.
    """

    def __init__(
        self,
        bus: NotificationBus,
        socket_dir: str,
        *,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        self._bus = bus
        self._socket_dir = socket_dir
        self._read_size = read_size

        self._servers: dict[str, asyncio.Server] = {}
        self._clients: dict[str, set[asyncio.StreamWriter]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._unsubscribe: Callable[[], None] | None = None

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def socket_dir(self) -> str:
        """Directory sockets are created in."""
        return self._socket_dir

    def socket_path(self, peer_id: str) -> str:
        """Get the path of the socket for a peer.

        Raises:
            ValueError: If the peer id is empty or contains a path separator
                or null byte.
        """
        separators = {sep for sep in (os.sep, os.altsep, '/') if sep}
        if not peer_id or '\0' in peer_id or any(
            sep in peer_id for sep in separators
        ):
            raise ValueError(
                f'Peer id {peer_id!r} cannot be used as a socket name.',
            )
        return os.path.join(self._socket_dir, f'{peer_id}.sock')

    def peer_ids(self) -> list[str]:
        """Get the ids of peers with a listening socket."""
        return list(self._servers)

    def start(self) -> None:
        """Start bridging peers as their channels become ready."""
        if self._unsubscribe is not None:
            return
        os.makedirs(self._socket_dir, exist_ok=True)
        self._unsubscribe = self._bus.subscribe(
            self._on_notification,
            NewPeerReady,
            PeerDataReceived,
            ConnectionStateChanged,
        )
        logger.info(f'Bridging peer channels to sockets in {self._socket_dir}')

    def _spawn(
        self,
        coro: Callable[..., Coroutine[Any, Any, None]],
        *args: Any,
    ) -> None:
        task = spawn_guarded_background_task(coro, *args)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_notification(self, notification: Notification) -> None:
        if isinstance(notification, NewPeerReady):
            self._spawn(
                self._open_peer,
                notification.peer_id,
                notification.channel,
            )
        elif isinstance(notification, PeerDataReceived):
            self._write_to_clients(notification.peer_id, notification.data)
        elif isinstance(notification, ConnectionStateChanged):
            if notification.state in TERMINAL_STATES:
                self._spawn(self._close_peer, notification.peer_id)

    def _write_to_clients(self, peer_id: str, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode('utf-8')
        for writer in list(self._clients.get(peer_id, ())):
            if writer.is_closing():
                continue
            writer.write(data)

    async def _open_peer(self, peer_id: str, channel: PeerChannel) -> None:
        try:
            path = self.socket_path(peer_id)
        except ValueError as e:
            logger.error(f'Not bridging peer {peer_id!r}: {e}')
            return

        # A new channel for the same peer replaces the old socket.
        await self._close_peer(peer_id)

        if os.path.exists(path):
            os.remove(path)

        async def _handle(
            reader: asyncio.StreamReader,
            writer: asyncio.StreamWriter,
        ) -> None:
            await self._handle_client(peer_id, channel, reader, writer)

        try:
            server = await asyncio.start_unix_server(_handle, path=path)
        except OSError as e:
            logger.error(f'Failed to listen on {path} for {peer_id}: {e!r}')
            return

        self._servers[peer_id] = server
        self._clients[peer_id] = set()
        logger.info(f'Listening on {path} for peer {peer_id}')

    async def _handle_client(
        self,
        peer_id: str,
        channel: PeerChannel,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        clients = self._clients.setdefault(peer_id, set())
        clients.add(writer)
        logger.debug(f'Local client connected to socket for {peer_id}')
        try:
            while True:
                data = await reader.read(self._read_size)
                if not data:
                    break
                if channel.ready_state != 'open':
                    logger.warning(
                        f'Dropping {len(data)} bytes for {peer_id} because '
                        f'the channel is {channel.ready_state}',
                    )
                    continue
                channel.send(data)
        except ConnectionError as e:
            logger.debug(f'Local client for {peer_id} disconnected: {e!r}')
        finally:
            clients.discard(writer)
            writer.close()
            logger.debug(
                f'Local client disconnected from socket for {peer_id}',
            )

    async def _close_peer(self, peer_id: str) -> None:
        server = self._servers.pop(peer_id, None)
        clients = self._clients.pop(peer_id, set())
        for writer in clients:
            writer.close()
        if server is None:
            return
        server.close()
        await server.wait_closed()

        path = self.socket_path(peer_id)
        if os.path.exists(path):
            os.remove(path)
        logger.info(f'Removed socket {path} for peer {peer_id}')

    async def close(self) -> None:
        """Stop bridging and remove all sockets."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        for task in list(self._tasks):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        for peer_id in list(self._servers):
            await self._close_peer(peer_id)
        logger.info(f'Stopped bridging sockets in {self._socket_dir}')
