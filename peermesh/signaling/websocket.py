"""Signaling channel over a persistent WebSocket connection."""
from __future__ import annotations

import asyncio
import json
import logging
import ssl
import sys
from types import TracebackType
from typing import Any
from typing import Generator

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets
import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.protocol import State

from peermesh.events import decode_signaling_event
from peermesh.events import encode_payload
from peermesh.events import event_name
from peermesh.events import Payload
from peermesh.events import SignalingEvent
from peermesh.events import SignalingEventDecodeError
from peermesh.events import SignalingEventType
from peermesh.signaling.exceptions import SignalingClosedError
from peermesh.signaling.exceptions import SignalingNotConnectedError
from peermesh.signaling.exceptions import SignalingSendError
from peermesh.utils.environment import generate_client_id

logger = logging.getLogger(__name__)


class WebSocketSignalingChannel:
    """Signaling channel over a WebSocket connection to the relay.

    On open, the client announces itself with `{"action": "announce"}`.
    Inbound frames are JSON objects naming the event in the `event` key.
    Outbound messages are wrapped as
    `{"action": "message", "connectionId": <peer>, "event": ..., "data": ...}`
    and the relay forwards them to the peer.

    If the connection drops while receiving, the channel reconnects with
    exponential backoff.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peermesh.signaling.websocket import WebSocketSignalingChannel

        async with WebSocketSignalingChannel('ws://relay:8080') as channel:
            event = await channel.recv()
        ```

    Args:
        address: Address of the relay. Should start with `ws://` or
            `wss://`.
        client_id: Identity of this client. If `None`, one is generated.
        extra_headers: Arbitrary HTTP headers to add to the handshake request.
        ssl_context: Custom SSL context. A default TLS context is created
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on opening the connection.
        verify_certificate: Verify the relay's SSL certificate. Only used
            if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        client_id: str | None = None,
        extra_headers: dict[str, str] | None = None,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._client_id = (
            generate_client_id() if client_id is None else client_id
        )
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._extra_headers = extra_headers
        self._ssl_context = ssl_context

        self._initial_backoff_seconds = 1.0

        self._closed = False
        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None

    def __repr__(self) -> str:
        return (
            f'{type(self).__name__}(address={self._address!r}, '
            f'client_id={self._client_id!r})'
        )

    async def __aenter__(self) -> Self:
        await self.connect()
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

    @property
    def address(self) -> str:
        """Address of the relay."""
        return self._address

    @property
    def client_id(self) -> str:
        """Identity of this client."""
        return self._client_id

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the relay.

        Raises:
            SignalingNotConnectedError: If the websocket connection to the
                relay is not open.
        """
        if self._websocket is not None and self._websocket.state is State.OPEN:
            return self._websocket
        raise SignalingNotConnectedError(
            'Websocket connection to the relay is not open. '
            'Try calling connect() first.',
        )

    async def _announce(self, timeout: float) -> ClientConnection:
        websocket = await connect(
            self._address,
            open_timeout=timeout,
            ssl=self._ssl_context,
            additional_headers=self._extra_headers,
        )
        await websocket.send(json.dumps({'action': 'announce'}))
        logger.info(
            f'Established signaling connection to {self._address} '
            f'as {self._client_id}',
        )
        return websocket

    async def connect(self, retry: bool = True) -> None:
        """Connect to the relay.

        Note:
            This method is a no-op if a connection is already established.
            Otherwise, a new connection will be attempted with exponential
            backoff when `retry` is `True`.

        Args:
            retry: Retry the connection with exponential backoff starting at
                one second and increasing to a max of 60 seconds.
        """
        async with self._connect_lock:
            if self._websocket is not None and (
                self._websocket.state is State.OPEN
            ):
                return

            self._closed = False
            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await self._announce(self._timeout)
                except (
                    OSError,
                    asyncio.TimeoutError,
                    websockets.exceptions.InvalidHandshake,
                    websockets.exceptions.ConnectionClosed,
                ) as e:
                    if not retry:
                        raise

                    logger.warning(
                        f'Connection to relay at {self._address} failed '
                        f'because of {e!r}. Retrying connection in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 60)
                else:
                    break

    async def close(self) -> None:
        """Close the connection to the relay."""
        self._closed = True
        if self._websocket is not None:
            await self._websocket.close()
        logger.info(f'Closed signaling connection to {self._address}')

    async def recv(self) -> SignalingEvent:
        """Receive the next signaling event.

        Raises:
            SignalingEventDecodeError: If the message cannot be decoded.
            SignalingClosedError: If the channel was closed.
        """
        while True:
            if self._closed:
                raise SignalingClosedError('Signaling channel is closed.')

            try:
                websocket = self.websocket
            except SignalingNotConnectedError:
                await self.connect()
                continue

            try:
                message = await websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                if self._closed:
                    raise SignalingClosedError(
                        'Signaling channel is closed.',
                    ) from e
                logger.warning(
                    f'Signaling connection to {self._address} closed '
                    f'unexpectedly ({e!r}), reconnecting',
                )
                continue

            if not isinstance(message, str):
                raise SignalingEventDecodeError(
                    'Received non-string message from websocket.',
                )
            return decode_signaling_event(message)

    async def send(
        self,
        peer_id: str,
        event: SignalingEventType | str,
        payload: Payload,
    ) -> None:
        """Relay a message to a peer.

        Raises:
            SignalingSendError: If the websocket is not open or closes while
                sending.
        """
        message = {
            'action': 'message',
            'connectionId': peer_id,
            'event': event_name(event),
            'data': encode_payload(payload),
        }
        message_str = json.dumps(message)
        logger.debug(f'Relay message: {message_str}')

        try:
            await self.websocket.send(message_str)
        except (
            SignalingNotConnectedError,
            websockets.exceptions.ConnectionClosed,
        ) as e:
            raise SignalingSendError(
                f'Failed to relay {message["event"]} to {peer_id}: {e}',
            ) from e
