"""Signaling channel over a server-sent event stream and HTTP requests."""
from __future__ import annotations

import asyncio
import logging
import sys
from types import TracebackType
from typing import Any
from typing import Generator

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import aiohttp

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


class EventSourceSignalingChannel:
    """Signaling channel over a server-sent event stream.

    Inbound events are read from the `text/event-stream` response of
    `GET {address}/connect?peerId={client_id}` where the event field names
    the signaling event and the data field holds the JSON message.
    Outbound messages are sent as `POST {address}/relay/{peer}/{event}` with
    the JSON payload as the body and the sender in the `peerId` header.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peermesh.signaling.eventsource import EventSourceSignalingChannel

        async with EventSourceSignalingChannel('http://relay:8080') as channel:
            event = await channel.recv()
        ```

    Args:
        address: Base address of the relay. Should start with `http://` or
            `https://`.
        client_id: Identity of this client. If `None`, one is generated.
        session: Optional session to make requests with. If `None`, a
            session is created on connect and closed on close.
        timeout: Time to wait in seconds on opening connections.

    Raises:
        ValueError: If address does not start with `http://` or `https://`.
    """

    def __init__(
        self,
        address: str,
        *,
        client_id: str | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 10,
    ) -> None:
        if not (
            address.startswith('http://') or address.startswith('https://')
        ):
            raise ValueError(
                'Relay address must start with http:// or https://. '
                f'Got {address}.',
            )

        self._address = address.rstrip('/')
        self._client_id = (
            generate_client_id() if client_id is None else client_id
        )
        self._timeout = timeout

        self._session = session
        self._owns_session = session is None
        self._response: aiohttp.ClientResponse | None = None
        self._initial_backoff_seconds = 1.0

        self._closed = False
        self._connect_lock = asyncio.Lock()

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
        """Base address of the relay."""
        return self._address

    @property
    def client_id(self) -> str:
        """Identity of this client."""
        return self._client_id

    @property
    def session(self) -> aiohttp.ClientSession:
        """HTTP session used for requests.

        Raises:
            SignalingNotConnectedError: If the channel is not connected.
        """
        if self._session is None or self._session.closed:
            raise SignalingNotConnectedError(
                'HTTP session is not open. Try calling connect() first.',
            )
        return self._session

    async def _open_stream(self) -> aiohttp.ClientResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        response = await self._session.get(
            f'{self._address}/connect',
            params={'peerId': self._client_id},
            headers={'Accept': 'text/event-stream'},
            timeout=aiohttp.ClientTimeout(
                total=None,
                sock_connect=self._timeout,
            ),
        )
        try:
            response.raise_for_status()
        except aiohttp.ClientResponseError:
            response.release()
            raise
        logger.info(
            f'Opened event stream from {self._address} as {self._client_id}',
        )
        return response

    async def connect(self, retry: bool = True) -> None:
        """Open the event stream.

        Note:
            This method is a no-op if the stream is already open.
            Otherwise, a new stream will be opened with exponential backoff
            when `retry` is `True`.

        Args:
            retry: Retry opening the stream with exponential backoff starting
                at one second and increasing to a max of 60 seconds.

        Raises:
            aiohttp.ClientError: If the stream cannot be opened and `retry`
                is `False`.
            SignalingClosedError: If the channel is closed while retrying.
        """
        async with self._connect_lock:
            if self._response is not None and not self._response.closed:
                return

            self._closed = False
            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._response = await self._open_stream()
                except (
                    OSError,
                    asyncio.TimeoutError,
                    aiohttp.ClientError,
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
                    if self._closed:
                        raise SignalingClosedError(
                            'Signaling channel is closed.',
                        ) from e
                else:
                    break

    async def close(self) -> None:
        """Close the event stream and the owned HTTP session."""
        self._closed = True
        if self._response is not None:
            self._response.close()
            self._response = None
        if self._session is not None and self._owns_session:
            await self._session.close()
        logger.info(f'Closed event stream from {self._address}')

    async def _read_event(self) -> tuple[str, str]:
        # Parses one event of the text/event-stream format. Comment lines
        # and events without data are skipped. An event with a line that is
        # not UTF-8 is read to its end before being rejected.
        if self._response is None:
            raise SignalingClosedError('Event stream is not open.')
        name = 'message'
        data: list[str] = []
        malformed = False
        while True:
            try:
                line = await self._response.content.readline()
            except (aiohttp.ClientError, AttributeError) as e:
                raise SignalingClosedError(
                    f'Event stream closed: {e!r}',
                ) from e
            if not line:
                raise SignalingClosedError('Event stream ended.')

            try:
                text = line.decode('utf-8').rstrip('\r\n')
            except UnicodeDecodeError:
                malformed = True
                continue
            if not text:
                if malformed:
                    raise SignalingEventDecodeError(
                        f'Event stream from {self._address} sent an event '
                        'that is not valid UTF-8.',
                    )
                if data:
                    return name, '\n'.join(data)
                name = 'message'
                continue
            if text.startswith(':'):
                continue

            field, _, value = text.partition(':')
            if value.startswith(' '):
                value = value[1:]
            if field == 'event':
                name = value
            elif field == 'data':
                data.append(value)

    async def recv(self) -> SignalingEvent:
        """Receive the next signaling event.

        Note:
            If the relay ends the event stream, the stream is reopened with
            exponential backoff unless the channel was closed.

        Raises:
            SignalingEventDecodeError: If the message cannot be decoded.
            SignalingClosedError: If the channel was closed.
        """
        while True:
            if self._closed:
                raise SignalingClosedError('Signaling channel is closed.')
            if self._response is None:
                await self.connect()
            try:
                name, data = await self._read_event()
            except SignalingClosedError as e:
                if self._closed:
                    raise
                logger.warning(
                    f'Event stream from {self._address} ended because of '
                    f'{e}. Reconnecting to relay',
                )
                if self._response is not None:
                    self._response.close()
                    self._response = None
            else:
                return decode_signaling_event(data, event=name)

    async def send(
        self,
        peer_id: str,
        event: SignalingEventType | str,
        payload: Payload,
    ) -> None:
        """Relay a message to a peer.

        Raises:
            SignalingSendError: If the request fails or the relay responds
                with an error status.
        """
        name = event_name(event)
        url = f'{self._address}/relay/{peer_id}/{name}'
        logger.debug(f'Relay message: {name} to {peer_id}')
        try:
            async with self.session.post(
                url,
                json=encode_payload(payload),
                headers={'peerId': self._client_id},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise SignalingSendError(
                        f'Relay returned HTTP error code {response.status} '
                        f'for {name} to {peer_id}. {text}',
                    )
        except (
            SignalingNotConnectedError,
            aiohttp.ClientError,
            asyncio.TimeoutError,
        ) as e:
            raise SignalingSendError(
                f'Failed to relay {name} to {peer_id}: {e!r}',
            ) from e
