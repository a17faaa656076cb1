"""Transport engine backed by [aiortc](https://aiortc.readthedocs.io/)."""
from __future__ import annotations

import asyncio
import logging
import warnings
from typing import Any
from typing import Sequence

try:
    from aiortc import RTCConfiguration
    from aiortc import RTCDataChannel
    from aiortc import RTCIceServer
    from aiortc import RTCPeerConnection
    from aiortc import RTCSessionDescription
    from aiortc.sdp import candidate_from_sdp
    from cryptography.utils import CryptographyDeprecationWarning
    from pyee.asyncio import AsyncIOEventEmitter

    warnings.simplefilter('ignore', CryptographyDeprecationWarning)
except ImportError as e:  # pragma: no cover
    warnings.warn(
        f'{e}. The aiortc engine requires aiortc to be installed.',
        stacklevel=2,
    )

from peermesh.events import IceCandidate
from peermesh.events import SessionDescription
from peermesh.exceptions import NegotiationError

logger = logging.getLogger(__name__)

# Private state of RTCPeerConnection changed when rolling back an offer.
_ROLLBACK_ATTRIBUTES = (
    '_RTCPeerConnection__pendingLocalDescription',
    '_RTCPeerConnection__iceTransports',
    '_RTCPeerConnection__setSignalingState',
)


class AiortcDataChannel:
    """Data channel adapter around an `RTCDataChannel`.

    Args:
        channel: aiortc data channel to wrap.
    """

    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel

    @property
    def label(self) -> str:
        """Channel label."""
        return self._channel.label

    @property
    def ready_state(self) -> str:
        """One of `connecting`, `open`, `closing`, or `closed`."""
        return self._channel.readyState

    def on(self, event: str, handler: Any) -> Any:
        """Register an `open`, `message`, or `close` handler."""
        return self._channel.on(event, handler)

    def send(self, data: bytes | str) -> None:
        """Send a message on the channel."""
        self._channel.send(data)

    def close(self) -> None:
        """Close the channel."""
        self._channel.close()


class AiortcConnection(AsyncIOEventEmitter):
    """Engine connection adapter around an `RTCPeerConnection`.

    aiortc differs from a browser peer connection in three ways that this
    adapter hides:

    * Candidates are gathered before `setLocalDescription()` returns and are
      embedded in the description, so only the end-of-gathering `None`
      candidate is emitted.
    * There is no `negotiationneeded` event. It is emitted here when the
      first data channel is created on a connection that has not been
      negotiated yet.
    * There is no rollback. A pending local offer is discarded before a
      remote offer is applied.

    Args:
        pc: aiortc peer connection to wrap.
    """

    def __init__(self, pc: RTCPeerConnection) -> None:
        super().__init__()
        self._pc = pc
        self._negotiation_needed = False

        pc.on('icegatheringstatechange', self._on_ice_gathering_state_change)
        pc.on(
            'iceconnectionstatechange',
            self._on_ice_connection_state_change,
        )
        pc.on('datachannel', self._on_datachannel)

    @property
    def signaling_state(self) -> str:
        """Signaling state of the peer connection."""
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        """ICE connection state of the peer connection."""
        return self._pc.iceConnectionState

    @property
    def local_description(self) -> SessionDescription | None:
        """Current local description."""
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    def _on_ice_gathering_state_change(self) -> None:
        if self._pc.iceGatheringState == 'complete':
            self.emit('icecandidate', None)

    def _on_ice_connection_state_change(self) -> None:
        self.emit('connectionstatechange', self._pc.iceConnectionState)

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        self.emit('datachannel', AiortcDataChannel(channel))

    def _fire_negotiation_needed(self) -> None:
        self._negotiation_needed = False
        if self._pc.signalingState != 'closed':
            self.emit('negotiationneeded')

    def _rollback_local_offer(self) -> None:
        # Restores the state setLocalDescription(offer) changed. The ICE
        # role is reset so the remote offer decides it again.
        logger.debug('Rolling back pending local offer')
        pc = self._pc
        missing = [
            name for name in _ROLLBACK_ATTRIBUTES if not hasattr(pc, name)
        ]
        if not missing:
            missing = [
                f'RTCIceTransport.{name}'
                for transport in pc._RTCPeerConnection__iceTransports
                for name in ('_role_set', '_connection')
                if not hasattr(transport, name)
            ]
        if missing:
            raise NegotiationError(
                'Cannot roll back the pending local offer because the '
                'installed aiortc version does not have '
                f'{", ".join(missing)}. Install a supported aiortc version.',
            )

        pc._RTCPeerConnection__pendingLocalDescription = None
        for transport in pc._RTCPeerConnection__iceTransports:
            transport._role_set = False
            transport._connection.ice_controlling = False
        pc._RTCPeerConnection__setSignalingState('stable')

    async def set_local_description(self) -> None:
        """Create and apply an offer or answer as the state requires."""
        await self._pc.setLocalDescription()

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply a remote description, discarding any pending local offer."""
        if (
            description.type == 'offer'
            and self._pc.signalingState == 'have-local-offer'
        ):
            self._rollback_local_offer()
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )

    async def add_ice_candidate(self, candidate: IceCandidate | None) -> None:
        """Apply a remote candidate."""
        if candidate is None:
            await self._pc.addIceCandidate(None)
            return

        sdp = candidate.candidate
        if sdp.startswith('candidate:'):
            sdp = sdp.split(':', 1)[1]
        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(rtc_candidate)

    def create_data_channel(self, label: str) -> AiortcDataChannel:
        """Create a data channel and request negotiation if needed."""
        channel = self._pc.createDataChannel(label)
        if (
            self._pc.localDescription is None
            and self._pc.remoteDescription is None
            and not self._negotiation_needed
        ):
            self._negotiation_needed = True
            asyncio.get_running_loop().call_soon(
                self._fire_negotiation_needed,
            )
        return AiortcDataChannel(channel)

    async def close(self) -> None:
        """Close the peer connection."""
        await self._pc.close()


class AiortcEngine:
    """Engine creating aiortc peer connections."""

    def create_connection(
        self,
        ice_servers: Sequence[dict[str, Any]],
    ) -> AiortcConnection:
        """Create a new peer connection.

        Args:
            ice_servers: ICE server configurations each with a `urls` key
                and optional `username` and `credential` keys.
        """
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(**server) for server in ice_servers],
        )
        return AiortcConnection(RTCPeerConnection(configuration=configuration))
