"""Fan-out of application payloads to open peer channels."""
from __future__ import annotations

import logging

from peermesh.registry import PeerRegistry

logger = logging.getLogger(__name__)


class BroadcastRouter:
    """Send payloads to every open channel in a registry.

    Args:
        registry: Registry whose channels are broadcast to.
    """

    def __init__(self, registry: PeerRegistry) -> None:
        self._registry = registry

    def broadcast(self, payload: bytes | str) -> int:
        """Send a payload to every open channel.

        Channels that are not open are skipped. A failure sending to one
        channel is logged and does not affect the others.

        Returns:
            Number of channels the payload was sent to.
        """
        sent = 0
        for peer_id, channel in self._registry.channels().items():
            if channel.ready_state != 'open':
                continue
            try:
                channel.send(payload)
            except Exception as e:
                logger.warning(f'Failed to send to peer {peer_id}: {e!r}')
            else:
                sent += 1
        logger.debug(f'Broadcast payload to {sent} peer(s)')
        return sent
