"""Registry of live peer sessions."""
from __future__ import annotations

import logging

from peermesh.exceptions import DuplicatePeerError
from peermesh.exceptions import UnknownPeerError
from peermesh.session import PeerChannel
from peermesh.session import PeerSession

logger = logging.getLogger(__name__)


class PeerRegistry:
    """Owner of all peer sessions keyed by peer id.

    At most one live session exists per peer id. Removing a session closes
    its channel and connection.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, PeerSession] = {}

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: PeerSession) -> None:
        """Register a new session.

        Raises:
            DuplicatePeerError: If a session for the peer already exists.
        """
        if session.peer_id in self._sessions:
            raise DuplicatePeerError(
                f'A session for peer {session.peer_id} already exists.',
            )
        self._sessions[session.peer_id] = session
        logger.debug(f'Registered session for peer {session.peer_id}')

    def get(self, peer_id: str) -> PeerSession:
        """Get the session for a peer.

        Raises:
            UnknownPeerError: If the peer is not registered.
        """
        try:
            return self._sessions[peer_id]
        except KeyError:
            raise UnknownPeerError(
                f'Peer {peer_id} is not registered.',
            ) from None

    def is_current(self, session: PeerSession) -> bool:
        """Check if the session is the live session for its peer."""
        return self._sessions.get(session.peer_id) is session

    async def remove(
        self,
        peer_id: str,
        session: PeerSession | None = None,
    ) -> bool:
        """Remove and close a peer session.

        Removing a peer that is not registered is a no-op.

        Args:
            peer_id: Peer to remove.
            session: Only remove if this exact session is the registered
                one. Prevents a stale session from removing a newer session
                for the same peer id.

        Returns:
            If a session was removed.
        """
        current = self._sessions.get(peer_id)
        if current is None or (session is not None and current is not session):
            return False

        del self._sessions[peer_id]
        logger.debug(f'Removed session for peer {peer_id}')
        try:
            await current.close()
        except Exception as e:
            logger.warning(f'Error closing session for peer {peer_id}: {e!r}')
        return True

    def surface_channel(
        self,
        session: PeerSession,
        channel: PeerChannel,
    ) -> bool:
        """Attach a ready channel to a live session.

        Returns:
            If the channel was attached. `False` if the session was removed
            in the meantime.
        """
        if not self.is_current(session):
            return False
        session.channel = channel
        return True

    def channels(self) -> dict[str, PeerChannel]:
        """Get the ready channels keyed by peer id."""
        return {
            peer_id: session.channel
            for peer_id, session in self._sessions.items()
            if session.channel is not None
        }

    def peer_ids(self) -> list[str]:
        """Get the ids of all registered peers."""
        return list(self._sessions)

    async def clear(self) -> None:
        """Remove and close every session."""
        for peer_id in self.peer_ids():
            await self.remove(peer_id)
