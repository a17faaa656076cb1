"""Exception types raised by peer negotiation and the peer registry."""
from __future__ import annotations


class PeerMeshError(Exception):
    """Base exception type for peer mesh errors."""

    pass


class UnknownPeerError(PeerMeshError):
    """Event or lookup references a peer that is not registered."""

    pass


class DuplicatePeerError(PeerMeshError):
    """A live session already exists for the peer."""

    pass


class NegotiationError(PeerMeshError):
    """Negotiation attempt with a peer failed."""

    pass
