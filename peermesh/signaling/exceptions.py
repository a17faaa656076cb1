"""Exception types raised by signaling channels."""
from __future__ import annotations


class SignalingError(Exception):
    """Base exception type for signaling channel errors."""

    pass


class SignalingNotConnectedError(SignalingError):
    """Exception raised if the channel is not connected to the relay."""

    pass


class SignalingClosedError(SignalingError):
    """Exception raised when receiving from a closed channel."""

    pass


class SignalingSendError(SignalingError):
    """Exception raised when a message could not be delivered to the relay."""

    pass
