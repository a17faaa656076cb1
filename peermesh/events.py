"""Signaling event types exchanged with the relay.

Every inbound relay message decodes into exactly one of the
[`SignalingEvent`][peermesh.events.SignalingEvent] variants. Payloads
relayed back out are encoded with
[`encode_payload()`][peermesh.events.encode_payload].
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import Literal
from typing import Union


class SignalingEventType(enum.Enum):
    """Event names used on the wire."""

    add_peer = 'add-peer'
    """Relay announces a new peer and our politeness towards it."""
    remove_peer = 'remove-peer'
    """Relay announces a peer has left."""
    session_description = 'session-description'
    """Offer or answer from a peer."""
    ice_candidate = 'ice-candidate'
    """Connectivity candidate from a peer."""


@dataclasses.dataclass(frozen=True)
class SessionDescription:
    """Session description (SDP) offer or answer.

    Attributes:
        type: One of `#!python 'offer'` or `#!python 'answer'`.
        sdp: Session description body.
    """

    type: Literal['offer', 'answer']
    sdp: str

    def __post_init__(self) -> None:
        if self.type not in ('offer', 'answer'):
            raise ValueError(
                f"Description type must be 'offer' or 'answer'. "
                f'Got {self.type!r}.',
            )

    def to_json(self) -> dict[str, str]:
        """Convert to the JSON object used on the wire."""
        return {'type': self.type, 'sdp': self.sdp}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> SessionDescription:
        """Parse the JSON object used on the wire.

        Raises:
            SignalingEventDecodeError: If the object is not a valid
                description.
        """
        try:
            return cls(type=data['type'], sdp=data['sdp'])
        except (KeyError, TypeError, ValueError) as e:
            raise SignalingEventDecodeError(
                f'Invalid session description: {e}',
            ) from e


@dataclasses.dataclass(frozen=True)
class IceCandidate:
    """ICE candidate in the browser `RTCIceCandidateInit` shape.

    Attributes:
        candidate: Candidate attribute line (e.g., `candidate:1 1 udp ...`).
        sdp_mid: Media stream identification tag.
        sdp_mline_index: Index of the media description.
    """

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    def to_json(self) -> dict[str, Any]:
        """Convert to the JSON object used on the wire."""
        return {
            'candidate': self.candidate,
            'sdpMid': self.sdp_mid,
            'sdpMLineIndex': self.sdp_mline_index,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> IceCandidate | None:
        """Parse the JSON object used on the wire.

        An empty candidate string is the browser's end-of-candidates marker
        so it is decoded as `None` along with `null`.

        Raises:
            SignalingEventDecodeError: If the object is not a valid
                candidate.
        """
        if data is None:
            return None
        try:
            candidate = data['candidate']
        except (KeyError, TypeError) as e:
            raise SignalingEventDecodeError(
                f'Invalid ICE candidate: {e}',
            ) from e
        if not candidate:
            return None
        return cls(
            candidate=candidate,
            sdp_mid=data.get('sdpMid'),
            sdp_mline_index=data.get('sdpMLineIndex'),
        )


@dataclasses.dataclass(frozen=True)
class SignalingEvent:
    """Base signaling event.

    Attributes:
        peer_id: Identity of the remote peer the event refers to.
    """

    peer_id: str


@dataclasses.dataclass(frozen=True)
class AddPeer(SignalingEvent):
    """New peer announced by the relay.

    Attributes:
        polite: If the local side is the polite side for this peer.
    """

    polite: bool


@dataclasses.dataclass(frozen=True)
class RemovePeer(SignalingEvent):
    """Peer left the relay."""

    pass


@dataclasses.dataclass(frozen=True)
class SessionDescriptionEvent(SignalingEvent):
    """Offer or answer relayed from a peer."""

    description: SessionDescription


@dataclasses.dataclass(frozen=True)
class IceCandidateEvent(SignalingEvent):
    """Candidate relayed from a peer. `None` marks end-of-candidates."""

    candidate: IceCandidate | None


Payload = Union[SessionDescription, IceCandidate, None]


class SignalingEventError(Exception):
    """Base exception type for signaling events."""

    pass


class SignalingEventDecodeError(SignalingEventError):
    """Exception raised when a message cannot be decoded."""

    pass


class UnknownSignalingEventError(SignalingEventDecodeError):
    """Exception raised when a message has an unrecognized event name."""

    pass


class SignalingEventEncodeError(SignalingEventError):
    """Exception raised when a payload cannot be encoded."""

    pass


def _peer_id(value: Any) -> str:
    # remove-peer nests the identity in an object while every other event
    # uses the bare id so both forms are normalized to the bare id.
    if isinstance(value, dict):
        value = value.get('id')
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value)
    raise SignalingEventDecodeError(
        f'Message does not contain a valid peer id: {value!r}.',
    )


def decode_signaling_event(
    message: str | bytes | dict[str, Any],
    event: str | None = None,
) -> SignalingEvent:
    """Decode a relay message into the correct signaling event type.

    Args:
        message: JSON string or already parsed JSON object.
        event: Event name if the carrier transmits it out-of-band (e.g., as
            the server-sent event name). Otherwise, the name is read from the
            `event` key of the message.

    Returns:
        Parsed event.

    Raises:
        SignalingEventDecodeError: If the message cannot be decoded.
        UnknownSignalingEventError: If the event name is not recognized.
    """
    if isinstance(message, (str, bytes)):
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            raise SignalingEventDecodeError(
                'Failed to load string as JSON.',
            ) from e
    else:
        data = message

    if not isinstance(data, dict):
        raise SignalingEventDecodeError(
            f'Expected JSON object but got {type(data).__name__}.',
        )

    name = data.get('event') if event is None else event
    try:
        event_type = SignalingEventType(name)
    except ValueError as e:
        raise UnknownSignalingEventError(
            f'Unrecognized message event: {name!r}.',
        ) from e

    if 'peer' not in data:
        raise SignalingEventDecodeError(
            f'Message for {name} does not contain a peer key.',
        )
    peer_id = _peer_id(data['peer'])

    if event_type is SignalingEventType.add_peer:
        polite = data.get('polite')
        if not isinstance(polite, bool):
            raise SignalingEventDecodeError(
                f'Message for {name} does not contain a boolean polite key.',
            )
        return AddPeer(peer_id=peer_id, polite=polite)
    elif event_type is SignalingEventType.remove_peer:
        return RemovePeer(peer_id=peer_id)
    elif event_type is SignalingEventType.session_description:
        return SessionDescriptionEvent(
            peer_id=peer_id,
            description=SessionDescription.from_json(data.get('data')),
        )
    elif event_type is SignalingEventType.ice_candidate:
        return IceCandidateEvent(
            peer_id=peer_id,
            candidate=IceCandidate.from_json(data.get('data')),
        )
    else:
        raise AssertionError('Unreachable.')


def encode_payload(payload: Payload) -> dict[str, Any] | None:
    """Convert an outbound payload to its JSON object.

    Raises:
        SignalingEventEncodeError: If the payload type is not supported.
    """
    if payload is None:
        return None
    elif isinstance(payload, (SessionDescription, IceCandidate)):
        return payload.to_json()
    raise SignalingEventEncodeError(
        f'Cannot encode payload of type {type(payload).__name__}.',
    )


def event_name(event: SignalingEventType | str) -> str:
    """Return the wire name for an event."""
    if isinstance(event, SignalingEventType):
        return event.value
    return SignalingEventType(event).value
