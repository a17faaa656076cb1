"""Signaling channel implementations.

Two interchangeable carriers implement the
[`SignalingChannel`][peermesh.signaling.protocols.SignalingChannel]
protocol:

* [`WebSocketSignalingChannel`][peermesh.signaling.websocket.WebSocketSignalingChannel]
  keeps a persistent WebSocket connection to the relay.
* [`EventSourceSignalingChannel`][peermesh.signaling.eventsource.EventSourceSignalingChannel]
  receives a server-sent event stream and relays messages with HTTP
  requests.
"""
from __future__ import annotations

from peermesh.signaling.eventsource import EventSourceSignalingChannel
from peermesh.signaling.protocols import SignalingChannel
from peermesh.signaling.websocket import WebSocketSignalingChannel
