"""Utilities related to the current execution environment."""
from __future__ import annotations

import socket
import uuid


def hostname() -> str:
    """Return current hostname."""
    return socket.gethostname()


def generate_client_id() -> str:
    """Return a new client id of the form `#!python '{hostname}-{suffix}'`.

    The suffix is random so multiple clients on one host are distinct.
    """
    return f'{hostname()}-{uuid.uuid4().hex[:8]}'
