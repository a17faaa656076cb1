"""Transport engine interface and the aiortc implementation."""
from __future__ import annotations

from peermesh.engine.protocols import DataChannel
from peermesh.engine.protocols import Engine
from peermesh.engine.protocols import EngineConnection
from peermesh.engine.protocols import TERMINAL_STATES
