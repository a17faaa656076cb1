from __future__ import annotations

import asyncio

import pytest
import uvloop

# Import fixtures from testing/ so they are known by pytest
# and can be used with
from testing.eventsource_server import eventsource_server
from testing.relay_server import relay_server


def pytest_addoption(parser):
    """Add custom command line options for tests."""
    parser.addoption(
        '--use-uvloop',
        action='store_true',
        default=False,
        help='Run asyncio tests on the uvloop event loop',
    )


@pytest.fixture(scope='session')
def event_loop_policy(request) -> asyncio.AbstractEventLoopPolicy:
    """Get the session-wide event loop policy.

    Peer connections, relays and unix sockets should behave the same on
    both loops so the loop is selected with `--use-uvloop`.
    """
    if request.config.getoption('--use-uvloop'):  # pragma: no cover
        return uvloop.EventLoopPolicy()
    return asyncio.DefaultEventLoopPolicy()
