"""
pytest configuration and fixtures.
"""

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from sans_server.engine.events import Diagnostics
from sans_server.engine.request import Request
from sans_server.engine.server import SansServer
from sans_server.shared.config import ServerSettings
from sans_server.shared.models import ResponseState


@pytest.fixture
def settings() -> ServerSettings:
    """Silent settings with a short timeout."""
    return ServerSettings(logs="silent", timeout=2)


@pytest.fixture
def diagnostics() -> Diagnostics:
    return Diagnostics()


@pytest.fixture
def server(settings: ServerSettings, diagnostics: Diagnostics) -> SansServer:
    return SansServer(settings, diagnostics=diagnostics)


@pytest.fixture
def process(server: SansServer) -> Callable[..., ResponseState]:
    """Run one request through the server fixture and return its settlement."""

    def run(request_input: Any = None) -> ResponseState:
        async def go() -> ResponseState:
            return await server.request(request_input).outcome

        return asyncio.run(go())

    return run


@pytest.fixture
def make_request() -> Callable[..., Request]:
    """Build a standalone Request inside a running loop."""

    def build(request_input: Any = None) -> Request:
        async def go() -> Request:
            return Request(request_input)

        return asyncio.run(go())

    return build
