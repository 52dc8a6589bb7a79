"""Pytest fixtures for API unit tests.

The routes run against a real DroneBridge whose UDP socket and ffmpeg
processes are replaced by the in-memory mocks, so every request goes
through the same code paths as in production.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Coroutine, Dict, Optional, TypeVar

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from drone_relay.core.api.controller import APIController
from drone_relay.core.api.server import create_app
from drone_relay.core.bridge import DroneBridge
from drone_relay.core.bridge_config import BridgeConfig
from tests.infrastructure.mocks.drone_mocks import (
    MockDatagramTransport,
    MockSpawner,
    attach_transport,
)


T = TypeVar("T")

DRONE_REPLIES = {"command": "ok", "streamon": "ok", "streamoff": "ok", "takeoff": "ok", "battery?": "87"}


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class BridgeHarness:
    """A DroneBridge wired to mocks, plus the pieces tests poke at."""

    def __init__(self, data_dir: Path, replies: Optional[Dict[str, str]] = None, **config):
        config.setdefault("restart_delay", 0.01)
        config.setdefault("safety_timeout", 0.05)
        config.setdefault("terminate_timeout", 0.1)
        config.setdefault("cors_origins", ("https://live.d1o1.fun",))
        self.config = BridgeConfig(data_dir=data_dir, **config)
        self.spawner = MockSpawner()
        self.bridge = DroneBridge(self.config, spawn=self.spawner)
        self.bridge.media.ensure()
        self.transport: MockDatagramTransport = attach_transport(
            self.bridge.link, DRONE_REPLIES if replies is None else replies
        )
        self.controller = APIController(self.bridge)

    def create_app(self) -> web.Application:
        return create_app(self.controller, self.config.cors_origins, self.config.sse_heartbeat)

    def client(self) -> TestClient:
        return TestClient(TestServer(self.create_app()))


def create_harness(data_dir: Path, replies: Optional[Dict[str, str]] = None, **config) -> BridgeHarness:
    """Build a harness; call from inside the running test loop."""
    return BridgeHarness(data_dir, replies, **config)


@pytest.fixture
def make_harness(data_dir: Path):
    """Factory fixture.

    Usage:
        def test_endpoint(make_harness):
            async def do_test():
                harness = make_harness()
                async with harness.client() as client:
                    resp = await client.get("/status")
                    assert resp.status == 200
            run_async(do_test())
    """
    def _make(replies: Optional[Dict[str, str]] = None, **config) -> BridgeHarness:
        return create_harness(data_dir, replies, **config)

    return _make
