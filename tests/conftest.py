"""
Shared fixtures for the LongPort MCP Server tests
=================================================
FakeBackend stands in for the LongPort SDK: it records every call and can
be scripted to fail connects, calls and subscriptions.
"""

import asyncio
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from longport_mcp.config import CredentialContext
from longport_mcp.errors import BackendRejectedError, TransientBackendError
from longport_mcp.models import Operation, PushEvent
from longport_mcp.server import Gateway


class FakeBackend:
    """In-memory backend with scripted failures."""

    def __init__(self):
        self.connected = False
        self.connect_calls = 0
        self.close_calls = 0
        self.connect_failures = 0
        self.connect_error: Exception = TransientBackendError("connection refused")

        self.calls: List[tuple] = []
        self.completed: List[Operation] = []
        self.responses: Dict[Operation, Any] = {}
        self.call_failures: Dict[Operation, List[Exception]] = {}
        self.call_delay = 0.0

        self.subscribed = set()
        self.subscribe_calls: List[str] = []
        self.unsubscribe_calls: List[str] = []
        self.refused = set()
        self.subscribe_failures: Dict[str, List[Exception]] = {}
        self.unsubscribe_gate: Optional[asyncio.Event] = None

        self._push = None
        self._disconnect = None

    def set_push_handler(self, handler):
        self._push = handler

    def set_disconnect_handler(self, handler):
        self._disconnect = handler

    async def connect(self, credentials):
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.connect_failures:
            self.connect_failures -= 1
            raise self.connect_error
        self.connected = True

    async def call(self, operation, params):
        self.calls.append((operation, dict(params)))
        await asyncio.sleep(self.call_delay)
        failures = self.call_failures.get(operation)
        if failures:
            raise failures.pop(0)
        self.completed.append(operation)
        return self.responses.get(operation, {})

    async def subscribe(self, channel):
        self.subscribe_calls.append(channel)
        await asyncio.sleep(0)
        failures = self.subscribe_failures.get(channel)
        if failures:
            raise failures.pop(0)
        if channel in self.refused:
            raise BackendRejectedError("subscription refused", code=301604)
        self.subscribed.add(channel)
        return channel

    async def unsubscribe(self, handle):
        self.unsubscribe_calls.append(handle)
        if self.unsubscribe_gate is not None:
            await self.unsubscribe_gate.wait()
        await asyncio.sleep(0)
        self.subscribed.discard(handle)

    async def close(self):
        self.close_calls += 1
        self.connected = False
        self.subscribed.clear()

    # Test helpers

    def push(self, channel: str, payload: Dict[str, Any]) -> None:
        self._push(PushEvent(channel=channel, payload=payload))

    def drop_connection(self) -> None:
        self.connected = False
        self.subscribed.clear()
        self._disconnect(TransientBackendError("connection reset by peer"))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def credentials():
    return CredentialContext(app_key="test-key", app_secret="test-secret", access_token="test-token")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def gateway(credentials, backend):
    """Gateway over the fake backend with instant backoff."""
    return Gateway(credentials, backend, queue_size=10, initial_delay=0)
