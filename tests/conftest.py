"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio

from rac.device_store import JsonDeviceStore
from rac.gateway import AuthGateway
from rac.pairing import PendingRequestWorkflow


class FakeClock:
    """Settable wall clock returning Unix seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from rac.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "devices.json"


@pytest.fixture
def store(store_path, clock):
    """Loaded device store backed by a temp file and a fake clock."""
    s = JsonDeviceStore(store_path, clock=clock)
    s.load()
    return s


@pytest.fixture
def workflow(store):
    return PendingRequestWorkflow(store, ttl=300)


@pytest.fixture
def gateway(store, workflow):
    return AuthGateway(store, workflow)
