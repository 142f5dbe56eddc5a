"""
Pytest configuration and fixtures for RetroChat tests.

Provides common fixtures, a fast test configuration and an in-memory
transport hub that stands in for a real backend in session and
transport manager tests.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Set

import pytest

from retrochat.config import Config
from retrochat.errors import ErrorCode, TransportConnectError, TransportRuntimeError
from retrochat.transports.base import SessionRole, TransportAdapter


class MemoryHub:
    """Rooms shared by every MemoryAdapter created from one hub."""

    def __init__(self):
        self.rooms: Dict[str, List["MemoryAdapter"]] = {}
        self.created: List["MemoryAdapter"] = []
        self.unreachable: Set[str] = set()  # connect() raises
        self.hanging: Set[str] = set()  # connect() never returns
        self.sent: List[bytes] = []

    def factory(self, endpoint: str, local_id: str) -> "MemoryAdapter":
        adapter = MemoryAdapter(self, endpoint, local_id)
        self.created.append(adapter)
        return adapter

    def members(self, room_id: str) -> List["MemoryAdapter"]:
        return list(self.rooms.get(room_id, []))


class MemoryAdapter(TransportAdapter):
    """Transport adapter delivering frames through a MemoryHub."""

    name = "memory"

    def __init__(self, hub: MemoryHub, endpoint: str, local_id: str):
        super().__init__(endpoint, local_id)
        self.hub = hub
        self.left = False

    async def connect(self, room_id: str, role: SessionRole) -> None:
        if self.endpoint in self.hub.unreachable:
            raise TransportConnectError(
                ErrorCode.E301_ENDPOINT_UNREACHABLE, f"{self.endpoint} unreachable"
            )
        if self.endpoint in self.hub.hanging:
            await asyncio.Event().wait()

        self._reset_state(room_id, role)
        others = self.hub.members(room_id)
        self.hub.rooms.setdefault(room_id, []).append(self)
        for other in others:
            other._emit_peer_join(self.local_id)
            self._emit_peer_join(other.local_id)

    async def send(self, frame: bytes) -> None:
        if self._closed:
            raise TransportRuntimeError(ErrorCode.E403_NOT_CONNECTED, "not connected")
        self.hub.sent.append(frame)
        loop = asyncio.get_running_loop()
        for other in self.hub.members(self.room_id):
            if other is not self:
                loop.call_soon(other._emit_message, frame, self.local_id)

    def _detach(self) -> None:
        members = self.hub.rooms.get(self.room_id, [])
        if self in members:
            members.remove(self)
            for other in members:
                other._emit_peer_leave(self.local_id)

    async def leave(self) -> None:
        self._closed = True
        self.left = True
        self._detach()
        self._peers.clear()

    def drop(self) -> None:
        """Simulate an unexpected loss of the backend link."""
        self._detach()
        self._peers.clear()
        self._emit_close()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="retrochat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def config(temp_dir: Path) -> Config:
    """Default configuration with timings shortened for tests."""
    cfg = Config(temp_dir / "config.toml")
    cfg.set("transport", "connect_timeout", 0.5)
    cfg.set("transport", "reconnect_delay", 0.05)
    cfg.set("transport", "backoff_base", 0.05)
    cfg.set("transport", "backoff_max", 0.2)
    cfg.set("session", "typing_timeout", 0.2)
    cfg.set("relay", "brokers", ["mem://one", "mem://two", "mem://three"])
    return cfg


@pytest.fixture
def hub() -> MemoryHub:
    return MemoryHub()


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or a timeout expires."""

    async def wait(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return wait


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """
    Add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
