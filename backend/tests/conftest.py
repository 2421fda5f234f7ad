"""Shared test fixtures for PyRunner backend tests."""
import asyncio
import sys
import time
from pathlib import Path

import pytest

# Ensure pyrunner package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pyrunner.config import Settings
from pyrunner.engine.controller import ExecutionController
from pyrunner.engine.registry import SessionRegistry
from pyrunner.engine.session import Session


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing the workspace root at a temp dir."""
    return Settings(
        workspace_root=tmp_path / "workspaces",
        python_path=sys.executable,
        execution_timeout_ms=30000,
        kill_grace_seconds=5.0,
    )


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def controller(registry, test_settings):
    return ExecutionController(registry, test_settings)


@pytest.fixture
def make_controller(test_settings):
    """Build a controller with some settings overridden."""
    def factory(**overrides):
        return ExecutionController(SessionRegistry(), test_settings.model_copy(update=overrides))
    return factory


@pytest.fixture
def session(test_settings):
    return Session(test_settings.workspace_root)


class EventLog(list):
    """Collected outbound events; ``emit`` is the async emit callback."""

    async def emit(self, event):
        self.append(event)


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def wait_for():
    """Poll an event list until an event of the given type shows up."""
    async def _wait(events: list, event_type: str, timeout: float = 10.0, count: int = 1):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            matching = [e for e in events if e["type"] == event_type]
            if len(matching) >= count:
                return matching[count - 1]
            await asyncio.sleep(0.01)
        raise AssertionError(f"no {event_type!r} event within {timeout}s, got {events}")
    return _wait
