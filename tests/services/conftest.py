"""Service test fixtures — fake remote store and wired components.

Invariants:
    - Every test gets a fresh FakeRemoteStore (no HTTP)
    - Components created inside the running test loop; timers closed on teardown
    - working memory tasks drained on teardown so no task outlives its loop

Design Decisions:
    - Real collaborators wired together where the behaviour under test crosses
      components; AsyncMock stand-ins where only the call itself matters
"""

import pytest

from marble_sync.services.autosave import AutosaveManager
from marble_sync.services.structure_service import ProjectStructureService
from marble_sync.services.working_memory import WorkingMemoryStore

from tests.fake_remote_store import FakeRemoteStore


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
async def store(remote):
    wm = WorkingMemoryStore(remote)
    yield wm
    wm.hydrator.cancel()
    await wm.drain()


@pytest.fixture
async def structure_service(remote):
    return ProjectStructureService(remote)


@pytest.fixture
async def autosave(remote):
    """AutosaveManager with no collaborators and a long debounce (tests flush explicitly)."""
    manager = AutosaveManager(remote, "proj-1", delay_ms=60_000)
    yield manager
    await manager.close()

