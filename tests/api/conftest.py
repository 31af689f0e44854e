"""Bridge test fixtures — SyncCore over a fake remote store + ASGI test client.

Invariants:
    - app.state.sync_core set before the client is created (lifespan not run)
    - The core is closed and detached after every test

Design Decisions:
    - ASGITransport drives the real app object, so routing, validation and the
      error handlers are exercised exactly as deployed
"""

import pytest
from httpx import ASGITransport, AsyncClient

from marble_sync.config import get_settings
from marble_sync.main import app
from marble_sync.services.composition import build_sync_core

from tests.fake_remote_store import FakeRemoteStore


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
async def core(remote):
    sync_core = build_sync_core(get_settings(), remote=remote)
    app.state.sync_core = sync_core
    yield sync_core
    await sync_core.aclose()
    app.state.sync_core = None


@pytest.fixture
async def client(core):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c


@pytest.fixture
async def bare_client():
    """Client against an app with no sync core wired."""
    app.state.sync_core = None
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c
