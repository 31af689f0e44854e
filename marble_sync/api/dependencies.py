"""Route dependencies — resolve the SyncCore wired by the lifespan."""

from fastapi import Request

from marble_sync.core.errors import SyncNotConfiguredError
from marble_sync.services.composition import SyncCore


def get_sync_core(request: Request) -> SyncCore:
    core = getattr(request.app.state, "sync_core", None)
    if core is None:
        raise SyncNotConfiguredError()
    return core
