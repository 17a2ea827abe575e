from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before booking.db is imported.
if "DATABASE_URL" not in os.environ:
    _db_path = os.path.join(tempfile.gettempdir(), "booking_tests.db")
    if os.path.exists(_db_path):
        os.remove(_db_path)
    os.environ["DATABASE_URL"] = "sqlite:///" + _db_path

import pytest  # noqa: E402

from booking import config  # noqa: E402
from booking.metrics import metrics  # noqa: E402
from booking.repositories import (  # noqa: E402
    engagements_repo,
    providers_repo,
    service_tasks_repo,
    time_blocks_repo,
    users_repo,
)
from booking.services.identity import identity_verifier  # noqa: E402
from booking.services.push import push_service  # noqa: E402


def _reset_metrics() -> None:
    fresh = type(metrics)()
    for name in fresh.__dataclass_fields__:
        setattr(metrics, name, getattr(fresh, name))


def _reset_state() -> None:
    for repo in (
        users_repo,
        providers_repo,
        service_tasks_repo,
        engagements_repo,
        time_blocks_repo,
    ):
        clear = getattr(repo, "clear", None)
        if clear is not None:
            clear()
    push_service.clear()
    identity_verifier.clear()
    _reset_metrics()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_global_state():
    _reset_state()
    yield
    _reset_state()
    config.get_settings.cache_clear()
