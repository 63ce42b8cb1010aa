from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before finsight.persistence.db is imported.
_DB_DIR = tempfile.mkdtemp(prefix="finsight-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/finsight.db")
os.environ.setdefault("NOTIFY_WEBHOOK_URL", "noop://notifications")

import pytest
from httpx import ASGITransport, AsyncClient

from finsight.apps.api.main import create_app
from finsight.core.config import get_capabilities, get_settings
from finsight.domain.models import Base
from finsight.persistence.db import engine
from finsight.services import notifications as notifications_module
from finsight.services.audit import reset_audit_sink
from finsight.services.clients import reset_client_admin_service
from finsight.services.notifications import NotificationDispatcher, reset_notification_dispatcher
from finsight.services.quota import reset_quota_service
from finsight.services.retention.deletion import reset_deletion_orchestrator
from finsight.services.retention.sweep import reset_retention_sweeper
from finsight.tests.utils.notifications import CapturingTransport


def _reset_singletons() -> None:
    get_settings.cache_clear()
    get_capabilities.cache_clear()
    reset_quota_service()
    reset_audit_sink()
    reset_notification_dispatcher()
    reset_deletion_orchestrator()
    reset_retention_sweeper()
    reset_client_admin_service()


@pytest.fixture(autouse=True)
def reset_cached_services() -> None:
    # Settings and service singletons are rebuilt per test so env overrides take effect.
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture(autouse=True)
async def database() -> None:
    # Schema is created on demand and every table is emptied after each test.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture
def notifications(monkeypatch) -> CapturingTransport:
    # Route every notice through an in-memory transport instead of the webhook.
    transport = CapturingTransport()
    dispatcher = NotificationDispatcher(transport=transport)
    transport.dispatcher = dispatcher
    monkeypatch.setattr(notifications_module, "_dispatcher", dispatcher)
    return transport


@pytest.fixture
async def api_client(notifications: CapturingTransport) -> AsyncClient:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
