from __future__ import annotations

from datetime import datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from pushsched.core.clock import to_canonical
from pushsched.core.config import get_settings
from pushsched.domain.models import Notification, NotificationStatus
from pushsched.persistence.db import build_session_factory, create_schema
from pushsched.persistence.repos.notifications import create_notification, get_notification
from pushsched.services.telemetry import reset_counters
from pushsched.tests.utils.delivery import RecordingChannel


@pytest.fixture(autouse=True)
def reset_process_state(monkeypatch) -> None:
    # Keep env-driven settings and process counters isolated per test.
    for name in ("REDIS_URL", "FIREBASE_CREDENTIALS", "FIREBASE_PROJECT_ID", "DELIVERY_CHANNEL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_counters()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # File-backed SQLite so every session in a test sees committed rows like a real database.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pushsched.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def base_time() -> datetime:
    return to_canonical(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def seed(session_factory):
    async def _seed(
        *,
        scheduled_time: datetime,
        status: NotificationStatus = NotificationStatus.PENDING,
        recipient: str = "device-token-1",
        payload: dict[str, Any] | None = None,
    ) -> str:
        async with session_factory() as session:
            row = await create_notification(
                session,
                recipient=recipient,
                payload=payload or {"title": "Reminder", "body": "Your session starts soon"},
                scheduled_time=scheduled_time,
            )
            row.status = status.value
            await session.commit()
            return row.id

    return _seed


@pytest.fixture
def load(session_factory):
    async def _load(notification_id: str) -> Notification | None:
        async with session_factory() as session:
            return await get_notification(session, notification_id)

    return _load
