from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pushsched.domain.models import Notification, NotificationStatus


_PENDING = NotificationStatus.PENDING.value
_SENT = NotificationStatus.SENT.value
_FAILED = NotificationStatus.FAILED.value
_IN_FLIGHT = NotificationStatus.IN_FLIGHT.value

# Bound stored error text so one verbose provider response cannot bloat the row.
_MAX_ERROR_CHARS = 1000


async def get_notification(session: AsyncSession, notification_id: str) -> Notification | None:
    result = await session.execute(select(Notification).where(Notification.id == notification_id))
    return result.scalar_one_or_none()


async def create_notification(
    session: AsyncSession,
    *,
    recipient: str,
    payload: dict[str, Any],
    scheduled_time: datetime,
    user_id: str | None = None,
) -> Notification:
    # Identity is owned here; uuid4 ids are never reused even after rows are archived elsewhere.
    row = Notification(
        id=uuid4().hex,
        user_id=user_id,
        recipient=recipient,
        payload_json=dict(payload),
        status=_PENDING,
        scheduled_time=scheduled_time,
        attempt_count=0,
    )
    session.add(row)
    await session.flush()
    return row


async def find_due(session: AsyncSession, *, now: datetime) -> list[Notification]:
    # Return every eligible row; callers must not assume any ordering.
    rows = (
        await session.execute(
            select(Notification).where(
                Notification.status == _PENDING,
                Notification.scheduled_time <= now,
            )
        )
    ).scalars().all()
    return list(rows)


async def mark_sent(session: AsyncSession, notification_id: str, *, sent_at: datetime) -> bool:
    """Mark a notification delivered.

    Idempotent: a row that is already ``Sent`` is left untouched and still
    reported as ``True``. Returns ``False`` only when the id does not exist.
    """
    result = await session.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status != _SENT)
        .values(status=_SENT, sent_at=sent_at, claimed_by=None, claimed_at=None)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        return True
    existing = await session.scalar(select(Notification.status).where(Notification.id == notification_id))
    return existing is not None


async def claim_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    claimed_by: str,
    claimed_at: datetime,
) -> bool:
    # The conditional status transition is the only mutual exclusion between dispatcher instances.
    result = await session.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status == _PENDING)
        .values(status=_IN_FLIGHT, claimed_by=claimed_by, claimed_at=claimed_at)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def release_claim(session: AsyncSession, notification_id: str, *, claimed_by: str) -> bool:
    # Only the claim owner may hand a row back to Pending.
    result = await session.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.status == _IN_FLIGHT,
            Notification.claimed_by == claimed_by,
        )
        .values(status=_PENDING, claimed_by=None, claimed_at=None)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def release_stale_claims(session: AsyncSession, *, cutoff: datetime) -> int:
    # Recover rows left InFlight by an instance that died between claim and outcome.
    result = await session.execute(
        update(Notification)
        .where(Notification.status == _IN_FLIGHT, Notification.claimed_at <= cutoff)
        .values(status=_PENDING, claimed_by=None, claimed_at=None)
        .execution_options(synchronize_session="fetch")
    )
    return int(result.rowcount or 0)


async def record_failure(
    session: AsyncSession,
    notification_id: str,
    *,
    reason: str,
    max_attempts: int,
) -> str | None:
    """Count one failed attempt and return the resulting status.

    The row becomes ``Failed`` once ``attempt_count`` reaches ``max_attempts``
    and ``Pending`` otherwise. Rows that were concurrently marked ``Sent`` are
    not touched; ``None`` is returned when nothing was updated.
    """
    limit = max(1, int(max_attempts))
    next_count = Notification.attempt_count + 1
    result = await session.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.status.in_((_PENDING, _IN_FLIGHT)),
        )
        .values(
            attempt_count=next_count,
            last_error=reason[:_MAX_ERROR_CHARS],
            status=case((next_count >= limit, _FAILED), else_=_PENDING),
            claimed_by=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session="fetch")
    )
    if not result.rowcount:
        return None
    return await session.scalar(select(Notification.status).where(Notification.id == notification_id))
