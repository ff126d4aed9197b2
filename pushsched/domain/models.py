from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class NotificationStatus(str, Enum):
    PENDING = "Pending"
    SENT = "Sent"
    FAILED = "Failed"
    # Only written when dispatcher claims are enabled.
    IN_FLIGHT = "InFlight"


class Base(DeclarativeBase):
    pass


# Prefer JSONB on Postgres while keeping SQLite-backed tests on the generic JSON type.
_Payload = JSON().with_variant(JSONB(), "postgresql")


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        # Serve the dispatcher's status + due-time scan without touching sent history.
        Index("ix_notifications_status_scheduled_time", "status", "scheduled_time"),
    )
    # Fetch server-side timestamps on flush so async callers never trigger lazy loads.
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Owning user profile; opaque to the dispatcher.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Device registration token (or address) forwarded unmodified to the channel.
    recipient: Mapped[str] = mapped_column(String, nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(_Payload, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=NotificationStatus.PENDING.value
    )
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Attempt bookkeeping is only written when bounded retry is enabled.
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
