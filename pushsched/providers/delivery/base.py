from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from pushsched.domain.models import Notification


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of one delivery attempt.

    ``reason`` is free text for logs; the dispatcher never interprets it.
    """

    success: bool
    reason: str | None = None
    provider_message_id: str | None = None

    @classmethod
    def ok(cls, provider_message_id: str | None = None) -> "DeliveryResult":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, reason: str) -> "DeliveryResult":
        return cls(success=False, reason=reason)


class DeliveryChannel(Protocol):
    # Implementations report failures through DeliveryResult rather than raising.
    async def send(self, notification: Notification) -> DeliveryResult:
        ...

    async def verify(self) -> None:
        # Fail fast at startup when credentials or configuration are unusable.
        ...
