from __future__ import annotations


class PushSchedError(Exception):
    """Base error for pushsched."""


class StartupConfigError(PushSchedError):
    """Missing or invalid configuration detected at process start."""


class DeliveryError(PushSchedError):
    """Delivery channel failure."""


class DeliveryConfigError(DeliveryError):
    """Delivery channel configuration missing required fields."""


class DeliveryAuthError(DeliveryError):
    """Delivery provider authentication/authorization failure."""


class DatabaseError(PushSchedError):
    """Database layer failure."""


class NotificationNotFoundError(PushSchedError):
    """Notification id does not exist in the store."""


class NotificationStateError(PushSchedError):
    """Notification can no longer be edited; it is due or already processed."""
