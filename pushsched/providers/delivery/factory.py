from __future__ import annotations

from pushsched.core.config import Settings, get_settings
from pushsched.core.errors import DeliveryConfigError, StartupConfigError
from pushsched.providers.delivery.fcm import (
    FcmDeliveryChannel,
    ServiceAccountTokenProvider,
    load_firebase_credentials,
)
from pushsched.providers.delivery.logging_channel import LoggingDeliveryChannel


def build_fcm_channel(settings: Settings) -> FcmDeliveryChannel:
    credentials = load_firebase_credentials(settings.firebase_credentials)
    provider = ServiceAccountTokenProvider(credentials)
    project_id = settings.firebase_project_id or provider.project_id
    if not project_id:
        raise StartupConfigError(
            "Firebase project id missing: set FIREBASE_PROJECT_ID or use credentials with project_id."
        )
    return FcmDeliveryChannel(project_id=project_id, token_provider=provider)


def get_delivery_channel(settings: Settings | None = None):
    settings = settings or get_settings()
    channel = (settings.delivery_channel or "fcm").lower()

    if channel == "fcm":
        return build_fcm_channel(settings)
    if channel == "log":
        return LoggingDeliveryChannel()

    raise DeliveryConfigError(f"Unsupported delivery channel: {channel}")
