from pushsched.providers.delivery.base import DeliveryChannel, DeliveryResult
from pushsched.providers.delivery.factory import build_fcm_channel, get_delivery_channel
from pushsched.providers.delivery.fcm import FcmDeliveryChannel, load_firebase_credentials
from pushsched.providers.delivery.logging_channel import LoggingDeliveryChannel

__all__ = [
    "DeliveryChannel",
    "DeliveryResult",
    "FcmDeliveryChannel",
    "LoggingDeliveryChannel",
    "build_fcm_channel",
    "get_delivery_channel",
    "load_firebase_credentials",
]
