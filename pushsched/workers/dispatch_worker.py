from __future__ import annotations

import asyncio
import logging
import signal

from pushsched.core.config import get_settings
from pushsched.core.errors import DeliveryConfigError, StartupConfigError
from pushsched.core.logging import configure_logging
from pushsched.persistence.db import SessionLocal, engine
from pushsched.providers.delivery import get_delivery_channel
from pushsched.services.dispatcher import NotificationDispatcher
from pushsched.services.heartbeat import build_heartbeat_store
from pushsched.services.telemetry import delivery_call_stats, get_counters


logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    # Translate SIGINT/SIGTERM into the dispatcher's stop signal instead of killing a delivery mid-flight.
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Platforms without loop signal support fall back to KeyboardInterrupt handling.
            logger.debug("signal_handler_unavailable signal=%s", sig)


async def run_dispatch_worker(
    stop_event: asyncio.Event | None = None,
    *,
    install_signal_handlers: bool = True,
) -> None:
    settings = get_settings()
    if not settings.dispatch_enabled:
        logger.warning("dispatcher_disabled set DISPATCH_ENABLED=true to run the worker")
        return

    channel = None
    heartbeat_store = None
    dispatcher: NotificationDispatcher | None = None
    try:
        # Credential and channel problems are fatal here, before any notification is touched.
        channel = get_delivery_channel(settings)
        await channel.verify()

        heartbeat_store = build_heartbeat_store(settings)
        dispatcher = NotificationDispatcher(
            session_factory=SessionLocal,
            channel=channel,
            heartbeat=heartbeat_store.publish if heartbeat_store is not None else None,
        )
        stop_event = stop_event or asyncio.Event()
        if install_signal_handlers:
            _install_signal_handlers(stop_event)
        await dispatcher.run(stop_event)
    finally:
        aclose = getattr(channel, "aclose", None)
        if aclose is not None:
            await aclose()
        if heartbeat_store is not None:
            await heartbeat_store.aclose()
        if dispatcher is not None:
            logger.info(
                "dispatcher_summary instance=%s interval_s=%s counters=%s fcm=%s",
                dispatcher.instance_id,
                dispatcher.interval_s,
                get_counters(),
                delivery_call_stats("delivery.fcm"),
            )
        await engine.dispose()


def main() -> None:
    configure_logging()
    try:
        asyncio.run(run_dispatch_worker())
    except (StartupConfigError, DeliveryConfigError) as exc:
        logger.critical("dispatcher_startup_failed error=%s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.info("dispatcher_interrupted")


if __name__ == "__main__":
    main()
