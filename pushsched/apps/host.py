from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI

from pushsched.core.config import get_settings
from pushsched.core.logging import configure_logging
from pushsched.persistence.db import SessionLocal
from pushsched.providers.delivery import get_delivery_channel
from pushsched.services.dispatcher import NotificationDispatcher
from pushsched.services.heartbeat import build_heartbeat_store


logger = logging.getLogger(__name__)

# Upper bound on how long shutdown waits for an in-flight delivery before cancelling.
_SHUTDOWN_GRACE_S = 30.0


@asynccontextmanager
async def dispatcher_lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Host the dispatcher as a background task for the lifetime of an API process.

    ``app.state.delivery_channel`` and ``app.state.session_factory`` may be
    preset to override the configured channel and the default session factory.
    """
    settings = get_settings()
    if not settings.dispatch_enabled:
        logger.info("dispatcher_hosting_disabled")
        yield
        return

    channel = getattr(app.state, "delivery_channel", None) or get_delivery_channel(settings)
    await channel.verify()
    session_factory = getattr(app.state, "session_factory", None) or SessionLocal
    heartbeat_store = build_heartbeat_store(settings)
    dispatcher = NotificationDispatcher(
        session_factory=session_factory,
        channel=channel,
        heartbeat=heartbeat_store.publish if heartbeat_store is not None else None,
    )
    stop_event = asyncio.Event()
    task = asyncio.create_task(dispatcher.run(stop_event), name="notification-dispatcher")
    app.state.dispatcher = dispatcher
    app.state.dispatcher_task = task
    try:
        yield
    finally:
        stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=_SHUTDOWN_GRACE_S)
        except asyncio.TimeoutError:
            # wait_for already cancelled the task; the dispatcher logs its own exit.
            logger.warning("dispatcher_shutdown_timeout grace_s=%s", _SHUTDOWN_GRACE_S)
        aclose = getattr(channel, "aclose", None)
        if aclose is not None:
            await aclose()
        if heartbeat_store is not None:
            await heartbeat_store.aclose()


def create_app() -> FastAPI:
    # Run with: uvicorn pushsched.apps.host:create_app --factory
    configure_logging()
    return FastAPI(title="pushsched", lifespan=dispatcher_lifespan)
