from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from pushsched.core.errors import DeliveryConfigError, StartupConfigError
from pushsched.persistence.db import engine as default_engine
from pushsched.providers.delivery import get_delivery_channel
from pushsched.services.heartbeat import build_heartbeat_store


async def _check_database(engine: AsyncEngine) -> tuple[bool, bool]:
    # Report reachability and schema presence separately so operators know which one to fix.
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    except (SQLAlchemyError, OSError):
        return False, False
    return True, "notifications" in tables


async def _check_heartbeat() -> dict[str, Any] | None:
    # Redis only backs heartbeats; None means it is not configured.
    store = build_heartbeat_store()
    if store is None:
        return None
    try:
        beat = await store.read()
        stale = await store.is_stale()
    except (RedisError, OSError):
        return {"reachable": False}
    finally:
        await store.aclose()
    return {"reachable": True, "heartbeat": beat.isoformat() if beat else None, "stale": stale}


async def _check_delivery_channel() -> str | None:
    # Return the failure text, or None when credentials load and a token can be acquired.
    try:
        channel = get_delivery_channel()
        await channel.verify()
    except (StartupConfigError, DeliveryConfigError) as exc:
        return str(exc)
    aclose = getattr(channel, "aclose", None)
    if aclose is not None:
        await aclose()
    return None


async def run_preflight(*, output_json: str | None, engine: AsyncEngine | None = None) -> int:
    results: list[dict[str, Any]] = []

    db_ok, schema_ok = await _check_database(engine or default_engine)
    results.append({"check": "database_reachable", "status": "pass" if db_ok else "fail", "detail": {}})
    results.append(
        {"check": "notifications_table_present", "status": "pass" if schema_ok else "fail", "detail": {}}
    )

    heartbeat = await _check_heartbeat()
    if heartbeat is None:
        results.append({"check": "redis_reachable", "status": "skip", "detail": {}})
    else:
        results.append(
            {"check": "redis_reachable", "status": "pass" if heartbeat["reachable"] else "fail", "detail": {}}
        )
    if heartbeat and heartbeat["reachable"]:
        # A stale heartbeat is expected before the first rollout, so it only warns.
        results.append(
            {
                "check": "dispatcher_heartbeat_fresh",
                "status": "warn" if heartbeat["stale"] else "pass",
                "detail": {"heartbeat": heartbeat["heartbeat"]},
            }
        )

    channel_error = await _check_delivery_channel()
    results.append(
        {
            "check": "delivery_channel_ready",
            "status": "pass" if channel_error is None else "fail",
            "detail": {"error": channel_error} if channel_error else {},
        }
    )

    failed = [row for row in results if row["status"] == "fail"]
    summary = {
        "status": "pass" if not failed else "fail",
        "checks": results,
    }
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Check dispatcher dependencies before rollout.")
    parser.add_argument("--output-json", default=None)
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
