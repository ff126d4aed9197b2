from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import json
import sys

from pushsched.persistence.db import SessionLocal, create_schema
from pushsched.services.notifications import schedule_notification


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Schedule a push notification for the dispatcher")
    parser.add_argument("--recipient", required=True, help="Device registration token")
    parser.add_argument("--title", required=True)
    parser.add_argument("--body", required=True)
    parser.add_argument("--data", default=None, help="Optional JSON object forwarded as message data")
    parser.add_argument(
        "--at",
        default=None,
        help="ISO-8601 due time; naive values are read in the canonical zone (default: now)",
    )
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--create-schema", action="store_true", help="Create tables first (local runs)")
    return parser


async def _schedule(args: argparse.Namespace) -> int:
    payload: dict = {"title": args.title, "body": args.body}
    if args.data:
        payload["data"] = json.loads(args.data)
    scheduled_time = datetime.fromisoformat(args.at) if args.at else None
    if args.create_schema:
        await create_schema()
    async with SessionLocal() as session:
        row = await schedule_notification(
            session,
            recipient=args.recipient,
            payload=payload,
            scheduled_time=scheduled_time,
            user_id=args.user_id,
        )
    print(json.dumps({"id": row.id, "scheduled_time": row.scheduled_time.isoformat()}))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_schedule(args))


if __name__ == "__main__":
    sys.exit(main())
