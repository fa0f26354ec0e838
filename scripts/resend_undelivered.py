#!/usr/bin/env python3
"""
Re-post notifications that never reached ESS.

Picks up ``outbound_messages`` rows in ``UNDELIVERED`` status and sends the
stored signed payload again. Meant to run from cron next to the API workers;
rows locked by another run are skipped.

Usage:
    python scripts/resend_undelivered.py [--limit 100]
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from app.core.logging import configure_logging
from app.db.session import AsyncSessionLocal
from app.schemas.loan import OutboundMessageStatus
from app.services.callbacks import CallbackDispatcher

logger = logging.getLogger("scripts.resend_undelivered")


async def run(limit: int) -> int:
    dispatcher = CallbackDispatcher()
    try:
        async with AsyncSessionLocal() as db:
            outcomes = await dispatcher.resend_undelivered(db, limit=limit)
    finally:
        await dispatcher.aclose()
    failed = [outcome for outcome in outcomes if outcome.status is OutboundMessageStatus.UNDELIVERED]
    logger.info(
        "Resend finished: attempted=%s resent=%s still_undelivered=%s",
        len(outcomes),
        sum(1 for outcome in outcomes if outcome.delivered),
        len(failed),
    )
    return 1 if failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--limit", type=int, default=50, help="maximum rows to resend in one run")
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(run(args.limit)))


if __name__ == "__main__":
    main()
