#!/usr/bin/env python3
"""
Purge expired webhook ledger entries.

Rows in processed_events past expires_at are already ignored by the
duplicate check; this removes them from storage. Run from cron.

Usage:
    # Delete expired rows
    python3 scripts/purge_processed_events.py

    # Count only
    python3 scripts/purge_processed_events.py --dry-run
"""

import argparse
import asyncio
from datetime import UTC, datetime

from sqlalchemy import delete, func, select

from promptlens.db.models import ProcessedEvent
from promptlens.db.session import close_engines, get_write_session
from promptlens.observability.logging import get_logger, log_context, setup_logging

logger = get_logger("promptlens.scripts.purge_processed_events")


async def purge(dry_run: bool) -> int:
    """Delete (or count) ledger rows whose retention has elapsed."""
    now = datetime.now(UTC)
    async with get_write_session() as session:
        if dry_run:
            result = await session.execute(
                select(func.count()).select_from(ProcessedEvent).where(
                    ProcessedEvent.expires_at <= now
                )
            )
            count = int(result.scalar_one())
            logger.info("processed_events_purge_dry_run", expired=count)
            return count

        result = await session.execute(
            delete(ProcessedEvent).where(ProcessedEvent.expires_at <= now)
        )
        await session.commit()
        count = result.rowcount or 0
        logger.info("processed_events_purged", deleted=count)
        return count


async def main(dry_run: bool) -> None:
    try:
        with log_context(job="purge_processed_events", dry_run=dry_run):
            await purge(dry_run)
    finally:
        await close_engines()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("--dry-run", action="store_true", help="count expired rows only")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(main(args.dry_run))
