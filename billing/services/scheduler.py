"""
Qontax Recurrence — Daily scheduler (the "cron" trigger).
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from billing.config import settings
from billing.database import async_session
from billing.schemas import ProcessRecurringRequest
from billing.services.recurrence_engine import RecurrenceEngine, RunReport

logger = logging.getLogger(__name__)


def seconds_until_next_run(now: datetime, hour_utc: int) -> float:
    """Seconds from ``now`` to the next ``hour_utc``:00 UTC (always > 0)."""
    now = now.astimezone(timezone.utc)
    candidate = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return (candidate - now).total_seconds()


async def run_scheduled_cycle(session_factory=None, now: Optional[datetime] = None) -> RunReport:
    """One scheduled run: today's charge day, auto-issue contracts only."""
    engine = RecurrenceEngine(session_factory or async_session)
    return await engine.run(ProcessRecurringRequest(source="scheduler"), now=now)


async def periodic_recurrence_run(session_factory=None) -> None:
    """Run the engine once a day at ``scheduler_hour_utc`` until cancelled."""
    while True:
        try:
            delay = seconds_until_next_run(datetime.now(timezone.utc), settings.scheduler_hour_utc)
            logger.info("⏰ Next recurring invoice run in %.0f seconds", delay)
            await asyncio.sleep(delay)

            report = await run_scheduled_cycle(session_factory)
            logger.info(
                "Scheduled run finished — %d created, %d errors, %d skipped",
                report.summary.success, report.summary.errors, report.summary.skipped,
            )

        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Scheduled recurring run error: %s", e)
