"""
Prefect Workflow Orchestration - Rollup Refresh

Scheduled and on-demand refreshes of the rollup store:
- refresh every stale completed period
- backfill a range of days or months
- alert on failed periods
"""

from datetime import date, datetime
from typing import List, Optional

from prefect import flow, get_run_logger, task

from rollup_engine.config import get_settings
from rollup_engine.config.logging import configure_logging
from rollup_engine.runtime import open_runtime
from rollup_engine.scheduler.refresh import RefreshOutcome

settings = get_settings()


def _summarize(outcomes: List[RefreshOutcome]) -> dict:
    return {
        "periods": len(outcomes),
        "succeeded": sum(1 for o in outcomes if o.succeeded),
        "failed": [o.period_key for o in outcomes if not o.succeeded],
        "entries": sum(o.entry_count for o in outcomes),
        "violations": sum(o.violation_count for o in outcomes),
    }


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="refresh_stale_periods",
    description="Refresh every completed period whose rollups are stale",
)
async def refresh_stale_periods(now: Optional[datetime] = None) -> dict:
    """Run one scheduler pass"""
    logger = get_run_logger()

    async with open_runtime(settings) as runtime:
        outcomes = await runtime.scheduler.run_pending(now=now)

    summary = _summarize(outcomes)
    logger.info(f"Refreshed {summary['succeeded']}/{summary['periods']} stale periods")
    return summary


@task(
    name="backfill_periods",
    description="Recompute a range of periods",
    retries=1,
    retry_delay_seconds=60,
)
async def backfill_periods(kind: str, first: date, last: date) -> dict:
    """Force-refresh every period of a kind between first and last"""
    logger = get_run_logger()

    async with open_runtime(settings) as runtime:
        outcomes = await runtime.scheduler.backfill(kind, first, last)

    summary = _summarize(outcomes)
    logger.info(f"Backfilled {summary['succeeded']}/{summary['periods']} {kind} periods")
    return summary


@task(
    name="send_alert",
    description="Send alert notification",
)
async def send_alert(alert_type: str, message: str, severity: str = "info") -> None:
    """Send alert notification"""
    logger = get_run_logger()
    logger.warning(f"[{severity.upper()}] {alert_type}: {message}")


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="rollup_refresh",
    description="Refresh stale rollups of completed days and months",
)
async def rollup_refresh(now: Optional[datetime] = None) -> dict:
    """Scheduled refresh pass; periods that still fail raise an alert"""
    configure_logging()
    summary = await refresh_stale_periods(now)

    if summary["failed"]:
        await send_alert(
            alert_type="Rollup Refresh Failed",
            message=f"Periods failed to refresh: {', '.join(summary['failed'])}",
            severity="critical",
        )
    return summary


@flow(
    name="rollup_backfill",
    description="Recompute rollups for a range of periods",
)
async def rollup_backfill(kind: str, first: date, last: date) -> dict:
    """Backfill days or months, e.g. after an upstream correction"""
    configure_logging()
    summary = await backfill_periods(kind, first, last)

    if summary["failed"]:
        await send_alert(
            alert_type="Rollup Backfill Incomplete",
            message=f"Periods failed to refresh: {', '.join(summary['failed'])}",
            severity="warning",
        )
    return summary


if __name__ == "__main__":
    import asyncio

    asyncio.run(rollup_refresh())
