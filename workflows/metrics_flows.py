"""
Prefect Workflow Orchestration - Metrics Aggregation

Scheduled flows for the aggregation tiers and pipeline maintenance:
- Daily aggregation, followed by a refresh of the week and month containing the day
- Weekly and monthly aggregation
- Backfill of a date range for one tier
- Maintenance cycle (duplicate sweep, realtime reconciliation, cleanup, stuck job reaping)
"""

from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import AsyncIterator, Optional

from prefect import flow, get_run_logger, task

from event_pipeline.aggregation import JobResult
from event_pipeline.config import get_settings
from event_pipeline.config.logging import configure_logging
from event_pipeline.database.models import JobStatus, JobType
from event_pipeline.pipeline import AnalyticsPipeline
from event_pipeline.timeutils import utcnow

settings = get_settings()


@asynccontextmanager
async def pipeline_session() -> AsyncIterator[AnalyticsPipeline]:
    """A pipeline connected to both stores, without background loops"""
    configure_logging()
    pipeline = await AnalyticsPipeline.create(settings, create_tables=False)
    try:
        yield pipeline
    finally:
        await pipeline.close()


def summarize(result: JobResult) -> dict:
    return {
        "job_type": result.job_type.value,
        "period_start": result.period_start.isoformat(),
        "period_end": result.period_end.isoformat(),
        "status": result.status.value if result.status else None,
        "skipped": result.skipped,
        "records_processed": result.records_processed,
        "errors_count": result.errors_count,
        "failed_groups": sorted(result.failed_groups),
    }


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="run_aggregation",
    description="Aggregate the period of one tier containing a day",
    retries=2,
    retry_delay_seconds=60,
)
async def run_aggregation(job_type: str, day: date) -> dict:
    """Run one aggregation tier; FAILED runs raise so Prefect retries them"""
    logger = get_run_logger()

    async with pipeline_session() as pipeline:
        runners = {
            JobType.DAILY: pipeline.run_daily,
            JobType.WEEKLY: pipeline.run_weekly,
            JobType.MONTHLY: pipeline.run_monthly,
        }
        result = await runners[JobType(job_type)](day)
    summary = summarize(result)

    if result.status == JobStatus.FAILED:
        raise RuntimeError(f"{job_type} aggregation failed for {day}: {result.error}")

    logger.info(
        f"{job_type} aggregation {summary['status'] or 'skipped'}: "
        f"{result.records_processed} groups, {result.errors_count} errors"
    )
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
    name="daily_metrics",
    description="Daily aggregation with weekly and monthly refresh",
    retries=1,
    retry_delay_seconds=300,
)
async def daily_metrics(process_date: Optional[date] = None) -> dict:
    """
    Daily metrics flow.

    Steps:
    1. Aggregate the day from raw events
    2. Refresh the week containing the day from daily rows
    3. Refresh the month containing the day from daily rows
    """
    logger = get_run_logger()
    process_date = process_date or utcnow().date() - timedelta(days=1)
    logger.info(f"Starting daily metrics for {process_date}")

    results = {"process_date": process_date.isoformat(), "steps": {}}
    for job_type in (JobType.DAILY, JobType.WEEKLY, JobType.MONTHLY):
        results["steps"][job_type.value] = await run_aggregation(job_type.value, process_date)

    partial = [name for name, step in results["steps"].items() if step["status"] == JobStatus.PARTIAL.value]
    if partial:
        await send_alert(
            alert_type="Aggregation Partial",
            message=f"Partial aggregation for {process_date}: {', '.join(partial)}",
            severity="warning",
        )
    results["status"] = "partial" if partial else "success"
    return results


@flow(name="weekly_metrics", description="Weekly aggregation for the previous week")
async def weekly_metrics(process_date: Optional[date] = None) -> dict:
    process_date = process_date or utcnow().date() - timedelta(days=7)
    return await run_aggregation(JobType.WEEKLY.value, process_date)


@flow(name="monthly_metrics", description="Monthly aggregation for the previous month")
async def monthly_metrics(process_date: Optional[date] = None) -> dict:
    if process_date is None:
        process_date = utcnow().date().replace(day=1) - timedelta(days=1)
    return await run_aggregation(JobType.MONTHLY.value, process_date)


@flow(name="backfill_metrics", description="Recompute one tier over a date range")
async def backfill_metrics(job_type: str, start: date, end: date) -> dict:
    """
    Backfill flow.

    Periods are recomputed oldest first; a daily backfill should be followed
    by weekly and monthly backfills over the same range.
    """
    logger = get_run_logger()
    async with pipeline_session() as pipeline:
        results = await pipeline.backfill(job_type, start, end)

    failed = [r for r in results if r.status == JobStatus.FAILED]
    logger.info(f"Backfill {job_type} {start}..{end}: {len(results)} periods, {len(failed)} failed")
    if failed:
        await send_alert(
            alert_type="Backfill Failed",
            message=f"{len(failed)} {job_type} periods failed between {start} and {end}",
            severity="critical",
        )
    return {"periods": [summarize(r) for r in results], "failed": len(failed)}


@flow(name="pipeline_maintenance", description="Sweep, reconcile, clean up and reap stuck jobs")
async def pipeline_maintenance() -> dict:
    logger = get_run_logger()
    async with pipeline_session() as pipeline:
        summary = await pipeline.run_maintenance()
        replay_needed = pipeline.dead_letters.pending_events()

    if replay_needed:
        await send_alert(
            alert_type="Dead Letters Pending",
            message=f"{replay_needed} dead-lettered events waiting for replay",
            severity="critical",
        )
    logger.info(f"Maintenance complete: {summary}")
    return summary


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(daily_metrics())
