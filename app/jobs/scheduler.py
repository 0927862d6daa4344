"""
APScheduler Configuration

Background job scheduler for the affiliate engine.

Jobs:
- Suspicious-affiliate scan (FRAUD_SCAN_INTERVAL_MINUTES)
- Aggregate reconciliation with repair (RECONCILE_INTERVAL_MINUTES)
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone='UTC'
)


async def run_job(job_name: str):
    """
    Wrapper to run a named affiliate job from the scheduler.

    Failures are logged and the job runs again on its next tick.
    """
    from app.jobs import affiliate_jobs

    job = getattr(affiliate_jobs, job_name)
    try:
        result = await job()
        logger.info(f"Job '{job_name}' completed: {result}")
    except Exception as e:
        logger.error(f"Job '{job_name}' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not settings.SCHEDULER_ENABLED:
        logger.info("Background job scheduler disabled")
        return

    if not scheduler.running:
        # Flag suspicious affiliates
        scheduler.add_job(
            run_job,
            'interval',
            minutes=settings.FRAUD_SCAN_INTERVAL_MINUTES,
            args=['scan_suspicious_affiliates'],
            id='scan_suspicious_affiliates',
            name='Scan Suspicious Affiliates',
            replace_existing=True,
        )

        # Repair aggregate drift
        scheduler.add_job(
            run_job,
            'interval',
            minutes=settings.RECONCILE_INTERVAL_MINUTES,
            args=['reconcile_affiliate_aggregates'],
            id='reconcile_affiliate_aggregates',
            name='Reconcile Affiliate Aggregates',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
