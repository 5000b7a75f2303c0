"""
APScheduler Configuration

Background jobs for the logistics core:
- Commission approval once the dispute grace period has passed
- Alerting the admin about orders that stopped moving

Job state lives in the database (approval_due_at, updated_at), so the
in-memory job store loses nothing on restart.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from pda_logistics.config import settings

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
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE,
)


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        from pda_logistics.jobs.commission_jobs import approve_due_commissions_job, flag_stuck_orders_job

        # Approve commissions whose grace period has passed
        scheduler.add_job(
            approve_due_commissions_job,
            'interval',
            minutes=settings.COMMISSION_APPROVAL_INTERVAL_MINUTES,
            id='approve_due_commissions',
            name='Approve Due Commissions',
            replace_existing=True,
        )

        # Flag orders stuck in an open status every hour
        scheduler.add_job(
            flag_stuck_orders_job,
            'interval',
            hours=1,
            id='flag_stuck_orders',
            name='Flag Stuck Orders',
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
