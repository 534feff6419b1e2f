"""
Background worker: drains the job table and ticks the pipeline stages.

Usage:
    python -m replyready.worker

Run as a separate process next to the API. Several workers may run at
once: jobs are claimed with a conditional update and every stage runner is
safe under concurrent execution.
"""

import asyncio
import logging

import anyio

from replyready.core.config import settings
from replyready.core.structured_logging import build_log_context
from replyready.db.session import SessionLocal
from replyready.jobs.registry import resolve_job_handler
from replyready.services import job_service
from replyready.services.pipeline.registry import run_pipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL
BATCH_SIZE = settings.WORKER_BATCH_SIZE


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info(f"Processing job {job.id} (type={job.job_type}, attempt={job.attempts})")
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def drain_jobs(db) -> int:
    jobs = job_service.get_pending_jobs(db, limit=BATCH_SIZE)
    if jobs:
        logger.info(f"Found {len(jobs)} pending jobs")

    processed = 0
    for job in jobs:
        if not job_service.claim_job(db, job):
            continue
        try:
            await process_job(db, job)
            job_service.mark_job_completed(db, job)
            logger.info(f"Job {job.id} completed successfully")
        except Exception as e:
            db.rollback()
            job_service.mark_job_failed(db, job, str(e))
            logger.error(
                "Job %s failed: %s",
                job.id,
                type(e).__name__,
                extra=build_log_context(agent_id=job.agent_id),
            )
        processed += 1
    return processed


async def tick_pipeline(db) -> None:
    results = await anyio.to_thread.run_sync(run_pipeline, db, settings)
    total = sum(len(items) for items in results.values())
    if total:
        logger.info(f"Pipeline tick processed {total} row(s)")


async def worker_loop() -> None:
    """Main worker loop - polls for jobs, then runs one pipeline pass."""
    logger.info(f"Worker starting (poll interval: {POLL_INTERVAL_SECONDS}s, batch size: {BATCH_SIZE})")
    if not settings.ai_configured:
        logger.warning("AI provider not configured - classification fails closed to needs_approval")

    while True:
        with SessionLocal() as db:
            try:
                await drain_jobs(db)
                await tick_pipeline(db)
            except Exception as e:
                logger.error(f"Error in worker loop: {type(e).__name__}: {e}")

        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
