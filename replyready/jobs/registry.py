"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from replyready.db.enums import JobType
from replyready.jobs.handlers import mailbox, webhooks

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.HISTORY_SYNC.value: mailbox.process_history_sync,
    JobType.MAILBOX_BACKFILL.value: mailbox.process_mailbox_backfill,
    JobType.WATCH_REFRESH.value: mailbox.process_watch_refresh,
    JobType.AUDIT_WEBHOOK.value: webhooks.process_audit_webhook,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
