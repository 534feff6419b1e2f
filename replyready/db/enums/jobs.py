"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    HISTORY_SYNC = "history_sync"  # Diff from stored cursor (Gmail history / Graph delta)
    MAILBOX_BACKFILL = "mailbox_backfill"  # Bounded recent-message backfill
    WATCH_REFRESH = "watch_refresh"  # Gmail watch / Graph subscription renewal
    AUDIT_WEBHOOK = "audit_webhook"  # Outbound send event to AUDIT_WEBHOOK_URL


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
