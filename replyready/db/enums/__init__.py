"""Enum definitions for application constants."""

from replyready.db.enums.jobs import JobStatus, JobType
from replyready.db.enums.mail import ConnectionStatus, MailProvider
from replyready.db.enums.pipeline import (
    AUTO_REPLY_EMAIL_TYPES,
    AUTO_REPLY_MIN_CONFIDENCE,
    Decision,
    EmailType,
    Intent,
    MessageStatus,
    QaVerdict,
    Route,
    Sender,
    SendStatus,
)

__all__ = [
    "AUTO_REPLY_EMAIL_TYPES",
    "AUTO_REPLY_MIN_CONFIDENCE",
    "ConnectionStatus",
    "Decision",
    "EmailType",
    "Intent",
    "JobStatus",
    "JobType",
    "MailProvider",
    "MessageStatus",
    "QaVerdict",
    "Route",
    "Sender",
    "SendStatus",
]
