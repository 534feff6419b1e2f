"""Message pipeline enums."""

from enum import Enum


class Sender(str, Enum):
    USER = "user"  # Lead / external correspondent
    AGENT = "agent"  # The agent's mailbox (drafts and sent replies)


class MessageStatus(str, Enum):
    """State-machine cursor stored on Message.status.

    Inbound: intent_pending -> intent_done -> route_resolved -> draft_created.
    Draft:   qa_pending -> needs_approval | ready_to_send | rewrite_pending | needs_human -> sent.
    """

    INTENT_PENDING = "intent_pending"
    INTENT_DONE = "intent_done"
    ROUTE_RESOLVED = "route_resolved"
    DRAFT_CREATED = "draft_created"
    QA_PENDING = "qa_pending"
    NEEDS_APPROVAL = "needs_approval"
    READY_TO_SEND = "ready_to_send"
    REWRITE_PENDING = "rewrite_pending"
    NEEDS_HUMAN = "needs_human"
    SENT = "sent"
    IGNORED = "ignored"
    FAILED_DRAFT = "failed_draft"


class SendStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class Decision(str, Enum):
    """Safety gate outcome for an inbound message."""

    AUTO_REPLY = "auto_reply"
    NEEDS_APPROVAL = "needs_approval"
    IGNORE = "ignore"


class EmailType(str, Enum):
    LEAD = "LEAD"
    PORTAL = "PORTAL"
    BUSINESS_CONTACT = "BUSINESS_CONTACT"
    LEGAL = "LEGAL"
    VENDOR = "VENDOR"
    NEWSLETTER = "NEWSLETTER"
    BILLING = "BILLING"
    SYSTEM = "SYSTEM"
    SPAM = "SPAM"
    UNKNOWN = "UNKNOWN"


# Auto-reply is only reachable for these types at or above this confidence.
AUTO_REPLY_EMAIL_TYPES = frozenset({EmailType.LEAD, EmailType.PORTAL})
AUTO_REPLY_MIN_CONFIDENCE = 0.97


class Intent(str, Enum):
    PROPERTY_SEARCH = "PROPERTY_SEARCH"
    PROPERTY_SPECIFIC = "PROPERTY_SPECIFIC"
    VIEWING_REQUEST = "VIEWING_REQUEST"
    APPLICATION_PROCESS = "APPLICATION_PROCESS"
    QNA_GENERAL = "QNA_GENERAL"
    STATUS_FOLLOWUP = "STATUS_FOLLOWUP"
    OTHER = "OTHER"
    SPAM_OR_IRRELEVANT = "SPAM_OR_IRRELEVANT"


class Route(str, Enum):
    PROPERTY_SPECIFIC = "PROPERTY_SPECIFIC"
    PROPERTY_SEARCH = "PROPERTY_SEARCH"
    VIEWING_REQUEST = "VIEWING_REQUEST"
    FOLLOWUP_STATUS = "FOLLOWUP_STATUS"
    QNA = "QNA"
    OTHER = "OTHER"


class QaVerdict(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
