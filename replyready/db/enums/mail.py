"""Mail connection enums."""

from enum import Enum


class MailProvider(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"


class ConnectionStatus(str, Enum):
    """Lifecycle of an agent's mailbox connection."""

    CONNECTED = "connected"  # OAuth done, no baseline cursor yet
    ACTIVE = "active"  # Baseline cursor stored, push/diff running
    NEEDS_RECONNECT = "needs_reconnect"  # Refresh token revoked or missing
    ERROR = "error"

    @classmethod
    def usable(cls) -> tuple["ConnectionStatus", ...]:
        return (cls.CONNECTED, cls.ACTIVE)
