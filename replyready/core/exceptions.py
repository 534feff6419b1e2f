"""Exception types shared by services, jobs and routers."""

from __future__ import annotations


class ReplyReadyError(Exception):
    """Base class for application errors."""


class ConnectionNotFoundError(ReplyReadyError):
    """No usable mail connection for the requested agent/provider/mailbox."""


class TokenRefreshError(ReplyReadyError):
    """Access token could not be obtained or refreshed."""

    def __init__(self, message: str, *, reconnect_required: bool = False):
        super().__init__(message)
        self.reconnect_required = reconnect_required


class ProviderError(ReplyReadyError, RuntimeError):
    """Mail provider API returned an error response."""

    def __init__(self, provider: str, status_code: int, detail: str | None = None, *, code: str | None = None):
        self.provider = provider
        self.status_code = status_code
        self.detail = detail or "unknown error"
        self.code = code
        super().__init__(f"{provider} API error {status_code}: {self.detail}")


class HistoryExpiredError(ProviderError):
    """Incremental cursor is too old or unknown to the provider."""


class AttachmentError(ReplyReadyError):
    """Attachment could not be fetched or is not allowed."""


class ClassifierError(ReplyReadyError):
    """Model call failed or returned an unusable response.

    `reason` is a short machine-readable code (not_configured, timeout,
    http_<status>, transport_error, invalid_json, schema_invalid, empty_output).
    """

    def __init__(self, reason: str, detail: str | None = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)
