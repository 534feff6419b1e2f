"""Structured logging helpers (PII-safe)."""

from typing import Any
from urllib.parse import urlsplit


def build_log_context(
    *,
    agent_id: object | None = None,
    connection_id: object | None = None,
    message_id: object | None = None,
    stage: str | None = None,
    provider: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict carrying identifiers only, never content."""
    context: dict[str, Any] = {}
    if agent_id:
        context["agent_id"] = str(agent_id)
    if connection_id:
        context["connection_id"] = str(connection_id)
    if message_id:
        context["message_id"] = str(message_id)
    if stage:
        context["stage"] = stage
    if provider:
        context["provider"] = provider
    return context


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def safe_url(url: str | None) -> str:
    if not url:
        return ""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"
