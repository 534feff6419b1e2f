"""Outbound attachment fetch from external storage URLs."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx

from replyready.core.config import Settings
from replyready.core.exceptions import AttachmentError
from replyready.core.structured_logging import safe_url

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

ALLOWED_EXTENSIONS = {"pdf", "jpg", "jpeg", "png", "webp"}
ALLOWED_MIME_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/webp",
}


@dataclass(frozen=True)
class FetchedAttachment:
    filename: str
    mime: str
    content: bytes


def _filename_for(item: dict) -> str:
    filename = str(item.get("filename") or "").strip()
    if filename:
        return filename
    path = urlsplit(str(item.get("url") or "")).path
    return path.rsplit("/", 1)[-1] or "attachment"


def validate_attachment(filename: str, mime: str) -> tuple[bool, str | None]:
    """
    Validate against the extension and MIME allowlists.

    Returns (is_valid, error_message)
    """
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in ALLOWED_EXTENSIONS:
        return False, f"File extension '.{ext}' not allowed"
    if mime not in ALLOWED_MIME_TYPES:
        return False, f"Content type '{mime}' not allowed"
    return True, None


class AttachmentFetcher:
    """Downloads the files recorded on a draft, enforcing count and size caps."""

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    def fetch_all(self, items: list[dict] | None) -> list[FetchedAttachment]:
        items = [item for item in (items or []) if isinstance(item, dict) and item.get("url")]
        if not items:
            return []
        if len(items) > self.settings.ATTACHMENT_MAX_COUNT:
            raise AttachmentError(
                f"Too many attachments: {len(items)} > {self.settings.ATTACHMENT_MAX_COUNT}"
            )

        fetched: list[FetchedAttachment] = []
        total = 0
        with httpx.Client(
            timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            for item in items:
                attachment = self._fetch_one(client, item)
                total += len(attachment.content)
                if total > self.settings.ATTACHMENT_MAX_TOTAL_BYTES:
                    raise AttachmentError("Attachments exceed the total size limit")
                fetched.append(attachment)
        return fetched

    def _fetch_one(self, client: httpx.Client, item: dict) -> FetchedAttachment:
        url = str(item["url"])
        filename = _filename_for(item)
        declared = str(item.get("mime") or "").strip().lower()
        mime = declared or (mimetypes.guess_type(filename)[0] or "")
        is_valid, error = validate_attachment(filename, mime)
        if not is_valid:
            raise AttachmentError(error or "Attachment not allowed")

        try:
            response = client.get(url)
        except httpx.HTTPError as exc:
            raise AttachmentError(f"Attachment fetch failed: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            logger.warning(f"Attachment fetch returned {response.status_code} for {safe_url(url)}")
            raise AttachmentError(f"Attachment fetch failed with HTTP {response.status_code}")

        content = response.content
        if len(content) > self.settings.ATTACHMENT_MAX_BYTES:
            max_mb = self.settings.ATTACHMENT_MAX_BYTES / (1024 * 1024)
            raise AttachmentError(f"Attachment '{filename}' exceeds {max_mb:.0f} MB limit")
        return FetchedAttachment(filename=filename, mime=mime, content=content)
