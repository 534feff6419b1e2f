"""Provider-neutral view of one mail message (headers + text)."""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime

# Minimum header allowlist needed by the safety classifier.
METADATA_HEADERS = [
    "From",
    "To",
    "Subject",
    "Date",
    "Reply-To",
    "List-Unsubscribe",
    "List-Id",
    "Precedence",
    "Auto-Submitted",
    "Message-ID",
    "In-Reply-To",
    "References",
]

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"[ \t]+")


@dataclass
class MailEnvelope:
    provider: str
    provider_message_id: str
    provider_thread_id: str | None
    headers: dict[str, str] = field(default_factory=dict)
    snippet: str = ""
    body_text: str | None = None
    internal_date: datetime | None = None
    label_ids: list[str] = field(default_factory=list)
    conversation_id: str | None = None

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "") or ""

    @property
    def subject(self) -> str:
        return self.header("subject")

    @property
    def from_name(self) -> str | None:
        name, _ = parseaddr(self.header("from"))
        return name or None

    @property
    def from_address(self) -> str | None:
        _, address = parseaddr(self.header("from"))
        return address.strip().lower() or None

    @property
    def reply_to_address(self) -> str | None:
        _, address = parseaddr(self.header("reply-to"))
        return address.strip().lower() or None

    @property
    def to_addresses(self) -> list[str]:
        return [addr.strip().lower() for _, addr in getaddresses([self.header("to")]) if addr]

    @property
    def rfc_message_id(self) -> str | None:
        return self.header("message-id").strip() or None

    @property
    def timestamp(self) -> datetime:
        if self.internal_date:
            return self.internal_date
        raw = self.header("date")
        if raw:
            try:
                parsed = parsedate_to_datetime(raw)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (TypeError, ValueError):
                pass
        return datetime.now(timezone.utc)

    @property
    def text(self) -> str:
        return (self.body_text or self.snippet or "").strip()


def headers_from_list(items: list[dict] | None) -> dict[str, str]:
    """[{name, value}] -> {lowercase name: value}; first occurrence wins."""
    headers: dict[str, str] = {}
    for item in items or []:
        name = str(item.get("name") or "").strip().lower()
        if name and name not in headers:
            headers[name] = str(item.get("value") or "")
    return headers


def _decode_b64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def html_to_text(html: str) -> str:
    text = re.sub(r"(?i)<br\s*/?>|</p>|</div>", "\n", html)
    text = _TAG_RE.sub("", text)
    text = _WS_RE.sub(" ", text)
    return "\n".join(line.strip() for line in text.splitlines()).strip()


def extract_gmail_text(payload: dict | None) -> str | None:
    """Walk a Gmail `format=full` payload and return the best text body."""
    if not payload:
        return None
    plain: list[str] = []
    html: list[str] = []

    def _walk(part: dict) -> None:
        mime = str(part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if data and mime == "text/plain":
            plain.append(_decode_b64url(data))
        elif data and mime == "text/html":
            html.append(_decode_b64url(data))
        for child in part.get("parts") or []:
            _walk(child)

    _walk(payload)
    if plain:
        return "\n".join(plain).strip()
    if html:
        return html_to_text("\n".join(html))
    return None


def _gmail_internal_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def envelope_from_gmail(message: dict) -> MailEnvelope:
    payload = message.get("payload") or {}
    return MailEnvelope(
        provider="gmail",
        provider_message_id=str(message.get("id")),
        provider_thread_id=message.get("threadId"),
        headers=headers_from_list(payload.get("headers")),
        snippet=str(message.get("snippet") or ""),
        body_text=extract_gmail_text(payload),
        internal_date=_gmail_internal_date(message.get("internalDate")),
        label_ids=[str(value) for value in (message.get("labelIds") or [])],
    )


def _graph_address(value: dict | None) -> str:
    email = ((value or {}).get("emailAddress") or {})
    address = email.get("address") or ""
    name = email.get("name") or ""
    return f"{name} <{address}>" if name and address else address


def envelope_from_graph(message: dict) -> MailEnvelope:
    """Normalise a Microsoft Graph message resource."""
    headers = headers_from_list(message.get("internetMessageHeaders"))
    headers.setdefault("from", _graph_address(message.get("from")))
    headers.setdefault("subject", str(message.get("subject") or ""))
    to_list = [_graph_address(item) for item in (message.get("toRecipients") or [])]
    headers.setdefault("to", ", ".join(item for item in to_list if item))
    reply_to = [_graph_address(item) for item in (message.get("replyTo") or [])]
    if reply_to and reply_to[0]:
        headers.setdefault("reply-to", reply_to[0])
    if message.get("internetMessageId"):
        headers.setdefault("message-id", str(message["internetMessageId"]))

    body = message.get("body") or {}
    content = str(body.get("content") or "")
    body_text = html_to_text(content) if str(body.get("contentType")).lower() == "html" else content

    received = message.get("receivedDateTime")
    internal_date = None
    if received:
        try:
            internal_date = datetime.fromisoformat(str(received).replace("Z", "+00:00"))
        except ValueError:
            internal_date = None

    conversation_id = message.get("conversationId")
    return MailEnvelope(
        provider="outlook",
        provider_message_id=str(message.get("id")),
        provider_thread_id=conversation_id,
        headers=headers,
        snippet=str(message.get("bodyPreview") or ""),
        body_text=body_text.strip() or None,
        internal_date=internal_date,
        conversation_id=conversation_id,
    )
