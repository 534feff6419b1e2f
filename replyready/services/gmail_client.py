"""Gmail REST API client (history, metadata, watch, send)."""

from __future__ import annotations

import base64
import logging
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import httpx

from replyready.core.config import Settings
from replyready.core.exceptions import HistoryExpiredError, ProviderError
from replyready.services.mail_envelope import METADATA_HEADERS

logger = logging.getLogger(__name__)

_GMAIL_MESSAGES_LIST_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages"
_GMAIL_MESSAGE_GET_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/{message_id}"
_GMAIL_HISTORY_URL = "https://gmail.googleapis.com/gmail/v1/users/me/history"
_GMAIL_WATCH_URL = "https://gmail.googleapis.com/gmail/v1/users/me/watch"
_GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
_GMAIL_PROFILE_URL = "https://gmail.googleapis.com/gmail/v1/users/me/profile"


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
        return payload.get("error", {}).get("message")
    except (ValueError, AttributeError):
        return response.text or None


def build_reply_mime(
    *,
    from_address: str,
    to_address: str,
    subject: str,
    body: str,
    in_reply_to: str | None,
    references: list[str],
    attachments: list[tuple[str, str, bytes]] | None = None,
    message_id: str | None = None,
) -> str:
    """RFC 5322 message, base64url encoded for `messages.send`.

    `attachments` is a list of (filename, mime type, bytes). `message_id`
    is the Message-ID header, set by the caller so the sent copy can be
    recognised when history sync sees it.
    """
    if attachments:
        msg = MIMEMultipart("mixed")
        msg.attach(MIMEText(body, "plain", "utf-8"))
        for filename, mime, content in attachments:
            _, _, subtype = mime.partition("/")
            part = MIMEApplication(content, _subtype=subtype or "octet-stream")
            part.add_header("Content-Disposition", "attachment", filename=filename)
            msg.attach(part)
    else:
        msg = MIMEText(body, "plain", "utf-8")

    msg["From"] = from_address
    msg["To"] = to_address
    msg["Subject"] = subject
    if message_id:
        msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = " ".join(references)
    return base64.urlsafe_b64encode(msg.as_bytes()).decode()


class GmailClient:
    """Thin synchronous wrapper over the Gmail v1 REST API.

    Every call applies the configured provider timeout; errors raise
    ProviderError, and an unknown/expired startHistoryId raises
    HistoryExpiredError.
    """

    provider = "Gmail"

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.settings.PROVIDER_TIMEOUT_SECONDS, transport=self._transport)

    def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: str,
        params: dict | list | None = None,
        json: dict | None = None,
    ) -> dict:
        with self._client() as client:
            response = client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
                json=json,
            )
        if response.status_code >= 400:
            raise ProviderError(self.provider, response.status_code, _error_detail(response))
        result = response.json()
        if not isinstance(result, dict):
            raise ProviderError(self.provider, response.status_code, "response was not an object")
        return result

    def get_profile(self, *, access_token: str) -> dict:
        """emailAddress and the mailbox's current historyId."""
        return self._request("GET", _GMAIL_PROFILE_URL, access_token=access_token)

    def list_history(self, *, access_token: str, start_history_id: str, page_token: str | None) -> dict:
        params = {
            "startHistoryId": str(start_history_id),
            "historyTypes": "messageAdded",
            "maxResults": 500,
            **({"pageToken": page_token} if page_token else {}),
        }
        try:
            return self._request("GET", _GMAIL_HISTORY_URL, access_token=access_token, params=params)
        except ProviderError as exc:
            if exc.status_code == 404:
                raise HistoryExpiredError(self.provider, 404, exc.detail)
            raise

    def list_added_message_ids(self, *, access_token: str, start_history_id: str) -> tuple[list[str], int | None]:
        """
        All message ids added since `start_history_id`, in feed order,
        following nextPageToken until exhausted. Also returns the highest
        history id seen.
        """
        page_token: str | None = None
        seen: set[str] = set()
        ordered: list[str] = []
        highest: int | None = None

        while True:
            payload = self.list_history(
                access_token=access_token,
                start_history_id=start_history_id,
                page_token=page_token,
            )
            response_history_id = payload.get("historyId")
            if response_history_id:
                highest = max(highest or 0, int(response_history_id))

            for row in payload.get("history") or []:
                if row.get("id"):
                    highest = max(highest or 0, int(row["id"]))
                for item in row.get("messagesAdded") or []:
                    message_id = (item.get("message") or {}).get("id")
                    if not message_id or message_id in seen:
                        continue
                    seen.add(message_id)
                    ordered.append(str(message_id))

            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return ordered, highest

    def list_recent_message_ids(self, *, access_token: str, newer_than_days: int, max_results: int) -> list[str]:
        """Newest-first ids inside the recency window; one page, capped."""
        payload = self._request(
            "GET",
            _GMAIL_MESSAGES_LIST_URL,
            access_token=access_token,
            params={
                "q": f"newer_than:{int(newer_than_days)}d -in:chats",
                "maxResults": int(max_results),
            },
        )
        messages = payload.get("messages") or []
        return [str(item["id"]) for item in messages if item.get("id")][:max_results]

    def get_message_metadata(self, *, access_token: str, message_id: str) -> dict:
        params: list[tuple[str, str]] = [("format", "metadata")]
        params.extend(("metadataHeaders", header) for header in METADATA_HEADERS)
        return self._request(
            "GET",
            _GMAIL_MESSAGE_GET_URL.format(message_id=message_id),
            access_token=access_token,
            params=params,
        )

    def get_message_full(self, *, access_token: str, message_id: str) -> dict:
        return self._request(
            "GET",
            _GMAIL_MESSAGE_GET_URL.format(message_id=message_id),
            access_token=access_token,
            params={"format": "full"},
        )

    def watch(self, *, access_token: str, topic_name: str, label_ids: list[str] | None = None) -> dict:
        payload: dict[str, object] = {"topicName": topic_name}
        if label_ids:
            payload["labelIds"] = label_ids
            payload["labelFilterBehavior"] = "INCLUDE"
        return self._request("POST", _GMAIL_WATCH_URL, access_token=access_token, json=payload)

    def send_raw(self, *, access_token: str, raw: str, thread_id: str | None) -> dict:
        body: dict[str, object] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        return self._request("POST", _GMAIL_SEND_URL, access_token=access_token, json=body)
