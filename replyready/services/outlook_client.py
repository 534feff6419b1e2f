"""Microsoft Graph mail client (delta sync, reply send, subscriptions)."""

from __future__ import annotations

import base64
import logging
from datetime import datetime

import httpx

from replyready.core.config import Settings
from replyready.core.exceptions import HistoryExpiredError, ProviderError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
_INBOX_DELTA_URL = f"{GRAPH_BASE_URL}/me/mailFolders/inbox/messages/delta"
_INBOX_MESSAGES_URL = f"{GRAPH_BASE_URL}/me/mailFolders/inbox/messages"
_MESSAGE_URL = f"{GRAPH_BASE_URL}/me/messages/{{message_id}}"
_ME_URL = f"{GRAPH_BASE_URL}/me"
_SUBSCRIPTIONS_URL = f"{GRAPH_BASE_URL}/subscriptions"

MESSAGE_SELECT = ",".join(
    [
        "id",
        "conversationId",
        "subject",
        "from",
        "toRecipients",
        "replyTo",
        "receivedDateTime",
        "bodyPreview",
        "body",
        "internetMessageId",
        "internetMessageHeaders",
    ]
)

_GONE_CODES = {"syncstatenotfound", "syncstateinvalid", "resyncrequired"}


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class OutlookClient:
    """Synchronous Graph wrapper; raises ProviderError / HistoryExpiredError."""

    provider = "Outlook"

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
        params: dict | None = None,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> dict:
        request_headers = {"Authorization": f"Bearer {access_token}", **(headers or {})}
        with self._client() as client:
            response = client.request(method, url, headers=request_headers, params=params, json=json)
        if response.status_code >= 400:
            code = None
            detail = None
            try:
                error = response.json().get("error", {})
                code = error.get("code")
                detail = error.get("message")
            except (ValueError, AttributeError):
                detail = response.text or None
            if response.status_code == 410 or str(code or "").lower() in _GONE_CODES:
                raise HistoryExpiredError(self.provider, response.status_code, detail, code=code)
            raise ProviderError(self.provider, response.status_code, detail, code=code)
        if response.status_code in (202, 204) or not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_me(self, *, access_token: str) -> dict:
        return self._request(
            "GET", _ME_URL, access_token=access_token, params={"$select": "mail,userPrincipalName"}
        )

    def list_delta(
        self,
        *,
        access_token: str,
        delta_link: str | None = None,
        since: datetime | None = None,
    ) -> tuple[list[str], str | None]:
        """
        Follow a delta round to its end. Returns (added message ids,
        new delta link). Without a delta link, starts a round filtered to
        messages received at/after `since`.
        """
        url = delta_link
        params: dict | None = None
        if not url:
            url = _INBOX_DELTA_URL
            params = {"$select": "id"}
            if since is not None:
                params["$filter"] = f"receivedDateTime ge {_iso(since)}"

        message_ids: list[str] = []
        seen: set[str] = set()
        new_delta_link: str | None = None
        while url:
            payload = self._request(
                "GET",
                url,
                access_token=access_token,
                params=params,
                headers={"Prefer": "odata.maxpagesize=100"},
            )
            params = None
            for item in payload.get("value") or []:
                message_id = item.get("id")
                if not message_id or "@removed" in item or message_id in seen:
                    continue
                seen.add(message_id)
                message_ids.append(str(message_id))
            url = payload.get("@odata.nextLink")
            new_delta_link = payload.get("@odata.deltaLink") or new_delta_link
        return message_ids, new_delta_link

    def list_recent_message_ids(self, *, access_token: str, since: datetime, max_results: int) -> list[str]:
        payload = self._request(
            "GET",
            _INBOX_MESSAGES_URL,
            access_token=access_token,
            params={
                "$filter": f"receivedDateTime ge {_iso(since)}",
                "$orderby": "receivedDateTime desc",
                "$top": int(max_results),
                "$select": "id",
            },
        )
        return [str(item["id"]) for item in payload.get("value") or [] if item.get("id")][:max_results]

    def get_message(self, *, access_token: str, message_id: str) -> dict:
        return self._request(
            "GET",
            _MESSAGE_URL.format(message_id=message_id),
            access_token=access_token,
            params={"$select": MESSAGE_SELECT},
            headers={"Prefer": 'outlook.body-content-type="text"'},
        )

    # ------------------------------------------------------------------
    # Reply send: createReply -> PATCH -> attachments -> send
    # ------------------------------------------------------------------

    def create_reply(self, *, access_token: str, anchor_message_id: str) -> dict:
        return self._request(
            "POST",
            f"{_MESSAGE_URL.format(message_id=anchor_message_id)}/createReply",
            access_token=access_token,
            json={},
        )

    def update_draft(self, *, access_token: str, draft_id: str, body_text: str, to_address: str) -> dict:
        return self._request(
            "PATCH",
            _MESSAGE_URL.format(message_id=draft_id),
            access_token=access_token,
            json={
                "body": {"contentType": "Text", "content": body_text},
                "toRecipients": [{"emailAddress": {"address": to_address}}],
            },
        )

    def add_attachment(
        self, *, access_token: str, draft_id: str, filename: str, mime: str, content: bytes
    ) -> dict:
        return self._request(
            "POST",
            f"{_MESSAGE_URL.format(message_id=draft_id)}/attachments",
            access_token=access_token,
            json={
                "@odata.type": "#microsoft.graph.fileAttachment",
                "name": filename,
                "contentType": mime,
                "contentBytes": base64.b64encode(content).decode("ascii"),
            },
        )

    def send_draft(self, *, access_token: str, draft_id: str) -> None:
        self._request("POST", f"{_MESSAGE_URL.format(message_id=draft_id)}/send", access_token=access_token)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def create_subscription(self, *, access_token: str, expires_at: datetime) -> dict:
        return self._request(
            "POST",
            _SUBSCRIPTIONS_URL,
            access_token=access_token,
            json={
                "changeType": "created",
                "notificationUrl": self.settings.OUTLOOK_NOTIFICATION_URL,
                "resource": "me/mailFolders('Inbox')/messages",
                "expirationDateTime": _iso(expires_at),
                "clientState": self.settings.OUTLOOK_CLIENT_STATE,
            },
        )

    def renew_subscription(self, *, access_token: str, subscription_id: str, expires_at: datetime) -> dict:
        return self._request(
            "PATCH",
            f"{_SUBSCRIPTIONS_URL}/{subscription_id}",
            access_token=access_token,
            json={"expirationDateTime": _iso(expires_at)},
        )
