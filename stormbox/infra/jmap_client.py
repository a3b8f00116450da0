import logging
import os
import threading
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from urllib.parse import quote

import requests

from stormbox.constants import (
    EMAIL_DETAIL_PROPERTIES,
    EMAIL_SUMMARY_PROPERTIES,
    HTTP_CONNECT_TIMEOUT_SEC,
    HTTP_GET_RETRIES,
    HTTP_MAX_RETRY_AFTER_SEC,
    HTTP_RATE_LIMIT_RETRIES,
    HTTP_READ_TIMEOUT_SEC,
    JMAP_MAIL_CAPABILITY,
    JMAP_SESSION_PATH,
    JMAP_USING,
    MAILBOX_PROPERTIES,
    SEEN_KEYWORD,
)
from stormbox.domain.helpers import display_name
from stormbox.domain.models import (
    Attachment,
    EmailSummary,
    Mailbox,
    MessageBody,
    QueryChanges,
    QueryPage,
)
from stormbox.errors import (
    AuthError,
    ProtocolMethodError,
    RemoteMutationError,
    StaleCursorError,
    TransportError,
)

logger = logging.getLogger(__name__)

SET_FAILURE_KEYS = ("notCreated", "notUpdated", "notDestroyed", "notSubmitted")
STALE_CURSOR_ERRORS = ("cannotCalculateChanges", "tooManyChanges")


def extract_method_errors(method_responses):
    """Describe every per-item failure reported inside JMAP method responses."""
    issues = []
    for response in method_responses or []:
        if not isinstance(response, list) or len(response) < 2:
            continue
        name, payload = response[0], response[1]
        if not isinstance(payload, dict):
            continue
        for key in SET_FAILURE_KEYS:
            for item_id, err in (payload.get(key) or {}).items():
                err = err or {}
                issues.append(
                    f"{name}/{key}/{item_id}: {err.get('type') or 'error'} - "
                    f"{err.get('description') or 'unknown'}"
                )
    return issues


class JmapClient:
    """JMAP mail client over a shared requests session (basic or bearer auth)."""

    def __init__(
        self,
        base_url,
        username=None,
        password=None,
        token_provider=None,
        request_timeout=(HTTP_CONNECT_TIMEOUT_SEC, HTTP_READ_TIMEOUT_SEC),
        get_retries=HTTP_GET_RETRIES,
        rate_limit_retries=HTTP_RATE_LIMIT_RETRIES,
        max_retry_after_sec=HTTP_MAX_RETRY_AFTER_SEC,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.username = username
        self.password = password
        self.token_provider = token_provider
        self.request_timeout = request_timeout
        self.get_retries = max(0, int(get_retries or 0))
        self.rate_limit_retries = max(0, int(rate_limit_retries or 0))
        self.max_retry_after_sec = max(1, int(max_retry_after_sec or 1))
        self.access_token = None
        self.api_url = None
        self.download_url = None
        self.account_id = None
        self.role_ids = {}
        self.session = requests.Session()
        self._session_lock = threading.Lock()

    def _auth(self):
        if self.token_provider is None and self.username:
            return (self.username, self.password or "")
        return None

    def _headers(self):
        headers = {"Accept": "application/json"}
        if self.token_provider is not None:
            if self.access_token is None:
                self.access_token = self.token_provider()
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _refresh_token(self):
        if self.token_provider is None:
            return False
        self.access_token = self.token_provider()
        return bool(self.access_token)

    @staticmethod
    def _retry_after_to_seconds(raw_value):
        text = str(raw_value or "").strip()
        if not text:
            return 1
        try:
            return max(0, int(text))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, OverflowError):
                return 1
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return max(0, int(parsed.timestamp() - time.time()))

    def _sleep_for_retry_after(self, response):
        headers = getattr(response, "headers", {}) or {}
        retry_after = headers.get("Retry-After") if hasattr(headers, "get") else None
        delay = min(self.max_retry_after_sec, self._retry_after_to_seconds(retry_after))
        time.sleep(delay)

    @staticmethod
    def _json_or_error(response, endpoint):
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(f"Invalid JSON response from JMAP endpoint: {endpoint}") from exc
        if not isinstance(payload, dict):
            raise TransportError(f"Unexpected JSON shape from JMAP endpoint: {endpoint}")
        return payload

    def _request(self, method, url, json_body=None, stream=False):
        auth_retried = False
        transport_retries = self.get_retries if method.upper() == "GET" else 0
        rate_limit_attempt = 0
        attempt = 0

        while True:
            session = self.session
            if session is None:
                raise TransportError("Client is closed.")
            try:
                with self._session_lock:
                    resp = session.request(
                        method,
                        url,
                        headers=self._headers(),
                        auth=self._auth(),
                        json=json_body,
                        timeout=self.request_timeout,
                        stream=stream,
                    )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                if attempt >= transport_retries:
                    raise TransportError(f"{method} {url} failed: {exc}") from exc
                attempt += 1
                continue
            except requests.RequestException as exc:
                raise TransportError(f"{method} {url} failed: {exc}") from exc

            if resp.status_code == 401:
                if not auth_retried and self._refresh_token():
                    auth_retried = True
                    continue
                raise AuthError("The server rejected the supplied credentials.")

            if resp.status_code == 429 and rate_limit_attempt < self.rate_limit_retries:
                rate_limit_attempt += 1
                self._sleep_for_retry_after(resp)
                continue

            try:
                resp.raise_for_status()
            except requests.HTTPError as exc:
                raise TransportError(f"{method} {url} failed: {exc}") from exc
            return resp

    def fetch_session(self):
        """Load the JMAP session resource: api/download urls and the mail account."""
        url = f"{self.base_url}{JMAP_SESSION_PATH}"
        data = self._json_or_error(self._request("GET", url), url)
        self.api_url = data.get("apiUrl")
        self.download_url = data.get("downloadUrl")
        accounts = data.get("primaryAccounts") or {}
        self.account_id = accounts.get(JMAP_MAIL_CAPABILITY)
        if not (self.api_url and self.account_id):
            raise TransportError("JMAP session is missing apiUrl or a mail account.")
        return data

    def _call(self, method_calls):
        if not self.api_url:
            self.fetch_session()
        body = {"using": JMAP_USING, "methodCalls": method_calls}
        data = self._json_or_error(self._request("POST", self.api_url, json_body=body), self.api_url)
        responses = data.get("methodResponses")
        if not isinstance(responses, list):
            raise TransportError("Malformed JMAP payload: expected list in 'methodResponses'.")
        for response in responses:
            if isinstance(response, list) and response and response[0] == "error":
                err = response[1] if len(response) > 1 and isinstance(response[1], dict) else {}
                err_type = err.get("type") or "serverFail"
                message = f"JMAP method error: {err_type} - {err.get('description') or 'unknown'}"
                if err_type in STALE_CURSOR_ERRORS:
                    raise StaleCursorError(message)
                raise ProtocolMethodError(message, [message])
        return responses

    @staticmethod
    def _first_payload(responses):
        payload = responses[0][1] if responses and len(responses[0]) > 1 else None
        if not isinstance(payload, dict):
            raise TransportError("Malformed JMAP payload: expected an object response.")
        return payload

    def list_mailboxes(self):
        responses = self._call(
            [["Mailbox/get", {"accountId": self.account_id, "ids": None, "properties": MAILBOX_PROPERTIES}, "0"]]
        )
        items = self._first_payload(responses).get("list") or []
        mailboxes = [Mailbox.from_jmap(item) for item in items if isinstance(item, dict)]
        self.role_ids = {box.role.lower(): box.id for box in mailboxes if box.role}
        if "trash" not in self.role_ids:
            # servers without roles still name their trash folder
            for box in mailboxes:
                if display_name(box) == "Trash":
                    self.role_ids["trash"] = box.id
                    break
        return mailboxes

    def query_messages(self, mailbox_id, position, limit, sort_property):
        args = {
            "accountId": self.account_id,
            "filter": {"inMailbox": mailbox_id},
            "sort": [{"property": sort_property, "isAscending": False}],
            "position": position,
            "limit": limit,
            "calculateTotal": True,
        }
        payload = self._first_payload(self._call([["Email/query", args, "0"]]))
        ids = payload.get("ids") or []
        total = payload.get("total")
        server_position = payload.get("position")
        return QueryPage(
            ids=tuple(ids),
            position=server_position if isinstance(server_position, int) else position,
            total=total if isinstance(total, int) else None,
            query_state=payload.get("queryState"),
        )

    def get_messages(self, ids, properties=None):
        if not ids:
            return []
        args = {
            "accountId": self.account_id,
            "ids": list(ids),
            "properties": list(properties or EMAIL_SUMMARY_PROPERTIES),
        }
        items = self._first_payload(self._call([["Email/get", args, "0"]])).get("list") or []
        return [EmailSummary.from_jmap(item) for item in items if isinstance(item, dict)]

    def query_message_changes(self, mailbox_id, since_query_state, sort_property):
        args = {
            "accountId": self.account_id,
            "filter": {"inMailbox": mailbox_id},
            "sort": [{"property": sort_property, "isAscending": False}],
            "sinceQueryState": since_query_state,
            "calculateTotal": True,
        }
        try:
            payload = self._first_payload(self._call([["Email/queryChanges", args, "0"]]))
        except (StaleCursorError, ProtocolMethodError) as exc:
            return QueryChanges(error=str(exc))
        added = tuple(
            (item.get("id"), item.get("index"))
            for item in payload.get("added") or []
            if isinstance(item, dict) and item.get("id")
        )
        total = payload.get("total")
        return QueryChanges(
            added=added,
            removed=tuple(payload.get("removed") or ()),
            new_query_state=payload.get("newQueryState"),
            total=total if isinstance(total, int) else None,
        )

    def get_message_detail(self, message_id):
        args = {
            "accountId": self.account_id,
            "ids": [message_id],
            "properties": EMAIL_DETAIL_PROPERTIES,
            "fetchHTMLBodyValues": True,
            "fetchTextBodyValues": True,
        }
        items = self._first_payload(self._call([["Email/get", args, "0"]])).get("list") or []
        if not items:
            raise ProtocolMethodError(f"Message not found: {message_id}")
        return parse_message_body(items[0])

    def _set_email(self, args, failure_label):
        responses = self._call([["Email/set", {"accountId": self.account_id, **args}, "0"]])
        issues = extract_method_errors(responses)
        if issues:
            raise RemoteMutationError(f"{failure_label}: {issues[0]}", issues)

    def set_seen_flag(self, message_id, seen=True):
        value = True if seen else None
        self._set_email({"update": {message_id: {f"keywords/{SEEN_KEYWORD}": value}}}, "Seen flag not updated")

    def move_or_destroy_message(self, message_id, source_mailbox_id):
        """Move to trash, or destroy when the message already lives in trash.

        Without a known trash folder nothing is destroyed.
        """
        trash_id = self.role_ids.get("trash")
        if not trash_id:
            raise RemoteMutationError("Message not moved: no trash folder found", ["no trash folder"])
        if source_mailbox_id == trash_id:
            self._set_email({"destroy": [message_id]}, "Message not destroyed")
            return
        self._set_email({"update": {message_id: {"mailboxIds": {trash_id: True}}}}, "Message not moved")

    def make_download_url(self, blob_id, name, mime_type="application/octet-stream"):
        if not self.download_url:
            raise TransportError("JMAP session has no download url.")
        return (
            self.download_url.replace("{accountId}", quote(self.account_id or "", safe=""))
            .replace("{blobId}", quote(blob_id, safe=""))
            .replace("{name}", quote(name or "download", safe=""))
            .replace("{type}", quote(mime_type or "application/octet-stream", safe=""))
        )

    def download_blob(self, blob_id, name, mime_type="application/octet-stream"):
        url = self.make_download_url(blob_id, name, mime_type)
        return self._request("GET", url).content or b""

    def download_attachment(self, blob_id, name, mime_type, target_dir):
        os.makedirs(target_dir, exist_ok=True)
        safe_name = os.path.basename(name or "") or "attachment"
        path = os.path.join(target_dir, safe_name)
        with open(path, "wb") as f:
            f.write(self.download_blob(blob_id, safe_name, mime_type))
        return path

    def cancel_all_requests(self):
        """Drop the shared session so queued requests start on a fresh one."""
        old = self.session
        self.session = requests.Session()
        if old is not None:
            old.close()

    def close(self):
        session = self.session
        if session is not None:
            session.close()
            self.session = None


def _body_text(parts, body_values, mime_type):
    chunks = []
    for part in parts or []:
        if not isinstance(part, dict):
            continue
        if (part.get("type") or "").lower() != mime_type:
            continue
        value = (body_values.get(part.get("partId")) or {}).get("value")
        if value:
            chunks.append(value)
    return "".join(chunks)


def parse_message_body(item):
    body_values = item.get("bodyValues") or {}
    attachments = []
    cid_map = {}
    for part in item.get("attachments") or []:
        if not isinstance(part, dict) or not part.get("blobId"):
            continue
        cid = (part.get("cid") or "").strip("<> ") or None
        attachment = Attachment(
            blob_id=part["blobId"],
            name=part.get("name") or "attachment",
            type=part.get("type") or "application/octet-stream",
            size=int(part.get("size") or 0),
            cid=cid,
            disposition=part.get("disposition"),
        )
        attachments.append(attachment)
        if cid:
            cid_map[cid] = attachment.blob_id
    return MessageBody(
        html=_body_text(item.get("htmlBody"), body_values, "text/html"),
        text=_body_text(item.get("textBody"), body_values, "text/plain"),
        attachments=tuple(attachments),
        cid_map=cid_map,
    )


__all__ = ["JmapClient", "extract_method_errors", "parse_message_body"]
