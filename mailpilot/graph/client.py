"""
Microsoft Graph mailbox adapter.

The pipeline's only view of the mailbox:
- list_unread: newest-first unread messages, parsed into InboundMessage
- mark_read / send_reply / send_mail: raise on failure, no internal retry
- get_owner_address: who the monitored mailbox belongs to

Every request goes through a RateLimiter so bursts of replies never trip
Graph's per-app throttling. The bearer token is supplied by the caller and
is never refreshed here; an expired token surfaces as MailProviderError
(or MailPermissionError on 403) for the processor to record.

Usage:
    from mailpilot.graph.client import GraphMailbox
    from mailpilot.graph.ratelimit import RateLimiter

    mailbox = GraphMailbox(access_token="eyJ...", rate_limiter=RateLimiter())
    messages = await mailbox.list_unread(limit=20)
    await mailbox.send_reply(messages[0].id, "Thanks, we got your message.")
    await mailbox.aclose()
"""

import logging
import time
from typing import Literal, Optional, Protocol

import httpx

from mailpilot.graph.ratelimit import RateLimiter
from mailpilot.logging.audit import audit, sender_domain
from mailpilot.pipeline.schemas import InboundMessage

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# Fields we request for inbox messages. Requesting only what we need keeps
# responses small.
MESSAGE_SELECT_FIELDS = (
    "id,subject,sender,from,body,bodyPreview,receivedDateTime,"
    "isRead,conversationId"
)

# Graph error codes that mean "this token may not do that".
ACCESS_DENIED_CODES = {"ErrorAccessDenied", "Authorization_RequestDenied"}


class MailProviderError(Exception):
    """A mailbox API call failed (network, timeout, or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class MailPermissionError(MailProviderError):
    """
    The credential lacks the scope for this call (HTTP 403 / ErrorAccessDenied).

    Retrying will not help; the mailbox owner has to reauthorize with
    Mail.Send (and Mail.ReadWrite for marking read).
    """


class MailProvider(Protocol):
    """What the pipeline needs from a mailbox."""

    async def list_unread(self, limit: int) -> list[InboundMessage]: ...

    async def mark_read(self, message_id: str) -> None: ...

    async def send_reply(self, message_id: str, body: str) -> None: ...

    async def send_mail(self, to_address: str, subject: str, body: str) -> None: ...

    async def get_owner_address(self) -> Optional[str]: ...


class GraphMailbox:
    """
    Microsoft Graph implementation of MailProvider.

    Expects a valid access token. Token acquisition and refresh belong to
    whoever configured the service, not to this adapter.
    """

    def __init__(
        self,
        access_token: str,
        rate_limiter: RateLimiter,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        unread_fallback: Literal["empty", "all"] = "empty",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base = base_url.rstrip("/")
        self._limiter = rate_limiter
        self._unread_fallback = unread_fallback
        self._http = httpx.AsyncClient(
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        """Close the HTTP client. Call when done."""
        await self._http.aclose()

    # =========================================================================
    # REQUEST PLUMBING
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Issue one rate-limited request and translate failures."""
        url = path if path.startswith("http") else f"{self._base}{path}"
        async with self._limiter.slot():
            try:
                resp = await self._http.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                raise MailProviderError(f"{method} {path} failed: {e}") from e

        if resp.is_success:
            return resp

        code = self._error_code(resp)
        message = f"{method} {path} returned HTTP {resp.status_code}" + (f" ({code})" if code else "")
        if resp.status_code == 403 or code in ACCESS_DENIED_CODES:
            raise MailPermissionError(message, status_code=resp.status_code, code=code)
        raise MailProviderError(message, status_code=resp.status_code, code=code)

    @staticmethod
    def _error_code(resp: httpx.Response) -> Optional[str]:
        try:
            error = resp.json().get("error") or {}
        except ValueError:
            return None
        return error.get("code") if isinstance(error, dict) else None

    # =========================================================================
    # CURRENT USER
    # =========================================================================

    async def get_owner_address(self) -> Optional[str]:
        """
        Address of the mailbox owner, from /me.

        Returns None if the profile can't be read (missing User.Read).
        """
        try:
            resp = await self._request(
                "GET", "/me", params={"$select": "displayName,mail,userPrincipalName"}
            )
        except MailProviderError as e:
            logger.warning(
                "graph.get_owner.failed",
                extra={"action": "graph.get_owner.failed", "error": str(e)},
            )
            return None
        data = resp.json()
        address = data.get("mail") or data.get("userPrincipalName")
        return address.lower() if address else None

    # =========================================================================
    # INBOX
    # =========================================================================

    async def list_unread(self, limit: int = 20) -> list[InboundMessage]:
        """
        Fetch up to `limit` recent messages, newest first, keeping unread ones.

        Read status is filtered client-side: Graph rejects $filter=isRead
        combined with $orderby=receivedDateTime as an inefficient filter.

        When nothing is unread, returns [] (unread_fallback="empty") or every
        fetched message (unread_fallback="all").
        """
        start = time.monotonic()
        resp = await self._request(
            "GET",
            "/me/messages",
            params={
                "$top": limit,
                "$orderby": "receivedDateTime desc",
                "$select": MESSAGE_SELECT_FIELDS,
            },
        )

        fetched = []
        for raw in resp.json().get("value", []):
            message = self._parse_message(raw)
            if message:
                fetched.append(message)

        unread = [m for m in fetched if not m.is_read]
        used_fallback = False
        if not unread and self._unread_fallback == "all":
            unread = fetched
            used_fallback = bool(fetched)

        audit.info(
            "graph.messages.listed",
            fetched=len(fetched),
            unread=len(unread),
            used_fallback=used_fallback,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return unread

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def mark_read(self, message_id: str) -> None:
        """Mark a message as read. Idempotent on the Graph side."""
        await self._request("PATCH", f"/me/messages/{message_id}", json={"isRead": True})
        audit.info("graph.message.marked_read", message_id=message_id)

    async def send_reply(self, message_id: str, body: str) -> None:
        """
        Reply to the sender of `message_id` in the same thread.

        The caller guarantees this is invoked at most once per message.
        Raises MailPermissionError when the token lacks Mail.Send.
        """
        await self._request(
            "POST", f"/me/messages/{message_id}/reply", json={"comment": body}
        )
        audit.info("graph.reply.sent", message_id=message_id)

    async def send_mail(self, to_address: str, subject: str, body: str) -> None:
        """Send a new plain-text message."""
        message = {
            "message": {
                "subject": subject,
                "body": {"contentType": "Text", "content": body},
                "toRecipients": [{"emailAddress": {"address": to_address}}],
            },
            "saveToSentItems": True,
        }
        await self._request("POST", "/me/sendMail", json=message)
        audit.info("graph.mail.sent", recipient_domain=sender_domain(to_address))

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    @staticmethod
    def _parse_message(msg: dict) -> Optional[InboundMessage]:
        """
        Parse a raw Graph message dict into an InboundMessage.

        Defensive: malformed fields fall back to defaults so one bad message
        can't break the whole listing. Returns None only if the message has
        no usable id.
        """
        try:
            message_id = msg.get("id")
            if not message_id:
                return None

            # "from" is the author; "sender" can be a delegate. Prefer "from".
            sender_obj = msg.get("from") or msg.get("sender") or {}
            email_addr = sender_obj.get("emailAddress") or {} if isinstance(sender_obj, dict) else {}
            if not isinstance(email_addr, dict):
                email_addr = {}
            sender_address = str(email_addr.get("address") or "").strip()
            sender_name = str(email_addr.get("name") or sender_address or "Unknown")

            body_obj = msg.get("body") or {}
            content = str(body_obj.get("content") or "") if isinstance(body_obj, dict) else ""
            content_type = str(body_obj.get("contentType") or "").lower() if isinstance(body_obj, dict) else ""
            preview = str(msg.get("bodyPreview") or "")
            body = content if content_type == "text" and content else preview

            return InboundMessage(
                id=str(message_id),
                subject=str(msg.get("subject") or "No Subject"),
                sender_address=sender_address,
                sender_name=sender_name,
                body=body,
                body_preview=preview,
                received_at=msg.get("receivedDateTime") or None,
                is_read=bool(msg.get("isRead", False)),
                conversation_id=str(msg.get("conversationId") or ""),
            )
        except Exception as e:
            logger.error(
                "graph.parse_message.failed",
                extra={
                    "action": "graph.parse_message.failed",
                    "error": str(e),
                    "msg_id": msg.get("id", "unknown") if isinstance(msg, dict) else "unknown",
                },
            )
            return None
