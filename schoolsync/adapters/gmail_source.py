"""Gmail adapter — implements MailSource for the Gmail API.

All Gmail-specific logic lives here. The sync core never imports this
directly; it depends on the MailSource protocol. The Google client is
synchronous, so every API call runs in a worker thread via
asyncio.to_thread to keep the event loop responsive.
"""

from __future__ import annotations

import asyncio
import base64
import calendar
import logging
import re
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

from schoolsync.data.models import InboxMessage
from schoolsync.ports.mail_port import MailSourceError

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>?")
_WS_RE = re.compile(r"\s+")


def months_ago(today: date, months: int) -> date:
    """Same day-of-month `months` earlier, clamped to the month's length."""
    years, month_index = divmod(today.month - 1 - months, 12)
    year = today.year + years
    month = month_index + 1
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def build_query(terms: list[str], since: date) -> str:
    """OR-combine sender filters and bound by date: (from:a OR from:b) after:Y/M/D."""
    senders = " OR ".join(f"from:{t}" for t in terms)
    return f"({senders}) after:{since.strftime('%Y/%m/%d')}"


def _decode_body(data: str) -> str:
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError) as exc:
        logger.warning("Could not decode message body: %s", exc)
        return ""


def _strip_html(html: str) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()


def extract_body(payload: dict | None) -> str:
    """Best-effort plain text: direct body, text/plain part, text/html part, nested parts."""
    if not payload:
        return ""

    body = payload.get("body") or {}
    if body.get("data"):
        text = _decode_body(body["data"])
        return _strip_html(text) if payload.get("mimeType") == "text/html" else text

    parts = payload.get("parts") or []
    for mime in ("text/plain", "text/html"):
        for part in parts:
            data = (part.get("body") or {}).get("data")
            if part.get("mimeType") == mime and data:
                text = _decode_body(data)
                return _strip_html(text) if mime == "text/html" else text

    for part in parts:
        if part.get("parts"):
            nested = extract_body(part)
            if nested:
                return nested
    return ""


def _header(headers: list[dict], name: str) -> str | None:
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value")
    return None


def _received_at(date_header: str | None, internal_date: str | None) -> datetime:
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header %r", date_header)
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    return datetime.now(timezone.utc)


def parse_message(raw: dict) -> InboxMessage:
    """Normalize a Gmail `messages.get(format=full)` resource."""
    payload = raw.get("payload") or {}
    headers = payload.get("headers") or []
    snippet = raw.get("snippet") or ""
    return InboxMessage(
        raw_id=raw["id"],
        sender=_header(headers, "From") or "Unknown Sender",
        subject=_header(headers, "Subject") or "(No Subject)",
        received_at=_received_at(_header(headers, "Date"), raw.get("internalDate")),
        body_text=extract_body(payload) or snippet,
        preview=snippet,
    )


class GmailMailSource:
    """Gmail implementation of MailSource."""

    def __init__(
        self,
        service_factory: Callable[[], Any] | None = None,
        max_results: int = 50,
        today: Callable[[], date] = date.today,
    ) -> None:
        if service_factory is None:
            from schoolsync.integrations.google_auth import get_gmail_service
            service_factory = get_gmail_service
        self._service_factory = service_factory
        self._max_results = max_results
        self._today = today
        self._service = None

    def _get_service(self):
        if self._service is None:
            self._service = self._service_factory()
        return self._service

    async def search(self, query_terms: list[str], lookback_months: int) -> list[InboxMessage]:
        if not query_terms:
            return []
        query = build_query(query_terms, months_ago(self._today(), lookback_months))
        logger.info("Executing Gmail query: %s", query)

        try:
            service = await asyncio.to_thread(self._get_service)
            listing = await asyncio.to_thread(
                service.users().messages().list(
                    userId="me", q=query, maxResults=self._max_results,
                ).execute
            )
        except Exception as exc:
            raise MailSourceError(f"Gmail search failed: {exc}") from exc

        messages: list[InboxMessage] = []
        for ref in listing.get("messages", []) or []:
            try:
                raw = await asyncio.to_thread(
                    service.users().messages().get(
                        userId="me", id=ref["id"], format="full",
                    ).execute
                )
                messages.append(parse_message(raw))
            except Exception as exc:
                logger.warning("Failed to fetch message %s: %s", ref.get("id"), exc)
        return messages
