"""Helpers for parsing full Gmail messages into internal models.

Only the message ID, thread ID and sender address are mandatory; everything
else degrades to an absent value (or, for the date, a fallback) so that one
odd header never fails a sync.
"""

from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import structlog
from pydantic import ValidationError

from ideabox.exceptions import ParseError
from ideabox.gmail.payload import RawHeader, RawMessage, RawMessagePart
from ideabox.models import MessageRecord, ParsedMessage

logger = structlog.get_logger()

DEFAULT_MAX_BODY_CHARS = 16000

UNREAD_LABEL = "UNREAD"
STARRED_LABEL = "STARRED"

_NAME_ANGLE_RE = re.compile(r"^(.+?)\s*<([^>]+)>$")
_ANGLE_ONLY_RE = re.compile(r"^<([^>]+)>$")
_ADDR_PAREN_RE = re.compile(r"^(\S+)\s*\((.+)\)$")


def truncation_marker(removed: int) -> str:
    """Return the text inserted in place of ``removed`` elided characters."""

    return f"\n\n[...content truncated for AI processing ({removed} chars removed)...]\n\n"


def truncate_body(body: str, max_chars: int) -> str:
    """Keep the start and the end of a long body, eliding the middle.

    The head keeps ``max_chars - max_chars // 2`` characters and the tail
    ``max_chars // 2``, so at odd budgets the head gets the extra character
    and the kept text is always exactly ``max_chars`` long.
    """

    if len(body) <= max_chars:
        return body

    tail_len = max_chars // 2
    head_len = max_chars - tail_len
    head = body[:head_len]
    tail = body[len(body) - tail_len :]
    return f"{head}{truncation_marker(len(body) - max_chars)}{tail}"


def get_header(headers: list[RawHeader], name: str) -> str | None:
    """Case-insensitive header lookup; the first match wins."""

    wanted = name.lower()
    for header in headers:
        if header.name.lower() == wanted:
            return header.value or None
    return None


def parse_address(value: str | None) -> tuple[str | None, str | None]:
    """Split an address header into ``(email, display_name)``.

    Recognised forms, in order: ``"Name" <addr>``, ``<addr>``,
    ``addr (Name)`` and a bare address.
    """

    if not value:
        return None, None

    trimmed = value.strip()

    match = _NAME_ANGLE_RE.match(trimmed)
    if match:
        name = match.group(1).strip()
        if len(name) >= 2 and name.startswith('"') and name.endswith('"'):
            name = name[1:-1]
        return match.group(2).strip().lower(), name or None

    match = _ANGLE_ONLY_RE.match(trimmed)
    if match:
        return match.group(1).strip().lower(), None

    match = _ADDR_PAREN_RE.match(trimmed)
    if match:
        return match.group(1).strip().lower(), match.group(2).strip() or None

    if "@" in trimmed:
        return trimmed.lower(), None

    logger.warning("email_address_unparseable", header=value)
    return None, None


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    iso = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return iso.replace("+00:00", "Z")


def _parse_date_header(value: str) -> datetime | None:
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        pass
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        return None


def resolve_date(date_header: str | None, internal_date: str | None) -> str:
    """Best-effort message date: Date header, then internalDate, then now."""

    if date_header:
        parsed = _parse_date_header(date_header)
        if parsed is not None:
            return _to_iso(parsed)
        logger.debug("date_header_unparseable", date_header=date_header)

    if internal_date:
        try:
            timestamp_ms = int(internal_date)
            return _to_iso(datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc))
        except (TypeError, ValueError, OverflowError, OSError):
            logger.warning("internal_date_unparseable", internal_date=internal_date)

    logger.warning("message_date_defaulted_to_now")
    return _to_iso(datetime.now(timezone.utc))


def decode_base64url(data: str) -> str | None:
    """Decode Gmail's URL-safe base64 body data; ``None`` when it is not decodable."""

    if not data:
        return None
    try:
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError) as exc:
        logger.warning("body_decode_failed", error=str(exc))
        return None
    return raw.decode("utf-8", errors="replace")


def extract_bodies(
    part: RawMessagePart | None,
    found: tuple[str | None, str | None] = (None, None),
) -> tuple[str | None, str | None]:
    """Walk the MIME tree and return the first ``(text/plain, text/html)`` bodies."""

    if part is None:
        return found

    text, html = found
    mime_type = (part.mime_type or "").lower()
    data = part.body.data if part.body else None

    if data:
        if mime_type == "text/plain" and not text:
            text = decode_base64url(data)
        elif mime_type == "text/html" and not html:
            html = decode_base64url(data)

    for sub_part in part.parts:
        if text and html:
            break
        text, html = extract_bodies(sub_part, (text, html))

    return text, html


def _narrow(raw: RawMessage | dict[str, Any]) -> RawMessage:
    if isinstance(raw, RawMessage):
        message = raw
    else:
        try:
            message = RawMessage.model_validate(raw)
        except ValidationError as exc:
            message_id = raw.get("id") if isinstance(raw, dict) else None
            locations = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
            if "id" in locations:
                field = "id"
            elif "threadId" in locations:
                field = "thread_id"
            else:
                field = "payload"
            raise ParseError(
                f"Message has an invalid {field}: {exc.error_count()} validation error(s)",
                field=field,
                message_id=message_id if isinstance(message_id, str) else None,
            ) from exc

    if not message.id:
        raise ParseError("Message missing required field id", field="id")
    if not message.thread_id:
        raise ParseError(
            "Message missing required field threadId", field="thread_id", message_id=message.id
        )
    return message


def parse_message(
    raw: RawMessage | dict[str, Any],
    max_body_chars: int = DEFAULT_MAX_BODY_CHARS,
) -> ParsedMessage:
    """Convert a Gmail API message (format=full) into a ``ParsedMessage``.

    Args:
        raw: Gmail API message dict (or an already validated ``RawMessage``).
        max_body_chars: Cap applied to the plain-text body.

    Returns:
        ParsedMessage: Normalized, immutable message.

    Raises:
        ParseError: If the message ID, thread ID or sender address is missing.
    """

    message = _narrow(raw)
    headers = message.payload.headers if message.payload else []

    sender_email, sender_name = parse_address(get_header(headers, "From"))
    if not sender_email:
        raise ParseError(
            "Could not extract sender email from message",
            field="sender_email",
            message_id=message.id,
        )

    recipient_email, _ = parse_address(get_header(headers, "To"))

    body_text, body_html = extract_bodies(message.payload)
    if body_text and len(body_text) > max_body_chars:
        logger.debug(
            "body_text_truncated",
            message_id=message.id,
            original_length=len(body_text),
            max_chars=max_body_chars,
        )
        body_text = truncate_body(body_text, max_body_chars)

    labels = frozenset(message.label_ids)

    return ParsedMessage(
        gmail_id=message.id,
        thread_id=message.thread_id,
        subject=get_header(headers, "Subject"),
        sender_email=sender_email,
        sender_name=sender_name,
        recipient_email=recipient_email,
        date=resolve_date(get_header(headers, "Date"), message.internal_date),
        snippet=message.snippet or None,
        body_text=body_text or None,
        body_html=body_html or None,
        labels=labels,
        is_read=UNREAD_LABEL not in labels,
        is_starred=STARRED_LABEL in labels,
        history_id=message.history_id,
    )


def to_insert_record(parsed: ParsedMessage, user_id: str, account_id: str) -> MessageRecord:
    """Attach ownership to a parsed message, producing a storage row."""

    return MessageRecord(
        user_id=user_id,
        account_id=account_id,
        gmail_id=parsed.gmail_id,
        thread_id=parsed.thread_id,
        subject=parsed.subject,
        sender_email=parsed.sender_email,
        sender_name=parsed.sender_name,
        recipient_email=parsed.recipient_email,
        date=parsed.date,
        snippet=parsed.snippet,
        body_text=parsed.body_text,
        body_html=parsed.body_html,
        labels=sorted(parsed.labels),
        is_read=parsed.is_read,
        is_starred=parsed.is_starred,
    )


class EmailParser:
    """Parser bound to a body cap, used by the sync pipeline."""

    def __init__(self, max_body_chars: int = DEFAULT_MAX_BODY_CHARS) -> None:
        self.max_body_chars = max_body_chars

    def parse(self, raw: RawMessage | dict[str, Any]) -> ParsedMessage:
        return parse_message(raw, self.max_body_chars)

    def to_insert_record(self, parsed: ParsedMessage, user_id: str, account_id: str) -> MessageRecord:
        return to_insert_record(parsed, user_id, account_id)
