"""Normalized message models.

``ParsedMessage`` is what the parser produces for one inbound Gmail message.
It is immutable; the sync pipeline converts it into a ``MessageRecord`` and
hands it straight to the message store.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ParsedMessage(BaseModel):
    """A Gmail message normalized for storage."""

    model_config = ConfigDict(frozen=True)

    gmail_id: str = Field(description="Gmail message ID, unique per mailbox")
    thread_id: str = Field(description="Gmail thread ID")
    subject: str | None = Field(default=None, description="Subject header")
    sender_email: str = Field(description="Parsed sender address (lower-cased)")
    sender_name: str | None = Field(default=None, description="Sender display name")
    recipient_email: str | None = Field(default=None, description="Parsed To address")
    date: str = Field(description="Message date as an ISO-8601 UTC timestamp")
    snippet: str | None = Field(default=None, description="Gmail preview snippet")
    body_text: str | None = Field(
        default=None, description="Plain-text body, truncated to the configured cap"
    )
    body_html: str | None = Field(default=None, description="HTML body, never truncated")
    labels: frozenset[str] = Field(default_factory=frozenset, description="Gmail label IDs")
    is_read: bool = Field(default=True, description="False when the UNREAD label is present")
    is_starred: bool = Field(default=False, description="True when the STARRED label is present")
    history_id: str | None = Field(
        default=None, description="Gmail history ID used to advance the sync cursor"
    )


class MessageRecord(BaseModel):
    """A row for the messages table, scoped to its owner and account."""

    user_id: str
    account_id: str
    gmail_id: str
    thread_id: str
    subject: str | None = None
    sender_email: str
    sender_name: str | None = None
    recipient_email: str | None = None
    date: str
    snippet: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    labels: list[str] = Field(default_factory=list)
    is_read: bool = True
    is_starred: bool = False


class StoredMessage(MessageRecord):
    """A persisted message as read back for analysis."""

    id: int = Field(description="Store-assigned row ID")
