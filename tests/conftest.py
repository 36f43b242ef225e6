"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest

TEST_API_KEY = "sk-test-" + "a" * 40


def encode_body(text: str) -> str:
    """Encode text the way Gmail encodes body data (URL-safe base64, no padding)."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_gmail_message(
    message_id: str,
    *,
    history_id: str | None = "1000",
    sender: str = "Jane Doe <Jane@Example.com>",
    subject: str = "Hello",
    body: str = "Plain body",
    labels: list[str] | None = None,
) -> dict[str, Any]:
    """Build a format=full Gmail message with a multipart/alternative payload."""
    message: dict[str, Any] = {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "snippet": f"Snippet of {message_id}",
        "internalDate": "1704103200000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "me@example.com"},
                {"name": "Subject", "value": subject},
                {"name": "Date", "value": "Mon, 1 Jan 2024 10:00:00 +0000"},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": encode_body(body)}},
                {"mimeType": "text/html", "body": {"data": encode_body(f"<p>{body}</p>")}},
            ],
        },
    }
    if history_id is not None:
        message["historyId"] = history_id
    return message


class _Request:
    def __init__(self, fn: Any) -> None:
        self._fn = fn

    def execute(self) -> Any:
        return self._fn()


class FakeGmailService:
    """In-memory stand-in for the googleapiclient Gmail v1 resource."""

    def __init__(
        self,
        messages: list[dict[str, Any]] | None = None,
        *,
        get_errors: dict[str, list[Exception]] | None = None,
        list_errors: list[Exception] | None = None,
        email: str = "me@example.com",
    ) -> None:
        self.by_id = {m["id"]: m for m in messages or []}
        self.order = [m["id"] for m in messages or []]
        self.get_errors = get_errors or {}
        self.list_errors = list(list_errors or [])
        self.email = email
        self.list_calls: list[dict[str, Any]] = []
        self.get_calls: list[str] = []

    def users(self) -> FakeGmailService:
        return self

    def messages(self) -> FakeGmailService:
        return self

    def list(self, **kwargs: Any) -> _Request:
        self.list_calls.append(kwargs)

        def run() -> dict[str, Any]:
            if self.list_errors:
                raise self.list_errors.pop(0)
            ids = self.order[: kwargs["maxResults"]]
            return {"messages": [{"id": i, "threadId": f"thread-{i}"} for i in ids]}

        return _Request(run)

    def get(self, **kwargs: Any) -> _Request:
        message_id = kwargs["id"]

        def run() -> dict[str, Any]:
            self.get_calls.append(message_id)
            errors = self.get_errors.get(message_id)
            if errors:
                raise errors.pop(0)
            return self.by_id[message_id]

        return _Request(run)

    def getProfile(self, **kwargs: Any) -> _Request:  # noqa: N802
        return _Request(lambda: {"emailAddress": self.email, "historyId": "1"})


class FakeHttpResponse(dict):
    """Mimics httplib2.Response: a dict of lower-cased headers with a status."""

    def __init__(self, status: int, headers: dict[str, str] | None = None) -> None:
        super().__init__(headers or {})
        self.status = status
        self.reason = "error"


def http_error(status: int, headers: dict[str, str] | None = None) -> Exception:
    """Build a real googleapiclient HttpError with the given status."""
    from googleapiclient.errors import HttpError

    content = json.dumps({"error": {"code": status, "message": "boom"}}).encode("utf-8")
    return HttpError(FakeHttpResponse(status, headers), content, uri="https://gmail.googleapis.com")


class FakeCompletions:
    """Records chat.completions.create calls and replays queued outcomes."""

    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def fake_openai_client(*outcomes: Any) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(list(outcomes))))


def completion(
    arguments: dict[str, Any] | str | None,
    *,
    finish_reason: str = "stop",
    prompt_tokens: int = 1000,
    completion_tokens: int = 200,
) -> SimpleNamespace:
    """Build a chat completion response carrying a function call."""
    if arguments is None:
        function_call = None
    else:
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        function_call = SimpleNamespace(name="categorize_email", arguments=raw)
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                finish_reason=finish_reason,
                message=SimpleNamespace(content=None, function_call=function_call),
            )
        ],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


ANALYSIS_ARGS: dict[str, Any] = {
    "category": "action_required",
    "urgency_score": 7,
    "summary": "Jane asks for the signed contract by Friday.",
    "topics": ["contract"],
    "actions": [{"title": "Sign the contract", "due_date": "2024-01-05"}],
    "key_dates": [{"date": "2024-01-05", "description": "Contract deadline"}],
    "ideas": [],
    "confidence": 0.9,
    "reasoning": "Direct request with a deadline",
}


async def no_sleep(_seconds: float) -> None:
    return None


async def seed_messages(store: Any, account: Any, raws: list[dict[str, Any]]) -> list[int]:
    """Parse raw Gmail messages and insert them for ``account``."""
    from ideabox.gmail.parsing import EmailParser

    parser = EmailParser(max_body_chars=16000)
    row_ids = []
    for raw in raws:
        record = parser.to_insert_record(parser.parse(raw), account.user_id, account.id)
        row_ids.append(await store.insert_message(record))
    return row_ids


@pytest.fixture
def mock_settings():
    """Provide mock settings for testing."""
    from ideabox.config import Settings

    return Settings(
        openai_api_key=TEST_API_KEY,
        google_client_id="client-id",
        google_client_secret="client-secret",
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
        gmail_rate_limit_delay_ms=1,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def sample_email_data() -> dict:
    """Provide sample email data structure."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD", "STARRED"],
        "snippet": "Weekly Newsletter - Python Tips",
        "historyId": "4242",
        "internalDate": "1704103200000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": '"Python Weekly" <Newsletter@Python.org>'},
                {"name": "To", "value": "user@example.com"},
                {"name": "Date", "value": "Mon, 1 Jan 2024 10:00:00 +0000"},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/plain", "body": {"data": encode_body("Welcome to this week's tips!")}},
                        {"mimeType": "text/html", "body": {"data": encode_body("<b>Welcome</b>")}},
                    ],
                },
                {
                    "mimeType": "application/pdf",
                    "filename": "tips.pdf",
                    "body": {"attachmentId": "att-1", "size": 1024},
                },
            ],
        },
    }


@pytest.fixture
def store(tmp_path):
    """Provide an initialized SQLite message store."""
    from ideabox.storage import SQLiteMessageStore

    message_store = SQLiteMessageStore(tmp_path / "ideabox.sqlite3")
    message_store.initialize()
    return message_store


@pytest.fixture
def account():
    """Provide a connected account with a token that is still valid."""
    from ideabox.models import GmailAccount

    return GmailAccount(
        id="acct-1",
        user_id="user-1",
        email="me@example.com",
        access_token="ya29.valid",
        refresh_token="1//refresh",
        token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        last_history_id="500",
    )
