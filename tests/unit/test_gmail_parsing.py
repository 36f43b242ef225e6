"""Unit tests for Gmail message parsing helpers."""

from datetime import datetime

import pytest
from conftest import encode_body, make_gmail_message

from ideabox.exceptions import ParseError
from ideabox.gmail.parsing import (
    EmailParser,
    decode_base64url,
    extract_bodies,
    parse_address,
    parse_message,
    resolve_date,
    to_insert_record,
    truncate_body,
    truncation_marker,
)
from ideabox.gmail.payload import RawMessagePart


def test_parse_message_parses_basic_fields(sample_email_data) -> None:
    parsed = parse_message(sample_email_data)

    assert parsed.gmail_id == "msg123456"
    assert parsed.thread_id == "thread789"
    assert parsed.subject == "Weekly Newsletter - Python Tips"
    assert parsed.sender_email == "newsletter@python.org"
    assert parsed.sender_name == "Python Weekly"
    assert parsed.recipient_email == "user@example.com"
    assert parsed.date == "2024-01-01T10:00:00.000Z"
    assert parsed.snippet == "Weekly Newsletter - Python Tips"
    assert parsed.body_text == "Welcome to this week's tips!"
    assert parsed.body_html == "<b>Welcome</b>"
    assert parsed.labels == frozenset({"INBOX", "UNREAD", "STARRED"})
    assert parsed.is_read is False
    assert parsed.is_starred is True
    assert parsed.history_id == "4242"


def test_parse_message_is_read_without_unread_label() -> None:
    parsed = parse_message(make_gmail_message("m1", labels=["INBOX"]))

    assert parsed.is_read is True
    assert parsed.is_starred is False


def test_header_lookup_is_case_insensitive_first_match_wins() -> None:
    raw = make_gmail_message("m1")
    raw["payload"]["headers"] = [
        {"name": "from", "value": "first@example.com"},
        {"name": "FROM", "value": "second@example.com"},
        {"name": "SUBJECT", "value": "Shouty"},
    ]

    parsed = parse_message(raw)

    assert parsed.sender_email == "first@example.com"
    assert parsed.subject == "Shouty"


class TestParseAddress:
    """Test suite for address header parsing."""

    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ('"Jane Doe" <Jane@Example.com>', ("jane@example.com", "Jane Doe")),
            ("Jane Doe <jane@example.com>", ("jane@example.com", "Jane Doe")),
            ("<bob@example.com>", ("bob@example.com", None)),
            ("alice@example.com (Alice Smith)", ("alice@example.com", "Alice Smith")),
            ("Carol@Example.com", ("carol@example.com", None)),
        ],
    )
    def test_supported_formats(self, header: str, expected: tuple) -> None:
        """Test every supported address format."""
        assert parse_address(header) == expected

    def test_unparseable_address_is_absent(self) -> None:
        """Test that a header without an address yields nothing."""
        assert parse_address("undisclosed-recipients") == (None, None)

    def test_empty_header(self) -> None:
        """Test that missing headers yield nothing."""
        assert parse_address(None) == (None, None)
        assert parse_address("") == (None, None)


class TestResolveDate:
    """Test suite for the message date fallback chain."""

    def test_date_header_is_preferred(self) -> None:
        """Test that a valid Date header wins over internalDate."""
        assert resolve_date("Tue, 2 Jan 2024 08:30:00 +0200", "0") == "2024-01-02T06:30:00.000Z"

    def test_falls_back_to_internal_date(self) -> None:
        """Test that an unparseable Date header falls back to internalDate."""
        assert resolve_date("not a date", "1704103200000") == "2024-01-01T10:00:00.000Z"

    def test_falls_back_to_now(self) -> None:
        """Test that a message without any date gets the current time."""
        value = resolve_date(None, None)

        assert value.endswith("Z")
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        assert abs((datetime.now(parsed.tzinfo) - parsed).total_seconds()) < 60


class TestBodies:
    """Test suite for MIME body extraction."""

    def test_decode_base64url_handles_missing_padding(self) -> None:
        """Test URL-safe decoding without padding."""
        assert decode_base64url(encode_body("héllo ~~ ??")) == "héllo ~~ ??"

    def test_decode_failure_yields_none(self) -> None:
        """Test that undecodable data does not raise."""
        assert decode_base64url("abcde") is None

    def test_first_plain_and_html_leaves_win(self) -> None:
        """Test that the first text/plain and text/html leaves are used."""
        part = RawMessagePart.model_validate(
            {
                "mimeType": "multipart/mixed",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": encode_body("first")}},
                    {
                        "mimeType": "multipart/alternative",
                        "parts": [
                            {"mimeType": "text/plain", "body": {"data": encode_body("second")}},
                            {"mimeType": "text/html", "body": {"data": encode_body("<i>html</i>")}},
                        ],
                    },
                ],
            }
        )

        assert extract_bodies(part) == ("first", "<i>html</i>")

    def test_single_part_message(self) -> None:
        """Test a non-multipart message whose payload is the body."""
        raw = make_gmail_message("m1")
        raw["payload"] = {
            "mimeType": "text/plain",
            "headers": raw["payload"]["headers"],
            "body": {"data": encode_body("just text")},
        }

        parsed = parse_message(raw)

        assert parsed.body_text == "just text"
        assert parsed.body_html is None

    def test_only_body_text_is_truncated(self) -> None:
        """Test that body_text is capped while body_html is kept whole."""
        raw = make_gmail_message("m1", body="x" * 100)

        parsed = parse_message(raw, max_body_chars=40)

        assert parsed.body_text is not None
        assert len(parsed.body_text) == 40 + len(truncation_marker(60))
        assert parsed.body_html == "<p>" + "x" * 100 + "</p>"


class TestTruncateBody:
    """Test suite for the head/tail truncation rule."""

    def test_short_body_is_unchanged(self) -> None:
        """Test that bodies within the budget are returned as-is."""
        assert truncate_body("hello", 5) == "hello"

    def test_odd_budget_gives_head_the_extra_character(self) -> None:
        """Test head/tail split and marker for an odd budget."""
        body = "a" * 10 + "b" * 10

        result = truncate_body(body, 5)

        assert result == "aaa" + truncation_marker(15) + "bb"

    def test_even_budget_splits_evenly(self) -> None:
        """Test head/tail split for an even budget."""
        body = "".join(str(i % 10) for i in range(30))

        result = truncate_body(body, 10)

        assert result.startswith("01234")
        assert result.endswith("56789")
        assert "(20 chars removed)" in result

    @pytest.mark.parametrize("max_chars", [1, 2, 7, 16000])
    def test_output_length_law(self, max_chars: int) -> None:
        """Test that kept text is exactly max_chars long."""
        body = "z" * (max_chars + 123)

        result = truncate_body(body, max_chars)

        assert len(result) == max_chars + len(truncation_marker(123))


class TestParseErrors:
    """Test suite for mandatory-field failures."""

    def test_missing_id(self, sample_email_data) -> None:
        """Test that a message without an ID is rejected."""
        del sample_email_data["id"]

        with pytest.raises(ParseError) as exc_info:
            parse_message(sample_email_data)

        assert exc_info.value.field == "id"

    def test_empty_id(self, sample_email_data) -> None:
        """Test that an empty ID is rejected."""
        sample_email_data["id"] = ""

        with pytest.raises(ParseError) as exc_info:
            parse_message(sample_email_data)

        assert exc_info.value.field == "id"

    def test_missing_thread_id(self, sample_email_data) -> None:
        """Test that a message without a thread ID is rejected."""
        del sample_email_data["threadId"]

        with pytest.raises(ParseError) as exc_info:
            parse_message(sample_email_data)

        assert exc_info.value.field == "thread_id"
        assert exc_info.value.message_id == "msg123456"

    def test_missing_sender(self, sample_email_data) -> None:
        """Test that a message without a sender address is rejected."""
        sample_email_data["payload"]["headers"] = [{"name": "From", "value": "Nobody"}]

        with pytest.raises(ParseError) as exc_info:
            parse_message(sample_email_data)

        assert exc_info.value.field == "sender_email"


def test_to_insert_record_attaches_ownership(sample_email_data) -> None:
    parser = EmailParser(max_body_chars=16000)
    parsed = parser.parse(sample_email_data)

    record = to_insert_record(parsed, "user-1", "acct-1")

    assert record.user_id == "user-1"
    assert record.account_id == "acct-1"
    assert record.gmail_id == parsed.gmail_id
    assert record.labels == ["INBOX", "STARRED", "UNREAD"]
    assert record.is_read is False
