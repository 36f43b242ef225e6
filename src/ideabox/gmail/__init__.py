"""Gmail integration: API client, message parsing and OAuth tokens."""

from ideabox.gmail.client import GmailClient, MessageFetch, build_list_query, map_gmail_error
from ideabox.gmail.parsing import EmailParser, parse_message, to_insert_record, truncate_body
from ideabox.gmail.tokens import TokenGrant, TokenManager

__all__ = [
    "EmailParser",
    "GmailClient",
    "MessageFetch",
    "TokenGrant",
    "TokenManager",
    "build_list_query",
    "map_gmail_error",
    "parse_message",
    "to_insert_record",
    "truncate_body",
]
