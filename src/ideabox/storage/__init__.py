"""Message persistence."""

from ideabox.storage.base import MessageStore
from ideabox.storage.sqlite import SQLiteMessageStore

__all__ = ["MessageStore", "SQLiteMessageStore"]
