"""Gmail to message-store synchronization."""

from ideabox.sync.orchestrator import SyncOrchestrator, cursor_advances, max_history_id

__all__ = ["SyncOrchestrator", "cursor_advances", "max_history_id"]
