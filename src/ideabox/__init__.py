"""IdeaBox - Gmail sync and AI email analysis.

This package syncs connected Gmail accounts into a local message store and
categorizes new messages with OpenAI function calling.
"""

__version__ = "0.1.0"

from ideabox.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
