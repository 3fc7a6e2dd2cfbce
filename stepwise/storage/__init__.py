"""SQLite-backed session and tool-output stores."""

from stepwise.storage.outputs import ToolOutputStore
from stepwise.storage.sessions import SessionStore

__all__ = ["SessionStore", "ToolOutputStore"]
