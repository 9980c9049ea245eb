"""Daily note sink for clicked prompts."""

from .daily import MarkdownDailyNotes
from .sink import NoteHandle, NoteSink

__all__ = ["MarkdownDailyNotes", "NoteHandle", "NoteSink"]
