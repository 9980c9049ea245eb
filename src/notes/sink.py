"""Note sink interface consumed by notification click handling."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

from prompts.models import Prompt


@dataclass
class NoteHandle:
    path: Path
    date: date
    created: bool = False


class NoteSink(ABC):
    """Where clicked prompts end up."""

    @abstractmethod
    async def create_or_open_daily_note(self, day: Optional[date] = None) -> NoteHandle:
        ...

    @abstractmethod
    async def insert_prompt(self, prompt: Prompt, note: NoteHandle) -> None:
        ...

    @abstractmethod
    def enable_zen_mode(self) -> None:
        """Never raises."""

    @abstractmethod
    def disable_zen_mode(self) -> None:
        """Never raises."""
