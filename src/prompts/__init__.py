"""Prompt packs: data model, selection strategies and progress store.

Import the engine from ``prompts.engine``.
"""

from .errors import (
    DeliveryError,
    FormatError,
    NotFoundError,
    PromptsError,
    TransientIOError,
    TypeMismatchError,
    ValidationError,
)
from .models import Pack, PackSettings, Progress, Prompt
from .store import ProgressStore, SqliteProgressStore
from .strategies import DateBasedStrategy, RandomStrategy, SequentialStrategy, strategy_for

__all__ = [
    "Pack",
    "PackSettings",
    "Progress",
    "Prompt",
    "ProgressStore",
    "SqliteProgressStore",
    "SequentialStrategy",
    "RandomStrategy",
    "DateBasedStrategy",
    "strategy_for",
    "PromptsError",
    "DeliveryError",
    "ValidationError",
    "NotFoundError",
    "TypeMismatchError",
    "FormatError",
    "TransientIOError",
]
