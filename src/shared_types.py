"""Shared enums and types for daily-prompts."""

from enum import StrEnum


class PromptType(StrEnum):
    TEXT = "text"
    LINK = "link"
    MARKDOWN = "markdown"


class PackType(StrEnum):
    SEQUENTIAL = "Sequential"
    RANDOM = "Random"
    DATE = "Date"


class NotificationChannel(StrEnum):
    NATIVE = "native"
    IN_APP = "in_app"


class NoticeKind(StrEnum):
    PROMPT = "prompt"
    MISSED = "missed"
    ERROR = "error"


class LinkHandling(StrEnum):
    EMBED = "embed"
    REFERENCE = "reference"
    DIRECT = "direct"
