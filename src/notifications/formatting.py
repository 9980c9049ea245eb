"""Plain-text rendering of prompt content for notification bodies."""

import re

DEFAULT_MAX_LENGTH = 150
ELLIPSIS = "..."

_LINK = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_MARKERS = re.compile(r"[#*_`]")
_WHITESPACE = re.compile(r"\s+")


def format_notification_text(content: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Markdown-ish prompt content -> single-line notification text.

    Links become their labels, emphasis/heading/code markers are dropped,
    whitespace collapses to single spaces. Text longer than ``max_length``
    is cut and ``...`` appended.
    """
    text = _LINK.sub(r"\1", content or "")
    text = _MARKERS.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    if len(text) > max_length:
        text = text[:max_length] + ELLIPSIS
    return text


def notification_title(pack_name: str, missed: bool = False) -> str:
    if missed:
        return f"Missed prompt: {pack_name}"
    return f"Daily prompt: {pack_name}"
