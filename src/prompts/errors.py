"""Error taxonomy for prompt packs, progress and delivery."""


class PromptsError(Exception):
    """Base exception for prompt pack errors."""


class ValidationError(PromptsError):
    """Malformed pack, prompt, settings or progress data."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(PromptsError):
    """Unknown pack or prompt id."""


class TypeMismatchError(PromptsError):
    """Type-gated operation invoked against the wrong pack type."""


class FormatError(PromptsError):
    """Malformed notification time string or note front matter."""


class TransientIOError(PromptsError):
    """Store or note-sink failure that may succeed on retry."""


class DeliveryError(PromptsError):
    """Notification channel could not present a notice."""
