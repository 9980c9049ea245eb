"""Data models for prompt packs: prompts, progress, settings and packs."""

import copy
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from typing import Any, Iterable, Optional

from shared_types import NotificationChannel, PackType, PromptType

from .errors import ValidationError

DEFAULT_NOTIFICATION_TIME = "09:00"


def new_id() -> str:
    return uuid.uuid4().hex[:16]


def local_day(value: date | datetime) -> date:
    """Calendar day of a date/datetime in the local timezone.

    Aware datetimes are converted to local time first; naive ones are
    already local.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.date()
    return value


def _parse_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid ISO date for {field_name}: {value!r}", field_name)
    raise ValidationError(f"{field_name} must be a datetime or ISO string", field_name)


def _require_text(value: Any, message: str, field_name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message, field_name)


@dataclass
class Prompt:
    """One deliverable content unit (text, link or markdown), optionally dated or ordered."""

    content: str
    type: PromptType = PromptType.TEXT
    id: str = field(default_factory=new_id)
    date: Optional[datetime] = None
    order: Optional[int] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        _require_text(self.id, "Prompt ID must be a non-empty string", "id")
        _require_text(self.content, "Prompt content must be a non-empty string", "content")
        try:
            self.type = PromptType(self.type)
        except ValueError:
            raise ValidationError(
                f"Prompt type must be one of {[t.value for t in PromptType]}", "type"
            )
        self.date = _parse_datetime(self.date, "date")
        if self.order is not None and (
            isinstance(self.order, bool) or not isinstance(self.order, int) or self.order < 0
        ):
            raise ValidationError("Prompt order must be a non-negative integer", "order")
        if self.metadata is None:
            self.metadata = {}
        if not isinstance(self.metadata, dict):
            raise ValidationError("Prompt metadata must be a mapping", "metadata")

    @property
    def day(self) -> Optional[date]:
        return local_day(self.date) if self.date else None

    def clone(self) -> "Prompt":
        """Copy with a fresh id."""
        return replace(self, id=new_id(), metadata=dict(self.metadata))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "type": self.type.value,
            "date": self.date.isoformat() if self.date else None,
            "order": self.order,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Prompt":
        if not isinstance(data, dict):
            raise ValidationError("Prompt data must be a mapping")
        if "content" not in data:
            raise ValidationError("Prompt content must be a non-empty string", "content")
        kwargs = {k: data[k] for k in ("content", "type", "id", "date", "order", "metadata") if data.get(k) is not None}
        return cls(**kwargs)


@dataclass
class Progress:
    """Completion state of one pack.

    ``current_index`` is a Sequential cursor hint; ``used_prompts`` is Random
    cycle membership. Neither is authoritative for completion.
    """

    completed_prompts: set[str] = field(default_factory=set)
    current_index: Optional[int] = None
    used_prompts: Optional[set[str]] = None
    last_access_date: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if isinstance(self.completed_prompts, (list, tuple, frozenset)):
            self.completed_prompts = set(self.completed_prompts)
        if not isinstance(self.completed_prompts, set):
            raise ValidationError("Completed prompts must be a set", "completed_prompts")
        if self.current_index is not None and (
            isinstance(self.current_index, bool)
            or not isinstance(self.current_index, int)
            or self.current_index < 0
        ):
            raise ValidationError("Current index must be a non-negative integer", "current_index")
        if isinstance(self.used_prompts, (list, tuple, frozenset)):
            self.used_prompts = set(self.used_prompts)
        if self.used_prompts is not None and not isinstance(self.used_prompts, set):
            raise ValidationError("Used prompts must be a set", "used_prompts")
        parsed = _parse_datetime(self.last_access_date, "last_access_date")
        if parsed is None:
            raise ValidationError("Last access date is required", "last_access_date")
        self.last_access_date = parsed

    def mark_completed(self, prompt_id: str, now: Optional[datetime] = None) -> None:
        _require_text(prompt_id, "Prompt ID must be a non-empty string", "prompt_id")
        self.completed_prompts.add(prompt_id)
        self.last_access_date = now or datetime.now()

    def is_completed(self, prompt_id: str) -> bool:
        return prompt_id in self.completed_prompts

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_access_date = now or datetime.now()

    def reset(self, now: Optional[datetime] = None) -> None:
        self.completed_prompts.clear()
        self.current_index = None
        if self.used_prompts is not None:
            self.used_prompts.clear()
        self.last_access_date = now or datetime.now()

    def prune(self, valid_ids: Iterable[str]) -> set[str]:
        """Drop ids no longer in the pack. Returns the removed ids."""
        valid = set(valid_ids)
        stale = self.completed_prompts - valid
        self.completed_prompts &= valid
        if self.used_prompts is not None:
            stale |= self.used_prompts - valid
            self.used_prompts &= valid
        return stale

    def completion_percentage(self, total_prompts: int) -> int:
        if total_prompts <= 0:
            return 0
        return round(len(self.completed_prompts) / total_prompts * 100)

    def copy(self) -> "Progress":
        return Progress(
            completed_prompts=set(self.completed_prompts),
            current_index=self.current_index,
            used_prompts=set(self.used_prompts) if self.used_prompts is not None else None,
            last_access_date=self.last_access_date,
        )

    def to_dict(self) -> dict:
        return {
            "completed_prompts": sorted(self.completed_prompts),
            "current_index": self.current_index,
            "used_prompts": sorted(self.used_prompts) if self.used_prompts is not None else None,
            "last_access_date": self.last_access_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Progress":
        if not isinstance(data, dict):
            raise ValidationError("Progress data must be a mapping")
        completed = data.get("completed_prompts") or []
        if not isinstance(completed, (list, tuple, set)):
            raise ValidationError("Completed prompts must be a list", "completed_prompts")
        used = data.get("used_prompts")
        if used is not None and not isinstance(used, (list, tuple, set)):
            raise ValidationError("Used prompts must be a list", "used_prompts")
        kwargs: dict[str, Any] = {
            "completed_prompts": set(completed),
            "current_index": data.get("current_index"),
            "used_prompts": set(used) if used is not None else None,
        }
        if data.get("last_access_date"):
            kwargs["last_access_date"] = data["last_access_date"]
        return cls(**kwargs)


@dataclass
class PackSettings:
    """Delivery settings of a pack.

    ``notification_time`` is only checked for type here; the scheduler
    enforces the strict HH:MM format when it schedules the pack.
    """

    notifications_enabled: bool = False
    notification_time: str = DEFAULT_NOTIFICATION_TIME
    channel: NotificationChannel = NotificationChannel.IN_APP
    zen_mode: bool = False
    note_integration: bool = True
    custom_template: Optional[str] = None

    def __post_init__(self):
        for name in ("notifications_enabled", "zen_mode", "note_integration"):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be a boolean", name)
        if not isinstance(self.notification_time, str):
            raise ValidationError("Notification time must be a string", "notification_time")
        try:
            self.channel = NotificationChannel(self.channel)
        except ValueError:
            raise ValidationError(
                f"Channel must be one of {[c.value for c in NotificationChannel]}", "channel"
            )
        if self.custom_template is not None and not isinstance(self.custom_template, str):
            raise ValidationError("Custom template must be a string", "custom_template")

    def update(self, **changes) -> None:
        """Apply changes atomically; invalid changes leave settings untouched."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown settings: {sorted(unknown)}")
        updated = replace(self, **changes)
        for name in known:
            setattr(self, name, getattr(updated, name))

    def to_dict(self) -> dict:
        return {
            "notifications_enabled": self.notifications_enabled,
            "notification_time": self.notification_time,
            "channel": self.channel.value,
            "zen_mode": self.zen_mode,
            "note_integration": self.note_integration,
            "custom_template": self.custom_template,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PackSettings":
        if not isinstance(data, dict):
            raise ValidationError("Settings data must be a mapping")
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


@dataclass
class Pack:
    """A named prompt collection plus its delivery settings and progress."""

    name: str
    type: PackType
    prompts: list[Prompt] = field(default_factory=list)
    settings: PackSettings = field(default_factory=PackSettings)
    progress: Progress = field(default_factory=Progress)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        _require_text(self.id, "Pack ID must be a non-empty string", "id")
        _require_text(self.name, "Pack name must be a non-empty string", "name")
        try:
            self.type = PackType(self.type)
        except ValueError:
            raise ValidationError(
                f"Pack type must be one of {[t.value for t in PackType]}", "type"
            )
        if not isinstance(self.prompts, list) or not all(isinstance(p, Prompt) for p in self.prompts):
            raise ValidationError("Prompts must be a list of Prompt instances", "prompts")
        if not isinstance(self.settings, PackSettings):
            raise ValidationError("Settings must be a PackSettings instance", "settings")
        if not isinstance(self.progress, Progress):
            raise ValidationError("Progress must be a Progress instance", "progress")
        for name in ("created_at", "updated_at"):
            setattr(self, name, _parse_datetime(getattr(self, name), name) or datetime.now())
        if self.metadata is None:
            self.metadata = {}
        self._check_prompts(self.prompts)
        stray = self.progress.completed_prompts - {p.id for p in self.prompts}
        if stray:
            raise ValidationError(
                f"Progress references prompts not in pack: {sorted(stray)}", "progress"
            )

    @classmethod
    def create(cls, name: str, pack_type: PackType | str) -> "Pack":
        """New pack with default settings and empty progress."""
        return cls(name=name, type=PackType(pack_type))

    def _check_prompts(self, prompts: list[Prompt]) -> None:
        ids = [p.id for p in prompts]
        if len(ids) != len(set(ids)):
            raise ValidationError("Prompt IDs must be unique within a pack", "prompts")

        if self.type == PackType.SEQUENTIAL:
            ordered = [p for p in prompts if p.order is not None]
            if ordered and len(ordered) != len(prompts):
                raise ValidationError(
                    "In Sequential mode, all prompts must have order values or none should",
                    "prompts",
                )

        if self.type == PackType.DATE:
            if any(p.date is None for p in prompts):
                raise ValidationError("In Date mode, all prompts must have date values", "prompts")

    # --- prompt mutations ---

    def add_prompt(self, prompt: Prompt) -> Prompt:
        """Append a prompt, auto-ordering it in an ordered Sequential pack."""
        if not isinstance(prompt, Prompt):
            raise ValidationError("Must provide a Prompt instance")
        if (
            self.type == PackType.SEQUENTIAL
            and prompt.order is None
            and self.prompts
            and all(p.order is not None for p in self.prompts)
        ):
            prompt = replace(prompt, order=max(p.order for p in self.prompts) + 1)

        candidate = [*self.prompts, prompt]
        self._check_prompts(candidate)
        self.prompts = candidate
        self.updated_at = datetime.now()
        return prompt

    def remove_prompt(self, prompt_id: str) -> bool:
        remaining = [p for p in self.prompts if p.id != prompt_id]
        if len(remaining) == len(self.prompts):
            return False
        self.prompts = remaining
        self.progress.completed_prompts.discard(prompt_id)
        if self.progress.used_prompts is not None:
            self.progress.used_prompts.discard(prompt_id)
        self.updated_at = datetime.now()
        return True

    def update_prompt(self, prompt_id: str, **changes) -> Prompt:
        """Edit content/type/date/order/metadata of a prompt; the id never changes."""
        if "id" in changes:
            raise ValidationError("Prompt ID cannot be changed", "id")
        index = next((i for i, p in enumerate(self.prompts) if p.id == prompt_id), None)
        if index is None:
            raise ValidationError(f"Prompt {prompt_id} not in pack {self.id}", "prompt_id")
        updated = replace(self.prompts[index], **changes)
        candidate = list(self.prompts)
        candidate[index] = updated
        self._check_prompts(candidate)
        self.prompts = candidate
        self.updated_at = datetime.now()
        return updated

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        return next((p for p in self.prompts if p.id == prompt_id), None)

    def prompt_ids(self) -> set[str]:
        return {p.id for p in self.prompts}

    def update_settings(self, **changes) -> None:
        self.settings.update(**changes)
        self.updated_at = datetime.now()

    # --- progress helpers ---

    def get_stats(self) -> dict:
        total = len(self.prompts)
        completed = len(self.progress.completed_prompts)
        return {
            "total": total,
            "completed": completed,
            "percentage": self.progress.completion_percentage(total),
        }

    def is_completed(self) -> bool:
        return bool(self.prompts) and self.prompt_ids() <= self.progress.completed_prompts

    def reset_progress(self) -> None:
        self.progress.reset()
        self.updated_at = datetime.now()

    def clone(self, new_name: Optional[str] = None) -> "Pack":
        """Fresh pack with cloned prompts, copied settings and empty progress."""
        return Pack(
            name=new_name or f"{self.name} (Copy)",
            type=self.type,
            prompts=[p.clone() for p in self.prompts],
            settings=PackSettings.from_dict(self.settings.to_dict()),
            metadata=copy.deepcopy(self.metadata),
        )

    def copy(self) -> "Pack":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "prompts": [p.to_dict() for p in self.prompts],
            "settings": self.settings.to_dict(),
            "progress": self.progress.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pack":
        if not isinstance(data, dict):
            raise ValidationError("Pack data must be a mapping")
        for key in ("name", "type"):
            if key not in data:
                raise ValidationError(f"Pack {key} is required", key)
        prompts = data.get("prompts") or []
        if not isinstance(prompts, list):
            raise ValidationError("Prompts must be a list", "prompts")
        kwargs: dict[str, Any] = {
            "name": data["name"],
            "type": data["type"],
            "prompts": [Prompt.from_dict(p) for p in prompts],
            "settings": PackSettings.from_dict(data.get("settings") or {}),
            "progress": Progress.from_dict(data["progress"]) if data.get("progress") else Progress(),
            "metadata": data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
        }
        for key in ("id", "created_at", "updated_at"):
            if data.get(key):
                kwargs[key] = data[key]
        return cls(**kwargs)
