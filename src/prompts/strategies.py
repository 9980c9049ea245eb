"""Prompt selection strategies: Sequential, Random and DateBased.

Each strategy is gated on the pack type and mutates only the pack's progress.
"""

import random
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Callable, Optional

import structlog

from shared_types import PackType

from .errors import NotFoundError, TypeMismatchError, ValidationError
from .models import Pack, Prompt, local_day

logger = structlog.get_logger()

Clock = Callable[[], datetime]


class SelectionStrategy(ABC):
    """Base class for type-gated selection over a pack."""

    pack_type: PackType

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or datetime.now

    def _check_type(self, pack: Pack) -> None:
        if pack.type != self.pack_type:
            raise TypeMismatchError(
                f"{type(self).__name__} expects a {self.pack_type} pack, got {pack.type} ({pack.id})"
            )

    @staticmethod
    def _require_prompt(pack: Pack, prompt_id: str) -> Prompt:
        prompt = pack.get_prompt(prompt_id)
        if prompt is None:
            raise NotFoundError(f"Prompt {prompt_id} not found in pack {pack.id}")
        return prompt

    @abstractmethod
    def select_next(self, pack: Pack) -> Optional[Prompt]:
        ...

    def mark_completed(self, pack: Pack, prompt_id: str) -> None:
        self._check_type(pack)
        self._require_prompt(pack, prompt_id)
        pack.progress.mark_completed(prompt_id, self._clock())

    def is_completed(self, pack: Pack) -> bool:
        self._check_type(pack)
        return pack.is_completed()

    @abstractmethod
    def reset(self, pack: Pack) -> None:
        ...

    def progress_percentage(self, pack: Pack) -> int:
        self._check_type(pack)
        return pack.progress.completion_percentage(len(pack.prompts))


class SequentialStrategy(SelectionStrategy):
    pack_type = PackType.SEQUENTIAL

    @staticmethod
    def ordered_prompts(pack: Pack) -> list[Prompt]:
        """Prompts by order, falling back to list position. sorted() is stable."""
        if pack.prompts and all(p.order is not None for p in pack.prompts):
            return sorted(pack.prompts, key=lambda p: p.order)
        return list(pack.prompts)

    def select_next(self, pack: Pack) -> Optional[Prompt]:
        self._check_type(pack)
        completed = pack.progress.completed_prompts
        return next((p for p in self.ordered_prompts(pack) if p.id not in completed), None)

    def mark_completed(self, pack: Pack, prompt_id: str) -> None:
        super().mark_completed(pack, prompt_id)
        ordered = self.ordered_prompts(pack)
        position = next(i for i, p in enumerate(ordered) if p.id == prompt_id)
        cursor = pack.progress.current_index or 0
        if position == cursor:
            pack.progress.current_index = cursor + 1

    def next_prompt_index(self, pack: Pack) -> int:
        """Position of the next uncompleted prompt, or -1 when all are done."""
        self._check_type(pack)
        completed = pack.progress.completed_prompts
        return next(
            (i for i, p in enumerate(self.ordered_prompts(pack)) if p.id not in completed), -1
        )

    def can_restart(self, pack: Pack) -> bool:
        self._check_type(pack)
        return pack.is_completed()

    def restart(self, pack: Pack) -> None:
        if not self.can_restart(pack):
            raise ValidationError(f"Pack {pack.id} cannot be restarted before it is completed")
        self._clear(pack)

    def reset(self, pack: Pack) -> None:
        self._check_type(pack)
        self._clear(pack)

    def _clear(self, pack: Pack) -> None:
        pack.progress.completed_prompts.clear()
        pack.progress.current_index = None
        pack.progress.touch(self._clock())


class RandomStrategy(SelectionStrategy):
    """Random selection without replacement within a cycle.

    ``used_prompts`` tracks cycle membership; once every prompt has been used
    the cycle starts over. Completion is tracked separately.
    """

    pack_type = PackType.RANDOM

    def __init__(self, clock: Optional[Clock] = None, rng: Optional[random.Random] = None):
        super().__init__(clock)
        self._rng = rng or random.Random()

    def select_next(self, pack: Pack) -> Optional[Prompt]:
        self._check_type(pack)
        if not pack.prompts:
            return None
        progress = pack.progress
        if progress.used_prompts is None:
            progress.used_prompts = set()

        pool = [p for p in pack.prompts if p.id not in progress.used_prompts]
        if not pool:
            logger.debug("random_cycle_restarted", pack_id=pack.id)
            progress.used_prompts.clear()
            pool = list(pack.prompts)
        return self._rng.choice(pool)

    def mark_completed(self, pack: Pack, prompt_id: str) -> None:
        super().mark_completed(pack, prompt_id)
        if pack.progress.used_prompts is None:
            pack.progress.used_prompts = set()
        pack.progress.used_prompts.add(prompt_id)

    def reset(self, pack: Pack) -> None:
        self._check_type(pack)
        pack.progress.completed_prompts.clear()
        pack.progress.used_prompts = set()
        pack.progress.touch(self._clock())

    def reset_cycle(self, pack: Pack) -> None:
        self._check_type(pack)
        pack.progress.used_prompts = set()
        pack.progress.touch(self._clock())

    def used_count(self, pack: Pack) -> int:
        self._check_type(pack)
        used = pack.progress.used_prompts or set()
        return len(used & pack.prompt_ids())

    def available_count(self, pack: Pack) -> int:
        return len(pack.prompts) - self.used_count(pack)

    def is_cycle_completed(self, pack: Pack) -> bool:
        return bool(pack.prompts) and self.available_count(pack) == 0

    def stats(self, pack: Pack) -> dict:
        total = len(pack.prompts)
        used = self.used_count(pack)
        return {
            "total": total,
            "completed": len(pack.progress.completed_prompts),
            "used_in_cycle": used,
            "available": total - used,
            "cycle_percentage": round(used / total * 100) if total else 0,
            "overall_percentage": self.progress_percentage(pack),
        }


class DateBasedStrategy(SelectionStrategy):
    """Selection by local calendar day."""

    pack_type = PackType.DATE

    def _today(self) -> date:
        return local_day(self._clock())

    @staticmethod
    def _day(value: Optional[date | datetime], default: date) -> date:
        return local_day(value) if value is not None else default

    @staticmethod
    def _by_date(prompts: list[Prompt]) -> list[Prompt]:
        return sorted(prompts, key=lambda p: p.day)

    def select_next(self, pack: Pack, target_date: Optional[date | datetime] = None) -> Optional[Prompt]:
        completed = pack.progress.completed_prompts
        return next(
            (p for p in self.get_prompts_for_date(pack, target_date) if p.id not in completed),
            None,
        )

    def reset(self, pack: Pack) -> None:
        self._check_type(pack)
        pack.progress.completed_prompts.clear()
        pack.progress.touch(self._clock())

    def get_prompts_for_date(self, pack: Pack, target: Optional[date | datetime] = None) -> list[Prompt]:
        self._check_type(pack)
        day = self._day(target, self._today())
        return [p for p in pack.prompts if p.day == day]

    def get_missed_prompts(self, pack: Pack, cutoff: Optional[date | datetime] = None) -> list[Prompt]:
        self._check_type(pack)
        day = self._day(cutoff, self._today())
        completed = pack.progress.completed_prompts
        return self._by_date([p for p in pack.prompts if p.day < day and p.id not in completed])

    def get_upcoming_prompts(self, pack: Pack, start: Optional[date | datetime] = None) -> list[Prompt]:
        self._check_type(pack)
        day = self._day(start, self._today())
        return self._by_date([p for p in pack.prompts if p.day > day])

    def get_catch_up_prompts(self, pack: Pack, max_days_back: int = 7) -> list[Prompt]:
        today = self._today()
        return [
            p for p in self.get_missed_prompts(pack, today) if (today - p.day).days <= max_days_back
        ]

    def needs_catch_up(self, pack: Pack, max_days_back: int = 7) -> bool:
        return bool(self.get_catch_up_prompts(pack, max_days_back))

    def has_prompts_for_today(self, pack: Pack) -> bool:
        return bool(self.get_prompts_for_date(pack))

    def get_next_available_date(self, pack: Pack, after: Optional[date | datetime] = None) -> Optional[date]:
        self._check_type(pack)
        day = self._day(after, self._today())
        return min((p.day for p in pack.prompts if p.day > day), default=None)

    def get_most_recent_date(self, pack: Pack, before: Optional[date | datetime] = None) -> Optional[date]:
        self._check_type(pack)
        day = self._day(before, self._today())
        return max((p.day for p in pack.prompts if p.day <= day), default=None)

    def get_date_completion_status(self, pack: Pack, target: Optional[date | datetime] = None) -> dict:
        prompts = self.get_prompts_for_date(pack, target)
        completed = sum(1 for p in prompts if p.id in pack.progress.completed_prompts)
        total = len(prompts)
        return {
            "total": total,
            "completed": completed,
            "percentage": round(completed / total * 100) if total else 0,
            "is_completed": total > 0 and completed == total,
        }

    def get_prompts_for_date_range(
        self, pack: Pack, start: date | datetime, end: date | datetime
    ) -> list[Prompt]:
        self._check_type(pack)
        first, last = local_day(start), local_day(end)
        return self._by_date([p for p in pack.prompts if first <= p.day <= last])

    def stats(self, pack: Pack) -> dict:
        today = self._today()
        return {
            "total": len(pack.prompts),
            "completed": len(pack.progress.completed_prompts),
            "percentage": self.progress_percentage(pack),
            "today": len(self.get_prompts_for_date(pack, today)),
            "missed": len(self.get_missed_prompts(pack, today)),
            "upcoming": len(self.get_upcoming_prompts(pack, today)),
            "next_available_date": self.get_next_available_date(pack, today),
        }


def strategy_for(
    pack_type: PackType,
    clock: Optional[Clock] = None,
    rng: Optional[random.Random] = None,
) -> SelectionStrategy:
    """Build the strategy matching a pack type."""
    if pack_type == PackType.SEQUENTIAL:
        return SequentialStrategy(clock)
    if pack_type == PackType.RANDOM:
        return RandomStrategy(clock, rng)
    if pack_type == PackType.DATE:
        return DateBasedStrategy(clock)
    raise TypeMismatchError(f"No strategy for pack type {pack_type!r}")

