"""Prompt engine: pack registry, selection, cached queries and batched progress writes."""

import asyncio
import copy
import random
from collections import OrderedDict
from datetime import date, datetime
from typing import Callable, Iterable, Optional

import psutil
import structlog

from app.config_models import EngineConfig, RetryConfig
from app.retry import async_retrying
from observability import metrics
from shared_types import PackType

from .cache import PromptCache
from .errors import NotFoundError, PromptsError, ValidationError
from .models import Pack, Progress, Prompt, local_day
from .store import ProgressStore
from .strategies import (
    DateBasedStrategy,
    RandomStrategy,
    SelectionStrategy,
    SequentialStrategy,
    strategy_for,
)

logger = structlog.get_logger()


def system_memory_percent() -> float:
    return psutil.virtual_memory().percent


class PromptEngine:
    """Owns the pack registry and progress for every loaded pack.

    Callers only ever receive copies. Progress mutations are applied in
    memory immediately and persisted through a debounced, batched flush:
    each dirty pack gets one full-snapshot write per flush, so duplicate
    flushes are harmless.

    Packs whose progress has been evicted under memory pressure keep their
    prompts and settings in memory and re-read progress from the store on
    next access.
    """

    def __init__(
        self,
        store: ProgressStore,
        config: Optional[EngineConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        memory_probe: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self._retry_config = retry_config or RetryConfig()
        self._clock = clock or datetime.now
        self._memory_probe = memory_probe or system_memory_percent
        self._strategies: dict[PackType, SelectionStrategy] = {
            pack_type: strategy_for(pack_type, self._clock, rng) for pack_type in PackType
        }
        self._cache = PromptCache(self.config.cache_ttl_seconds)

        self._packs: dict[str, Pack] = {}
        # Pack ids whose progress is in memory, least recently accessed first
        self._hydrated: OrderedDict[str, None] = OrderedDict()
        # Pending snapshots in scheduling order
        self._pending: dict[str, Progress] = {}
        self._failed: set[str] = set()
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._flush_lock = asyncio.Lock()

    # --- registry ---

    def load_packs(self, packs: Iterable[Pack]) -> None:
        """Replace the registry, overlaying stored progress on each pack."""
        self._packs.clear()
        self._hydrated.clear()
        self._cache.clear()
        for pack in packs:
            self._register(pack)
        logger.info("packs_loaded", count=len(self._packs))

    def add_pack(self, pack: Pack) -> Pack:
        if pack.id in self._packs:
            raise ValidationError(f"Pack {pack.id} already loaded", "id")
        return copy.deepcopy(self._register(pack))

    def _register(self, pack: Pack) -> Pack:
        pack = pack.copy()
        pack.progress = self._load_progress(pack)
        self._packs[pack.id] = pack
        self._hydrated[pack.id] = None
        self._hydrated.move_to_end(pack.id)
        return pack

    def _load_progress(self, pack: Pack) -> Progress:
        progress = self.store.get_progress(pack.id)
        stale = progress.prune(pack.prompt_ids())
        if stale:
            logger.info("stale_progress_pruned", pack_id=pack.id, removed=len(stale))
        return progress

    def update_pack(self, pack: Pack) -> Pack:
        """Replace prompts/settings of a loaded pack, keeping in-memory progress."""
        current = self._get(pack.id)
        updated = pack.copy()
        updated.progress = current.progress
        stale = updated.progress.prune(updated.prompt_ids())
        self._packs[pack.id] = updated
        self._cache.invalidate(pack.id)
        if stale:
            self._schedule_write(pack.id)
        return copy.deepcopy(updated)

    async def remove_pack(self, pack_id: str) -> bool:
        if pack_id not in self._packs:
            return False
        async with self._flush_lock:
            await self._flush_one(pack_id)
            self._drop(pack_id)
        logger.info("pack_removed", pack_id=pack_id)
        return True

    async def archive_pack(self, pack_id: str) -> None:
        """Flush, archive the stored progress and drop the pack from the registry."""
        self._get(pack_id)
        async with self._flush_lock:
            await self._flush_one(pack_id)
            await self.store.archive_progress(pack_id)
            self._drop(pack_id)

    def _drop(self, pack_id: str) -> None:
        self._packs.pop(pack_id, None)
        self._hydrated.pop(pack_id, None)
        self._pending.pop(pack_id, None)
        self._failed.discard(pack_id)
        self._cache.invalidate(pack_id)

    def _get(self, pack_id: str) -> Pack:
        """Registry lookup that re-hydrates evicted progress and records access."""
        pack = self._packs.get(pack_id)
        if pack is None:
            raise NotFoundError(f"Pack {pack_id} not found")
        if pack_id not in self._hydrated:
            pack.progress = self._load_progress(pack)
            metrics.counter("engine.rehydrations")
            logger.debug("pack_rehydrated", pack_id=pack_id)
        self._hydrated[pack_id] = None
        self._hydrated.move_to_end(pack_id)
        return pack

    def _strategy(self, pack: Pack) -> SelectionStrategy:
        return self._strategies[pack.type]

    def get_pack(self, pack_id: str) -> Optional[Pack]:
        try:
            return self._get(pack_id).copy()
        except NotFoundError:
            return None

    def get_prompt_pack(self, pack_id: str) -> Optional[Pack]:
        """Settings lookup used by the notification scheduler."""
        return self.get_pack(pack_id)

    def list_packs(self) -> list[Pack]:
        return [self._get(pack_id).copy() for pack_id in list(self._packs)]

    def get_progress(self, pack_id: str) -> Progress:
        return self._get(pack_id).progress.copy()

    # --- selection and completion ---

    async def get_next_prompt(
        self, pack_id: str, target_date: Optional[date | datetime] = None
    ) -> Optional[Prompt]:
        pack = self._get(pack_id)
        day = local_day(target_date or self._clock())
        key = self._cache.make_key("next", pack_id, day=day.isoformat())

        prompt = self._cache.get(key)
        if prompt is not None:
            metrics.counter("engine.cache_hits")
        else:
            metrics.counter("engine.cache_misses")
            strategy = self._strategy(pack)
            if isinstance(strategy, DateBasedStrategy):
                prompt = strategy.select_next(pack, day)
            else:
                prompt = strategy.select_next(pack)
            if prompt is not None:
                self._cache.set(key, prompt, pack_id)

        pack.progress.touch(self._clock())
        self._schedule_write(pack_id)
        return copy.deepcopy(prompt) if prompt else None

    async def mark_prompt_completed(self, pack_id: str, prompt_id: str) -> None:
        pack = self._get(pack_id)
        self._strategy(pack).mark_completed(pack, prompt_id)
        self._cache.invalidate(pack_id)
        self._schedule_write(pack_id)
        logger.info("prompt_completed", pack_id=pack_id, prompt_id=prompt_id)

    async def touch(self, pack_id: str) -> None:
        pack = self._get(pack_id)
        pack.progress.touch(self._clock())
        self._schedule_write(pack_id)

    async def reset_progress(self, pack_id: str) -> None:
        pack = self._get(pack_id)
        self._strategy(pack).reset(pack)
        await self._write_through(pack_id, reset=True)
        logger.info("progress_reset", pack_id=pack_id)

    async def reset_cycle(self, pack_id: str) -> None:
        pack = self._get(pack_id)
        self._strategies[PackType.RANDOM].reset_cycle(pack)
        await self._write_through(pack_id)

    async def restart(self, pack_id: str) -> None:
        pack = self._get(pack_id)
        self._strategies[PackType.SEQUENTIAL].restart(pack)
        await self._write_through(pack_id)
        logger.info("pack_restarted", pack_id=pack_id)

    # --- type-gated queries ---

    @property
    def _sequential(self) -> SequentialStrategy:
        return self._strategies[PackType.SEQUENTIAL]

    @property
    def _random(self) -> RandomStrategy:
        return self._strategies[PackType.RANDOM]

    @property
    def _dated(self) -> DateBasedStrategy:
        return self._strategies[PackType.DATE]

    def get_next_prompt_index(self, pack_id: str) -> int:
        return self._sequential.next_prompt_index(self._get(pack_id))

    def can_restart(self, pack_id: str) -> bool:
        return self._sequential.can_restart(self._get(pack_id))

    def get_available_prompts_count(self, pack_id: str) -> int:
        return self._random.available_count(self._get(pack_id))

    def is_cycle_completed(self, pack_id: str) -> bool:
        return self._random.is_cycle_completed(self._get(pack_id))

    def get_prompts_for_date(self, pack_id: str, target: Optional[date | datetime] = None) -> list[Prompt]:
        return copy.deepcopy(self._dated.get_prompts_for_date(self._get(pack_id), target))

    def get_missed_prompts(self, pack_id: str, cutoff: Optional[date | datetime] = None) -> list[Prompt]:
        return copy.deepcopy(self._dated.get_missed_prompts(self._get(pack_id), cutoff))

    def get_upcoming_prompts(self, pack_id: str, start: Optional[date | datetime] = None) -> list[Prompt]:
        return copy.deepcopy(self._dated.get_upcoming_prompts(self._get(pack_id), start))

    def get_catch_up_prompts(self, pack_id: str, max_days_back: int = 7) -> list[Prompt]:
        return copy.deepcopy(self._dated.get_catch_up_prompts(self._get(pack_id), max_days_back))

    def needs_catch_up(self, pack_id: str, max_days_back: int = 7) -> bool:
        return self._dated.needs_catch_up(self._get(pack_id), max_days_back)

    def get_next_available_date(self, pack_id: str, after: Optional[date | datetime] = None) -> Optional[date]:
        return self._dated.get_next_available_date(self._get(pack_id), after)

    def get_date_completion_status(self, pack_id: str, target: Optional[date | datetime] = None) -> dict:
        return self._dated.get_date_completion_status(self._get(pack_id), target)

    # --- stats ---

    def is_pack_completed(self, pack_id: str) -> bool:
        return self._get(pack_id).is_completed()

    def get_pack_stats(self, pack_id: str) -> dict:
        pack = self._get(pack_id)
        key = self._cache.make_key("stats", pack_id)
        stats = self._cache.get(key)
        if stats is None:
            stats = {**pack.get_stats(), "is_completed": pack.is_completed()}
            self._cache.set(key, stats, pack_id)
        return dict(stats)

    def get_overall_stats(self) -> dict:
        total_packs = active_packs = completed_packs = 0
        total_prompts = completed_prompts = 0
        for pack_id in list(self._packs):
            pack = self._get(pack_id)
            total_packs += 1
            total_prompts += len(pack.prompts)
            completed_prompts += len(pack.progress.completed_prompts)
            if pack.is_completed():
                completed_packs += 1
            else:
                active_packs += 1
        return {
            "total_packs": total_packs,
            "active_packs": active_packs,
            "completed_packs": completed_packs,
            "total_prompts": total_prompts,
            "completed_prompts": completed_prompts,
            "overall_progress": round(completed_prompts / total_prompts * 100) if total_prompts else 0,
        }

    # --- batched persistence ---

    @property
    def pending_writes(self) -> list[str]:
        """Pack ids with unflushed progress, in scheduling order."""
        return list(self._pending)

    def _schedule_write(self, pack_id: str) -> None:
        self._pending[pack_id] = self._packs[pack_id].progress.copy()
        if len(self._pending) >= self.config.max_batch_size:
            logger.debug("batch_full", size=len(self._pending))
            self._cancel_timer()
            self._spawn_flush()
            return
        self._arm_timer()

    def _arm_timer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: writes stay pending until flush() or close()
            return
        self._cancel_timer()
        self._flush_handle = loop.call_later(self.config.flush_delay_seconds, self._spawn_flush)

    def _cancel_timer(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

    def _spawn_flush(self) -> None:
        self._flush_handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _write(self, pack_id: str, snapshot: Progress) -> None:
        async for attempt in async_retrying(self._retry_config):
            with attempt:
                await self.store.update_progress(pack_id, snapshot)

    async def flush(self) -> int:
        """Persist every pending snapshot. Returns the number written."""
        self._cancel_timer()
        async with self._flush_lock:
            if not self._pending:
                return 0
            batch, self._pending = self._pending, {}
            done: set[str] = set()
            written = 0
            try:
                with metrics.timer("engine.flush"):
                    for pack_id, snapshot in batch.items():
                        try:
                            await self._write(pack_id, snapshot)
                        except PromptsError as e:
                            metrics.counter("engine.write_failures")
                            logger.error("progress_write_failed", pack_id=pack_id, error=str(e))
                            self._requeue(pack_id, snapshot)
                        else:
                            written += 1
                            self._failed.discard(pack_id)
                        done.add(pack_id)
            finally:
                # Snapshots never attempted stay queued when the batch aborts
                for pack_id, snapshot in batch.items():
                    if pack_id not in done:
                        self._requeue(pack_id, snapshot)
            metrics.counter("engine.flushes")
            logger.debug("progress_flushed", written=written, requeued=len(batch) - written)
        self._evict_under_pressure()
        return written

    def _requeue(self, pack_id: str, snapshot: Progress) -> None:
        self._failed.add(pack_id)
        # A newer snapshot queued meanwhile supersedes this one
        self._pending.setdefault(pack_id, snapshot)

    async def _flush_one(self, pack_id: str) -> None:
        """Write one pack's pending snapshot. Caller holds the flush lock."""
        snapshot = self._pending.pop(pack_id, None)
        if snapshot is None:
            return
        try:
            await self._write(pack_id, snapshot)
        except Exception:
            self._requeue(pack_id, snapshot)
            raise

    async def _write_through(self, pack_id: str, reset: bool = False) -> None:
        """Persist immediately, superseding any pending write for the pack.

        Runs under the flush lock so an in-flight batch can never land an
        older snapshot after this write.
        """
        self._cache.invalidate(pack_id)
        async with self._flush_lock:
            self._pending.pop(pack_id, None)
            snapshot = self._packs[pack_id].progress.copy()
            try:
                if reset:
                    async for attempt in async_retrying(self._retry_config):
                        with attempt:
                            await self.store.reset_progress(pack_id)
                else:
                    await self._write(pack_id, snapshot)
            except PromptsError:
                self._failed.add(pack_id)
                self._pending[pack_id] = snapshot
                raise
            self._failed.discard(pack_id)

    # --- memory management ---

    @property
    def hydrated_count(self) -> int:
        return len(self._hydrated)

    def _eviction_target(self) -> Optional[int]:
        """Hydrated-pack count to shrink to, or None without memory pressure."""
        try:
            percent = self._memory_probe()
        except Exception as e:
            logger.warning("memory_probe_failed", error=str(e))
            percent = 0.0
        if percent >= self.config.memory_pressure_percent:
            return min(self.config.max_hydrated_packs, len(self._hydrated) // 2)
        if len(self._hydrated) > self.config.max_hydrated_packs:
            return self.config.max_hydrated_packs
        return None

    def _evict_under_pressure(self) -> int:
        self._cache.clear_expired()
        target = self._eviction_target()
        if target is None:
            return 0
        evicted = 0
        for pack_id in list(self._hydrated):
            if len(self._hydrated) <= target:
                break
            if pack_id in self._pending or pack_id in self._failed:
                continue
            self._hydrated.pop(pack_id)
            self._packs[pack_id].progress = Progress()
            self._cache.invalidate(pack_id)
            evicted += 1
        if evicted:
            metrics.counter("engine.evictions", evicted)
            logger.info("packs_evicted", count=evicted, hydrated=len(self._hydrated))
        return evicted

    async def relieve_memory_pressure(self) -> int:
        """Flush pending writes, then evict least recently accessed clean packs."""
        await self.flush()
        return self._evict_under_pressure()

    async def close(self) -> None:
        """Cancel the debounce timer, flush everything and release the registry."""
        self._cancel_timer()
        for task in list(self._flush_tasks):
            await task
        await self.flush()
        if self._pending:
            logger.error("progress_unsaved_on_close", pack_ids=list(self._pending))
        self._packs.clear()
        self._hydrated.clear()
        self._cache.clear()
        logger.info("engine_closed")
