"""Tests for the prompt engine."""

import asyncio
import random

import pytest

from app.config_models import EngineConfig
from observability import metrics
from prompts.engine import PromptEngine
from prompts.errors import NotFoundError, TransientIOError, TypeMismatchError, ValidationError
from prompts.models import Progress, Prompt


@pytest.fixture
def loaded(engine, sequential_pack, random_pack, date_pack):
    engine.load_packs([sequential_pack, random_pack, date_pack])
    return engine


def _engine(store, clock, fast_retry, probe=lambda: 0.0, **config):
    return PromptEngine(
        store,
        config=EngineConfig(**{"flush_delay_seconds": 0.01, **config}),
        retry_config=fast_retry,
        clock=clock,
        rng=random.Random(1),
        memory_probe=probe,
    )


class TestRegistry:
    def test_load_overlays_stored_progress(self, engine, store, sequential_pack):
        store.records["seq"] = Progress(completed_prompts={"a", "deleted"}, current_index=1).to_dict()
        engine.load_packs([sequential_pack])
        progress = engine.get_progress("seq")
        assert progress.completed_prompts == {"a"}
        assert progress.current_index == 1

    def test_callers_get_copies(self, loaded):
        pack = loaded.get_pack("seq")
        pack.progress.completed_prompts.add("a")
        pack.prompts.clear()
        fresh = loaded.get_pack("seq")
        assert fresh.progress.completed_prompts == set()
        assert len(fresh.prompts) == 3

    def test_unknown_pack(self, loaded):
        assert loaded.get_pack("nope") is None
        assert loaded.get_prompt_pack("nope") is None
        with pytest.raises(NotFoundError):
            loaded.get_progress("nope")

    def test_add_duplicate_rejected(self, loaded, sequential_pack):
        with pytest.raises(ValidationError):
            loaded.add_pack(sequential_pack)

    def test_list_packs(self, loaded):
        assert sorted(p.id for p in loaded.list_packs()) == ["cal", "rnd", "seq"]

    @pytest.mark.asyncio
    async def test_update_pack_keeps_progress(self, loaded):
        await loaded.mark_prompt_completed("seq", "a")
        await loaded.mark_prompt_completed("seq", "c")
        pack = loaded.get_pack("seq")
        pack.remove_prompt("c")
        pack.add_prompt(Prompt(id="d", content="new"))
        loaded.update_pack(pack)
        assert loaded.get_progress("seq").completed_prompts == {"a"}
        assert loaded.get_pack("seq").get_prompt("d").order == 3

    def test_update_unknown_pack(self, engine, sequential_pack):
        with pytest.raises(NotFoundError):
            engine.update_pack(sequential_pack)

    @pytest.mark.asyncio
    async def test_remove_pack_flushes_first(self, loaded, store):
        await loaded.mark_prompt_completed("seq", "a")
        assert store.writes == []
        assert await loaded.remove_pack("seq") is True
        assert store.records["seq"]["completed_prompts"] == ["a"]
        assert loaded.get_pack("seq") is None
        assert await loaded.remove_pack("seq") is False

    @pytest.mark.asyncio
    async def test_archive_pack(self, loaded, store):
        await loaded.mark_prompt_completed("rnd", "r2")
        await loaded.archive_pack("rnd")
        assert store.archived["rnd"]["completed_prompts"] == ["r2"]
        assert "rnd" not in store.records
        assert loaded.get_pack("rnd") is None


class TestSelection:
    @pytest.mark.asyncio
    async def test_sequential_flow(self, loaded):
        assert (await loaded.get_next_prompt("seq")).id == "a"
        await loaded.mark_prompt_completed("seq", "a")
        assert (await loaded.get_next_prompt("seq")).id == "b"
        assert loaded.get_next_prompt_index("seq") == 1

    @pytest.mark.asyncio
    async def test_next_prompt_unknown_pack(self, loaded):
        with pytest.raises(NotFoundError):
            await loaded.get_next_prompt("nope")

    @pytest.mark.asyncio
    async def test_mark_unknown_prompt(self, loaded):
        with pytest.raises(NotFoundError):
            await loaded.mark_prompt_completed("seq", "nope")

    @pytest.mark.asyncio
    async def test_next_prompt_touches_last_access(self, loaded, clock):
        clock.advance(hours=2)
        await loaded.get_next_prompt("seq")
        assert loaded.get_progress("seq").last_access_date == clock.now

    @pytest.mark.asyncio
    async def test_cached_until_completion(self, loaded):
        metrics.reset()
        first = await loaded.get_next_prompt("rnd")
        again = await loaded.get_next_prompt("rnd")
        assert first.id == again.id
        assert metrics.get("engine.cache_hits") == 1

        await loaded.mark_prompt_completed("rnd", first.id)
        after = await loaded.get_next_prompt("rnd")
        assert after.id != first.id

    @pytest.mark.asyncio
    async def test_date_pack_uses_target_day(self, loaded, clock):
        assert (await loaded.get_next_prompt("cal")).id == "today-1"
        tomorrow = clock.now.replace(day=20)
        assert (await loaded.get_next_prompt("cal", tomorrow)).id == "tomorrow"

    @pytest.mark.asyncio
    async def test_random_covers_pack_before_repeating(self, loaded):
        seen = set()
        for _ in range(5):
            prompt = await loaded.get_next_prompt("rnd")
            assert prompt.id not in seen
            seen.add(prompt.id)
            await loaded.mark_prompt_completed("rnd", prompt.id)
        assert loaded.is_cycle_completed("rnd")
        assert loaded.get_available_prompts_count("rnd") == 0


class TestTypeGating:
    @pytest.mark.asyncio
    async def test_restart_requires_sequential(self, loaded):
        with pytest.raises(TypeMismatchError):
            await loaded.restart("rnd")

    @pytest.mark.asyncio
    async def test_reset_cycle_requires_random(self, loaded):
        with pytest.raises(TypeMismatchError):
            await loaded.reset_cycle("seq")

    def test_date_queries_require_date_pack(self, loaded):
        with pytest.raises(TypeMismatchError):
            loaded.get_missed_prompts("seq")
        with pytest.raises(TypeMismatchError):
            loaded.can_restart("cal")
        with pytest.raises(TypeMismatchError):
            loaded.is_cycle_completed("seq")

    def test_date_queries(self, loaded):
        assert [p.id for p in loaded.get_missed_prompts("cal")] == ["yesterday"]
        assert [p.id for p in loaded.get_prompts_for_date("cal")] == ["today-1", "today-2"]
        assert [p.id for p in loaded.get_upcoming_prompts("cal")] == ["tomorrow"]
        assert [p.id for p in loaded.get_catch_up_prompts("cal", 3)] == ["yesterday"]
        assert loaded.needs_catch_up("cal")
        assert loaded.get_date_completion_status("cal")["total"] == 2
        assert loaded.get_next_available_date("cal").isoformat() == "2026-10-20"


class TestProgressOperations:
    @pytest.mark.asyncio
    async def test_restart_incomplete_fails(self, loaded):
        with pytest.raises(ValidationError):
            await loaded.restart("seq")

    @pytest.mark.asyncio
    async def test_restart_writes_through(self, loaded, store):
        for prompt_id in ("a", "b", "c"):
            await loaded.mark_prompt_completed("seq", prompt_id)
        assert loaded.can_restart("seq")
        await loaded.restart("seq")
        assert store.records["seq"]["completed_prompts"] == []
        assert "seq" not in loaded.pending_writes

    @pytest.mark.asyncio
    async def test_reset_progress_supersedes_pending(self, loaded, store):
        store.records["seq"] = Progress(completed_prompts={"a"}).to_dict()
        await loaded.mark_prompt_completed("seq", "b")
        await loaded.reset_progress("seq")
        assert "seq" not in store.records
        assert loaded.pending_writes == []
        assert loaded.get_progress("seq").completed_prompts == set()

    @pytest.mark.asyncio
    async def test_reset_cycle(self, loaded, store):
        await loaded.mark_prompt_completed("rnd", "r1")
        await loaded.reset_cycle("rnd")
        assert store.records["rnd"]["used_prompts"] == []
        assert store.records["rnd"]["completed_prompts"] == ["r1"]

    @pytest.mark.asyncio
    async def test_stats(self, loaded):
        for prompt_id in ("a", "b", "c"):
            await loaded.mark_prompt_completed("seq", prompt_id)
        await loaded.mark_prompt_completed("rnd", "r0")

        assert loaded.get_pack_stats("seq") == {
            "total": 3,
            "completed": 3,
            "percentage": 100,
            "is_completed": True,
        }
        assert loaded.is_pack_completed("seq")
        assert loaded.get_overall_stats() == {
            "total_packs": 3,
            "active_packs": 2,
            "completed_packs": 1,
            "total_prompts": 12,
            "completed_prompts": 4,
            "overall_progress": 33,
        }

    @pytest.mark.asyncio
    async def test_stats_invalidated_on_mutation(self, loaded):
        assert loaded.get_pack_stats("seq")["completed"] == 0
        await loaded.mark_prompt_completed("seq", "a")
        assert loaded.get_pack_stats("seq")["completed"] == 1

    def test_overall_stats_empty(self, engine):
        assert engine.get_overall_stats()["overall_progress"] == 0


class TestBatching:
    @pytest.mark.asyncio
    async def test_debounced_flush(self, loaded, store):
        await loaded.mark_prompt_completed("seq", "a")
        await loaded.mark_prompt_completed("seq", "b")
        assert store.writes == []
        await asyncio.sleep(0.05)
        assert store.writes == ["seq"]
        assert store.records["seq"]["completed_prompts"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_flush_preserves_scheduling_order(self, loaded, store):
        await loaded.mark_prompt_completed("rnd", "r1")
        await loaded.mark_prompt_completed("seq", "a")
        await loaded.mark_prompt_completed("rnd", "r2")
        assert await loaded.flush() == 2
        assert store.writes == ["rnd", "seq"]

    @pytest.mark.asyncio
    async def test_full_batch_flushes_immediately(self, store, clock, fast_retry, sequential_pack, random_pack):
        engine = _engine(store, clock, fast_retry, flush_delay_seconds=60, max_batch_size=2)
        engine.load_packs([sequential_pack, random_pack])
        await engine.mark_prompt_completed("seq", "a")
        await engine.mark_prompt_completed("rnd", "r1")
        for _ in range(5):
            await asyncio.sleep(0)
        assert sorted(store.writes) == ["rnd", "seq"]

    @pytest.mark.asyncio
    async def test_failed_write_is_requeued(self, loaded, store):
        store.fail_writes = 2
        await loaded.mark_prompt_completed("seq", "a")
        assert await loaded.flush() == 0
        assert loaded.pending_writes == ["seq"]
        assert await loaded.flush() == 1
        assert store.records["seq"]["completed_prompts"] == ["a"]

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, loaded, store):
        store.fail_writes = 1
        await loaded.mark_prompt_completed("seq", "a")
        assert await loaded.flush() == 1

    @pytest.mark.asyncio
    async def test_newer_snapshot_wins_over_requeue(self, loaded, store):
        calls = 0

        async def flaky(pack_id, progress):
            nonlocal calls
            calls += 1
            if calls == 1:
                await loaded.mark_prompt_completed("seq", "b")
            raise TransientIOError("down")

        await loaded.mark_prompt_completed("seq", "a")
        store.update_progress = flaky
        await loaded.flush()
        assert loaded._pending["seq"].completed_prompts == {"a", "b"}

    @pytest.mark.asyncio
    async def test_write_through_failure_raises_and_requeues(self, loaded, store):
        for prompt_id in ("a", "b", "c"):
            await loaded.mark_prompt_completed("seq", prompt_id)
        await loaded.flush()
        store.fail_writes = 2
        with pytest.raises(TransientIOError):
            await loaded.restart("seq")
        assert loaded.pending_writes == ["seq"]

    @pytest.mark.asyncio
    async def test_close_flushes(self, loaded, store):
        await loaded.mark_prompt_completed("cal", "today-1")
        await loaded.close()
        assert store.records["cal"]["completed_prompts"] == ["today-1"]
        assert loaded.list_packs() == []


class TestMemoryManagement:
    @pytest.mark.asyncio
    async def test_lru_eviction_and_rehydration(self, store, clock, fast_retry, sequential_pack, random_pack):
        engine = _engine(store, clock, fast_retry, max_hydrated_packs=1)
        engine.load_packs([sequential_pack, random_pack])
        await engine.mark_prompt_completed("seq", "a")
        await engine.mark_prompt_completed("rnd", "r1")
        await engine.flush()

        assert engine.hydrated_count == 1
        # Least recently accessed pack was evicted but comes back from the store
        assert engine.get_progress("seq").completed_prompts == {"a"}

    @pytest.mark.asyncio
    async def test_system_pressure_evicts_half(self, store, clock, fast_retry, sequential_pack, random_pack, date_pack):
        engine = _engine(store, clock, fast_retry, probe=lambda: 95.0)
        engine.load_packs([sequential_pack, random_pack, date_pack])
        evicted = await engine.relieve_memory_pressure()
        assert evicted == 2
        assert engine.hydrated_count == 1

    @pytest.mark.asyncio
    async def test_failed_pack_never_evicted(self, store, clock, fast_retry, sequential_pack, random_pack):
        engine = _engine(store, clock, fast_retry, probe=lambda: 95.0)
        engine.load_packs([sequential_pack, random_pack])
        await engine.mark_prompt_completed("seq", "a")
        store.fail_writes = 2
        await engine.flush()
        assert "seq" in engine.pending_writes
        assert engine.get_progress("seq").completed_prompts == {"a"}

    @pytest.mark.asyncio
    async def test_no_pressure_no_eviction(self, loaded):
        await loaded.mark_prompt_completed("seq", "a")
        await loaded.flush()
        assert loaded.hydrated_count == 3


class TestFlushOrdering:
    @staticmethod
    def _gate_writes(store):
        started, release = asyncio.Event(), asyncio.Event()
        write = store.update_progress

        async def gated(pack_id, progress):
            started.set()
            await release.wait()
            await write(pack_id, progress)

        store.update_progress = gated
        return started, release

    @pytest.mark.asyncio
    async def test_reset_lands_after_in_flight_flush(self, loaded, store):
        await loaded.mark_prompt_completed("seq", "a")
        started, release = self._gate_writes(store)
        flush = asyncio.create_task(loaded.flush())
        await started.wait()

        reset = asyncio.create_task(loaded.reset_progress("seq"))
        await asyncio.sleep(0)
        release.set()
        await flush
        await reset

        assert "seq" not in store.records
        assert loaded.get_progress("seq").completed_prompts == set()

    @pytest.mark.asyncio
    async def test_archive_waits_for_in_flight_flush(self, loaded, store):
        await loaded.mark_prompt_completed("seq", "a")
        started, release = self._gate_writes(store)
        flush = asyncio.create_task(loaded.flush())
        await started.wait()

        await loaded.mark_prompt_completed("seq", "b")
        archive = asyncio.create_task(loaded.archive_pack("seq"))
        await asyncio.sleep(0)
        release.set()
        await flush
        await archive

        assert "seq" not in store.records
        assert sorted(store.archived["seq"]["completed_prompts"]) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_unexpected_store_error_keeps_batch(self, loaded, store):
        await loaded.mark_prompt_completed("seq", "a")
        await loaded.mark_prompt_completed("rnd", "r1")
        write = store.update_progress

        async def broken(pack_id, progress):
            raise RuntimeError("driver crashed")

        store.update_progress = broken
        with pytest.raises(RuntimeError):
            await loaded.flush()
        assert loaded.pending_writes == ["seq", "rnd"]

        store.update_progress = write
        assert await loaded.flush() == 2
        assert store.records["rnd"]["completed_prompts"] == ["r1"]
