"""Shared test fixtures for daily prompts."""

import random
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from app.config_models import AppConfig, EngineConfig, RetryConfig  # noqa: E402
from prompts.engine import PromptEngine  # noqa: E402
from prompts.errors import TransientIOError  # noqa: E402
from prompts.models import Pack, Progress, Prompt  # noqa: E402
from prompts.store import ProgressStore  # noqa: E402
from shared_types import PackType  # noqa: E402

NOW = datetime(2026, 10, 19, 8, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MemoryProgressStore(ProgressStore):
    """In-memory store recording every write; can be told to fail."""

    def __init__(self):
        self.records: dict[str, dict] = {}
        self.archived: dict[str, dict] = {}
        self.writes: list[str] = []
        self.fail_writes = 0

    def get_progress(self, pack_id: str) -> Progress:
        data = self.records.get(pack_id)
        return Progress.from_dict(data) if data else Progress()

    async def update_progress(self, pack_id: str, progress: Progress) -> None:
        if self.fail_writes:
            self.fail_writes -= 1
            raise TransientIOError("disk unavailable")
        self.records[pack_id] = progress.to_dict()
        self.writes.append(pack_id)

    async def reset_progress(self, pack_id: str) -> None:
        self.records.pop(pack_id, None)
        self.writes.append(pack_id)

    async def archive_progress(self, pack_id: str) -> None:
        if pack_id in self.records:
            self.archived[pack_id] = self.records.pop(pack_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryProgressStore()


@pytest.fixture
def sequential_pack():
    return Pack(
        id="seq",
        name="Morning Pages",
        type=PackType.SEQUENTIAL,
        prompts=[
            Prompt(id="a", content="What are you grateful for?", order=1),
            Prompt(id="b", content="What will you focus on today?", order=2),
            Prompt(id="c", content="What did you learn yesterday?", order=3),
        ],
    )


@pytest.fixture
def random_pack():
    return Pack(
        id="rnd",
        name="Creative Sparks",
        type=PackType.RANDOM,
        prompts=[Prompt(id=f"r{i}", content=f"Spark number {i}") for i in range(5)],
    )


@pytest.fixture
def date_pack():
    return Pack(
        id="cal",
        name="Advent Journal",
        type=PackType.DATE,
        prompts=[
            Prompt(id="yesterday", content="Look back", date=NOW - timedelta(days=1)),
            Prompt(id="today-1", content="First thing today", date=NOW.replace(hour=6)),
            Prompt(id="today-2", content="Second thing today", date=NOW.replace(hour=20)),
            Prompt(id="tomorrow", content="Look ahead", date=NOW + timedelta(days=1)),
        ],
    )


@pytest.fixture
def engine_config():
    return EngineConfig(flush_delay_seconds=0.01, max_batch_size=20, cache_ttl_seconds=30)


@pytest.fixture
def fast_retry():
    return RetryConfig(max_attempts=2, min_wait=0, max_wait=0)


@pytest.fixture
def engine(store, engine_config, fast_retry, clock):
    return PromptEngine(
        store,
        config=engine_config,
        retry_config=fast_retry,
        clock=clock,
        rng=random.Random(42),
        memory_probe=lambda: 0.0,
    )


@pytest.fixture
def app_config(tmp_path):
    return AppConfig.from_dict({
        "paths": {
            "progress_db": str(tmp_path / "progress.db"),
            "notes_dir": str(tmp_path / "notes"),
            "packs_file": str(tmp_path / "packs.yaml"),
        },
        "engine": {"flush_delay_seconds": 0.01},
        "retry": {"max_attempts": 2, "min_wait": 0, "max_wait": 0},
        "scheduler": {"queue_delay_seconds": 0, "native_enabled": False},
    })
