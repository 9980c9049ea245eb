"""Composition root: builds store, engine, note sink and scheduler from config."""

import asyncio
import signal
from pathlib import Path
from typing import Optional

import structlog
import yaml

from notes.daily import MarkdownDailyNotes
from notes.sink import NoteSink
from notifications.scheduler import NotificationScheduler
from observability import log_run_summary
from prompts.engine import PromptEngine
from prompts.errors import ValidationError
from prompts.models import Pack
from prompts.store import ProgressStore, SqliteProgressStore

from .config import load_config_model
from .config_models import AppConfig

logger = structlog.get_logger()


def load_pack_definitions(path: str | Path) -> list[Pack]:
    """Read ``packs: [...]`` from a YAML file. A missing file yields no packs."""
    path = Path(path).expanduser()
    if not path.exists():
        logger.warning("packs_file_missing", path=str(path))
        return []
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in packs file: {e}")

    entries = data.get("packs", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError("Packs file must contain a 'packs' list")

    packs = []
    for i, entry in enumerate(entries):
        try:
            packs.append(Pack.from_dict(entry))
        except ValidationError as e:
            raise ValueError(f"Invalid pack #{i} in {path.name}: {e}") from e
    return packs


def save_pack_definitions(packs: list[Pack], path: str | Path) -> Path:
    """Write pack definitions (without progress) as YAML."""
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    entries = []
    for pack in packs:
        data = pack.to_dict()
        data.pop("progress", None)
        entries.append(data)
    with open(path, "w") as f:
        yaml.safe_dump({"packs": entries}, f, sort_keys=False, allow_unicode=True)
    return path


class PromptsRuntime:
    """Owns one engine and one scheduler for the lifetime of the process."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        store: Optional[ProgressStore] = None,
        note_sink: Optional[NoteSink] = None,
    ):
        self.config = config or load_config_model()
        paths = self.config.paths
        self.store = store or SqliteProgressStore(paths.progress_db)
        self.engine = PromptEngine(self.store, self.config.engine, self.config.retry)
        self.notes = note_sink or MarkdownDailyNotes(paths.notes_dir, self.config.notes)
        self.scheduler = NotificationScheduler(self.engine, self.notes, config=self.config.scheduler)

    def load_packs(self, packs: Optional[list[Pack]] = None) -> list[Pack]:
        if packs is None:
            packs = load_pack_definitions(self.config.paths.packs_file)
        self.engine.load_packs(packs)
        return self.engine.list_packs()

    async def start(self, packs: Optional[list[Pack]] = None) -> None:
        """Load packs and start scheduling. Call from inside the event loop."""
        loaded = self.load_packs(packs)
        self.scheduler.start(loaded)
        logger.info("runtime_started", packs=len(loaded))

    async def shutdown(self) -> None:
        await self.scheduler.destroy()
        await self.engine.close()
        log_run_summary()
        logger.info("runtime_stopped")


async def run_forever(runtime: PromptsRuntime) -> None:
    """Run until SIGINT/SIGTERM, then shut down cleanly."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops lack signal handlers
            pass
    await runtime.start()
    try:
        await stop.wait()
    finally:
        await runtime.shutdown()
