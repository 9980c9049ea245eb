"""Daily notification scheduling, delivery and click handoff."""

import asyncio
from contextlib import suppress
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol

import structlog
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.config_models import SchedulerConfig
from notes.sink import NoteSink
from observability import metrics
from prompts.errors import DeliveryError, FormatError, PromptsError
from prompts.models import Pack, Prompt
from shared_types import NotificationChannel, NoticeKind

from .channels import DesktopNotifier, InAppChannel, NativeChannel, Notice
from .formatting import format_notification_text, notification_title
from .queue import DeliveryQueue
from .timing import next_fire_time

logger = structlog.get_logger().bind(source="scheduler")

SWEEP_JOB_ID = "missed-sweep"


def prompt_job_id(pack_id: str) -> str:
    return f"prompt:{pack_id}"


class SettingsLookup(Protocol):
    def get_prompt_pack(self, pack_id: str) -> Optional[Pack]:
        ...


@dataclass
class ScheduledNotification:
    pack_id: str
    fire_at: datetime
    scheduled_at: datetime
    job_id: str


class NotificationScheduler:
    """One daily timer per notifying pack, backed by APScheduler date jobs.

    Every per-pack failure is logged and reported as an in-app notice; it
    never stops other packs from being scheduled or delivered.
    """

    def __init__(
        self,
        engine,
        note_sink: NoteSink,
        settings_lookup: Optional[SettingsLookup] = None,
        native: Optional[NativeChannel] = None,
        in_app: Optional[InAppChannel] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or SchedulerConfig()
        self.engine = engine
        self.notes = note_sink
        self.settings = settings_lookup or engine
        self._clock = clock or datetime.now
        self.in_app = in_app or InAppChannel()
        self.native = native or NativeChannel(
            DesktopNotifier(self.config.app_name),
            recheck_hours=self.config.permission_recheck_hours,
            clock=self._clock,
        )
        self.scheduler = scheduler or AsyncIOScheduler()
        self.queue = DeliveryQueue(self.config.recent_window_minutes, self._clock)

        self._scheduled: dict[str, ScheduledNotification] = {}
        self._announced_missed: set[tuple[str, datetime]] = set()
        self._drain_task: Optional[asyncio.Task] = None
        self._started = False

    # --- lifecycle ---

    def start(self, packs: Optional[Iterable[Pack]] = None) -> None:
        """Probe permissions, start the missed-fire sweep and schedule packs.

        Must be called with a running event loop.
        """
        self.refresh_permission()
        self.scheduler.add_job(
            self.check_missed_notifications,
            trigger=IntervalTrigger(seconds=self.config.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        if packs is not None:
            self.schedule_all(packs)
        if not self.scheduler.running:
            self.scheduler.start()
        self._started = True
        logger.info("scheduler_started", scheduled=len(self._scheduled))

    async def destroy(self) -> None:
        """Cancel every timer, the sweep and pending deliveries."""
        for pack_id in list(self._scheduled):
            self.cancel_notification(pack_id)
        with suppress(JobLookupError):
            self.scheduler.remove_job(SWEEP_JOB_ID)
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._drain_task
        self._drain_task = None
        self.queue.clear()
        self.in_app.clear()
        await self.native.close()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # AsyncIOScheduler defers shutdown to the loop
            await asyncio.sleep(0)
        self._started = False
        logger.info("scheduler_destroyed")

    def _on_job_error(self, event):
        logger.error("job_error", job_id=event.job_id, exception=str(event.exception))

    # --- scheduling ---

    def schedule_notification(self, pack: Pack) -> Optional[ScheduledNotification]:
        """(Re)arm the daily timer for a pack. None when the pack is not scheduled."""
        self.cancel_notification(pack.id)
        if not pack.settings.notifications_enabled:
            logger.debug("notifications_disabled", pack_id=pack.id)
            return None

        now = self._clock()
        try:
            fire_at = next_fire_time(pack.settings.notification_time, now)
        except FormatError as e:
            self._report(pack, f"Could not schedule '{pack.name}': {e}")
            return None

        job_id = prompt_job_id(pack.id)
        self.scheduler.add_job(
            self.trigger_notification,
            trigger=DateTrigger(run_date=fire_at),
            args=[pack.id],
            id=job_id,
            replace_existing=True,
            misfire_grace_time=max(1, int(self.config.missed_grace_seconds)),
        )
        entry = ScheduledNotification(pack_id=pack.id, fire_at=fire_at, scheduled_at=now, job_id=job_id)
        self._scheduled[pack.id] = entry
        logger.info("notification_scheduled", pack_id=pack.id, fire_at=fire_at.isoformat())
        return replace(entry)

    def cancel_notification(self, pack_id: str) -> bool:
        entry = self._scheduled.pop(pack_id, None)
        with suppress(JobLookupError):
            self.scheduler.remove_job(prompt_job_id(pack_id))
        if entry:
            logger.debug("notification_cancelled", pack_id=pack_id)
        return entry is not None

    def reschedule_notification(self, pack: Pack) -> Optional[ScheduledNotification]:
        return self.schedule_notification(pack)

    def schedule_all(self, packs: Iterable[Pack]) -> list[ScheduledNotification]:
        """Schedule every pack; packs not in ``packs`` lose their timer and queued deliveries."""
        packs = list(packs)
        keep = {pack.id for pack in packs}
        for pack_id in list(self._scheduled):
            if pack_id not in keep:
                self.cancel_notification(pack_id)
                self.queue.discard_pack(pack_id)
        scheduled = []
        for pack in packs:
            entry = self.schedule_notification(pack)
            if entry:
                scheduled.append(entry)
        return scheduled

    def get_scheduled_notifications(self) -> list[ScheduledNotification]:
        return [replace(entry) for entry in self._scheduled.values()]

    # --- firing ---

    async def trigger_notification(self, pack_id: str) -> bool:
        """Timer callback: enqueue the pack's next prompt and rearm for tomorrow."""
        self._scheduled.pop(pack_id, None)
        pack = self.settings.get_prompt_pack(pack_id)
        if pack is None:
            logger.warning("notification_pack_missing", pack_id=pack_id)
            return False
        try:
            prompt = await self.engine.get_next_prompt(pack_id)
            if prompt is None:
                logger.info("no_prompts_remaining", pack_id=pack_id)
                return False
            return self.enqueue(pack, prompt)
        except PromptsError as e:
            self._report(pack, f"Could not fetch a prompt for '{pack.name}': {e}")
            return False
        finally:
            self.schedule_notification(pack)

    def _build_notice(self, pack: Pack, prompt: Optional[Prompt], kind: NoticeKind) -> Notice:
        if kind == NoticeKind.MISSED:
            body = f"You missed your {pack.settings.notification_time} prompt. Open it now to catch up."
            timeout = self.config.missed_notice_timeout_seconds
        else:
            body = format_notification_text(prompt.content, self.config.max_notification_length)
            timeout = self.config.notice_timeout_seconds
        return Notice(
            pack_id=pack.id,
            pack_name=pack.name,
            title=notification_title(pack.name, missed=kind == NoticeKind.MISSED),
            body=body,
            kind=kind,
            prompt=prompt,
            timeout_seconds=timeout,
            created_at=self._clock(),
        )

    def enqueue(self, pack: Pack, prompt: Optional[Prompt], kind: NoticeKind = NoticeKind.PROMPT) -> bool:
        """Queue a delivery; duplicates of a queued (pack, prompt) are dropped."""
        notice = self._build_notice(pack, prompt, kind)
        if not self.queue.enqueue(notice, pack.type, pack.settings.zen_mode):
            logger.debug("duplicate_delivery_dropped", pack_id=pack.id, kind=kind)
            return False
        self._ensure_drain()
        return True

    def _ensure_drain(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._drain_task = loop.create_task(self.drain_queue())

    async def drain_queue(self) -> int:
        """Deliver queued notices one at a time. Returns the number delivered."""
        delivered = 0
        while True:
            item = self.queue.pop_next()
            if item is None:
                return delivered
            if delivered:
                await asyncio.sleep(self.config.queue_delay_seconds)
            await self.show_notification(item.notice)
            self.queue.record_delivery(item.notice.pack_id)
            delivered += 1

    async def wait_idle(self) -> None:
        """Wait for the current drain pass to finish."""
        if self._drain_task is not None:
            await asyncio.shield(self._drain_task)

    async def show_notification(self, notice: Notice) -> NotificationChannel:
        """Present a notice, falling back to in-app when native is unavailable or fails."""
        pack = self.settings.get_prompt_pack(notice.pack_id)
        wants_native = (
            pack is not None
            and pack.settings.channel == NotificationChannel.NATIVE
            and self.config.native_enabled
        )
        if wants_native:
            if self.native.permission.granted:
                try:
                    await self.native.deliver(notice, self._on_click)
                    metrics.counter("notifications.native")
                    logger.info("notification_delivered", pack_id=notice.pack_id, channel="native")
                    return NotificationChannel.NATIVE
                except DeliveryError as e:
                    logger.warning("native_delivery_failed", pack_id=notice.pack_id, error=str(e))
            else:
                logger.info("native_not_permitted", pack_id=notice.pack_id)
            metrics.counter("notifications.fallbacks")

        await self.in_app.deliver(notice, self._on_click)
        metrics.counter("notifications.in_app")
        logger.info("notification_delivered", pack_id=notice.pack_id, channel="in_app")
        return NotificationChannel.IN_APP

    # --- missed fires ---

    async def check_missed_notifications(self) -> int:
        """Sweep for timers whose fire time passed unfired. Returns notices announced."""
        now = self._clock()
        grace = timedelta(seconds=self.config.missed_grace_seconds)
        announced = 0
        for pack_id, entry in list(self._scheduled.items()):
            if entry.fire_at + grace > now:
                continue
            self.cancel_notification(pack_id)
            pack = self.settings.get_prompt_pack(pack_id)
            if pack is None:
                continue
            key = (pack_id, entry.fire_at)
            if key not in self._announced_missed:
                self._announced_missed.add(key)
                if self.enqueue(pack, None, NoticeKind.MISSED):
                    announced += 1
                    metrics.counter("notifications.missed")
                    logger.info("notification_missed", pack_id=pack_id, fire_at=entry.fire_at.isoformat())
            self.schedule_notification(pack)

        # Forget announcements older than a day
        cutoff = now - timedelta(days=1)
        self._announced_missed = {k for k in self._announced_missed if k[1] >= cutoff}

        if self.native.needs_recheck():
            self.refresh_permission()
        await self.engine.relieve_memory_pressure()
        return announced

    # --- clicks ---

    async def _on_click(self, notice: Notice) -> None:
        if notice.kind == NoticeKind.MISSED:
            await self.handle_missed_click(notice.pack_id)
        elif notice.prompt is not None:
            await self.handle_notification_click(notice.pack_id, notice.prompt)

    async def handle_notification_click(self, pack_id: str, prompt: Prompt) -> bool:
        """Hand the prompt to today's note. Failures are reported, never raised."""
        pack = self.settings.get_prompt_pack(pack_id)
        if pack is None:
            self.in_app.report(f"Pack {pack_id} no longer exists", pack_id=pack_id)
            return False
        try:
            if pack.settings.note_integration:
                note = await self.notes.create_or_open_daily_note()
                await self.notes.insert_prompt(prompt, note)
            if pack.settings.zen_mode:
                self.notes.enable_zen_mode()
            await self.engine.touch(pack_id)
        except (PromptsError, OSError, ValueError) as e:
            self._report(pack, f"Could not open prompt from '{pack.name}': {e}")
            return False
        metrics.counter("notifications.clicked")
        logger.info("notification_clicked", pack_id=pack_id, prompt_id=prompt.id)
        return True

    async def handle_missed_click(self, pack_id: str) -> bool:
        pack = self.settings.get_prompt_pack(pack_id)
        if pack is None:
            self.in_app.report(f"Pack {pack_id} no longer exists", pack_id=pack_id)
            return False
        try:
            prompt = await self.engine.get_next_prompt(pack_id)
        except PromptsError as e:
            self._report(pack, f"Could not fetch a prompt for '{pack.name}': {e}")
            return False
        if prompt is None:
            self.in_app.report(f"No prompts remaining in '{pack.name}'", pack.id, pack.name)
            return False
        return await self.handle_notification_click(pack_id, prompt)

    # --- permissions ---

    def refresh_permission(self) -> dict:
        state = self.native.check_permission()
        return state.to_dict()

    async def request_permissions(self) -> bool:
        granted = await self.native.request_permission()
        logger.info("native_permission_requested", granted=granted)
        return granted

    def get_permission_status(self) -> dict:
        return self.native.permission.to_dict()

    def _report(self, pack: Pack, message: str) -> None:
        metrics.counter("notifications.errors")
        logger.error("notification_error", pack_id=pack.id, message=message)
        self.in_app.report(message, pack.id, pack.name)
