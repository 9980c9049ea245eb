"""Delivery channels: in-app notices and native desktop notifications."""

import asyncio
import json
import shutil
import sys
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog

from prompts.errors import DeliveryError
from prompts.models import Prompt, new_id
from shared_types import NotificationChannel, NoticeKind

logger = structlog.get_logger().bind(source="notifications")

# Keep the newest N notices for inspection
MAX_HISTORY = 100


@dataclass
class Notice:
    """A user-facing notice about a pack."""

    pack_id: str
    pack_name: str
    title: str
    body: str
    kind: NoticeKind = NoticeKind.PROMPT
    prompt: Optional[Prompt] = None
    timeout_seconds: float = 30.0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)


ClickHandler = Callable[[Notice], Awaitable[None]]


class DeliveryChannel(ABC):
    """Presents notices to the user."""

    channel: NotificationChannel

    @abstractmethod
    async def deliver(self, notice: Notice, on_click: Optional[ClickHandler] = None) -> None:
        """Show a notice. Raises DeliveryError when it cannot be shown."""


class InAppChannel(DeliveryChannel):
    """Notices kept in memory for the host application to render.

    A notice stays active until it is clicked, dismissed or its timeout
    elapses.
    """

    channel = NotificationChannel.IN_APP

    def __init__(self):
        self._active: dict[str, tuple[Notice, Optional[ClickHandler]]] = {}
        self._expiry: dict[str, asyncio.TimerHandle] = {}
        self.history: deque[Notice] = deque(maxlen=MAX_HISTORY)

    def _present(self, notice: Notice, on_click: Optional[ClickHandler]) -> None:
        self._active[notice.id] = (notice, on_click)
        self.history.append(notice)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None and notice.timeout_seconds > 0:
            self._expiry[notice.id] = loop.call_later(notice.timeout_seconds, self.expire, notice.id)
        logger.info("in_app_notice", notice_id=notice.id, pack_id=notice.pack_id, kind=notice.kind)

    async def deliver(self, notice: Notice, on_click: Optional[ClickHandler] = None) -> None:
        self._present(notice, on_click)

    def report(self, message: str, pack_id: str = "", pack_name: str = "", timeout_seconds: float = 10.0) -> Notice:
        """Show an error notice; never raises."""
        notice = Notice(
            pack_id=pack_id,
            pack_name=pack_name,
            title="Daily prompts error",
            body=message,
            kind=NoticeKind.ERROR,
            timeout_seconds=timeout_seconds,
        )
        self._present(notice, None)
        return notice

    def active_notices(self) -> list[Notice]:
        return [notice for notice, _ in self._active.values()]

    def _close(self, notice_id: str) -> Optional[tuple[Notice, Optional[ClickHandler]]]:
        handle = self._expiry.pop(notice_id, None)
        if handle is not None:
            handle.cancel()
        return self._active.pop(notice_id, None)

    async def click(self, notice_id: str) -> bool:
        """Run the notice's click handler. False for unknown/expired notices."""
        entry = self._close(notice_id)
        if entry is None:
            return False
        notice, on_click = entry
        if on_click is not None:
            await on_click(notice)
        return True

    def dismiss(self, notice_id: str) -> bool:
        return self._close(notice_id) is not None

    def expire(self, notice_id: str) -> None:
        if self._close(notice_id) is not None:
            logger.debug("in_app_notice_expired", notice_id=notice_id)

    def clear(self) -> None:
        for notice_id in list(self._active):
            self._close(notice_id)


@dataclass
class PermissionState:
    granted: bool = False
    requested: bool = False
    supported: bool = False
    last_checked: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {"granted": self.granted, "requested": self.requested, "supported": self.supported}


class DesktopNotifier:
    """Desktop notifications through ``notify-send`` (Linux) or ``osascript`` (macOS).

    Commands run as asyncio subprocesses. Only notify-send reports clicks,
    via ``--action``/``--wait``.
    """

    def __init__(self, app_name: str = "Daily Prompts", platform: str = sys.platform, which=shutil.which):
        self.app_name = app_name
        self.platform = platform
        self._which = which

    @property
    def command(self) -> Optional[str]:
        if self.platform.startswith("linux"):
            return "notify-send"
        if self.platform == "darwin":
            return "osascript"
        return None

    def is_supported(self) -> bool:
        return self.command is not None and self._which(self.command) is not None

    def build_args(self, title: str, body: str, timeout_seconds: float) -> list[str]:
        if self.command == "notify-send":
            return [
                "notify-send",
                f"--app-name={self.app_name}",
                f"--expire-time={int(timeout_seconds * 1000)}",
                "--action=default=Open",
                "--wait",
                title,
                body,
            ]
        if self.command == "osascript":
            script = f"display notification {json.dumps(body)} with title {json.dumps(title)}"
            return ["osascript", "-e", script]
        raise DeliveryError(f"No desktop notifier on platform {self.platform}")

    async def launch(self, title: str, body: str, timeout_seconds: float) -> asyncio.subprocess.Process:
        args = self.build_args(title, body, timeout_seconds)
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DeliveryError(f"Failed to run {args[0]}: {e}") from e

    async def wait_for_click(self, process: asyncio.subprocess.Process) -> bool:
        """True when the user activated the notification."""
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            logger.warning(
                "desktop_notifier_failed",
                returncode=process.returncode,
                stderr=stderr.decode(errors="replace").strip(),
            )
            return False
        return stdout.decode(errors="replace").strip() == "default"


class NativeChannel(DeliveryChannel):
    """OS notifications gated on a granted permission."""

    channel = NotificationChannel.NATIVE

    def __init__(
        self,
        notifier: Optional[DesktopNotifier] = None,
        recheck_hours: float = 24.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.notifier = notifier or DesktopNotifier()
        self.recheck_interval = timedelta(hours=recheck_hours)
        self._clock = clock or datetime.now
        self.permission = PermissionState()
        self._click_tasks: set[asyncio.Task] = set()

    def check_permission(self) -> PermissionState:
        """Probe notifier availability. Desktop notifiers need no user grant."""
        supported = self.notifier.is_supported()
        self.permission.supported = supported
        self.permission.granted = supported
        self.permission.last_checked = self._clock()
        logger.info("native_permission_checked", supported=supported)
        return self.permission

    async def request_permission(self) -> bool:
        self.permission.requested = True
        return self.check_permission().granted

    def needs_recheck(self) -> bool:
        checked = self.permission.last_checked
        return checked is None or self._clock() - checked >= self.recheck_interval

    async def deliver(self, notice: Notice, on_click: Optional[ClickHandler] = None) -> None:
        if not self.permission.granted:
            raise DeliveryError("Native notifications are not permitted")
        process = await self.notifier.launch(notice.title, notice.body, notice.timeout_seconds)
        task = asyncio.create_task(self._await_click(process, notice, on_click))
        self._click_tasks.add(task)
        task.add_done_callback(self._click_tasks.discard)

    async def _await_click(
        self, process: asyncio.subprocess.Process, notice: Notice, on_click: Optional[ClickHandler]
    ) -> None:
        clicked = await self.notifier.wait_for_click(process)
        if clicked and on_click is not None:
            await on_click(notice)

    async def close(self) -> None:
        for task in list(self._click_tasks):
            task.cancel()
        if self._click_tasks:
            await asyncio.gather(*self._click_tasks, return_exceptions=True)
