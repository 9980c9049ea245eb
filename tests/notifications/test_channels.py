"""Tests for in-app and native delivery channels."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from notifications.channels import DesktopNotifier, InAppChannel, NativeChannel, Notice
from prompts.errors import DeliveryError
from shared_types import NoticeKind


def _notice(timeout=30.0):
    return Notice(pack_id="seq", pack_name="Morning Pages", title="Daily prompt", body="Write", timeout_seconds=timeout)


class FakeNotifier:
    def __init__(self, supported=True, clicked=True):
        self.supported = supported
        self.clicked = clicked
        self.launched = []

    def is_supported(self):
        return self.supported

    async def launch(self, title, body, timeout_seconds):
        self.launched.append((title, body))
        return MagicMock()

    async def wait_for_click(self, process):
        return self.clicked


class TestInAppChannel:
    @pytest.mark.asyncio
    async def test_click_runs_handler_once(self):
        channel = InAppChannel()
        handler = AsyncMock()
        notice = _notice()
        await channel.deliver(notice, handler)
        assert channel.active_notices() == [notice]

        assert await channel.click(notice.id) is True
        handler.assert_awaited_once_with(notice)
        assert await channel.click(notice.id) is False
        assert channel.active_notices() == []

    @pytest.mark.asyncio
    async def test_notice_expires(self):
        channel = InAppChannel()
        notice = _notice(timeout=0.01)
        await channel.deliver(notice)
        await asyncio.sleep(0.05)
        assert channel.active_notices() == []
        assert list(channel.history) == [notice]

    @pytest.mark.asyncio
    async def test_dismiss(self):
        channel = InAppChannel()
        notice = _notice()
        await channel.deliver(notice)
        assert channel.dismiss(notice.id)
        assert not channel.dismiss(notice.id)

    def test_report_outside_loop(self):
        channel = InAppChannel()
        notice = channel.report("Invalid notification time", pack_id="seq")
        assert notice.kind == NoticeKind.ERROR
        assert channel.active_notices() == [notice]


class TestDesktopNotifier:
    def test_linux_args(self):
        notifier = DesktopNotifier(app_name="Prompts", platform="linux", which=lambda cmd: "/usr/bin/" + cmd)
        args = notifier.build_args("Title", "Body", 5)
        assert args[0] == "notify-send"
        assert "--expire-time=5000" in args
        assert "--wait" in args
        assert args[-2:] == ["Title", "Body"]
        assert notifier.is_supported()

    def test_macos_args_quote_text(self):
        notifier = DesktopNotifier(platform="darwin")
        args = notifier.build_args('Say "hi"', "Body", 5)
        assert args[:2] == ["osascript", "-e"]
        assert 'with title "Say \\"hi\\""' in args[2]

    def test_unsupported_platform(self):
        notifier = DesktopNotifier(platform="win32")
        assert not notifier.is_supported()
        with pytest.raises(DeliveryError):
            notifier.build_args("t", "b", 1)

    def test_missing_binary(self):
        notifier = DesktopNotifier(platform="linux", which=lambda cmd: None)
        assert not notifier.is_supported()

    @pytest.mark.asyncio
    async def test_launch_failure_is_delivery_error(self):
        notifier = DesktopNotifier(platform="linux")
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("notify-send")):
            with pytest.raises(DeliveryError):
                await notifier.launch("t", "b", 1)

    @pytest.mark.asyncio
    async def test_wait_for_click(self):
        notifier = DesktopNotifier(platform="linux")
        process = MagicMock()
        process.returncode = 0
        process.communicate = AsyncMock(return_value=(b"default\n", b""))
        assert await notifier.wait_for_click(process) is True

        process.communicate = AsyncMock(return_value=(b"", b""))
        assert await notifier.wait_for_click(process) is False

        process.returncode = 1
        process.communicate = AsyncMock(return_value=(b"", b"no daemon"))
        assert await notifier.wait_for_click(process) is False


class TestNativeChannel:
    @pytest.mark.asyncio
    async def test_denied_raises(self, clock):
        channel = NativeChannel(FakeNotifier(supported=False), clock=clock)
        channel.check_permission()
        with pytest.raises(DeliveryError):
            await channel.deliver(_notice())

    @pytest.mark.asyncio
    async def test_click_forwarded(self, clock):
        notifier = FakeNotifier()
        channel = NativeChannel(notifier, clock=clock)
        assert await channel.request_permission()
        handler = AsyncMock()
        notice = _notice()

        await channel.deliver(notice, handler)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert notifier.launched == [("Daily prompt", "Write")]
        handler.assert_awaited_once_with(notice)
        await channel.close()

    @pytest.mark.asyncio
    async def test_no_click(self, clock):
        channel = NativeChannel(FakeNotifier(clicked=False), clock=clock)
        channel.check_permission()
        handler = AsyncMock()
        await channel.deliver(_notice(), handler)
        await asyncio.sleep(0)
        handler.assert_not_awaited()
        await channel.close()

    def test_recheck_interval(self, clock):
        channel = NativeChannel(FakeNotifier(), recheck_hours=24, clock=clock)
        assert channel.needs_recheck()
        channel.check_permission()
        assert not channel.needs_recheck()
        clock.advance(hours=24)
        assert channel.needs_recheck()

    def test_permission_state(self, clock):
        channel = NativeChannel(FakeNotifier(), clock=clock)
        state = channel.check_permission()
        assert state.to_dict() == {"granted": True, "requested": False, "supported": True}
        assert state.last_checked == clock.now
