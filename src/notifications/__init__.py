"""Daily prompt notifications: timing, channels, queueing and scheduling."""

from .channels import DesktopNotifier, InAppChannel, NativeChannel, Notice, PermissionState
from .formatting import format_notification_text
from .queue import DeliveryQueue
from .scheduler import NotificationScheduler, ScheduledNotification
from .timing import next_fire_time, parse_notification_time

__all__ = [
    "DeliveryQueue",
    "DesktopNotifier",
    "InAppChannel",
    "NativeChannel",
    "Notice",
    "NotificationScheduler",
    "PermissionState",
    "ScheduledNotification",
    "format_notification_text",
    "next_fire_time",
    "parse_notification_time",
]
