import asyncio
import json
import logging
import math
import os
import shutil
import subprocess
import sys
import threading
import time
from typing import Callable, Literal, Protocol

from dbus_next.aio import MessageBus

from errors import NotifierUnsupported
from models import MenuBarSnapshot, NotificationState, UsageStatus

log = logging.getLogger(__name__)

APP_NAME = "Claude Meter"
NOTIFICATION_COOLDOWN_SECONDS = 300.0
SEND_LOCK_SECONDS = 1.0

DBUS_NOTIFY_SERVICE = "org.freedesktop.Notifications"
DBUS_NOTIFY_PATH = "/org/freedesktop/Notifications"

Trigger = Literal["auto", "manual"]


class Notifier(Protocol):
    def send(self, title: str, body: str) -> None: ...


class SystemNotifier:
    """Desktop notifications through osascript (macOS) or D-Bus (Linux).

    Sending happens on a daemon thread so callers never wait on the
    notification daemon. Hosts with neither backend get a silent no-op.
    """

    def __init__(self, app_name: str = APP_NAME):
        self.app_name = app_name

    @property
    def supported(self) -> bool:
        try:
            self._backend()
        except NotifierUnsupported:
            return False
        return True

    def _backend(self) -> Callable[[str, str], None]:
        if sys.platform == "darwin" and shutil.which("osascript"):
            return self._send_osascript
        if os.environ.get("DBUS_SESSION_BUS_ADDRESS"):
            return self._send_dbus
        raise NotifierUnsupported(
            "No notification backend available", details={"platform": sys.platform}
        )

    @staticmethod
    def _osascript_command(title: str, body: str) -> list[str]:
        script = f"display notification {json.dumps(body)} with title {json.dumps(title)}"
        return ["osascript", "-e", script]

    def _send_osascript(self, title: str, body: str) -> None:
        subprocess.run(self._osascript_command(title, body), capture_output=True, timeout=10)

    def _send_dbus(self, title: str, body: str) -> None:
        async def _notify():
            bus = await MessageBus().connect()
            try:
                introspection = await bus.introspect(DBUS_NOTIFY_SERVICE, DBUS_NOTIFY_PATH)
                proxy = bus.get_proxy_object(DBUS_NOTIFY_SERVICE, DBUS_NOTIFY_PATH, introspection)
                iface = proxy.get_interface(DBUS_NOTIFY_SERVICE)
                await iface.call_notify(
                    self.app_name,  # app_name
                    0,              # replaces_id
                    "",             # app_icon
                    title,
                    body,
                    [],             # actions
                    {},             # hints
                    5000,           # timeout_ms
                )
            finally:
                bus.disconnect()

        asyncio.run(_notify())

    def send(self, title: str, body: str) -> None:
        try:
            backend = self._backend()
        except NotifierUnsupported as exc:
            log.debug("%s", exc)
            return

        def _notify():
            try:
                backend(title, body)
            except Exception:
                log.debug("Notification dispatch failed", exc_info=True)

        threading.Thread(target=_notify, daemon=True).start()


class NotificationGate:
    """Turns menu-bar snapshots into at most one alert per rising edge.

    A snapshot is ignored when it matches the last alerted state or while a
    send is in flight, then when the cooldown since the last alert has not
    elapsed. Only safe->warning and anything->critical fire.
    """

    def __init__(
        self,
        notifier: Notifier,
        cooldown: float = NOTIFICATION_COOLDOWN_SECONDS,
        lock_seconds: float = SEND_LOCK_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.notifier = notifier
        self.cooldown = cooldown
        self.lock_seconds = lock_seconds
        self._clock = clock
        self._lock_until = 0.0
        self._state = NotificationState()

    @property
    def state(self) -> NotificationState:
        self._release_lock(self._clock())
        return self._state

    def _release_lock(self, now: float) -> None:
        if self._state.in_progress and now >= self._lock_until:
            self._state.in_progress = False

    def check_and_notify(self, snapshot: MenuBarSnapshot, trigger: Trigger = "auto") -> None:
        try:
            self._check(snapshot, trigger)
        except Exception:
            log.exception("Error while checking notification state")

    def _check(self, snapshot: MenuBarSnapshot, trigger: Trigger) -> None:
        now = self._clock()
        self._release_lock(now)
        state = self._state

        # Halves round up: 72.5 reads as 73
        percentage = math.floor(snapshot.percentage_used + 0.5)
        identifier = f"{snapshot.status.value}-{percentage}"
        if identifier == state.last_data_identifier or state.in_progress:
            return

        # Applies to rising edges too: a critical reading inside the cooldown
        # of an earlier warning is dropped.
        if now - state.last_fire_time < self.cooldown:
            return

        if snapshot.status == UsageStatus.CRITICAL and state.last_level != UsageStatus.CRITICAL:
            title = f"{APP_NAME}: Usage Critical"
            body = f"You've used {percentage}% of your tokens. Consider upgrading your plan."
        elif snapshot.status == UsageStatus.WARNING and state.last_level == UsageStatus.SAFE:
            title = f"{APP_NAME}: Usage Warning"
            body = f"You've used {percentage}% of your tokens. Monitor your usage carefully."
        else:
            return

        state.in_progress = True
        self._lock_until = now + self.lock_seconds
        log.info("Sending %s usage alert (%s trigger)", snapshot.status.value, trigger)
        self._send(title, body)
        state.last_fire_time = now
        state.last_level = snapshot.status
        state.last_data_identifier = identifier

    def send_daily_summary(self, tokens_used: int, cost: float) -> None:
        """Push today's totals immediately, bypassing the alert state machine."""
        self._send(
            f"{APP_NAME}: Daily Summary",
            f"Today: {tokens_used:,} tokens used, ${cost:.3f} spent",
        )

    def _send(self, title: str, body: str) -> None:
        try:
            self.notifier.send(title, body)
        except Exception:
            log.exception("Error sending notification")
