"""Client for the device's notification proxy."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any

from idevkit.plistcodec import PlistCodec, parse_plist
from idevkit.usbmux import DeviceConnection

log = logging.getLogger(__name__)

SERVICE_NAME = "com.apple.mobile.notification_proxy"
SPRINGBOARD_FINISHED_STARTUP = "com.apple.springboard.finishedstartup"

_NOTIFICATION = "notification"
_PROXY_DEATH = "death"


class NotificationProxyError(Exception):
    """Raised when waiting for a notification fails or times out."""


class NotificationProxy:
    """Observes notifications posted on the device.

    A background thread reads messages from the device as soon as the
    object is created.
    """

    def __init__(self, device_conn: DeviceConnection) -> None:
        self._device_conn = device_conn
        self._codec = PlistCodec()
        self._observing: set[str] = set()
        self._lock = threading.Lock()
        self._events: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._thread = threading.Thread(target=self._read_loop, daemon=True)
        self._thread.start()

    def __enter__(self) -> NotificationProxy:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _read_loop(self) -> None:
        log.debug("notificationproxy start reading")
        reader = self._device_conn.reader()
        while True:
            try:
                raw = self._codec.decode(reader)
                message = parse_plist(raw)
            except (EOFError, OSError, ValueError) as exc:
                log.debug("notificationproxy stopped reading: %s", exc)
                return
            log.debug("NotificationProxy: %r", message)
            command = message.get("Command")
            if command == "RelayNotification" and isinstance(message.get("Name"), str):
                self._events.put((_NOTIFICATION, message["Name"]))
            elif command == "ProxyDeath":
                self._events.put((_PROXY_DEATH, None))
            else:
                log.debug("Unknown message: %s", raw.hex())

    def _is_new(self, notification: str) -> bool:
        with self._lock:
            if notification in self._observing:
                return False
            self._observing.add(notification)
            return True

    def observe(self, notification: str, timeout: float) -> None:
        """Wait until ``notification`` is posted.

        ``timeout`` is in seconds and restarts with every message received.
        Only one listener per notification is supported.
        """
        if self._is_new(notification):
            request = {"Command": "ObserveNotification", "Name": notification}
            self._device_conn.send(self._codec.encode(request))
        while True:
            try:
                kind, name = self._events.get(timeout=timeout)
            except queue.Empty:
                raise NotificationProxyError("Timeout") from None
            if kind == _PROXY_DEATH:
                raise NotificationProxyError("ProxyDeath")
            if name == notification:
                return

    def close(self) -> None:
        """Send a shutdown command and close the underlying connection."""
        log.debug("shutting down %s", SERVICE_NAME)
        try:
            self._device_conn.send(self._codec.encode({"Command": "Shutdown"}))
        except OSError as exc:
            log.debug("%s", exc)
        self._device_conn.close()