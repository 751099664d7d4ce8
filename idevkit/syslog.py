"""Reader for the device's system log relay."""

from __future__ import annotations

import io
import logging
from typing import Any, BinaryIO

from idevkit.usbmux import DeviceConnection

SERVICE_NAME = "com.apple.syslog_relay"

_CHUNK = 4096

log = logging.getLogger(__name__)


class SyslogConnection:
    """Read-only connection yielding null terminated log messages."""

    def __init__(self, device_conn: DeviceConnection) -> None:
        self._device_conn = device_conn
        self._buffer = bytearray()

    def __enter__(self) -> SyslogConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __iter__(self):
        while True:
            try:
                yield self.read_log_message()
            except EOFError:
                return

    def read_log_message(self) -> str:
        """Block until the next log message arrives and return it."""
        return self.decode(self._device_conn.reader())

    def decode(self, reader: BinaryIO) -> str:
        """Return the next message from ``reader``, including its terminating null byte."""
        while True:
            end = self._buffer.find(b"\x00")
            if end >= 0:
                message = bytes(self._buffer[: end + 1])
                del self._buffer[: end + 1]
                return message.decode("utf-8", errors="replace")
            read1 = getattr(reader, "read1", None)
            chunk = read1(_CHUNK) if read1 is not None else reader.read(1)
            if not chunk:
                raise EOFError("syslog stream ended")
            self._buffer += chunk

    def encode(self, message: Any) -> bytes:
        """Refuse to encode ``message``: the syslog relay cannot be written to."""
        kind = type(message).__name__
        log.debug("refusing to encode a %s for the read-only syslog relay", kind)
        raise io.UnsupportedOperation("Syslog is readonly")

    def close(self) -> None:
        """Close the underlying connection."""
        self._device_conn.close()