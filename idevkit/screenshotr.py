"""Client for the device screenshot service."""

from __future__ import annotations

import logging
import plistlib
from dataclasses import dataclass
from typing import Any, BinaryIO
from xml.parsers.expat import ExpatError

from idevkit.plistcodec import PlistCodec
from idevkit.usbmux import DeviceConnection

log = logging.getLogger(__name__)

SERVICE_NAME = "com.apple.mobile.screenshotr"
DL_MESSAGE_VERSION_EXCHANGE = "DLMessageVersionExchange"
DL_MESSAGE_PROCESS_MESSAGE = "DLMessageProcessMessage"
DL_MESSAGE_DEVICE_READY = "DLMessageDeviceReady"


class ScreenshotrError(Exception):
    """Raised when the screenshot service answers with something unexpected."""


@dataclass(frozen=True)
class VersionInfo:
    """Protocol version announced by the device."""

    major: int
    minor: int


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _array_from_bytes(plist_bytes: bytes) -> list[Any]:
    try:
        data = plistlib.loads(bytes(plist_bytes))
    except (plistlib.InvalidFileException, ValueError, ExpatError) as exc:
        raise ScreenshotrError(
            f"failed decoding bytes: {bytes(plist_bytes).hex()} to array with error {exc}"
        ) from exc
    if not isinstance(data, list):
        raise ScreenshotrError(f"expected an array, got: {data!r}")
    return data


def new_version_exchange_request(version_major: int) -> list[Any]:
    """Build the message that accepts the device's protocol version."""
    return [DL_MESSAGE_VERSION_EXCHANGE, "DLVersionsOk", version_major]


def version_from_bytes(plist_bytes: bytes) -> VersionInfo:
    """Parse the version exchange message the device sends first."""
    data = _array_from_bytes(plist_bytes)
    if len(data) > 3:
        log.warning("expected 3 items in version exchange response, received %r", data)
    if len(data) < 3:
        raise ScreenshotrError(f"expected 3 items in array, got: {data!r}")
    type_name = data[0]
    if type_name != DL_MESSAGE_VERSION_EXCHANGE:
        raise ScreenshotrError(
            f"version response array should contain {DL_MESSAGE_VERSION_EXCHANGE} "
            f"but '{type_name}'"
        )
    if not _is_uint(data[1]):
        raise ScreenshotrError("could not extract major version")
    if not _is_uint(data[2]):
        raise ScreenshotrError("could not extract minor version")
    return VersionInfo(data[1], data[2])


def new_screenshot_request() -> list[Any]:
    """Build a request for one screenshot."""
    return [DL_MESSAGE_PROCESS_MESSAGE, {"MessageType": "ScreenShotRequest"}]


class ScreenshotrConnection:
    """Connection to the screenshot service; performs the version handshake on creation."""

    def __init__(self, device_conn: DeviceConnection) -> None:
        self._device_conn = device_conn
        self._codec = PlistCodec()
        reader = device_conn.reader()
        try:
            self.version = version_from_bytes(self._codec.decode(reader))
        except (ScreenshotrError, EOFError, OSError) as exc:
            raise ScreenshotrError(
                f"failed reading version from screenshotr with err: {exc}"
            ) from exc
        log.debug("screenshotr version: %s", self.version)
        try:
            device_conn.send(self._codec.encode(new_version_exchange_request(self.version.major)))
        except OSError as exc:
            raise ScreenshotrError(
                f"failed sending version exchange message to screenshotr with err: {exc}"
            ) from exc
        try:
            self._read_exchange_response(reader)
        except (ScreenshotrError, EOFError, OSError) as exc:
            raise ScreenshotrError(
                f"failed reading version exchange response from screenshotr with err: {exc}"
            ) from exc

    def __enter__(self) -> ScreenshotrConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _read_exchange_response(self, reader: BinaryIO) -> None:
        response = _array_from_bytes(self._codec.decode(reader))
        ready = response[0] if response else None
        if ready != DL_MESSAGE_DEVICE_READY:
            raise ScreenshotrError(f"wrong message received: '{ready}'")

    def take_screenshot(self) -> bytes:
        """Take a screenshot and return the image bytes (PNG)."""
        reader = self._device_conn.reader()
        self._device_conn.send(self._codec.encode(new_screenshot_request()))
        response = _array_from_bytes(self._codec.decode(reader))
        if len(response) < 2:
            raise ScreenshotrError(f"response only contained one field {response!r}")
        if response[0] != DL_MESSAGE_PROCESS_MESSAGE:
            log.warning("expected %s but got '%s'", DL_MESSAGE_PROCESS_MESSAGE, response[0])
        response_map = response[1]
        if not isinstance(response_map, dict):
            raise ScreenshotrError(f"could not decode screenshot, expected map {response!r}")
        if "ScreenShotData" not in response_map:
            raise ScreenshotrError(f"could not find ScreenShotData: {response_map!r}")
        data = response_map["ScreenShotData"]
        if not isinstance(data, (bytes, bytearray)):
            raise ScreenshotrError(f"ScreenShotData not bytes but was {data!r}")
        return bytes(data)

    def close(self) -> None:
        """Close the underlying connection."""
        self._device_conn.close()