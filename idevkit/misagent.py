"""Client for the provisioning profile agent service."""

from __future__ import annotations

from typing import Any

from idevkit.plistcodec import PlistCodec, parse_plist
from idevkit.usbmux import DeviceConnection

SERVICE_NAME = "com.apple.misagent"


class MisagentError(Exception):
    """Raised when misagent answers with an error or an invalid response."""


class MisagentConnection:
    """Plist connection to the misagent service."""

    def __init__(self, device_conn: DeviceConnection) -> None:
        self._device_conn = device_conn
        self._codec = PlistCodec()

    def __enter__(self) -> MisagentConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def copy_all(self) -> dict[str, Any]:
        """Request all provisioning profiles and return the successful response."""
        request = {"MessageType": "CopyAll", "ProfileType": "Provisioning"}
        reader = self._device_conn.reader()
        self._device_conn.send(self._codec.encode(request))
        response = parse_plist(self._codec.decode(reader))
        if "Status" not in response:
            raise MisagentError(f"misagent invalid response {response!r}")
        status = response["Status"]
        if not isinstance(status, int) or isinstance(status, bool):
            raise MisagentError(f"misagent invalid status in response {response!r}")
        if status != 0:
            raise MisagentError(
                f"misagent returned error code {status} in response {response!r}"
            )
        return response

    def close(self) -> None:
        """Close the underlying connection."""
        self._device_conn.close()