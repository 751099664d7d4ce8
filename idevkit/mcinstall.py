"""Client for the configuration profile installation service."""

from __future__ import annotations

import logging
import plistlib
from dataclasses import dataclass, field
from typing import Any

from idevkit.plistcodec import PlistCodec, parse_plist
from idevkit.usbmux import DeviceConnection

log = logging.getLogger(__name__)

SERVICE_NAME = "com.apple.mobile.MCInstall"
PROXY_PROFILE_IDENTIFIER = "Go-iOS.CD15976B-E205-4213-9B8E-FDAA5FAB1C22"
_PROXY_PAYLOAD_UUID = "20A1B29D-7945-4C7C-9A49-649D3751F85D"
_ACKNOWLEDGED = "Acknowledged"


class McInstallError(Exception):
    """Raised when the profile service rejects a request or answers unexpectedly."""


@dataclass
class ProfileManifest:
    """Manifest part of an installed profile."""

    description: str = ""
    is_active: bool = False


@dataclass
class ProfileMetadata:
    """Metadata part of an installed profile."""

    payload_description: str = ""
    payload_display_name: str = ""
    payload_removal_disallowed: bool = False
    payload_uuid: str = ""
    payload_version: int = 0


@dataclass
class ProfileInfo:
    """An installed configuration profile."""

    identifier: str = ""
    manifest: ProfileManifest = field(default_factory=ProfileManifest)
    metadata: ProfileMetadata = field(default_factory=ProfileMetadata)
    status: str = ""


def check_status(response: dict[str, Any]) -> bool:
    """Whether ``response`` carries the status ``Acknowledged``."""
    return response.get("Status") == _ACKNOWLEDGED


def _request(request_type: str) -> dict[str, Any]:
    return {"RequestType": request_type}


def _sub_dict(container: dict[str, Any], key: str, identifier: str, response: Any) -> dict[str, Any]:
    if key not in container:
        raise McInstallError(f"missing key {key} {response!r}")
    outer = container[key]
    if not isinstance(outer, dict):
        raise McInstallError(f"{key} should be a map {response!r}")
    if identifier not in outer:
        raise McInstallError(f"missing key {identifier} {response!r}")
    inner = outer[identifier]
    if not isinstance(inner, dict):
        raise McInstallError(f"{identifier} should be a map {response!r}")
    return inner


def _field(data: dict[str, Any], key: str, kind: type, response: Any) -> Any:
    value = data.get(key)
    if kind is not bool and isinstance(value, bool):
        value = None
    if not isinstance(value, kind):
        raise McInstallError(f"keyError {key} {response!r}")
    return value


def parse_profile(identifier: str, response: dict[str, Any]) -> ProfileInfo:
    """Extract the profile ``identifier`` from a GetProfileList response."""
    manifest = _sub_dict(response, "ProfileManifest", identifier, response)
    is_active = _field(manifest, "IsActive", bool, response)
    description = _field(manifest, "Description", str, response)
    status = _field(response, "Status", str, response)
    metadata = _sub_dict(response, "ProfileMetadata", identifier, response)
    payload_description = metadata.get("PayloadDescription")
    if not isinstance(payload_description, str):
        payload_description = ""
    version = _field(metadata, "PayloadVersion", int, response)
    if version < 0:
        raise McInstallError(f"keyError PayloadVersion {response!r}")
    return ProfileInfo(
        identifier=identifier,
        manifest=ProfileManifest(description=description, is_active=is_active),
        metadata=ProfileMetadata(
            payload_description=payload_description,
            payload_display_name=_field(metadata, "PayloadDisplayName", str, response),
            payload_removal_disallowed=_field(
                metadata, "PayloadRemovalDisallowed", bool, response
            ),
            payload_uuid=_field(metadata, "PayloadUUID", str, response),
            payload_version=version,
        ),
        status=status,
    )


def set_up_proxy_profile(host: str, port: str, user: str, password: str) -> bytes:
    """Build a configuration profile that sets a global HTTP proxy."""
    if not host or not port:
        raise ValueError("host and port must not be empty")
    proxy: dict[str, Any] = {
        "PayloadDescription": "Global HTTP Proxy",
        "PayloadDisplayName": "Global HTTP Proxy",
        "PayloadIdentifier": f"com.apple.proxy.http.global.{_PROXY_PAYLOAD_UUID}",
        "PayloadType": "com.apple.proxy.http.global",
        "PayloadUUID": _PROXY_PAYLOAD_UUID,
        "PayloadVersion": 1,
        "ProxyCaptiveLoginAllowed": True,
        "ProxyServer": host,
        "ProxyServerPort": int(port),
        "ProxyType": "Manual",
    }
    if user:
        proxy["ProxyUsername"] = user
        proxy["ProxyPassword"] = password
    profile = {
        "PayloadContent": [proxy],
        "PayloadDisplayName": "Untitled",
        "PayloadIdentifier": PROXY_PROFILE_IDENTIFIER,
        "PayloadRemovalDisallowed": False,
        "PayloadType": "Configuration",
        "PayloadUUID": _PROXY_PAYLOAD_UUID,
        "PayloadVersion": 1,
    }
    return plistlib.dumps(profile, fmt=plistlib.FMT_XML, sort_keys=False)


class McInstallConnection:
    """Plist connection to the profile installation service."""

    def __init__(self, device_conn: DeviceConnection) -> None:
        self._device_conn = device_conn
        self._codec = PlistCodec()

    def __enter__(self) -> McInstallConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _send_and_receive(self, request: dict[str, Any]) -> dict[str, Any]:
        reader = self._device_conn.reader()
        self._device_conn.send(self._codec.encode(request))
        return parse_plist(self._codec.decode(reader))

    def _checked(self, request: dict[str, Any]) -> dict[str, Any]:
        response = self._send_and_receive(request)
        if not check_status(response):
            raise McInstallError(f"failed command: {response!r}")
        return response

    def handle_list(self) -> list[ProfileInfo]:
        """Return the installed profiles in the device's order."""
        response = self._send_and_receive(_request("GetProfileList"))
        if "OrderedIdentifiers" not in response:
            raise McInstallError(
                f"invalid plist response, missing key 'OrderedIdentifiers': {response!r}"
            )
        identifiers = response["OrderedIdentifiers"]
        if not isinstance(identifiers, list):
            raise McInstallError(f"identifiers should be array: {response!r}")
        if not all(isinstance(item, str) for item in identifiers):
            raise McInstallError(f"identifiers should be array of strings: {response!r}")
        return [parse_profile(identifier, response) for identifier in identifiers]

    def _install(self, profile_plist: bytes, command: str) -> None:
        try:
            response = self._send_and_receive(
                {"RequestType": command, "Payload": bytes(profile_plist)}
            )
        except ValueError:
            response = {}
        if check_status(response):
            return
        log.error("received add response %r", response)
        raise McInstallError("add failed")

    def add_profile(self, profile_plist: bytes) -> None:
        """Install a configuration profile; the user may have to confirm it."""
        self._install(profile_plist, "InstallProfile")

    def remove_profile(self, identifier: str) -> None:
        """Remove the profile with ``identifier``."""
        try:
            response = self._send_and_receive(
                {"RequestType": "RemoveProfile", "ProfileIdentifier": identifier}
            )
        except ValueError:
            response = {}
        if check_status(response):
            return
        log.error("received remove response %r", response)
        raise McInstallError("remove failed")

    def remove_proxy(self) -> None:
        """Remove the global HTTP proxy profile installed by this package."""
        self.remove_profile(PROXY_PROFILE_IDENTIFIER)

    def escalate_unsupervised(self) -> None:
        """Escalate without a supervision certificate."""
        response = self._send_and_receive(
            {"RequestType": "Escalate", "SupervisorCertificate": b"\x00"}
        )
        if not check_status(response):
            raise McInstallError(f"escalate response had error {response!r}")

    def erase(self) -> None:
        """Erase all apps and settings; the device reboots and must be activated again."""
        log.info("start erasing")
        self._checked(_request("Flush"))
        config = self._checked(_request("GetCloudConfiguration"))
        log.debug("config: %r", config)
        try:
            self._checked({"RequestType": "EraseDevice", "PreserveDataPlan": 1})
        except EOFError:
            pass
        log.info("device should be rebooting now")

    def close(self) -> None:
        """Close the underlying connection."""
        self._device_conn.close()