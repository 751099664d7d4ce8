"""Lockdown requests: sessions, service start-up and pairing messages."""

from __future__ import annotations

import contextlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from idevkit.plistcodec import PlistCodec, parse_plist
from idevkit.usbmux import DeviceConnection, PairRecord

log = logging.getLogger(__name__)

_LABEL = "idevkit.control"
_PAIR_LABEL = "idevkit"


class LockdownError(Exception):
    """Raised when lockdown rejects a request or answers with something unusable."""


@dataclass
class StartServiceResponse:
    """Answer to a StartService request: where the service listens and whether it needs SSL."""

    port: int = 0
    request: str = ""
    service: str = ""
    enable_service_ssl: bool = False
    error: str = ""


@dataclass
class StartSessionResponse:
    """Answer to a StartSession request."""

    enable_session_ssl: bool = False
    request: str = ""
    session_id: str = ""


@dataclass
class LockdownPairResponse:
    """Answer to a Pair request."""

    error: str = ""
    request: str = ""
    escrow_bag: bytes = b""


@dataclass
class FullPairRecordData:
    """The certificates and identifiers sent to the device when pairing."""

    device_certificate: bytes = b""
    host_certificate: bytes = b""
    root_certificate: bytes = b""
    system_buid: str = ""
    host_id: str = ""


def _typed(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key, default)
    if kind is int and isinstance(value, bool):
        return default
    return value if isinstance(value, kind) else default


def _parse_or_empty(plist_bytes: bytes) -> dict[str, Any]:
    try:
        return parse_plist(plist_bytes)
    except ValueError:
        return {}


def new_start_service_request(service_name: str) -> dict[str, Any]:
    """Build a StartService request for ``service_name``."""
    return {"Label": _LABEL, "Request": "StartService", "Service": service_name}


def new_start_session_request(host_id: str, system_buid: str) -> dict[str, Any]:
    """Build a StartSession request."""
    return {
        "Label": _LABEL,
        "ProtocolVersion": "2",
        "Request": "StartSession",
        "HostID": host_id,
        "SystemBUID": system_buid,
    }


def new_stop_session_request(session_id: str) -> dict[str, Any]:
    """Build a StopSession request."""
    return {"Label": _LABEL, "Request": "StopSession", "SessionID": session_id}


def parse_start_service_response(plist_bytes: bytes) -> StartServiceResponse:
    """Parse a StartService answer; unparsable input gives an empty response."""
    data = _parse_or_empty(plist_bytes)
    return StartServiceResponse(
        port=_typed(data, "Port", int, 0),
        request=_typed(data, "Request", str, ""),
        service=_typed(data, "Service", str, ""),
        enable_service_ssl=_typed(data, "EnableServiceSSL", bool, False),
        error=_typed(data, "Error", str, ""),
    )


def parse_start_session_response(plist_bytes: bytes) -> StartSessionResponse:
    """Parse a StartSession answer; unparsable input gives an empty response."""
    data = _parse_or_empty(plist_bytes)
    return StartSessionResponse(
        enable_session_ssl=_typed(data, "EnableSessionSSL", bool, False),
        request=_typed(data, "Request", str, ""),
        session_id=_typed(data, "SessionID", str, ""),
    )


def parse_pair_response(plist_bytes: bytes) -> LockdownPairResponse:
    """Parse a Pair answer; unparsable input gives an empty response."""
    data = _parse_or_empty(plist_bytes)
    return LockdownPairResponse(
        error=_typed(data, "Error", str, ""),
        request=_typed(data, "Request", str, ""),
        escrow_bag=_typed(data, "EscrowBag", bytes, b""),
    )


def is_pairing_dialog_open(response: LockdownPairResponse) -> bool:
    """Whether the device is still waiting for the user to accept the trust dialog."""
    return response.error == "PairingDialogResponsePending"


def new_full_pair_record_data(
    system_buid: str, host_cert: bytes, root_cert: bytes, device_cert: bytes
) -> FullPairRecordData:
    """Create pair record data with a fresh upper-case host id."""
    return FullPairRecordData(
        device_certificate=device_cert,
        host_certificate=host_cert,
        root_certificate=root_cert,
        system_buid=system_buid,
        host_id=str(uuid.uuid4()).upper(),
    )


def _pair_record_dict(record: FullPairRecordData) -> dict[str, Any]:
    return {
        "DeviceCertificate": record.device_certificate,
        "HostCertificate": record.host_certificate,
        "RootCertificate": record.root_certificate,
        "SystemBUID": record.system_buid,
        "HostID": record.host_id,
    }


def new_pair_request(pair_record: FullPairRecordData) -> dict[str, Any]:
    """Build a Pair request asking for extended pairing errors."""
    return {
        "Label": _PAIR_LABEL,
        "PairRecord": _pair_record_dict(pair_record),
        "Request": "Pair",
        "ProtocolVersion": "2",
        "PairingOptions": {"ExtendedPairingErrors": True},
    }


def extract_pairing_challenge(resp: bytes) -> bytes:
    """Return the supervision challenge from a Pair answer that requires one."""
    try:
        data = parse_plist(resp)
    except ValueError as exc:
        raise LockdownError(str(exc)) from exc
    if "Error" not in data:
        raise LockdownError(f"the response is missing the Error key: {data!r}")
    error = data["Error"]
    if not isinstance(error, str):
        raise LockdownError(f"error should have been a string: {data!r}")
    if error != "MCChallengeRequired":
        raise LockdownError(
            f"received wrong error message '{error}' error message should have been "
            f"'MCChallengeRequired' : {data!r}"
        )
    if "ExtendedResponse" not in data:
        raise LockdownError(f"ExtendedResponse key was missing from: {data!r}")
    extended = data["ExtendedResponse"]
    if not isinstance(extended, dict):
        raise LockdownError(f"ExtendedResponse should have been a dictionary: {data!r}")
    if "PairingChallenge" not in extended:
        raise LockdownError(f"PairingChallenge key is missing: {data!r}")
    challenge = extended["PairingChallenge"]
    if not isinstance(challenge, bytes):
        raise LockdownError(f"PairingChallenge should have been a byte array: {data!r}")
    return challenge


class LockdownConnection:
    """Plist request/response connection to the lockdown service."""

    def __init__(self, device_conn: DeviceConnection) -> None:
        self._device_conn = device_conn
        self._codec = PlistCodec()
        self.session_id = ""

    def __enter__(self) -> LockdownConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def send(self, message: Any) -> None:
        """Encode ``message`` and send it to lockdown."""
        self._device_conn.send(self._codec.encode(message))

    def read_message(self) -> bytes:
        """Read the next plist payload from lockdown."""
        return self._codec.decode(self._device_conn.reader())

    def start_service(self, service_name: str) -> StartServiceResponse:
        """Ask lockdown to start ``service_name`` and return where it listens."""
        self.send(new_start_service_request(service_name))
        response = parse_start_service_response(self.read_message())
        if response.error:
            raise LockdownError(
                f"Could not start service:{service_name} with reason:'{response.error}'. "
                "Have you mounted the Developer Image?"
            )
        log.debug(
            "Service started on device: port=%s request=%s service=%s ssl=%s",
            response.port,
            response.request,
            response.service,
            response.enable_service_ssl,
        )
        return response

    def start_session(self, pair_record: PairRecord) -> StartSessionResponse:
        """Start a session and switch the connection to SSL when the device asks for it."""
        self.send(new_start_session_request(pair_record.host_id, pair_record.system_buid))
        response = parse_start_session_response(self.read_message())
        self.session_id = response.session_id
        if response.enable_session_ssl:
            enable_ssl = getattr(self._device_conn, "enable_session_ssl", None)
            if enable_ssl is None:
                raise LockdownError("the device connection does not support session SSL")
            enable_ssl(pair_record)
        return response

    def stop_session(self) -> None:
        """End the current session, if any; the device's answer is ignored."""
        if not self.session_id:
            return
        with contextlib.suppress(EOFError, OSError, ValueError):
            self.send(new_stop_session_request(self.session_id))
            self.read_message()
        self.session_id = ""

    def close(self) -> None:
        """Stop any session and close the underlying connection."""
        self.stop_session()
        self._device_conn.close()