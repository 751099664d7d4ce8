"""Messages and connection handling for the usbmux daemon."""

from __future__ import annotations

import logging
import os
import struct
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Any, BinaryIO

from idevkit.plistcodec import _read_exact, parse_plist, to_plist_bytes

log = logging.getLogger(__name__)

_HEADER = struct.Struct("<4I")
HEADER_SIZE = _HEADER.size


class UsbMuxError(Exception):
    """Raised when usbmuxd returns an unusable or failed response."""


def get_socket_type_and_address(socket_address: str) -> tuple[str, str]:
    """Split ``scheme://address`` into its scheme and address."""
    chunks = socket_address.split("://")
    if len(chunks) != 2:
        raise ValueError("Needs scheme://address")
    return chunks[0], chunks[1]


def to_unix_socket_path(socket_address: str) -> str:
    """Return the path of a ``unix://`` socket address."""
    scheme, name = get_socket_type_and_address(socket_address)
    if scheme != "unix":
        raise ValueError("Needs a unix socket")
    return name


def get_usbmuxd_socket() -> str:
    """Return the default usbmuxd socket address for this platform."""
    override = os.environ.get("USBMUXD_SOCKET_ADDRESS", "")
    if override:
        return ("tcp://" if ":" in override else "unix://") + override
    if sys.platform == "win32":
        return "tcp://127.0.0.1:27015"
    return "unix:///var/run/usbmuxd"


class DeviceConnection(ABC):
    """A byte stream to usbmuxd or to a service on the device."""

    @abstractmethod
    def reader(self) -> BinaryIO:
        """Return the readable side of the connection."""

    @abstractmethod
    def writer(self) -> BinaryIO:
        """Return the writable side of the connection."""

    @abstractmethod
    def send(self, message: bytes) -> None:
        """Write ``message`` to the connection."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""


class StreamConnection(DeviceConnection):
    """A device connection built from a pair of file-like objects."""

    def __init__(self, reader: BinaryIO, writer: BinaryIO) -> None:
        self._reader = reader
        self._writer = writer

    def reader(self) -> BinaryIO:
        return self._reader

    def writer(self) -> BinaryIO:
        return self._writer

    def send(self, message: bytes) -> None:
        self._writer.write(message)
        flush = getattr(self._writer, "flush", None)
        if flush is not None:
            flush()

    def close(self) -> None:
        for stream in {id(self._reader): self._reader, id(self._writer): self._writer}.values():
            close = getattr(stream, "close", None)
            if close is not None:
                close()


@dataclass
class UsbMuxHeader:
    """The 16 byte little endian header of a usbmux message."""

    length: int = 0
    version: int = 0
    request: int = 0
    tag: int = 0

    def pack(self) -> bytes:
        return _HEADER.pack(self.length, self.version, self.request, self.tag)

    @classmethod
    def unpack(cls, data: bytes) -> UsbMuxHeader:
        if len(data) != HEADER_SIZE:
            raise EOFError(f"usbmux header needs {HEADER_SIZE} bytes, got {len(data)}")
        return cls(*_HEADER.unpack(data))


@dataclass
class UsbMuxMessage:
    """Header and payload of a usbmux message."""

    header: UsbMuxHeader = field(default_factory=UsbMuxHeader)
    payload: bytes = b""


@dataclass
class MuxResponse:
    """Generic usbmuxd response carrying a result code."""

    message_type: str = ""
    number: int = 0

    def is_successful(self) -> bool:
        return self.number == 0


def mux_response_from_bytes(plist_bytes: bytes) -> MuxResponse:
    """Parse a MuxResponse; unparsable input gives an empty response."""
    try:
        data = parse_plist(plist_bytes)
    except ValueError:
        return MuxResponse()
    message_type = data.get("MessageType", "")
    number = data.get("Number", 0)
    return MuxResponse(
        message_type=message_type if isinstance(message_type, str) else "",
        number=number if isinstance(number, int) else 0,
    )


@dataclass
class PairRecord:
    """Keys and certificates needed for SSL sessions with a device."""

    host_id: str = ""
    system_buid: str = ""
    host_certificate: bytes = b""
    host_private_key: bytes = b""
    device_certificate: bytes = b""
    escrow_bag: bytes = b""
    wifi_mac_address: str = ""
    root_certificate: bytes = b""
    root_private_key: bytes = b""


_WORD_SPELLINGS = {"id": "ID", "buid": "BUID", "wifi": "WiFi", "mac": "MAC"}


def _plist_key(attr: str) -> str:
    """Spell a PairRecord attribute the way the plist names it."""
    return "".join(_WORD_SPELLINGS.get(word, word.capitalize()) for word in attr.split("_"))


_PAIR_KEYS = {f.name: _plist_key(f.name) for f in fields(PairRecord)}


def pair_record_from_bytes(plist_bytes: bytes) -> PairRecord:
    """Parse a serialized pair record."""
    try:
        data = parse_plist(plist_bytes)
    except ValueError as exc:
        raise UsbMuxError(f"Failed decoding pair record plist {bytes(plist_bytes).hex()}") from exc
    values = {attr: data[key] for attr, key in _PAIR_KEYS.items() if key in data}
    return PairRecord(**values)


def pair_record_data_from_bytes(plist_bytes: bytes) -> bytes:
    """Extract the serialized pair record from a ReadPairRecord response."""
    try:
        data = parse_plist(plist_bytes)
    except ValueError as exc:
        raise UsbMuxError(
            f"Failed decoding pair record plist {bytes(plist_bytes).hex()} and err {exc}"
        ) from exc
    record = data.get("PairRecordData")
    if not isinstance(record, bytes):
        resp = mux_response_from_bytes(plist_bytes)
        raise UsbMuxError(
            f"ReadPair failed with errorcode '{resp.number}', is the device paired?"
        )
    return record


def new_read_pair(udid: str) -> dict[str, Any]:
    """Build a ReadPairRecord request."""
    return {
        "BundleID": "idevkit.control",
        "ClientVersionString": "idevkit-usbmux-0.0.1",
        "MessageType": "ReadPairRecord",
        "ProgName": "idevkit-usbmux",
        "kLibUSBMuxVersion": 3,
        "PairRecordID": udid,
    }


def new_save_pair(udid: str, pair_record_data: bytes) -> dict[str, Any]:
    """Build a SavePairRecord request."""
    return {
        "BundleID": "idevkit.control",
        "ClientVersionString": "idevkit-1.0.0",
        "MessageType": "SavePairRecord",
        "ProgName": "idevkit",
        "kLibUSBMuxVersion": 3,
        "PairRecordID": udid,
        "PairRecordData": pair_record_data,
    }


def new_save_pair_record_data(record: PairRecord) -> bytes:
    """Serialize a pair record for storing it in usbmuxd."""
    return to_plist_bytes({key: getattr(record, attr) for attr, key in _PAIR_KEYS.items()})


class UsbMuxConnection:
    """Request/response connection to usbmuxd with an increasing message tag."""

    def __init__(self, device_conn: DeviceConnection | None) -> None:
        self.tag = 0
        self._device_conn = device_conn

    def release_device_connection(self) -> DeviceConnection | None:
        """Detach and return the underlying connection; this object is unusable afterwards."""
        conn, self._device_conn = self._device_conn, None
        return conn

    def close(self) -> None:
        if self._device_conn is not None:
            self._device_conn.close()

    def __enter__(self) -> UsbMuxConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _conn(self) -> DeviceConnection:
        if self._device_conn is None:
            raise EOFError("device connection was released")
        return self._device_conn

    def send(self, msg: Any) -> None:
        """Encode ``msg`` as a plist message and send it; increases the tag."""
        writer = self._conn().writer()
        self.tag += 1
        payload = to_plist_bytes(msg)
        header = UsbMuxHeader(length=HEADER_SIZE + len(payload), version=1, request=8, tag=self.tag)
        try:
            writer.write(header.pack())
            writer.write(payload)
        except Exception:
            log.error("Error sending mux")
            raise

    def send_mux_message(self, msg: UsbMuxMessage) -> None:
        """Send a prebuilt message unchanged, without touching the tag."""
        writer = self._conn().writer()
        writer.write(msg.header.pack())
        writer.write(msg.payload)

    def read_message(self) -> UsbMuxMessage:
        """Block until the next message arrives and return it."""
        reader = self._conn().reader()
        header = UsbMuxHeader.unpack(_read_exact(reader, HEADER_SIZE))
        expected = header.length - HEADER_SIZE
        payload = _read_exact(reader, expected)
        if len(payload) != expected:
            raise UsbMuxError(
                f"Error while reading usbmux package. Only {len(payload)} bytes "
                f"received instead of {expected}"
            )
        return UsbMuxMessage(header, payload)

    def read_pair(self, udid: str) -> PairRecord:
        """Read the pair record for ``udid`` from usbmuxd."""
        self.send(new_read_pair(udid))
        try:
            resp = self.read_message()
        except (EOFError, OSError, UsbMuxError) as exc:
            raise UsbMuxError(f"Error reading PairRecord: {exc}") from exc
        return pair_record_from_bytes(pair_record_data_from_bytes(resp.payload))

    def save_pair(self, udid: str, record: PairRecord) -> bool:
        """Store ``record`` in usbmuxd and report whether it succeeded."""
        self.send(new_save_pair(udid, new_save_pair_record_data(record)))
        resp = self.read_message()
        return mux_response_from_bytes(resp.payload).is_successful()