"""Length-prefixed property list messages used by most device services."""

from __future__ import annotations

import dataclasses
import plistlib
import struct
from collections.abc import Mapping
from typing import Any, BinaryIO
from xml.parsers.expat import ExpatError

_LENGTH = struct.Struct(">I")


def _plain(value: Any) -> Any:
    """Convert dataclasses and mappings into values plistlib can encode."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value if v is not None]
    if isinstance(value, bytearray):
        return bytes(value)
    return value


def to_plist_bytes(data: Any) -> bytes:
    """Serialize ``data`` to an XML property list."""
    return plistlib.dumps(_plain(data), fmt=plistlib.FMT_XML)


def to_plist(data: Any) -> str:
    """Serialize ``data`` to an XML property list string."""
    return to_plist_bytes(data).decode("utf-8")


def parse_plist(data: bytes) -> dict[str, Any]:
    """Parse an XML or binary property list whose top level is a dictionary."""
    try:
        result = plistlib.loads(bytes(data))
    except (plistlib.InvalidFileException, ValueError, ExpatError) as exc:
        raise ValueError(f"invalid plist: {exc}") from exc
    if not isinstance(result, dict):
        raise ValueError(f"plist is not a dictionary: {result!r}")
    return result


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < size:
        chunk = reader.read(size - len(chunks))
        if not chunk:
            break
        chunks.extend(chunk)
    return bytes(chunks)


class PlistCodec:
    """Codec for ``[4 byte big endian length][plist payload]`` messages."""

    def encode(self, message: Any) -> bytes:
        """Return the length-prefixed XML plist for ``message``."""
        content = to_plist_bytes(message)
        return _LENGTH.pack(len(content)) + content

    def decode(self, reader: BinaryIO | None) -> bytes:
        """Read one message from ``reader`` and return its plist payload."""
        if reader is None:
            raise ValueError("Reader was nil")
        header = _read_exact(reader, _LENGTH.size)
        if len(header) < _LENGTH.size:
            raise EOFError("could not read message length")
        (length,) = _LENGTH.unpack(header)
        payload = _read_exact(reader, length)
        if len(payload) != length:
            raise EOFError(
                f"lockdown Payload had incorrect size: {len(payload)} expected: {length}"
            )
        return payload