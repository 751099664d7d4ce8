"""Client for the location simulation service."""

from __future__ import annotations

import logging
import struct
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from idevkit.usbmux import DeviceConnection

log = logging.getLogger(__name__)

SERVICE_NAME = "com.apple.dt.simulatelocation"

_UINT32 = struct.Struct(">I")


@dataclass(frozen=True)
class TrackPoint:
    """One point of a GPX track, coordinates and time kept as written."""

    longitude: str
    latitude: str
    time: str = ""


def location_bytes(lat: float, lon: float) -> bytes:
    """Encode a request that sets the simulated location."""
    out = bytearray(_UINT32.pack(0))
    for value in (lat, lon):
        text = f"{value:f}".encode("ascii")
        out += _UINT32.pack(len(text)) + text
    return bytes(out)


def reset_bytes() -> bytes:
    """Encode a request that restores the real location."""
    return _UINT32.pack(1)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def parse_gpx(data: bytes | str) -> list[TrackPoint]:
    """Return the track points of all tracks and segments of a GPX document, in order."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise ValueError(f"invalid GPX document: {exc}") from exc
    if _local(root.tag) != "gpx":
        raise ValueError(f"expected a gpx element, got {_local(root.tag)!r}")
    points = []
    for track in _children(root, "trk"):
        for segment in _children(track, "trkseg"):
            for point in _children(segment, "trkpt"):
                times = _children(point, "time")
                points.append(
                    TrackPoint(
                        longitude=point.get("lon", ""),
                        latitude=point.get("lat", ""),
                        time=(times[0].text or "").strip() if times else "",
                    )
                )
    return points


def _parse_rfc3339(text: str) -> datetime:
    value = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValueError(f"time {text!r} has no time zone")
    return parsed


class SimLocationConnection:
    """Connection to the location simulation service."""

    def __init__(self, device_conn: DeviceConnection) -> None:
        self._device_conn = device_conn

    def __enter__(self) -> SimLocationConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def set_location(self, lat: str, lon: str) -> None:
        """Simulate the device being at ``lat``/``lon``, given as decimal strings."""
        if not lat or not lon:
            raise ValueError("Please provide non-empty values for latitude and longitude")
        latitude = float(lat)
        longitude = float(lon)
        log.info("Simulating device location latitude=%s longitude=%s", latitude, longitude)
        self._device_conn.send(location_bytes(latitude, longitude))

    def reset(self) -> None:
        """Stop simulating and restore the real location."""
        self._device_conn.send(reset_bytes())

    def close(self) -> None:
        """Close the underlying connection."""
        self._device_conn.close()


def set_location_gpx(
    connect: Callable[[], SimLocationConnection], file_path: str | Path
) -> None:
    """Replay a GPX file point by point, waiting as long as the recorded times say.

    ``connect`` opens a new connection for every point; it is closed afterwards.
    """
    points = parse_gpx(Path(file_path).read_bytes())
    last_time: datetime | None = None
    for point in points:
        try:
            current: datetime | None = _parse_rfc3339(point.time)
        except ValueError:
            if last_time is not None:
                raise
            current = None
        if last_time is not None and current is not None:
            duration = int(current.timestamp() // 1) - int(last_time.timestamp() // 1)
            if duration > 0:
                time.sleep(duration)
        last_time = current
        with connect() as conn:
            conn.set_location(point.latitude, point.longitude)