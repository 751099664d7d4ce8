"""Packet capture from the device's pcap service, written as pcap files."""

from __future__ import annotations

import ipaddress
import logging
import plistlib
import struct
from dataclasses import dataclass
from typing import BinaryIO
from xml.parsers.expat import ExpatError

from idevkit.plistcodec import PlistCodec
from idevkit.usbmux import DeviceConnection

log = logging.getLogger(__name__)

SERVICE_NAME = "com.apple.pcapd"
PACKET_HEADER_SIZE = 95

_HEAD = struct.Struct(">IBIBHBIII16s")
_PROC = struct.Struct("<i17s")
_UNKNOWN = struct.Struct("<I")
_TIME = struct.Struct(">ii")
_RECORD = struct.Struct("<IIII")

PCAP_FILE_HEADER = bytes(
    [
        0xD4, 0xC3, 0xB2, 0xA1, 0x02, 0x00, 0x04, 0x00,
        0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00,
        0xFF, 0xFF, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00,
    ]
)
_FAKE_ETHERNET = bytes(
    [0xBE, 0xFE, 0xBE, 0xFE, 0xBE, 0xFE, 0xBE, 0xFE, 0xBE, 0xFE, 0xBE, 0xFE, 0x08, 0x00]
)

_ETH_IPV4 = 0x0800
_ETH_IPV6 = 0x86DD
_ETH_VLAN = (0x8100, 0x88A8)


def _text(raw: bytes) -> str:
    return raw.replace(b"\x00", b"").decode("utf-8", errors="replace")


@dataclass
class IOSPacketHeader:
    """Header the device puts in front of each captured packet."""

    hdr_size: int = 0
    version: int = 0
    packet_size: int = 0
    type: int = 0
    unit: int = 0
    io: int = 0
    protocol_family: int = 0
    frame_pre_length: int = 0
    frame_pst_length: int = 0
    if_name: str = ""
    pid: int = 0
    proc_name: str = ""
    unknown: int = 0
    pid2: int = 0
    proc_name2: str = ""
    ts_sec: int = 0
    ts_usec: int = 0

    @classmethod
    def parse(cls, data: bytes) -> IOSPacketHeader:
        """Parse the first 95 bytes of ``data``."""
        if len(data) < PACKET_HEADER_SIZE:
            raise ValueError(
                f"packet header needs {PACKET_HEADER_SIZE} bytes, got {len(data)}"
            )
        (hdr_size, version, packet_size, type_, unit, io_, family, pre, pst, if_name) = (
            _HEAD.unpack_from(data, 0)
        )
        offset = _HEAD.size
        pid, proc_name = _PROC.unpack_from(data, offset)
        offset += _PROC.size
        (unknown,) = _UNKNOWN.unpack_from(data, offset)
        offset += _UNKNOWN.size
        pid2, proc_name2 = _PROC.unpack_from(data, offset)
        offset += _PROC.size
        ts_sec, ts_usec = _TIME.unpack_from(data, offset)
        return cls(
            hdr_size=hdr_size,
            version=version,
            packet_size=packet_size,
            type=type_,
            unit=unit,
            io=io_,
            protocol_family=family,
            frame_pre_length=pre,
            frame_pst_length=pst,
            if_name=_text(if_name),
            pid=pid,
            proc_name=_text(proc_name),
            unknown=unknown,
            pid2=pid2,
            proc_name2=_text(proc_name2),
            ts_sec=ts_sec,
            ts_usec=ts_usec,
        )


@dataclass
class NetworkInfo:
    """MAC and IP addresses of the device."""

    mac: str = ""
    ipv4: str = ""
    ipv6: str = ""

    def complete(self) -> bool:
        """Whether MAC, IPv4 and IPv6 addresses are all known."""
        return bool(self.mac and self.ipv4 and self.ipv6)


def from_bytes(data: bytes) -> bytes:
    """Return the data blob of a pcap service message."""
    try:
        result = plistlib.loads(bytes(data))
    except (plistlib.InvalidFileException, ValueError, ExpatError) as exc:
        raise ValueError(f"invalid plist: {exc}") from exc
    if not isinstance(result, bytes):
        raise ValueError(f"expected a data plist, got {result!r}")
    return result


def get_packet(
    buf: bytes, pid: int | None = None, proc_name: str = ""
) -> tuple[IOSPacketHeader, bytes]:
    """Split a captured message into header and packet.

    The packet is empty when it does not belong to ``pid`` or to a process
    whose name starts with ``proc_name``.  Packets without a link layer get
    a placeholder Ethernet header.
    """
    header = IOSPacketHeader.parse(buf)
    offset = PACKET_HEADER_SIZE
    if header.hdr_size > PACKET_HEADER_SIZE:
        offset = header.hdr_size
        if offset > len(buf):
            raise ValueError(
                f"packet header of {header.hdr_size} bytes exceeds message of {len(buf)} bytes"
            )
    if pid is not None and pid > 0 and pid not in (header.pid, header.pid2):
        return header, b""
    if proc_name and not (
        header.proc_name.startswith(proc_name) or header.proc_name2.startswith(proc_name)
    ):
        return header, b""
    packet = bytes(buf[offset:])
    if header.frame_pre_length == 0:
        return header, _FAKE_ETHERNET + packet
    return header, packet


def write_pcap_header(stream: BinaryIO) -> None:
    """Write the little endian pcap file header."""
    stream.write(PCAP_FILE_HEADER)


def write_packet(stream: BinaryIO, header: IOSPacketHeader, packet: bytes) -> None:
    """Write one pcap record for ``packet``."""
    stream.write(
        _RECORD.pack(
            header.ts_sec & 0xFFFFFFFF,
            header.ts_usec & 0xFFFFFFFF,
            len(packet),
            len(packet),
        )
    )
    stream.write(packet)


def _packets(device_conn: DeviceConnection, pid: int | None, proc_name: str):
    codec = PlistCodec()
    while True:
        try:
            message = codec.decode(device_conn.reader())
        except EOFError:
            return
        header, packet = get_packet(from_bytes(message), pid, proc_name)
        if packet:
            yield header, packet


def capture(
    device_conn: DeviceConnection,
    stream: BinaryIO,
    pid: int | None = None,
    proc_name: str = "",
) -> int:
    """Write a pcap file of the captured packets until the stream ends.

    Returns the number of packets written.
    """
    write_pcap_header(stream)
    count = 0
    for header, packet in _packets(device_conn, pid, proc_name):
        write_packet(stream, header, packet)
        count += 1
    return count


def _format_mac(raw: bytes) -> str:
    return ":".join(f"{b:02x}" for b in raw)


def update_network_info(packet: bytes, info: NetworkInfo) -> None:
    """Record the source IP addresses of an Ethernet frame sent from ``info.mac``."""
    if len(packet) < 14:
        return
    if _format_mac(packet[6:12]) != info.mac.lower():
        return
    log.debug("found packet for %s", info.mac)
    ethertype = int.from_bytes(packet[12:14], "big")
    offset = 14
    while ethertype in _ETH_VLAN and len(packet) >= offset + 4:
        ethertype = int.from_bytes(packet[offset + 2 : offset + 4], "big")
        offset += 4
    payload = packet[offset:]
    if ethertype == _ETH_IPV4 and len(payload) >= 20 and payload[0] >> 4 == 4:
        info.ipv4 = str(ipaddress.IPv4Address(payload[12:16]))
        log.debug("ip4 found:%s", info.ipv4)
    elif ethertype == _ETH_IPV6 and len(payload) >= 40 and payload[0] >> 4 == 6:
        info.ipv6 = str(ipaddress.IPv6Address(payload[8:24]))
        log.debug("ip6 found:%s", info.ipv6)


def find_network_info(device_conn: DeviceConnection, mac: str) -> NetworkInfo:
    """Read packets until both IP addresses of the device with ``mac`` are seen."""
    info = NetworkInfo(mac=mac)
    for _, packet in _packets(device_conn, None, ""):
        update_network_info(packet, info)
        if info.complete():
            return info
    raise EOFError("capture ended before the network info was complete")