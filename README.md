# idevkit

A pure-Python toolkit for the wire protocols that iOS devices speak over
`usbmuxd`. It uses only the standard library.

## What is in it

- `idevkit.plistcodec`: the `[4 byte big endian length][plist]` framing used by
  lockdown-style services (`PlistCodec`), and helpers `to_plist`,
  `to_plist_bytes` and `parse_plist`.
- `idevkit.usbmux`: the 16 byte usbmux header (`UsbMuxHeader`), messages
  (`UsbMuxMessage`), the tagged request/response connection
  (`UsbMuxConnection` with `send`, `send_mux_message`, `read_message`,
  `read_pair`, `save_pair`), `MuxResponse`, `PairRecord`, and socket address
  helpers `get_usbmuxd_socket`, `get_socket_type_and_address` and
  `to_unix_socket_path`.
- `idevkit.lockdown`: `LockdownConnection` with `start_service`,
  `start_session` and `stop_session`, the request builders, response parsers,
  and the pairing messages (`new_full_pair_record_data`, `new_pair_request`,
  `parse_pair_response`, `is_pairing_dialog_open`,
  `extract_pairing_challenge`).
- `idevkit.nskeyedarchiver`: `archive_xml` and `archive_bin` in
  `idevkit.nskeyedarchiver.archiver`, `unarchive` and
  `verify_correct_archiver` in `idevkit.nskeyedarchiver.unarchiver`, and the
  Foundation, XCTest and instruments classes in
  `idevkit.nskeyedarchiver.classes` (`NSUUID`, `NSURL`, `NSNull`, `NSDate`,
  `NSError`, `XCTCapabilities`, `new_xctest_configuration`, the `DTTap…`
  messages and more).
- Service clients that work on an already connected stream:
  - `idevkit.screenshotr.ScreenshotrConnection`: does the version handshake
    when created; `take_screenshot()` returns the PNG bytes.
  - `idevkit.simlocation.SimLocationConnection`: `set_location(lat, lon)` and
    `reset()`; `location_bytes`, `reset_bytes`, `parse_gpx` and
    `set_location_gpx` replay a GPX track with the recorded pauses.
  - `idevkit.syslog.SyslogConnection`: `read_log_message()` returns the next
    null terminated message; iterating the connection yields messages until
    the stream ends.
  - `idevkit.notificationproxy.NotificationProxy`: reads in a background
    thread; `observe(notification, timeout)` waits for a notification, with
    the timeout in seconds.
  - `idevkit.misagent.MisagentConnection`: `copy_all()` lists provisioning
    profiles.
  - `idevkit.mcinstall.McInstallConnection`: `handle_list()`,
    `add_profile()`, `remove_profile()`, `remove_proxy()`,
    `escalate_unsupervised()` and `erase()`; `set_up_proxy_profile` builds a
    global HTTP proxy profile.
  - `idevkit.pcap`: `capture(device_conn, stream, pid, proc_name)` writes a
    pcap file from the packet capture service; `get_packet`,
    `IOSPacketHeader`, `update_network_info`, `find_network_info` and
    `NetworkInfo` find the device's IP addresses from its MAC address.

## Installation

```
pip install idevkit
```

## Connections

All clients take an object implementing `DeviceConnection`: `reader()`,
`writer()`, `send(message)` and `close()`. `StreamConnection` wraps a pair of
binary file-like objects, for example the two halves of a socket:

```python
import socket
from idevkit.usbmux import StreamConnection, UsbMuxConnection, get_usbmuxd_socket, to_unix_socket_path

sock = socket.socket(socket.AF_UNIX)
sock.connect(to_unix_socket_path(get_usbmuxd_socket()))
conn = StreamConnection(sock.makefile("rb"), sock.makefile("wb"))
mux = UsbMuxConnection(conn)
record = mux.read_pair("00000000-0000000000000000")
```

Set `USBMUXD_SOCKET_ADDRESS` to a unix socket path or to a `host:port` to
change what `get_usbmuxd_socket()` returns. Without it the address is
`unix:///var/run/usbmuxd`, or `tcp://127.0.0.1:27015` on Windows.

`LockdownConnection.start_session` switches to SSL when the device asks for it
by calling `enable_session_ssl(pair_record)` on the device connection;
`StreamConnection` has no such method, so such a session raises
`LockdownError` unless you supply a connection that provides one.

## NSKeyedArchiver

```python
from idevkit.nskeyedarchiver.archiver import archive_xml
from idevkit.nskeyedarchiver.unarchiver import unarchive

xml = archive_xml({"name": "james", "children": ["abc", "def"]})
assert unarchive(xml.encode())[0]["children"] == ["abc", "def"]
```

## Simulated location

```python
from idevkit.simlocation import location_bytes

payload = location_bytes(52.5, 13.4)
```

## What it does not do

- There is no command-line tool.
- It does not find devices or open connections by itself: it does not list
  devices, connect through usbmuxd to a device port, or start a service and
  connect to it. You pass in connected streams.
- It does not implement SSL for lockdown sessions or services.
- It builds and parses pairing messages but does not create the pairing
  certificates and keys, and does not escalate with a supervision
  certificate; `McInstallConnection` only escalates unsupervised.
- It does not activate devices, mount developer images or run UI tests; the
  XCTest classes only encode and decode the archived objects.

## Tests

```
pip install -e .[test]
pytest
```