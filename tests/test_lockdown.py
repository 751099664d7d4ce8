import io
import uuid

import pytest

from idevkit.lockdown import (
    FullPairRecordData,
    LockdownConnection,
    LockdownError,
    LockdownPairResponse,
    StartServiceResponse,
    extract_pairing_challenge,
    is_pairing_dialog_open,
    new_full_pair_record_data,
    new_pair_request,
    new_start_service_request,
    new_stop_session_request,
    parse_pair_response,
    parse_start_session_response,
)
from idevkit.plistcodec import PlistCodec, parse_plist, to_plist_bytes
from idevkit.usbmux import PairRecord, StreamConnection


def _framed(*messages):
    codec = PlistCodec()
    return io.BytesIO(b"".join(codec.encode(m) for m in messages))


def _sent(writer):
    reader = io.BytesIO(writer.getvalue())
    codec = PlistCodec()
    result = []
    while reader.tell() < len(writer.getvalue()):
        result.append(parse_plist(codec.decode(reader)))
    return result


class _SslConnection(StreamConnection):
    def __init__(self, reader, writer):
        super().__init__(reader, writer)
        self.ssl_records = []

    def enable_session_ssl(self, pair_record):
        self.ssl_records.append(pair_record)


def test_start_service_returns_response_and_sends_request():
    writer = io.BytesIO()
    reader = _framed(
        {"Port": 4242, "Request": "StartService", "Service": "svc.name", "EnableServiceSSL": True}
    )
    conn = LockdownConnection(StreamConnection(reader, writer))
    response = conn.start_service("svc.name")
    assert response == StartServiceResponse(
        port=4242, request="StartService", service="svc.name", enable_service_ssl=True
    )
    assert _sent(writer) == [new_start_service_request("svc.name")]
    assert _sent(writer)[0]["Request"] == "StartService"


def test_start_service_error_raises():
    reader = _framed({"Request": "StartService", "Error": "InvalidService"})
    conn = LockdownConnection(StreamConnection(reader, io.BytesIO()))
    with pytest.raises(LockdownError, match="InvalidService"):
        conn.start_service("svc.name")


def test_start_session_without_ssl_stores_session_id():
    writer = io.BytesIO()
    reader = _framed({"EnableSessionSSL": False, "Request": "StartSession", "SessionID": "sess-1"})
    conn = LockdownConnection(StreamConnection(reader, writer))
    record = PairRecord(host_id="HOST", system_buid="BUID")
    response = conn.start_session(record)
    assert response.session_id == "sess-1"
    assert conn.session_id == "sess-1"
    sent = _sent(writer)[0]
    assert sent["Request"] == "StartSession"
    assert sent["HostID"] == "HOST"
    assert sent["SystemBUID"] == "BUID"


def test_start_session_with_ssl_enables_it():
    reader = _framed({"EnableSessionSSL": True, "SessionID": "sess-2"})
    device = _SslConnection(reader, io.BytesIO())
    record = PairRecord(host_id="HOST", system_buid="BUID")
    LockdownConnection(device).start_session(record)
    assert device.ssl_records == [record]


def test_start_session_with_ssl_unsupported_raises():
    reader = _framed({"EnableSessionSSL": True, "SessionID": "sess-3"})
    conn = LockdownConnection(StreamConnection(reader, io.BytesIO()))
    with pytest.raises(LockdownError):
        conn.start_session(PairRecord())


def test_stop_session_without_session_sends_nothing():
    writer = io.BytesIO()
    conn = LockdownConnection(StreamConnection(io.BytesIO(), writer))
    conn.stop_session()
    assert writer.getvalue() == b""


def test_stop_session_sends_request_with_session_id():
    writer = io.BytesIO()
    reader = _framed({"SessionID": "sess-4"}, {"Request": "StopSession"})
    conn = LockdownConnection(StreamConnection(reader, writer))
    conn.start_session(PairRecord())
    conn.stop_session()
    assert _sent(writer)[1] == new_stop_session_request("sess-4")
    assert conn.session_id == ""


def test_parse_functions_tolerate_garbage():
    assert parse_pair_response(b"not a plist") == LockdownPairResponse()
    assert parse_start_session_response(b"junk").session_id == ""


def test_pairing_dialog_detection():
    pending = parse_pair_response(to_plist_bytes({"Error": "PairingDialogResponsePending"}))
    assert is_pairing_dialog_open(pending)
    assert not is_pairing_dialog_open(LockdownPairResponse(error="Other"))


def test_parse_pair_response_escrow_bag():
    resp = parse_pair_response(to_plist_bytes({"Request": "Pair", "EscrowBag": b"\x01\x02"}))
    assert resp.escrow_bag == b"\x01\x02"
    assert resp.request == "Pair"


def test_new_full_pair_record_data_host_id():
    record = new_full_pair_record_data("BUID", b"host", b"root", b"dev")
    assert record.host_id == record.host_id.upper()
    assert str(uuid.UUID(record.host_id)).upper() == record.host_id
    assert (record.system_buid, record.host_certificate, record.root_certificate) == (
        "BUID",
        b"host",
        b"root",
    )
    other = new_full_pair_record_data("BUID", b"host", b"root", b"dev")
    assert other.host_id != record.host_id
    assert other.device_certificate == b"dev"


def test_new_pair_request_round_trip():
    record = FullPairRecordData(b"dev", b"host", b"root", "BUID", "HOSTID")
    parsed = parse_plist(to_plist_bytes(new_pair_request(record)))
    assert parsed["Request"] == "Pair"
    assert parsed["ProtocolVersion"] == "2"
    assert parsed["PairingOptions"] == {"ExtendedPairingErrors": True}
    assert parsed["PairRecord"]["DeviceCertificate"] == b"dev"
    assert parsed["PairRecord"]["HostID"] == "HOSTID"


def test_extract_pairing_challenge_success():
    resp = to_plist_bytes(
        {"Error": "MCChallengeRequired", "ExtendedResponse": {"PairingChallenge": b"abc"}}
    )
    assert extract_pairing_challenge(resp) == b"abc"


@pytest.mark.parametrize(
    "payload",
    [
        {"Request": "Pair"},
        {"Error": 5},
        {"Error": "SomethingElse"},
        {"Error": "MCChallengeRequired"},
        {"Error": "MCChallengeRequired", "ExtendedResponse": "x"},
        {"Error": "MCChallengeRequired", "ExtendedResponse": {}},
        {"Error": "MCChallengeRequired", "ExtendedResponse": {"PairingChallenge": "x"}},
    ],
)
def test_extract_pairing_challenge_errors(payload):
    with pytest.raises(LockdownError):
        extract_pairing_challenge(to_plist_bytes(payload))