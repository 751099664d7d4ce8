import io
import plistlib

import pytest

from idevkit.mcinstall import (
    PROXY_PROFILE_IDENTIFIER,
    McInstallConnection,
    McInstallError,
    check_status,
    parse_profile,
    set_up_proxy_profile,
)
from idevkit.plistcodec import PlistCodec, parse_plist


class FakeConn:
    def __init__(self, *responses):
        codec = PlistCodec()
        self._reader = io.BytesIO(b"".join(codec.encode(r) for r in responses))
        self.sent = []
        self.closed = False

    def reader(self):
        return self._reader

    def writer(self):
        return io.BytesIO()

    def send(self, message):
        self.sent.append(message)

    def close(self):
        self.closed = True

    def requests(self):
        codec = PlistCodec()
        return [parse_plist(codec.decode(io.BytesIO(m))) for m in self.sent]


ACK = {"Status": "Acknowledged"}


def _profile_response(identifier, with_description=True):
    metadata = {
        "PayloadDisplayName": "Restrictions",
        "PayloadRemovalDisallowed": False,
        "PayloadUUID": "889918E1-B5AA-4AD6-B819-240081988CAB",
        "PayloadVersion": 1,
    }
    if with_description:
        metadata["PayloadDescription"] = "Configures Restrictions"
    return {
        "OrderedIdentifiers": [identifier],
        "ProfileManifest": {identifier: {"IsActive": True, "Description": "desc"}},
        "ProfileMetadata": {identifier: metadata},
        "Status": "Acknowledged",
    }


def test_check_status():
    assert check_status(ACK) is True
    assert check_status({"Status": "Error"}) is False
    assert check_status({}) is False
    assert check_status({"Status": 1}) is False


def test_parse_profile():
    info = parse_profile("p1", _profile_response("p1"))
    assert info.identifier == "p1"
    assert info.manifest.is_active is True
    assert info.manifest.description == "desc"
    assert info.status == "Acknowledged"
    assert info.metadata.payload_description == "Configures Restrictions"
    assert info.metadata.payload_display_name == "Restrictions"
    assert info.metadata.payload_version == 1


def test_parse_profile_optional_description():
    info = parse_profile("p1", _profile_response("p1", with_description=False))
    assert info.metadata.payload_description == ""


def test_parse_profile_missing_identifier():
    with pytest.raises(McInstallError):
        parse_profile("other", _profile_response("p1"))


def test_parse_profile_wrong_type():
    response = _profile_response("p1")
    response["ProfileMetadata"]["p1"]["PayloadVersion"] = "1"
    with pytest.raises(McInstallError):
        parse_profile("p1", response)


def test_handle_list():
    conn = FakeConn(_profile_response("p1"))
    profiles = McInstallConnection(conn).handle_list()
    assert [p.identifier for p in profiles] == ["p1"]
    assert conn.requests() == [{"RequestType": "GetProfileList"}]


def test_handle_list_missing_identifiers():
    with pytest.raises(McInstallError):
        McInstallConnection(FakeConn({"Status": "Acknowledged"})).handle_list()


def test_add_profile():
    conn = FakeConn(ACK)
    McInstallConnection(conn).add_profile(b"<plist/>")
    assert conn.requests() == [{"RequestType": "InstallProfile", "Payload": b"<plist/>"}]


def test_add_profile_failure():
    with pytest.raises(McInstallError):
        McInstallConnection(FakeConn({"Status": "Error"})).add_profile(b"x")


def test_remove_proxy():
    conn = FakeConn(ACK)
    McInstallConnection(conn).remove_proxy()
    assert conn.requests() == [
        {"RequestType": "RemoveProfile", "ProfileIdentifier": PROXY_PROFILE_IDENTIFIER}
    ]


def test_remove_profile_failure():
    with pytest.raises(McInstallError):
        McInstallConnection(FakeConn({"Status": "Error"})).remove_profile("x")


def test_escalate_unsupervised():
    conn = FakeConn(ACK)
    McInstallConnection(conn).escalate_unsupervised()
    assert conn.requests()[0]["SupervisorCertificate"] == b"\x00"
    with pytest.raises(McInstallError):
        McInstallConnection(FakeConn({"Status": "CertificateRejected"})).escalate_unsupervised()


def test_erase_tolerates_stream_end():
    conn = FakeConn(ACK, ACK)
    McInstallConnection(conn).erase()
    assert [r["RequestType"] for r in conn.requests()] == [
        "Flush",
        "GetCloudConfiguration",
        "EraseDevice",
    ]
    assert conn.requests()[2]["PreserveDataPlan"] == 1


def test_erase_flush_failure():
    conn = FakeConn({"Status": "Error"})
    with pytest.raises(McInstallError):
        McInstallConnection(conn).erase()
    assert len(conn.sent) == 1


def test_close():
    conn = FakeConn()
    with McInstallConnection(conn):
        pass
    assert conn.closed is True


def test_proxy_profile_without_auth():
    profile = plistlib.loads(set_up_proxy_profile("proxy.example.com", "8080", "", ""))
    assert profile["PayloadIdentifier"] == PROXY_PROFILE_IDENTIFIER
    content = profile["PayloadContent"][0]
    assert content["ProxyServer"] == "proxy.example.com"
    assert content["ProxyServerPort"] == 8080
    assert content["ProxyType"] == "Manual"
    assert "ProxyUsername" not in content


def test_proxy_profile_with_auth():
    password = "password"
    profile = plistlib.loads(set_up_proxy_profile("proxy.example.com", "8080", "user", password))
    content = profile["PayloadContent"][0]
    assert content["ProxyUsername"] == "user"
    assert content["ProxyPassword"] == password


@pytest.mark.parametrize("host,port", [("", "8080"), ("proxy.example.com", "")])
def test_proxy_profile_requires_host_and_port(host, port):
    with pytest.raises(ValueError):
        set_up_proxy_profile(host, port, "", "")