import plistlib
from datetime import datetime, timezone
from plistlib import UID

import pytest

from idevkit.nskeyedarchiver.classes import (
    DTCPUClusterInfo,
    DTTapMessage,
    NSDate,
    NSError,
    NSNull,
    NSUUID,
    NSValue,
    XCActivityRecord,
    XCTTestIdentifier,
)
from idevkit.nskeyedarchiver.unarchiver import (
    UnarchiveError,
    unarchive,
    verify_correct_archiver,
)


def _class(*names):
    return {"$classes": list(names), "$classname": names[0]}


def _doc(objects, top=None, **overrides):
    data = {
        "$archiver": "NSKeyedArchiver",
        "$version": 100000,
        "$top": {"root": UID(1)} if top is None else top,
        "$objects": objects,
    }
    data.update(overrides)
    return data


def _bin(objects, top=None, **overrides):
    return plistlib.dumps(_doc(objects, top, **overrides), fmt=plistlib.FMT_BINARY)


NSNULL_XML = (
    plistlib.PLISTHEADER.decode()
    + '<plist version="1.0"><dict><key>$archiver</key><string>NSKeyedArchiver</string>'
    "<key>$objects</key><array><string>$null</string><dict><key>$class</key><dict>"
    "<key>CF$UID</key><integer>2</integer></dict></dict><dict><key>$classes</key><array>"
    "<string>NSNull</string><string>NSObject</string></array><key>$classname</key>"
    "<string>NSNull</string></dict></array><key>$top</key><dict><key>root</key><dict>"
    "<key>CF$UID</key><integer>1</integer></dict></dict><key>$version</key>"
    "<integer>100000</integer></dict></plist>"
)


def test_one_value():
    assert unarchive(_bin(["$null", True])) == [True]


def test_dictionary():
    objects = [
        "$null",
        {"NS.keys": [UID(2), UID(3), UID(4)], "NS.objects": [UID(5), UID(6), UID(4)], "$class": UID(7)},
        "array",
        "int",
        "string",
        {"NS.objects": [UID(8), UID(9), UID(10)], "$class": UID(11)},
        1,
        _class("NSDictionary", "NSObject"),
        True,
        "Hello, World!",
        42,
        _class("NSArray", "NSObject"),
    ]
    expected = [{"array": [True, "Hello, World!", 42], "int": 1, "string": "string"}]
    assert unarchive(_bin(objects)) == expected


def test_nested_arrays_and_sets():
    objects = [
        "$null",
        {"NS.objects": [UID(2), UID(4)], "$class": UID(6)},
        {"NS.objects": [UID(3)], "$class": UID(7)},
        True,
        {"NS.objects": [UID(5), UID(3)], "$class": UID(8)},
        42,
        _class("NSMutableArray", "NSArray", "NSObject"),
        _class("NSSet", "NSObject"),
        _class("NSMutableSet", "NSSet", "NSObject"),
    ]
    assert unarchive(_bin(objects)) == [[[True], [42, True]]]


def test_numbered_top_keys():
    top = {"$0": UID(1), "$1": UID(2)}
    assert unarchive(_bin(["$null", "first", 7], top=top)) == ["first", 7]


def test_mutable_string_and_data():
    objects = [
        "$null",
        {"NS.objects": [UID(2), UID(4)], "$class": UID(6)},
        {"NS.string": "Hello, World!", "$class": UID(3)},
        _class("NSMutableString", "NSString", "NSObject"),
        {"NS.data": b"asdf", "$class": UID(5)},
        _class("NSMutableData", "NSData", "NSObject"),
        _class("NSArray", "NSObject"),
    ]
    assert unarchive(_bin(objects)) == [["Hello, World!", b"asdf"]]


def test_xml_with_uid_references():
    assert unarchive(NSNULL_XML.encode()) == [NSNull()]


def test_nserror():
    objects = [
        "$null",
        {"NSCode": 4, "NSDomain": UID(2), "NSUserInfo": UID(3), "$class": UID(4)},
        "domain",
        {"NS.keys": [], "NS.objects": [], "$class": UID(5)},
        _class("NSError", "NSObject"),
        _class("NSDictionary", "NSObject"),
    ]
    assert unarchive(_bin(objects)) == [NSError(error_code=4, domain="domain", user_info={})]


def test_nsdate_reference_date():
    objects = ["$null", {"NS.time": 0.0, "$class": UID(2)}, _class("NSDate", "NSObject")]
    result = unarchive(_bin(objects))
    assert result == [NSDate(datetime(2001, 1, 1, tzinfo=timezone.utc))]


def test_nsuuid():
    raw = bytes(range(16))
    objects = ["$null", {"NS.uuidbytes": raw, "$class": UID(2)}, _class("NSUUID", "NSObject")]
    (value,) = unarchive(_bin(objects))
    assert value == NSUUID(raw)
    assert str(value) == "00010203-0405-0607-0809-0a0b0c0d0e0f"


def test_nsvalue():
    objects = [
        "$null",
        {"NS.rectval": UID(2), "NS.special": 4, "$class": UID(3)},
        "{{0, 0}, {1, 2}}",
        _class("NSValue", "NSObject"),
    ]
    assert unarchive(_bin(objects)) == [NSValue(ns_special=4, ns_rectval="{{0, 0}, {1, 2}}")]


def test_cpu_cluster_info():
    objects = [
        "$null",
        {"_clusterID": 1, "_clusterFlags": 2, "$class": UID(2)},
        _class("DTCPUClusterInfo", "NSObject"),
    ]
    assert unarchive(_bin(objects)) == [DTCPUClusterInfo(cluster_id=1, cluster_flags=2)]


def test_test_identifier():
    objects = [
        "$null",
        {"c": UID(2), "o": 1, "$class": UID(6)},
        {"NS.objects": [UID(3), UID(4)], "$class": UID(5)},
        "Suite",
        "testSomething",
        _class("NSArray", "NSObject"),
        _class("XCTTestIdentifier", "NSObject"),
    ]
    (value,) = unarchive(_bin(objects))
    assert value == XCTTestIdentifier(o=1, c=["Suite", "testSomething"])
    assert str(value) == "XCTTestIdentifier{o:1 , c:[Suite testSomething]}"


def test_tap_message():
    objects = [
        "$null",
        {"DTTapMessagePlist": UID(2), "$class": UID(6)},
        {"NS.keys": [UID(3)], "NS.objects": [UID(4)], "$class": UID(5)},
        "k",
        "v",
        _class("NSDictionary", "NSObject"),
        _class("DTTapMessage", "NSObject"),
    ]
    assert unarchive(_bin(objects)) == [DTTapMessage({"k": "v"})]


def test_activity_record():
    raw = bytes(16)
    objects = [
        "$null",
        {
            "finish": UID(0),
            "start": UID(0),
            "uuid": UID(2),
            "title": UID(4),
            "attachments": UID(0),
            "activityType": UID(5),
            "$class": UID(6),
        },
        {"NS.uuidbytes": raw, "$class": UID(3)},
        _class("NSUUID", "NSObject"),
        "Start Test",
        "com.apple.dt.xctest.activity-type.internal",
        _class("XCActivityRecord", "NSObject"),
    ]
    (record,) = unarchive(_bin(objects))
    assert record == XCActivityRecord(
        finish="$null",
        start="$null",
        title="Start Test",
        uuid=NSUUID(raw),
        activity_type="com.apple.dt.xctest.activity-type.internal",
        attachments="$null",
    )


def test_integer_key_dictionary():
    objects = [
        "$null",
        {"NS.keys": [UID(2)], "NS.objects": [UID(3)], "$class": UID(4)},
        5,
        "x",
        _class("NSDictionary", "NSObject"),
    ]
    assert unarchive(_bin(objects)) == [{"uint64{5}": "x"}]


def test_unknown_class_raises():
    objects = ["$null", {"$class": UID(2)}, _class("SomethingElse", "NSObject")]
    with pytest.raises(UnarchiveError, match="Unknown class"):
        unarchive(_bin(objects))


def test_object_without_class_raises():
    with pytest.raises(UnarchiveError, match="Could not find class"):
        unarchive(_bin(["$null", {"foo": 1}]))


@pytest.mark.parametrize(
    "document",
    [
        {k: v for k, v in _doc(["$null"]).items() if k != "$archiver"},
        _doc(["$null"], **{"$archiver": "Other"}),
        {k: v for k, v in _doc(["$null"]).items() if k != "$top"},
        {k: v for k, v in _doc(["$null"]).items() if k != "$objects"},
        {k: v for k, v in _doc(["$null"]).items() if k != "$version"},
        _doc(["$null"], **{"$version": 99}),
    ],
)
def test_validation(document):
    data = plistlib.dumps(document, fmt=plistlib.FMT_BINARY)
    with pytest.raises(UnarchiveError):
        unarchive(data)
    with pytest.raises(UnarchiveError):
        verify_correct_archiver(document)


def test_broken_plist():
    with pytest.raises(UnarchiveError):
        unarchive(b"<?xml version='1.0'?><plist><dict><key>a</key>")


def test_top_level_not_dictionary():
    with pytest.raises(UnarchiveError):
        unarchive(plistlib.dumps([1, 2]))