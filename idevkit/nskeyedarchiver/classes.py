"""Objective-C classes that appear in NSKeyedArchiver property lists."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from plistlib import UID
from typing import Any

ARCHIVER_KEY = "$archiver"
NS_KEYED_ARCHIVER = "NSKeyedArchiver"
VERSION_KEY = "$version"
TOP_KEY = "$top"
OBJECTS_KEY = "$objects"
NS_OBJECTS = "NS.objects"
NS_KEYS = "NS.keys"
CLASS_KEY = "$class"
CLASSNAME_KEY = "$classname"
VERSION_VALUE = 100000
NULL = "$null"
NS_DATA_KEY = "NS.data"
NS_STRING_KEY = "NS.string"
NS_NULL_KEY = "NSNull"

NS_ARRAY = "NSArray"
NS_MUTABLE_ARRAY = "NSMutableArray"
NS_SET = "NSSet"
NS_MUTABLE_SET = "NSMutableSet"
ARRAY_CLASSES = frozenset({NS_ARRAY, NS_MUTABLE_ARRAY, NS_SET, NS_MUTABLE_SET})

NS_DICTIONARY = "NSDictionary"
NS_MUTABLE_DICTIONARY = "NSMutableDictionary"
DICTIONARY_CLASSES = frozenset({NS_DICTIONARY, NS_MUTABLE_DICTIONARY})

NS_MUTABLE_DATA = "NSMutableData"
NS_MUTABLE_STRING = "NSMutableString"

# Apple's reference date, 2001-01-01 00:00 UTC, in milliseconds since the Unix epoch.
NS_REFERENCE_DATE_MS = 978307200000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class NSUUID:
    """A UUID stored as its 16 raw bytes."""

    uuid_bytes: bytes

    def __str__(self) -> str:
        try:
            return str(uuid.UUID(bytes=bytes(self.uuid_bytes)))
        except ValueError as exc:
            return f"Failed converting {bytes(self.uuid_bytes).hex()} to uuid with {exc}"


@dataclass(frozen=True)
class NSURL:
    """A file URL referring to ``path``."""

    path: str


@dataclass(frozen=True)
class NSNull:
    """The Objective-C null singleton."""

    class_name: str = NS_NULL_KEY


@dataclass(frozen=True)
class NSDate:
    """A point in time."""

    timestamp: datetime

    @classmethod
    def from_ns_time(cls, value: float) -> NSDate:
        """Create a date from seconds since the Apple reference date, at millisecond precision."""
        millis = int(1000 * value + NS_REFERENCE_DATE_MS)
        return cls(_EPOCH + timedelta(milliseconds=millis))

    def __str__(self) -> str:
        return str(self.timestamp)


@dataclass
class NSValue:
    """An NSValue holding a rectangle description."""

    ns_special: int = 0
    ns_rectval: str = ""


@dataclass
class NSError:
    """An error with code, domain and user info."""

    error_code: int = 0
    domain: str = ""
    user_info: dict[str, Any] = field(default_factory=dict)


@dataclass
class NSMutableDictionary:
    """A dictionary archived with the NSMutableDictionary class."""

    internal_dict: dict[str, Any] = field(default_factory=dict)


@dataclass
class XCTestConfiguration:
    """The raw key/value contents of a test configuration."""

    contents: dict[str, Any] = field(default_factory=dict)


@dataclass
class XCTCapabilities:
    """Capabilities exchanged with the test manager."""

    capabilities_dictionary: dict[str, Any] = field(default_factory=dict)


@dataclass
class XCTTestIdentifier:
    """Identifier of a test: option bits and the components of its name."""

    o: int = 0
    c: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"XCTTestIdentifier{{o:{self.o} , c:[{' '.join(self.c)}]}}"


@dataclass
class XCActivityRecord:
    """An activity reported while a UI test runs."""

    finish: Any = None
    start: Any = None
    title: str = ""
    uuid: NSUUID = field(default_factory=lambda: NSUUID(b""))
    activity_type: str = ""
    attachments: Any = None


@dataclass
class DTCPUClusterInfo:
    """Description of one CPU cluster."""

    cluster_id: int = 0
    cluster_flags: int = 0


@dataclass
class DTTapMessage:
    """A generic instruments tap message."""

    dt_tap_message_plist: dict[str, Any] = field(default_factory=dict)


@dataclass
class DTActivityTraceTapMessage:
    """An activity trace (or sysmon) tap message."""

    dt_tap_message_plist: dict[str, Any] = field(default_factory=dict)


@dataclass
class DTKTraceTapMessage:
    """A kernel trace tap message."""

    dt_tap_message_plist: dict[str, Any] = field(default_factory=dict)


@dataclass
class DTTapHeartbeatMessage:
    """A heartbeat tap message."""

    dt_tap_message_plist: dict[str, Any] = field(default_factory=dict)


@dataclass
class DTTapStatusMessage:
    """A status tap message."""

    dt_tap_message_plist: dict[str, Any] = field(default_factory=dict)


@dataclass
class PartiallyExtractedXcTestConfig:
    """A test configuration whose references were resolved one level deep."""

    values: dict[str, Any] = field(default_factory=dict)


def new_xctest_configuration(
    product_module_name: str,
    session_identifier: uuid.UUID,
    target_application_bundle_id: str,
    target_application_path: str,
    test_bundle_url: str,
) -> XCTestConfiguration:
    """Build the test configuration a UI test runner reads on start-up."""
    contents: dict[str, Any] = {
        "aggregateStatisticsBeforeCrash": {"XCSuiteRecordsKey": {}},
        "automationFrameworkPath": "/Developer/Library/PrivateFrameworks/XCTAutomationSupport.framework",
        "baselineFileRelativePath": UID(0),
        "baselineFileURL": UID(0),
        "defaultTestExecutionTimeAllowance": UID(0),
        "disablePerformanceMetrics": False,
        "emitOSLogs": False,
        "gatherLocalizableStringsData": False,
        "initializeForUITesting": True,
        "maximumTestExecutionTimeAllowance": UID(0),
        "productModuleName": product_module_name,
        "randomExecutionOrderingSeed": UID(0),
        "reportActivities": True,
        "reportResultsToIDE": True,
        "sessionIdentifier": NSUUID(session_identifier.bytes),
        "systemAttachmentLifetime": 2,
        "targetApplicationBundleID": target_application_bundle_id,
        "targetApplicationPath": target_application_path,
        "testApplicationUserOverrides": UID(0),
        "testBundleRelativePath": UID(0),
        "testBundleURL": NSURL(test_bundle_url),
        "testExecutionOrdering": 0,
        "testsDrivenByIDE": False,
        "testsMustRunOnMainThread": True,
        "testsToRun": UID(0),
        "testsToSkip": UID(0),
        "testTimeoutsEnabled": False,
        "treatMissingBaselinesAsFailures": False,
        "userAttachmentLifetime": 1,
    }
    return XCTestConfiguration(contents)