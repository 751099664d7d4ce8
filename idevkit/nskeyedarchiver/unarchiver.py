"""Decode NSKeyedArchiver property lists into Python values."""

from __future__ import annotations

import logging
import plistlib
from collections.abc import Callable, Iterable
from plistlib import UID
from typing import Any
from xml.parsers.expat import ExpatError

from idevkit.nskeyedarchiver.classes import (
    ARCHIVER_KEY,
    ARRAY_CLASSES,
    CLASS_KEY,
    CLASSNAME_KEY,
    DICTIONARY_CLASSES,
    NS_DATA_KEY,
    NS_KEYED_ARCHIVER,
    NS_KEYS,
    NS_MUTABLE_DATA,
    NS_MUTABLE_STRING,
    NS_OBJECTS,
    NS_STRING_KEY,
    OBJECTS_KEY,
    TOP_KEY,
    VERSION_KEY,
    VERSION_VALUE,
    DTActivityTraceTapMessage,
    DTCPUClusterInfo,
    DTKTraceTapMessage,
    DTTapHeartbeatMessage,
    DTTapMessage,
    DTTapStatusMessage,
    NSDate,
    NSError,
    NSNull,
    NSUUID,
    NSValue,
    PartiallyExtractedXcTestConfig,
    XCActivityRecord,
    XCTCapabilities,
    XCTTestIdentifier,
)

log = logging.getLogger(__name__)

_UID_KEY = "CF$UID"


class UnarchiveError(ValueError):
    """Raised when data is not a valid or supported NSKeyedArchiver plist."""


def _restore_uids(value: Any) -> Any:
    """Turn XML ``{"CF$UID": n}`` dictionaries into UID references."""
    if isinstance(value, dict):
        if len(value) == 1 and _UID_KEY in value:
            ref = value[_UID_KEY]
            if isinstance(ref, int) and not isinstance(ref, bool):
                return UID(ref)
        return {key: _restore_uids(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_restore_uids(item) for item in value]
    return value


def _load_plist(data: bytes) -> Any:
    try:
        loaded = plistlib.loads(bytes(data))
    except (plistlib.InvalidFileException, ValueError, ExpatError, OverflowError) as exc:
        raise UnarchiveError(f"invalid plist: {exc}") from exc
    return _restore_uids(loaded)


def _is_primitive(value: Any) -> bool:
    return isinstance(value, (bool, int, float, str, bytes, bytearray))


def _index(ref: Any) -> int:
    if not isinstance(ref, UID):
        raise UnarchiveError(f"expected an object reference, got {ref!r}")
    return ref.data


def _resolve(obj: dict[str, Any], key: str, objects: list[Any]) -> Any:
    return objects[_index(obj[key])]


def _resolve_class(class_info: Any, objects: list[Any]) -> str:
    if isinstance(class_info, UID):
        return objects[class_info.data][CLASSNAME_KEY]
    raise UnarchiveError(f"Could not find class for {class_info!r}")


def _try_class(obj: dict[str, Any], objects: list[Any]) -> str | None:
    try:
        return _resolve_class(obj.get(CLASS_KEY), objects)
    except UnarchiveError:
        return None


def _extract_objects(refs: Iterable[Any], objects: list[Any]) -> list[Any]:
    result: list[Any] = []
    for ref in refs:
        obj = objects[_index(ref)]
        if _is_primitive(obj):
            result.append(obj)
            continue
        if not isinstance(obj, dict):
            raise UnarchiveError(f"object not a dictionary: {obj!r}")
        class_name = _try_class(obj, objects)
        if class_name in ARRAY_CLASSES:
            result.append(_extract_objects(obj[NS_OBJECTS], objects))
        elif class_name in DICTIONARY_CLASSES:
            result.append(_extract_dictionary(obj, objects))
        elif class_name == NS_MUTABLE_DATA:
            result.append(obj[NS_DATA_KEY])
        elif class_name == NS_MUTABLE_STRING:
            result.append(obj[NS_STRING_KEY])
        else:
            result.append(_decode_nonstandard(obj, objects))
    return result


def _extract_dictionary(obj: dict[str, Any], objects: list[Any]) -> dict[str, Any]:
    keys = _extract_objects(obj[NS_KEYS], objects)
    values = _extract_objects(obj[NS_OBJECTS], objects)
    if not keys:
        return {}
    if not isinstance(keys[0], str):
        log.warning("non string key dict found, converting keys to strings")
        return {f"uint64{{{key}}}": value for key, value in zip(keys, values, strict=True)}
    return dict(zip(keys, values, strict=True))


def _decode_nonstandard(obj: dict[str, Any], objects: list[Any]) -> Any:
    class_name = _resolve_class(obj.get(CLASS_KEY), objects)
    decoder = _DECODERS.get(class_name)
    if decoder is None:
        raise UnarchiveError(f"Unknown class:{class_name}")
    return decoder(obj, objects)


def _tap_plist(obj: dict[str, Any], objects: list[Any]) -> dict[str, Any]:
    return _extract_dictionary(_resolve(obj, "DTTapMessagePlist", objects), objects)


def _decode_nsuuid(obj: dict[str, Any], objects: list[Any]) -> NSUUID:
    raw = obj["NS.uuidbytes"]
    if not isinstance(raw, (bytes, bytearray)):
        raise UnarchiveError(f"NS.uuidbytes should be bytes: {obj!r}")
    return NSUUID(bytes(raw))


def _decode_nserror(obj: dict[str, Any], objects: list[Any]) -> NSError:
    domain = _resolve(obj, "NSDomain", objects)
    if not isinstance(domain, str):
        raise UnarchiveError(f"NSDomain should be a string: {obj!r}")
    user_info = _extract_dictionary(_resolve(obj, "NSUserInfo", objects), objects)
    return NSError(error_code=int(obj["NSCode"]), domain=domain, user_info=user_info)


def _decode_nsdate(obj: dict[str, Any], objects: list[Any]) -> NSDate:
    value = obj["NS.time"]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UnarchiveError(f"NS.time should be a number: {obj!r}")
    return NSDate.from_ns_time(float(value))


def _decode_xctest_configuration(
    obj: dict[str, Any], objects: list[Any]
) -> PartiallyExtractedXcTestConfig:
    values = {
        key: objects[value.data] if isinstance(value, UID) else value
        for key, value in obj.items()
    }
    return PartiallyExtractedXcTestConfig(values)


def _decode_activity_record(obj: dict[str, Any], objects: list[Any]) -> XCActivityRecord:
    title = _resolve(obj, "title", objects)
    activity_type = _resolve(obj, "activityType", objects)
    if not isinstance(title, str) or not isinstance(activity_type, str):
        raise UnarchiveError(f"title and activityType should be strings: {obj!r}")
    return XCActivityRecord(
        finish=_resolve(obj, "finish", objects),
        start=_resolve(obj, "start", objects),
        title=title,
        uuid=_decode_nsuuid(_resolve(obj, "uuid", objects), objects),
        activity_type=activity_type,
        attachments=_resolve(obj, "attachments", objects),
    )


def _decode_nsvalue(obj: dict[str, Any], objects: list[Any]) -> NSValue:
    rectval = _resolve(obj, "NS.rectval", objects)
    return NSValue(
        ns_special=int(obj["NS.special"]),
        ns_rectval=rectval if isinstance(rectval, str) else "",
    )


def _decode_test_identifier(obj: dict[str, Any], objects: list[Any]) -> XCTTestIdentifier:
    container = _resolve(obj, "c", objects)
    components = _extract_objects(container[NS_OBJECTS], objects)
    if not all(isinstance(item, str) for item in components):
        raise UnarchiveError(f"test identifier components should be strings: {obj!r}")
    return XCTTestIdentifier(o=int(obj["o"]), c=components)


def _decode_capabilities(obj: dict[str, Any], objects: list[Any]) -> XCTCapabilities:
    return XCTCapabilities(
        _extract_dictionary(_resolve(obj, "capabilities-dictionary", objects), objects)
    )


def _decode_cluster_info(obj: dict[str, Any], objects: list[Any]) -> DTCPUClusterInfo:
    return DTCPUClusterInfo(
        cluster_id=int(obj["_clusterID"]), cluster_flags=int(obj["_clusterFlags"])
    )


_DECODERS: dict[str, Callable[[dict[str, Any], list[Any]], Any]] = {
    "DTActivityTraceTapMessage": lambda o, objs: DTActivityTraceTapMessage(_tap_plist(o, objs)),
    "DTSysmonTapMessage": lambda o, objs: DTActivityTraceTapMessage(_tap_plist(o, objs)),
    "NSError": _decode_nserror,
    "NSNull": lambda o, objs: NSNull(),
    "NSDate": _decode_nsdate,
    "XCTestConfiguration": _decode_xctest_configuration,
    "DTTapHeartbeatMessage": lambda o, objs: DTTapHeartbeatMessage(_tap_plist(o, objs)),
    "XCTCapabilities": _decode_capabilities,
    "NSUUID": _decode_nsuuid,
    "XCActivityRecord": _decode_activity_record,
    "DTKTraceTapMessage": lambda o, objs: DTKTraceTapMessage(_tap_plist(o, objs)),
    "NSValue": _decode_nsvalue,
    "XCTTestIdentifier": _decode_test_identifier,
    "DTTapStatusMessage": lambda o, objs: DTTapStatusMessage(_tap_plist(o, objs)),
    "DTTapMessage": lambda o, objs: DTTapMessage(_tap_plist(o, objs)),
    "DTCPUClusterInfo": _decode_cluster_info,
}


def verify_correct_archiver(data: dict[str, Any]) -> None:
    """Raise UnarchiveError unless ``data`` has the keys and values of a keyed archive."""
    if ARCHIVER_KEY not in data:
        raise UnarchiveError(f"Invalid NSKeyedArchiver object, missing key '{ARCHIVER_KEY}'")
    archiver = data[ARCHIVER_KEY]
    if archiver != NS_KEYED_ARCHIVER:
        raise UnarchiveError(
            f"Invalid value: {archiver!r} for key '{ARCHIVER_KEY}', expected: '{NS_KEYED_ARCHIVER}'"
        )
    for key in (TOP_KEY, OBJECTS_KEY):
        if key not in data:
            raise UnarchiveError(f"Invalid NSKeyedArchiver object, missing key '{key}'")
    if VERSION_KEY not in data:
        raise UnarchiveError(f"Invalid NSKeyedArchiver object, missing key '{VERSION_KEY}'")
    version = data[VERSION_KEY]
    if isinstance(version, bool) or version != VERSION_VALUE:
        raise UnarchiveError(
            f"Invalid value: {version!r} for key '{VERSION_KEY}', expected: '{VERSION_VALUE}'"
        )


def _extract_from_top(top: dict[str, Any], objects: list[Any]) -> list[Any]:
    if "root" in top:
        return _extract_objects([top["root"]], objects)
    return _extract_objects((top[f"${i}"] for i in range(len(top))), objects)


def unarchive(data: bytes) -> list[Any]:
    """Decode an XML or binary keyed archive and return its top level objects.

    Arrays and sets become lists, dictionaries become dicts, and known
    Objective-C classes become the dataclasses of this package.
    """
    archive = _load_plist(data)
    if not isinstance(archive, dict):
        raise UnarchiveError(f"keyed archive is not a dictionary: {archive!r}")
    verify_correct_archiver(archive)
    top = archive[TOP_KEY]
    objects = archive[OBJECTS_KEY]
    if not isinstance(top, dict) or not isinstance(objects, list):
        raise UnarchiveError("'$top' must be a dictionary and '$objects' an array")
    try:
        return _extract_from_top(top, objects)
    except UnarchiveError:
        raise
    except (KeyError, IndexError, TypeError, AttributeError, ValueError) as exc:
        raise UnarchiveError(f"malformed keyed archive: {exc!r}") from exc