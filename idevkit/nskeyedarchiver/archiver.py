"""Encode Python values as NSKeyedArchiver property lists."""

from __future__ import annotations

import base64
import plistlib
from collections.abc import Callable
from plistlib import UID
from typing import Any
from xml.sax.saxutils import escape

from idevkit.nskeyedarchiver.classes import (
    ARCHIVER_KEY,
    CLASS_KEY,
    CLASSNAME_KEY,
    NS_DICTIONARY,
    NS_KEYED_ARCHIVER,
    NS_KEYS,
    NS_NULL_KEY,
    NS_OBJECTS,
    NULL,
    OBJECTS_KEY,
    TOP_KEY,
    VERSION_KEY,
    VERSION_VALUE,
    NSMutableDictionary,
    NSNull,
    NSURL,
    NSUUID,
    XCTCapabilities,
    XCTestConfiguration,
)

_XCTEST_ARCHIVED_KEYS = (
    "aggregateStatisticsBeforeCrash",
    "automationFrameworkPath",
    "productModuleName",
    "sessionIdentifier",
    "targetApplicationBundleID",
    "targetApplicationPath",
    "testBundleURL",
)


class ArchiveError(TypeError):
    """Raised when a value cannot be put into a keyed archive."""


def _class_dict(*classes: str) -> dict[str, Any]:
    return {"$classes": list(classes), CLASSNAME_KEY: classes[0]}


def _append(objects: list[Any], obj: Any) -> UID:
    objects.append(obj)
    return UID(len(objects) - 1)


def _archive_array(items: list[Any] | tuple[Any, ...], objects: list[Any]) -> UID:
    array_dict: dict[str, Any] = {}
    ref = _append(objects, array_dict)
    array_dict[CLASS_KEY] = _append(objects, _class_dict("NSArray", "NSObject"))
    array_dict[NS_OBJECTS] = [_archive(item, objects) for item in items]
    return ref


def _archive_map(mapping: dict[Any, Any], objects: list[Any], class_dict: dict[str, Any]) -> UID:
    dict_dict: dict[str, Any] = {}
    ref = _append(objects, dict_dict)
    dict_dict[CLASS_KEY] = _append(objects, class_dict)
    keys = list(mapping)
    dict_dict[NS_KEYS] = [_archive(key, objects) for key in keys]
    dict_dict[NS_OBJECTS] = [_archive(mapping[key], objects) for key in keys]
    return ref


def _archive_xctest_configuration(config: XCTestConfiguration, objects: list[Any]) -> UID:
    contents = dict(config.contents)
    ref = _append(objects, contents)
    contents[CLASS_KEY] = _append(objects, _class_dict("XCTestConfiguration", "NSObject"))
    for key in _XCTEST_ARCHIVED_KEYS:
        contents[key] = _archive(contents[key], objects)
    return ref


def _archive_nsuuid(value: NSUUID, objects: list[Any]) -> UID:
    obj: dict[str, Any] = {"NS.uuidbytes": bytes(value.uuid_bytes)}
    ref = _append(objects, obj)
    obj[CLASS_KEY] = _append(objects, _class_dict("NSUUID", "NSObject"))
    return ref


def _archive_nsurl(value: NSURL, objects: list[Any]) -> UID:
    obj: dict[str, Any] = {"NS.base": UID(0)}
    ref = _append(objects, obj)
    obj[CLASS_KEY] = _append(objects, _class_dict("NSURL", "NSObject"))
    obj["NS.relative"] = _append(objects, f"file://{value.path}")
    return ref


def _archive_nsnull(value: NSNull, objects: list[Any]) -> UID:
    obj: dict[str, Any] = {}
    ref = _append(objects, obj)
    obj[CLASS_KEY] = _append(objects, _class_dict(NS_NULL_KEY, "NSObject"))
    return ref


def _archive_mutable_dictionary(value: NSMutableDictionary, objects: list[Any]) -> UID:
    return _archive_map(
        value.internal_dict,
        objects,
        _class_dict("NSMutableDictionary", NS_DICTIONARY, "NSObject"),
    )


def _archive_capabilities(value: XCTCapabilities, objects: list[Any]) -> UID:
    dict_ref = _archive_map(
        value.capabilities_dictionary, objects, _class_dict(NS_DICTIONARY, "NSObject")
    )
    obj: dict[str, Any] = {"capabilities-dictionary": dict_ref}
    ref = _append(objects, obj)
    obj[CLASS_KEY] = _append(objects, _class_dict("XCTCapabilities", "NSObject"))
    return ref


_ENCODERS: dict[type, Callable[[Any, list[Any]], UID]] = {
    XCTestConfiguration: _archive_xctest_configuration,
    NSUUID: _archive_nsuuid,
    NSURL: _archive_nsurl,
    NSNull: _archive_nsnull,
    NSMutableDictionary: _archive_mutable_dictionary,
    XCTCapabilities: _archive_capabilities,
}


def _archive(obj: Any, objects: list[Any]) -> UID:
    if isinstance(obj, bytearray):
        obj = bytes(obj)
    if isinstance(obj, (bool, int, float, str, bytes)):
        return _append(objects, obj)
    if isinstance(obj, (list, tuple)):
        return _archive_array(obj, objects)
    if isinstance(obj, dict):
        return _archive_map(obj, objects, _class_dict(NS_DICTIONARY, "NSObject"))
    encoder = _ENCODERS.get(type(obj))
    if encoder is None:
        raise ArchiveError(
            f"NSKeyedArchiver Unsupported object: {obj!r} of type:{type(obj).__name__}"
        )
    return encoder(obj, objects)


def _archive_object(obj: Any) -> dict[str, Any]:
    objects: list[Any] = [NULL]
    _archive(obj, objects)
    return {
        VERSION_KEY: VERSION_VALUE,
        ARCHIVER_KEY: NS_KEYED_ARCHIVER,
        TOP_KEY: {"root": UID(1)},
        OBJECTS_KEY: objects,
    }


def _xml_value(value: Any, out: list[str]) -> None:
    if isinstance(value, UID):
        out.append(f"<dict><key>CF$UID</key><integer>{value.data}</integer></dict>")
    elif isinstance(value, bool):
        out.append("<true/>" if value else "<false/>")
    elif isinstance(value, int):
        out.append(f"<integer>{value}</integer>")
    elif isinstance(value, float):
        out.append(f"<real>{value!r}</real>")
    elif isinstance(value, str):
        out.append(f"<string>{escape(value)}</string>")
    elif isinstance(value, (bytes, bytearray)):
        out.append(f"<data>{base64.b64encode(bytes(value)).decode('ascii')}</data>")
    elif isinstance(value, dict):
        out.append("<dict>")
        for key in sorted(value):
            if not isinstance(key, str):
                raise ArchiveError(f"plist dictionary keys must be strings, got {key!r}")
            out.append(f"<key>{escape(key)}</key>")
            _xml_value(value[key], out)
        out.append("</dict>")
    elif isinstance(value, (list, tuple)):
        out.append("<array>")
        for item in value:
            _xml_value(item, out)
        out.append("</array>")
    else:
        raise ArchiveError(f"cannot write {value!r} to a plist")


def archive_xml(obj: Any) -> str:
    """Archive ``obj`` and return the archive as a compact XML plist."""
    out: list[str] = [plistlib.PLISTHEADER.decode("ascii"), '<plist version="1.0">']
    _xml_value(_archive_object(obj), out)
    out.append("</plist>")
    return "".join(out)


def archive_bin(obj: Any) -> bytes:
    """Archive ``obj`` and return the archive as a binary plist."""
    skeleton = _archive_object(obj)
    try:
        return plistlib.dumps(skeleton, fmt=plistlib.FMT_BINARY)
    except (TypeError, OverflowError) as exc:
        raise ArchiveError(f"cannot write archive as binary plist: {exc}") from exc