"""Operator diagnostics: what would a record send, and why.

inspect_snapshot() walks the same mapping and conversion steps as a real sync
but records each property's raw value, converted value and any problem instead
of raising, so a broken map or attribute can be found without a remote call.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.hubsync.sync.converter import ValueKind, classify_value, convert_value, type_name
from src.hubsync.sync.errors import UnconvertibleValueError
from src.hubsync.sync.mapper import resolve_path, select_property_map
from src.hubsync.sync.schemas import PropertyDiagnostic, PropertyReport, RecordSnapshot

logger = structlog.get_logger(__name__)

_RAW_PREVIEW = 80


def describe_value(value: Any) -> str:
    """Short human-readable description of a raw local value."""
    kind = classify_value(value)
    if kind is ValueKind.NULL:
        return "null"
    if kind in (ValueKind.SEQUENCE, ValueKind.MAPPING):
        return f"{type_name(value)}[{len(value)}]"
    if kind in (ValueKind.STRING_LIKE, ValueKind.STRUCT_LIKE, ValueKind.OPAQUE):
        return f"object {type_name(value)}"
    text = repr(value)
    if len(text) > _RAW_PREVIEW:
        text = text[: _RAW_PREVIEW - 3] + "..."
    return f"{text} ({type_name(value)})"


def _diagnose(remote_name: str, path: str, value: Any) -> tuple[PropertyDiagnostic, str | None]:
    diagnostic = PropertyDiagnostic(remote_name=remote_name, path=path, raw=describe_value(value))
    kind = classify_value(value)

    try:
        converted = convert_value(value, remote_name)
    except UnconvertibleValueError as exc:
        diagnostic.error = str(exc)
        return diagnostic, f"{remote_name}: unconvertible object {exc.value_type}"

    diagnostic.converted = converted
    diagnostic.omitted = converted is None

    if kind in (ValueKind.SEQUENCE, ValueKind.MAPPING):
        if converted is None:
            return diagnostic, f"{remote_name}: empty collection at '{path}' omitted"
        return diagnostic, f"{remote_name}: collection at '{path}' sent as {converted!r}"
    if kind is ValueKind.STRUCT_LIKE:
        return diagnostic, f"{remote_name}: object {type_name(value)} sent as JSON"
    return diagnostic, None


def inspect_snapshot(snapshot: RecordSnapshot, use_update_map: bool = False) -> PropertyReport:
    """Report how every mapped and dynamic property of a snapshot converts.

    Never raises on bad data; problems are collected in PropertyReport.issues.
    """
    map_name, property_map = select_property_map(snapshot, for_update=use_update_map)
    report = PropertyReport(local_id=snapshot.local_id, map_name=map_name)

    if not property_map:
        report.issues.append(f"{map_name} is empty; nothing would be synced")

    # Any non-null mapped value blocks the dynamic one, even when it converts to nothing
    mapped: set[str] = set()
    for remote_name, path in property_map.items():
        value = resolve_path(snapshot.attributes, path)
        if value is not None:
            mapped.add(remote_name)
        diagnostic, issue = _diagnose(remote_name, path, value)
        report.properties.append(diagnostic)
        if issue:
            report.issues.append(issue)

    for remote_name, value in snapshot.dynamic_properties.items():
        if remote_name in mapped:
            continue
        try:
            converted = convert_value(value, remote_name)
        except UnconvertibleValueError as exc:
            report.issues.append(f"{remote_name}: dynamic value is unconvertible object {exc.value_type}")
            continue
        if converted is not None:
            report.dynamic[remote_name] = converted

    logger.debug(
        "diagnostics.inspected",
        local_id=snapshot.local_id,
        map_name=map_name,
        properties=len(report.properties),
        issues=len(report.issues),
    )
    return report
