"""Property map resolution -- local record snapshot to raw remote properties.

Defines:
- resolve_path(): dot-notation lookup across dicts, sequences and objects.
- select_property_map(): update map when non-empty, else the full map.
- map_properties(): raw (pre-conversion) property bag incl. dynamic properties.
- build_properties(): map_properties() + conversion + validation.
- has_relevant_changes() / should_sync(): change detection for triggers.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from src.hubsync.sync.converter import convert_properties
from src.hubsync.sync.schemas import RecordSnapshot

FULL_MAP = "property_map"
UPDATE_MAP = "update_property_map"

_MISSING = object()


def _step(current: Any, segment: str) -> Any:
    if isinstance(current, Mapping):
        return current.get(segment, _MISSING)
    if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
        try:
            return current[int(segment)]
        except (ValueError, IndexError):
            return _MISSING
    return getattr(current, segment, _MISSING)


def resolve_path(attributes: Mapping[str, Any], path: str) -> Any:
    """Resolve a local attribute path; missing segments resolve to None.

    A path without dots is a direct attribute lookup. Dotted paths traverse
    nested mappings, sequences (numeric segments) and object attributes.
    """
    if "." not in path:
        return attributes.get(path)

    current: Any = attributes
    for segment in path.split("."):
        if current is None:
            return None
        current = _step(current, segment)
        if current is _MISSING:
            return None
    return current


def select_property_map(snapshot: RecordSnapshot, for_update: bool) -> tuple[str, dict[str, str]]:
    """Pick the property map for an operation.

    Returns:
        (map name, map) -- the update map when updating and it is non-empty,
        otherwise the full map.
    """
    if for_update and snapshot.update_property_map:
        return UPDATE_MAP, snapshot.update_property_map
    return FULL_MAP, snapshot.property_map


def map_properties(
    attributes: Mapping[str, Any],
    property_map: Mapping[str, str],
    dynamic_properties: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Produce raw property values from a property map.

    Mapped values that resolve to None are skipped. Dynamic properties fill in
    any key that has no non-null mapped value; they never override one.
    """
    raw: dict[str, Any] = {}

    for remote_name, path in property_map.items():
        value = resolve_path(attributes, path)
        if value is not None:
            raw[remote_name] = value

    for remote_name, value in (dynamic_properties or {}).items():
        if remote_name in raw or value is None:
            continue
        raw[remote_name] = value

    return raw


def build_properties(snapshot: RecordSnapshot, property_map: Mapping[str, str]) -> dict[str, str]:
    """Validated wire properties for a snapshot under the given map."""
    raw = map_properties(snapshot.attributes, property_map, snapshot.dynamic_properties)
    return convert_properties(raw)


def _roots(paths: Iterable[str]) -> set[str]:
    return {path.split(".", 1)[0] for path in paths}


def has_relevant_changes(changed_fields: Iterable[str], snapshot: RecordSnapshot) -> bool:
    """True when any changed local attribute feeds a mapped remote property.

    A change to "profile" is relevant to a mapped path "profile.city", and a
    change reported as "profile.city" is relevant to a mapped "profile".
    """
    mapped = set(snapshot.property_map.values()) | set(snapshot.update_property_map.values())
    mapped_roots = _roots(mapped)
    for field in changed_fields:
        if field in mapped or field.split(".", 1)[0] in mapped_roots:
            return True
    return False


def should_sync(snapshot: RecordSnapshot, disabled: bool = False) -> bool:
    """Whether a record participates in sync at all."""
    if disabled:
        return False
    return bool(snapshot.property_map)
