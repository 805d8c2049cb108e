"""Local value -> remote property string conversion.

The remote API only accepts string property values. Every local value is
classified once into a ValueKind and then converted by kind:

    NULL        -> omitted
    SCALAR      -> str as-is, bool "true"/"false", numbers in canonical form
    TIMESTAMP   -> ISO-8601 (UTC datetimes end in "Z")
    SEQUENCE    -> "a, b, c" of the scalar elements; empty -> omitted
    MAPPING     -> translatable field: value of "en", else first value
    STRING_LIKE -> the object's own __str__
    STRUCT_LIKE -> JSON of the object's mapping form
    OPAQUE      -> UnconvertibleValueError

Empty results are always omitted (None), never sent as "".
"""

from __future__ import annotations

import dataclasses
import json
import numbers
from collections import UserString
from collections.abc import Mapping, Sequence, Set
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

from src.hubsync.sync.errors import InvalidPropertyTypeError, UnconvertibleValueError


class ValueKind(str, Enum):
    """Conversion category of a local value."""

    NULL = "null"
    SCALAR = "scalar"
    TIMESTAMP = "timestamp"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    STRING_LIKE = "string_like"
    STRUCT_LIKE = "struct_like"
    OPAQUE = "opaque"


_TO_MAPPING_METHODS = ("model_dump", "to_dict", "dict")


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, bytes, UserString, numbers.Number, Enum))


def _is_indexed(mapping: Mapping) -> bool:
    """True when keys are exactly 0..n-1 in order (a list serialized as a mapping)."""
    return list(mapping.keys()) == list(range(len(mapping)))


def _defines_str(value: Any) -> bool:
    """True when the value's class provides its own string form."""
    for klass in type(value).__mro__:
        if "__str__" in klass.__dict__:
            return klass not in (object, BaseModel)
    return False


def _mapping_form(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    for method in _TO_MAPPING_METHODS:
        candidate = getattr(value, method, None)
        if callable(candidate):
            return candidate()
    return None


def _has_mapping_form(value: Any) -> bool:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return True
    return any(callable(getattr(value, m, None)) for m in _TO_MAPPING_METHODS)


def type_name(value: Any) -> str:
    """Qualified type name used in error messages and diagnostics."""
    klass = type(value)
    if klass.__module__ == "builtins":
        return klass.__qualname__
    return f"{klass.__module__}.{klass.__qualname__}"


def classify_value(value: Any) -> ValueKind:
    """Determine the conversion category of a value.

    Order matters: str and bytes are sequences in Python and datetimes are
    objects, so the specific checks run before the generic ones.
    """
    if value is None:
        return ValueKind.NULL
    if _is_scalar(value):
        return ValueKind.SCALAR
    if isinstance(value, (datetime, date, time)):
        return ValueKind.TIMESTAMP
    if isinstance(value, Mapping):
        return ValueKind.SEQUENCE if value and _is_indexed(value) else ValueKind.MAPPING
    if isinstance(value, (Sequence, Set)):
        return ValueKind.SEQUENCE
    if _defines_str(value):
        return ValueKind.STRING_LIKE
    if _has_mapping_form(value):
        return ValueKind.STRUCT_LIKE
    return ValueKind.OPAQUE


def _format_scalar(value: Any) -> str:
    if isinstance(value, Enum):
        return _format_scalar(value.value) if _is_scalar(value.value) else str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral() else str(value)
    return str(value)


def _format_timestamp(value: date | time) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        utc = value.astimezone(timezone.utc)
        return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return value.isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return _format_timestamp(value)
    if isinstance(value, (Set, Sequence)) and not isinstance(value, UserString):
        return list(value)
    return str(value)


def _none_if_empty(text: str | None) -> str | None:
    return text if text else None


def convert_value(value: Any, property_name: str) -> str | None:
    """Convert one local value to its wire string, or None to omit it.

    Args:
        value: Any locally-typed value.
        property_name: Remote property the value is destined for (errors only).

    Returns:
        Non-empty string, or None when the property should not be sent.

    Raises:
        UnconvertibleValueError: Object with neither a string nor mapping form.
    """
    kind = classify_value(value)

    if kind is ValueKind.NULL:
        return None

    if kind is ValueKind.SCALAR:
        return _none_if_empty(_format_scalar(value))

    if kind is ValueKind.TIMESTAMP:
        return _format_timestamp(value)

    if kind is ValueKind.SEQUENCE:
        items = list(value.values()) if isinstance(value, Mapping) else list(value)
        parts = [_format_scalar(item) for item in items if _is_scalar(item)]
        if isinstance(value, Set):
            parts.sort()
        return _none_if_empty(", ".join(p for p in parts if p))

    if kind is ValueKind.MAPPING:
        if not value:
            return None
        # Translatable field: prefer English, else the first translation
        chosen = value["en"] if value.get("en") is not None else next(iter(value.values()))
        return convert_value(chosen, property_name)

    if kind is ValueKind.STRING_LIKE:
        return _none_if_empty(str(value))

    if kind is ValueKind.STRUCT_LIKE:
        data = _mapping_form(value)
        if isinstance(data, Mapping):
            return json.dumps(dict(data), default=_json_default, separators=(",", ":"))
        return convert_value(data, property_name)

    raise UnconvertibleValueError(property_name, type_name(value))


def validate_properties(properties: Mapping[str, Any]) -> None:
    """Assert that every converted property is a string.

    Raises:
        InvalidPropertyTypeError: Listing each non-string key with its runtime
            kind and, for structured values, its class name.
    """
    invalid: dict[str, dict[str, str | None]] = {}

    for key, value in properties.items():
        if not isinstance(value, str):
            kind = classify_value(value)
            structured = kind in (ValueKind.STRING_LIKE, ValueKind.STRUCT_LIKE, ValueKind.OPAQUE)
            invalid[key] = {
                "type": "object" if structured else type(value).__name__,
                "class": type_name(value) if structured else None,
            }

    if invalid:
        raise InvalidPropertyTypeError(invalid)


def convert_properties(raw: Mapping[str, Any]) -> dict[str, str]:
    """Convert a raw property bag into validated wire properties.

    Omitted values (None after conversion) are dropped. The result is either
    entirely string-valued or an exception is raised; there is no partial result.
    """
    properties: dict[str, str] = {}

    for name, value in raw.items():
        converted = convert_value(value, name)
        if converted is not None:
            properties[name] = converted

    validate_properties(properties)
    return properties
