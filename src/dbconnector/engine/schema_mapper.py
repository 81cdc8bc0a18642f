# src/dbconnector/engine/schema_mapper.py
"""Schema mapper: row values to typed structured data.

Each configured structured field reads the row value under its label and
coerces it to the configured FieldKind. Array columns (the driver returns a
list or tuple) expand to one FieldValue per non-null element, in source
order. Null values and absent columns produce no entry.

Coercion is strict where a silent conversion would lose meaning: booleans
are not integers here, and 2.5 is not an integer.
"""

import math
import re
from collections.abc import Callable, Mapping
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from dbconnector.contracts import FieldCoercionError, FieldKind, FieldValue, Row, bytes_marker

_INTEGER_TEXT = re.compile(r"^[+-]?\d+$")
_BYTES_TYPES = (bytes, bytearray, memoryview)

StructuredData = dict[str, tuple[FieldValue, ...]]


class _Reject(Exception):
    """Internal signal: the value cannot be coerced."""


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise _Reject
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise _Reject
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise _Reject
        return int(value)
    if isinstance(value, str) and _INTEGER_TEXT.match(value.strip()):
        return int(value.strip())
    raise _Reject


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise _Reject


def _to_double(value: Any) -> float:
    if isinstance(value, bool):
        raise _Reject
    if isinstance(value, (int, float, Decimal)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            raise _Reject from None
    else:
        raise _Reject
    if not math.isfinite(result):
        raise _Reject
    return result


def _to_temporal(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    raise _Reject


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, _BYTES_TYPES):
        return bytes_marker(value)
    return value_to_text(value) or ""


def _to_blob(value: Any) -> bytes:
    if isinstance(value, _BYTES_TYPES):
        return bytes(value)
    raise _Reject


_COERCERS: dict[FieldKind, Callable[[Any], str | int | float | bool | bytes]] = {
    FieldKind.TEXT: _to_text,
    FieldKind.INTEGER: _to_integer,
    FieldKind.ENUM: _to_integer,
    FieldKind.BOOLEAN: _to_boolean,
    FieldKind.DOUBLE: _to_double,
    FieldKind.DATE: _to_temporal,
    FieldKind.TIMESTAMP: _to_temporal,
    FieldKind.BLOB: _to_blob,
}


def coerce_value(field: str, kind: FieldKind, value: Any) -> FieldValue:
    """Coerce one non-null scalar to a FieldValue.

    Raises:
        FieldCoercionError: If value cannot represent kind
    """
    try:
        return FieldValue(kind=kind, value=_COERCERS[kind](value))
    except _Reject:
        raise FieldCoercionError(field, kind.value, value) from None


def map_row(row: Row, field_kinds: Mapping[str, FieldKind]) -> StructuredData:
    """Map a row into structured data for the configured fields.

    Args:
        row: Result row keyed by column label
        field_kinds: Configured structured fields (name -> kind)

    Returns:
        Field name -> values, in source order. Fields whose value is null,
        absent or an empty array are omitted.

    Raises:
        FieldCoercionError: If any configured value cannot be coerced
    """
    result: StructuredData = {}
    for name, kind in field_kinds.items():
        raw = row.get(name)
        if raw is None:
            continue
        elements = raw if isinstance(raw, (list, tuple)) else (raw,)
        values = tuple(coerce_value(name, kind, element) for element in elements if element is not None)
        if values:
            result[name] = values
    return result


def value_to_text(value: Any) -> str | None:
    """Render any column value as metadata text (title, URL, language...).

    Byte sequences become the bytes marker; this never raises for an
    unsupported type.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, _BYTES_TYPES):
        return bytes_marker(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)
