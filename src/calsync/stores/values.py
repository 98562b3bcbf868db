"""Typed value codec for the REST document API.

Every field value on the wire is a single-key object naming its type, for
example ``{"integerValue": "42"}`` or ``{"mapValue": {"fields": {...}}}``.
Integers travel as decimal strings; ``bool`` is checked before ``int``
because it is an ``int`` subclass in Python.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

_FRACTION_RE = re.compile(r"\.(\d+)")


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return {
            "timestampValue": moment.astimezone(UTC)
            .isoformat(timespec="microseconds")
            .replace("+00:00", "Z")
        }
    if isinstance(value, list | tuple):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Unsupported document value type: {type(value).__name__}")


def encode_fields(document: dict[str, Any]) -> dict[str, Any]:
    return {str(key): encode_value(item) for key, item in document.items()}


def parse_timestamp(raw: str) -> datetime:
    """Parse an RFC 3339 timestamp; nanosecond fractions are cut to microseconds."""
    normalized = raw.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    match = _FRACTION_RE.search(normalized)
    if match is not None:
        normalized = (
            normalized[: match.start()] + "." + match.group(1)[:6] + normalized[match.end() :]
        )
    return datetime.fromisoformat(normalized)


def decode_value(value: dict[str, Any]) -> Any:
    """Decode one typed value; unknown tags decode to ``None``."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return parse_timestamp(str(value["timestampValue"]))
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values") or []]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields") or {})
    return None


def decode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: decode_value(item) for key, item in fields.items()}
