"""Primitive datatype checks (JSON kind plus lexical format)."""

from __future__ import annotations

import re
from typing import Any, Optional

_YEAR = r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
_MONTH = r"(0[1-9]|1[0-2])"
_DAY = r"(0[1-9]|[1-2][0-9]|3[0-1])"
_TIME = r"([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?"
_ZONE = r"(Z|(\+|-)((0[0-9]|1[0-3]):[0-5][0-9]|14:00))"

PATTERNS = {
    "id": re.compile(r"^[A-Za-z0-9\-.]{1,64}$"),
    "instant": re.compile(rf"^{_YEAR}-{_MONTH}-{_DAY}T{_TIME}{_ZONE}$"),
    "date": re.compile(rf"^{_YEAR}(-{_MONTH}(-{_DAY})?)?$"),
    "dateTime": re.compile(rf"^{_YEAR}(-{_MONTH}(-{_DAY}(T{_TIME}{_ZONE})?)?)?$"),
    "time": re.compile(rf"^{_TIME}$"),
    "code": re.compile(r"^[^\s]+(\s[^\s]+)*$"),
    "oid": re.compile(r"^urn:oid:[0-2](\.(0|[1-9][0-9]*))+$"),
    "uuid": re.compile(r"^urn:uuid:[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"),
    "uri": re.compile(r"^\S*$"),
    "url": re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:[^\s]+$"),
    "canonical": re.compile(r"^\S+$"),
    "base64Binary": re.compile(r"^(?:[A-Za-z0-9+/]{4})*(?:[A-Za-z0-9+/]{2}==|[A-Za-z0-9+/]{3}=)?$"),
    "xhtml": re.compile(r"^<div[^>]*>[\s\S]*</div>$"),
}

STRING_TYPES = {
    "string", "markdown", "id", "code", "uri", "url", "canonical", "oid", "uuid",
    "date", "dateTime", "time", "instant", "base64Binary", "xhtml",
}
INTEGER_TYPES = {"integer", "positiveInt", "unsignedInt", "integer64"}
PRIMITIVE_TYPES = STRING_TYPES | INTEGER_TYPES | {"boolean", "decimal"}

# System types used on id/url elements in snapshots
_SYSTEM_TYPE_PREFIX = "http://hl7.org/fhirpath/System."
_SYSTEM_TYPES = {
    "String": "string",
    "Boolean": "boolean",
    "Integer": "integer",
    "Decimal": "decimal",
    "Date": "date",
    "DateTime": "dateTime",
    "Time": "time",
}

INT32_MIN = -2**31
INT32_MAX = 2**31 - 1

# Coded datatypes a binding can apply to
CODED_TYPES = {"code", "Coding", "CodeableConcept", "string", "uri", "Quantity"}


def normalize_type(code: str) -> str:
    if code.startswith(_SYSTEM_TYPE_PREFIX):
        return _SYSTEM_TYPES.get(code[len(_SYSTEM_TYPE_PREFIX):], "string")
    return code


def is_primitive_type(code: str) -> bool:
    return normalize_type(code) in PRIMITIVE_TYPES or code.startswith(_SYSTEM_TYPE_PREFIX)


def check_primitive(value: Any, code: str) -> Optional[str]:
    """Return a problem description, or None when ``value`` is a valid ``code``."""
    code = normalize_type(code)

    if code == "boolean":
        if not isinstance(value, bool):
            return f"Expected boolean, got {_json_kind(value)}"
        return None

    if code in INTEGER_TYPES:
        if isinstance(value, bool) or not isinstance(value, int):
            if code == "integer64" and isinstance(value, str) and re.match(r"^-?[0-9]+$", value):
                return None
            return f"Expected {code}, got {_json_kind(value)}"
        if code == "integer" and not INT32_MIN <= value <= INT32_MAX:
            return f"Integer out of range: {value}"
        if code == "positiveInt" and (value <= 0 or value > INT32_MAX):
            return f"Expected positive integer (> 0), got {value}"
        if code == "unsignedInt" and (value < 0 or value > INT32_MAX):
            return f"Expected unsigned integer (>= 0), got {value}"
        return None

    if code == "decimal":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"Expected decimal, got {_json_kind(value)}"
        return None

    if code in STRING_TYPES:
        if not isinstance(value, str):
            return f"Expected {code}, got {_json_kind(value)}"
        pattern = PATTERNS.get(code)
        if pattern is not None and not pattern.match(value):
            return f"Invalid {code} format: '{_clip(value)}'"
        if code == "string" and value != value.strip() and not value.strip():
            return "String must not be whitespace only"
        return None

    return None


def json_type_matches(value: Any, code: str) -> bool:
    """Loose type test used by ``type`` slice discriminators."""
    code = normalize_type(code)
    if is_primitive_type(code):
        return check_primitive(value, code) is None
    if isinstance(value, dict):
        declared = value.get("resourceType")
        return declared is None or declared == code
    return False


def _json_kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _clip(value: str, limit: int = 60) -> str:
    return value if len(value) <= limit else value[:limit] + "..."
