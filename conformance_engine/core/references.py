"""
Reference parsing and target-type checks.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel

from .outcome import IssueKind, OutcomeBuilder
from .primitives import PATTERNS
from .store import SchemaStore, split_canonical

_TYPE = r"[A-Z][A-Za-z]+"
_ID = r"[A-Za-z0-9\-.]{1,64}"

LOCAL_REF = re.compile(rf"^#(?P<id>{_ID})?$")
RELATIVE_REF = re.compile(rf"^(?P<type>{_TYPE})/(?P<id>{_ID})(?:/_history/(?P<version>{_ID}))?$")
ABSOLUTE_REST_REF = re.compile(
    rf"^(?P<base>https?://\S+?)/(?P<type>{_TYPE})/(?P<id>{_ID})(?:/_history/(?P<version>{_ID}))?$"
)
ABSOLUTE_REF = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://\S+$")
CONDITIONAL_REF = re.compile(rf"^(?P<type>{_TYPE})\?\S+$")

ANY_TARGET = "Resource"


class ReferenceFormatError(ValueError):
    """A literal reference does not follow any accepted syntax."""


class DisallowedTargetError(ValueError):
    """A reference points at a resource type the element does not allow."""


class ReferenceKind(str, Enum):
    LOCAL = "local"
    RELATIVE = "relative"
    ABSOLUTE = "absolute"
    URN = "urn"
    CONDITIONAL = "conditional"


class ParsedReference(BaseModel):
    raw: str
    kind: ReferenceKind
    resource_type: Optional[str] = None
    id: Optional[str] = None
    version: Optional[str] = None
    base_url: Optional[str] = None

    @property
    def is_contained(self) -> bool:
        return self.kind == ReferenceKind.LOCAL

    @property
    def is_absolute(self) -> bool:
        return self.kind == ReferenceKind.ABSOLUTE

    @property
    def is_urn(self) -> bool:
        return self.kind == ReferenceKind.URN

    @property
    def local_key(self) -> Optional[str]:
        """``Type/id`` when both parts are known."""
        if self.resource_type and self.id:
            return f"{self.resource_type}/{self.id}"
        return None


def parse_reference(value: Any) -> ParsedReference:
    """Parse a literal reference string; raises ReferenceFormatError."""
    if not isinstance(value, str) or not value or value != value.strip():
        raise ReferenceFormatError(f"Invalid reference format: {value!r}")

    match = LOCAL_REF.match(value)
    if match:
        return ParsedReference(raw=value, kind=ReferenceKind.LOCAL, id=match.group("id"))

    match = RELATIVE_REF.match(value)
    if match:
        return ParsedReference(
            raw=value, kind=ReferenceKind.RELATIVE,
            resource_type=match.group("type"), id=match.group("id"), version=match.group("version"),
        )

    if PATTERNS["uuid"].match(value) or PATTERNS["oid"].match(value):
        return ParsedReference(raw=value, kind=ReferenceKind.URN, id=value.rsplit(":", 1)[-1])

    match = ABSOLUTE_REST_REF.match(value)
    if match:
        return ParsedReference(
            raw=value, kind=ReferenceKind.ABSOLUTE,
            resource_type=match.group("type"), id=match.group("id"), version=match.group("version"),
            base_url=match.group("base"),
        )

    if ABSOLUTE_REF.match(value):
        return ParsedReference(raw=value, kind=ReferenceKind.ABSOLUTE)

    match = CONDITIONAL_REF.match(value)
    if match:
        return ParsedReference(raw=value, kind=ReferenceKind.CONDITIONAL, resource_type=match.group("type"))

    raise ReferenceFormatError(f"Invalid reference format: '{value}'")


def target_types(target_profiles: Iterable[str], store: Optional[SchemaStore] = None) -> List[str]:
    """Resource type names allowed by a list of targetProfile canonicals."""
    types: List[str] = []
    for profile in target_profiles:
        url, version = split_canonical(profile)
        definition = store.find(url, version) if store is not None else None
        name = definition.type if definition is not None else url.rstrip("/").rsplit("/", 1)[-1]
        if name not in types:
            types.append(name)
    return types


def resolve_reference(value: Any, allowed_types: Optional[Iterable[str]] = None) -> ParsedReference:
    """
    Parse ``value`` and check it against the allowed target types.

    Raises ReferenceFormatError for bad syntax and DisallowedTargetError
    when the referenced type is known and not allowed.
    """
    parsed = parse_reference(value)
    allowed = list(allowed_types or [])
    if parsed.resource_type and allowed and ANY_TARGET not in allowed and parsed.resource_type not in allowed:
        raise DisallowedTargetError(
            f"Reference to '{parsed.resource_type}' is not allowed; expected one of: {', '.join(allowed)}"
        )
    return parsed


class ReferenceValidator:
    """Shape and target checks for Reference datatype values."""

    def __init__(self, store: Optional[SchemaStore] = None):
        self.store = store

    def check(
        self,
        value: Any,
        target_profiles: List[str],
        path: str,
        builder: OutcomeBuilder,
        source: Optional[str] = None,
    ) -> Optional[ParsedReference]:
        if not isinstance(value, dict):
            return None
        literal = value.get("reference")
        if literal is None and not value.get("identifier") and not value.get("display"):
            builder.error(
                IssueKind.INVALID_REFERENCE, path,
                "Reference must have at least one of reference, identifier or display",
                source=source,
            )
            return None

        allowed = target_types(target_profiles, self.store)
        declared_type = value.get("type")
        if declared_type is not None and allowed and ANY_TARGET not in allowed and declared_type not in allowed:
            builder.error(
                IssueKind.INVALID_REFERENCE, f"{path}.type",
                f"Reference type '{declared_type}' is not allowed; expected one of: {', '.join(allowed)}",
                source=source,
            )

        if literal is None:
            return None
        try:
            parsed = resolve_reference(literal, allowed)
        except DisallowedTargetError as e:
            builder.error(IssueKind.INVALID_REFERENCE, f"{path}.reference", str(e), source=source)
            return None
        except ReferenceFormatError as e:
            builder.error(IssueKind.REFERENCE_FORMAT_ERROR, f"{path}.reference", str(e), source=source)
            return None

        if declared_type and parsed.resource_type and declared_type != parsed.resource_type:
            builder.error(
                IssueKind.INVALID_REFERENCE, f"{path}.type",
                f"Reference type '{declared_type}' does not match reference '{literal}'",
                source=source,
            )
        return parsed


def iter_references(node: Any, path: str = "") -> Iterator[Tuple[str, str]]:
    """(path, literal) for every ``reference`` string below ``node``."""
    if isinstance(node, dict):
        for key in sorted(node):
            value = node[key]
            child = f"{path}.{key}" if path else key
            if key == "reference" and isinstance(value, str):
                yield child, value
            else:
                yield from iter_references(value, child)
    elif isinstance(node, list):
        for index, item in enumerate(node):
            yield from iter_references(item, f"{path}[{index}]")
