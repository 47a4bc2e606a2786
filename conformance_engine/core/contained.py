"""
Contained resource checks.

Each contained item is validated on its own, and every ``#id`` reference
in the container must point at exactly one contained item.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .element_validator import ValidationOptions
from .outcome import IssueKind, OutcomeBuilder, join_path
from .references import ReferenceKind, iter_references, parse_reference

if TYPE_CHECKING:
    from .profile_validator import ProfileValidator

logger = logging.getLogger(__name__)


class UnresolvedReferenceError(ValueError):
    """A local reference matches no contained resource."""


class DuplicateLocalIdError(ValueError):
    """A local reference matches more than one contained resource."""


def _local_ids(instance: Dict[str, Any]) -> Dict[str, List[int]]:
    ids: Dict[str, List[int]] = {}
    contained = instance.get("contained")
    for index, item in enumerate(contained if isinstance(contained, list) else []):
        if isinstance(item, dict) and isinstance(item.get("id"), str):
            ids.setdefault(item["id"], []).append(index)
    return ids


def resolve_local(instance: Dict[str, Any], reference: str) -> Dict[str, Any]:
    """
    Return the contained resource that ``reference`` (``#id``) points at.

    ``#`` alone is the container itself.
    """
    parsed = parse_reference(reference)
    if parsed.kind != ReferenceKind.LOCAL:
        raise UnresolvedReferenceError(f"'{reference}' is not a local reference")
    if parsed.id is None:
        return instance
    matches = _local_ids(instance).get(parsed.id, [])
    if not matches:
        raise UnresolvedReferenceError(f"No contained resource with id '{parsed.id}'")
    if len(matches) > 1:
        raise DuplicateLocalIdError(f"{len(matches)} contained resources share id '{parsed.id}'")
    return instance["contained"][matches[0]]


class ContainedValidator:
    def __init__(self, profiles: "ProfileValidator"):
        self.profiles = profiles

    def validate_into(
        self,
        builder: OutcomeBuilder,
        instance: Dict[str, Any],
        prefix: str = "",
        options: Optional[ValidationOptions] = None,
    ) -> None:
        contained = instance.get("contained")
        if not isinstance(contained, list):
            return

        first_seen: Dict[str, int] = {}
        for index, item in enumerate(contained):
            path = join_path(prefix, f"contained[{index}]")
            if not isinstance(item, dict) or not isinstance(item.get("resourceType"), str):
                builder.error(IssueKind.STRUCTURE, path, "Contained resource must be an object with a resourceType")
                continue
            local_id = item.get("id")
            if not isinstance(local_id, str) or not local_id:
                builder.error(
                    IssueKind.STRUCTURE, path, "Contained resource must have an id", issue_type="required",
                )
            elif local_id in first_seen:
                builder.error(
                    IssueKind.DUPLICATE_LOCAL_ID, join_path(path, "id"),
                    f"Duplicate local id '{local_id}' (first used by contained[{first_seen[local_id]}])",
                )
            else:
                first_seen[local_id] = index
            if "contained" in item:
                builder.error(
                    IssueKind.STRUCTURE, join_path(path, "contained"),
                    "Contained resources must not contain other resources",
                )
            self.profiles.validate_into(builder, item, path, options=options, check_contained=False)

        self._check_local_references(builder, instance, prefix)

    def _check_local_references(self, builder: OutcomeBuilder, instance: Dict[str, Any], prefix: str) -> None:
        ids = _local_ids(instance)
        referenced = set()
        for path, literal in iter_references(instance):
            if not literal.startswith("#"):
                continue
            local_id = literal[1:]
            if not local_id:
                continue
            matches = ids.get(local_id, [])
            location = join_path(prefix, path)
            if not matches:
                builder.error(
                    IssueKind.UNRESOLVED_REFERENCE, location,
                    f"Local reference '{literal}' does not resolve to a contained resource",
                )
            elif len(matches) > 1:
                builder.error(
                    IssueKind.DUPLICATE_LOCAL_ID, location,
                    f"Local reference '{literal}' matches {len(matches)} contained resources",
                )
            referenced.add(local_id)

        for local_id, indices in ids.items():
            if local_id not in referenced:
                builder.warning(
                    IssueKind.STRUCTURE, join_path(prefix, f"contained[{indices[0]}]"),
                    f"Contained resource '{local_id}' is not referenced from the container",
                )
