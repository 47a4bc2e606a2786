"""
Bundle Validator.

A Bundle is validated as a unit: the Bundle resource itself, the rules
that tie its entries together, then every member resource with paths
under ``entry[i].resource``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .element_validator import ValidationOptions
from .metrics import metrics
from .outcome import IssueKind, Outcome, OutcomeBuilder
from .primitives import PATTERNS
from .profile_validator import ProfileValidator
from .references import (
    ABSOLUTE_REF,
    ReferenceFormatError,
    ReferenceKind,
    iter_references,
    parse_reference,
)

logger = logging.getLogger(__name__)

BUNDLE_TYPES = [
    "document",
    "message",
    "transaction",
    "transaction-response",
    "batch",
    "batch-response",
    "history",
    "searchset",
    "collection",
]

REQUEST_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH"]

# Bundle types whose first entry must be a given resource type
FIRST_RESOURCE = {
    "document": "Composition",
    "message": "MessageHeader",
}

ENTRY_KEYS = ("resource", "request", "response", "fullUrl", "search")


def _is_absolute(url: str) -> bool:
    return bool(
        PATTERNS["uuid"].match(url) or PATTERNS["oid"].match(url) or ABSOLUTE_REF.match(url)
    )


def entry_identity(entry: Dict[str, Any], bundle_type: Optional[str]) -> Optional[str]:
    """fullUrl, else ``Type/id``; history bundles add the version id."""
    resource = entry.get("resource")
    resource = resource if isinstance(resource, dict) else {}
    identity = entry.get("fullUrl")
    if not isinstance(identity, str) or not identity:
        resource_type, resource_id = resource.get("resourceType"), resource.get("id")
        if not isinstance(resource_type, str) or not isinstance(resource_id, str):
            return None
        identity = f"{resource_type}/{resource_id}"
    if bundle_type == "history":
        meta = resource.get("meta")
        version = meta.get("versionId") if isinstance(meta, dict) else None
        if version:
            identity = f"{identity}/_history/{version}"
    return identity


class BundleValidator:
    """Validates a Bundle and its members as one unit."""

    def __init__(self, profiles: ProfileValidator):
        self.profiles = profiles

    def validate(self, bundle: Any, options: Optional[ValidationOptions] = None) -> Outcome:
        options = options or self.profiles.resolve_options(None)
        with metrics.time_validation("Bundle"):
            builder = OutcomeBuilder()
            self.validate_into(builder, bundle, options)
            outcome = builder.build(include_warnings=options.include_warnings)

        metrics.record_validation("Bundle", outcome)
        entries = bundle.get("entry") if isinstance(bundle, dict) else None
        logger.info(
            f"Validated Bundle: {len(outcome.errors)} error(s), {len(outcome.warnings)} warning(s)",
            extra={
                "bundle_type": bundle.get("type") if isinstance(bundle, dict) else None,
                "entries": len(entries) if isinstance(entries, list) else 0,
                "valid": outcome.is_valid(),
            },
        )
        return outcome

    def validate_members(
        self,
        instances: Sequence[Any],
        mode: str,
        options: Optional[ValidationOptions] = None,
    ) -> Outcome:
        """Wrap ``instances`` (resources or entry objects) in a Bundle of type ``mode``."""
        entries: List[Any] = []
        for item in instances:
            if isinstance(item, dict) and "resourceType" not in item and any(k in item for k in ENTRY_KEYS):
                entries.append(item)
            else:
                entries.append({"resource": item})
        return self.validate({"resourceType": "Bundle", "type": mode, "entry": entries}, options)

    def validate_into(self, builder: OutcomeBuilder, bundle: Any, options: ValidationOptions) -> None:
        if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
            builder.error(IssueKind.STRUCTURE, "", "Expected a Bundle resource")
            return

        self.profiles.validate_into(builder, bundle, options=options)

        entries = bundle.get("entry")
        entries = entries if isinstance(entries, list) else []
        bundle_type = bundle.get("type")
        self._check_rules(builder, bundle_type, entries)
        self._check_identities(builder, bundle_type, entries)
        self._check_references(builder, entries)

        for index, entry in enumerate(entries):
            if isinstance(entry, dict) and "resource" in entry:
                self.profiles.validate_into(
                    builder, entry["resource"], f"entry[{index}].resource", options=options,
                )

    # -- bundle rules -----------------------------------------------------

    def _check_rules(self, builder: OutcomeBuilder, bundle_type: Any, entries: List[Any]) -> None:
        if bundle_type is not None and bundle_type not in BUNDLE_TYPES:
            builder.error(
                IssueKind.BUNDLE_RULE, "type",
                f"Bundle type '{bundle_type}' is not one of: {', '.join(BUNDLE_TYPES)}",
            )

        expected_first = FIRST_RESOURCE.get(bundle_type) if isinstance(bundle_type, str) else None
        if expected_first:
            first = entries[0] if entries else None
            resource = first.get("resource") if isinstance(first, dict) else None
            if not isinstance(resource, dict) or resource.get("resourceType") != expected_first:
                builder.error(
                    IssueKind.BUNDLE_RULE, "entry[0]" if entries else "entry",
                    f"A {bundle_type} Bundle must start with a {expected_first}",
                )

        for index, entry in enumerate(entries):
            path = f"entry[{index}]"
            if not isinstance(entry, dict):
                continue
            if not any(k in entry for k in ("resource", "request", "response")):
                builder.error(IssueKind.BUNDLE_RULE, path, "Entry must contain a resource, request or response")

            if bundle_type in ("transaction", "batch"):
                self._check_request(builder, entry, path, bundle_type)
            elif bundle_type in ("transaction-response", "batch-response"):
                response = entry.get("response")
                if not isinstance(response, dict) or not response.get("status"):
                    builder.error(
                        IssueKind.BUNDLE_RULE, f"{path}.response.status",
                        f"Entry in a {bundle_type} Bundle must have response.status",
                    )

            full_url = entry.get("fullUrl")
            if isinstance(full_url, str) and not _is_absolute(full_url):
                builder.warning(
                    IssueKind.BUNDLE_RULE, f"{path}.fullUrl",
                    f"fullUrl '{full_url}' should be an absolute URL or a urn:uuid / urn:oid",
                )

    def _check_request(self, builder: OutcomeBuilder, entry: Dict[str, Any], path: str, bundle_type: str) -> None:
        request = entry.get("request")
        if not isinstance(request, dict):
            builder.error(
                IssueKind.BUNDLE_RULE, f"{path}.request",
                f"Entry in a {bundle_type} Bundle must have a request",
            )
            return
        method = request.get("method")
        if method not in REQUEST_METHODS:
            builder.error(
                IssueKind.BUNDLE_RULE, f"{path}.request.method",
                f"Request method '{method}' is not one of: {', '.join(REQUEST_METHODS)}",
            )
        if not request.get("url"):
            builder.error(IssueKind.BUNDLE_RULE, f"{path}.request.url", "Request must have a url")

    # -- identities and references ----------------------------------------

    def _check_identities(self, builder: OutcomeBuilder, bundle_type: Any, entries: List[Any]) -> None:
        first_seen: Dict[str, int] = {}
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                continue
            identity = entry_identity(entry, bundle_type)
            if identity is None:
                continue
            if identity in first_seen:
                builder.error(
                    IssueKind.DUPLICATE_IDENTIFIER, f"entry[{index}]",
                    f"Duplicate resource identity '{identity}' (first used by entry[{first_seen[identity]}])",
                )
            else:
                first_seen[identity] = index

    def _check_references(self, builder: OutcomeBuilder, entries: List[Any]) -> None:
        full_urls = set()
        local_keys = set()
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            full_url = entry.get("fullUrl")
            if isinstance(full_url, str):
                full_urls.add(full_url)
                try:
                    parsed = parse_reference(full_url)
                except ReferenceFormatError:
                    parsed = None
                if parsed is not None and parsed.local_key:
                    local_keys.add(parsed.local_key)
            resource = entry.get("resource")
            if isinstance(resource, dict) and isinstance(resource.get("id"), str):
                local_keys.add(f"{resource.get('resourceType')}/{resource['id']}")

        for index, entry in enumerate(entries):
            resource = entry.get("resource") if isinstance(entry, dict) else None
            if not isinstance(resource, dict):
                continue
            for path, literal in iter_references(resource, f"entry[{index}].resource"):
                try:
                    parsed = parse_reference(literal)
                except ReferenceFormatError:
                    continue
                if parsed.kind == ReferenceKind.RELATIVE and parsed.local_key not in local_keys:
                    builder.information(
                        IssueKind.UNRESOLVED_REFERENCE, path,
                        f"Reference '{literal}' does not resolve to an entry in this Bundle",
                    )
                elif parsed.kind == ReferenceKind.URN and literal not in full_urls:
                    builder.warning(
                        IssueKind.UNRESOLVED_REFERENCE, path,
                        f"Reference '{literal}' does not match the fullUrl of any entry",
                    )
