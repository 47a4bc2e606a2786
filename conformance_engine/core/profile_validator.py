"""
Profile Validator.

Validates one instance against the base definition of its resource type
and against every applicable profile (explicit urls first, then the
instance's own ``meta.profile``). All findings land in one Outcome with
paths relative to the instance root.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from .contained import ContainedValidator
from .definitions import StructureDefinition
from .element_validator import ElementValidator, ValidationOptions, ValidationSession
from .errors import ConformanceErrorCode, create_not_found_error
from .expressions import ExpressionEvaluator
from .metrics import metrics
from .outcome import IssueKind, Outcome, OutcomeBuilder, join_path
from .store import SchemaStore, split_canonical

logger = logging.getLogger(__name__)


class ProfileValidator:
    """Entry point for validating a single resource instance."""

    def __init__(
        self,
        store: SchemaStore,
        evaluator: Optional[ExpressionEvaluator] = None,
        options: Optional[ValidationOptions] = None,
    ):
        self.store = store
        self.evaluator = evaluator or ExpressionEvaluator()
        self.options = options

    def resolve_options(self, options: Optional[ValidationOptions]) -> ValidationOptions:
        return options or self.options or ValidationOptions.from_settings()

    def validate(
        self,
        instance: Any,
        profile_urls: Optional[List[str]] = None,
        options: Optional[ValidationOptions] = None,
    ) -> Outcome:
        """
        Validate ``instance`` and return the merged Outcome.

        Raises SchemaNotFoundError when the instance's resource type has no
        base definition in the store.
        """
        options = self.resolve_options(options)
        resource_type = instance.get("resourceType") if isinstance(instance, dict) else None
        label = resource_type if isinstance(resource_type, str) else "unknown"

        with metrics.time_validation(label):
            builder = OutcomeBuilder()
            self.validate_into(builder, instance, profile_urls=profile_urls, options=options)
            outcome = builder.build(include_warnings=options.include_warnings)

        metrics.record_validation(label, outcome)
        logger.info(
            f"Validated {label}: {len(outcome.errors)} error(s), {len(outcome.warnings)} warning(s)",
            extra={"resource_type": label, "valid": outcome.is_valid(), "issues": len(outcome.issues)},
        )
        return outcome

    def validate_into(
        self,
        builder: OutcomeBuilder,
        instance: Any,
        prefix: str = "",
        profile_urls: Optional[List[str]] = None,
        options: Optional[ValidationOptions] = None,
        check_contained: bool = True,
    ) -> None:
        """Validate ``instance`` and add its issues to ``builder`` under ``prefix``."""
        options = self.resolve_options(options)
        if not isinstance(instance, dict):
            builder.error(IssueKind.STRUCTURE, prefix, "Resource must be a JSON object")
            return
        resource_type = instance.get("resourceType")
        if not isinstance(resource_type, str) or not resource_type:
            builder.error(
                IssueKind.STRUCTURE, prefix, "Resource has no resourceType", issue_type="required",
            )
            return

        base = self.store.find_type(resource_type)
        if base is None:
            raise create_not_found_error(
                ConformanceErrorCode.VALID_UNKNOWN_RESOURCE_TYPE,
                f"Unknown resource type '{resource_type}': no base StructureDefinition is loaded",
                url=resource_type,
            )

        for definition in self._profiles(builder, instance, base, prefix, profile_urls):
            self._apply(builder, definition, instance, prefix, options)

        if check_contained and "contained" in instance:
            ContainedValidator(self).validate_into(builder, instance, prefix, options)

    def _profiles(
        self,
        builder: OutcomeBuilder,
        instance: dict,
        base: StructureDefinition,
        prefix: str,
        profile_urls: Optional[List[str]],
    ) -> List[StructureDefinition]:
        """Base definition followed by every applicable profile, in order."""
        requested: List[Tuple[str, str, bool]] = []
        for url in profile_urls or []:
            requested.append((url, prefix, True))
        meta = instance.get("meta")
        declared = meta.get("profile") if isinstance(meta, dict) else None
        if isinstance(declared, list):
            for index, url in enumerate(declared):
                if isinstance(url, str):
                    requested.append((url, join_path(prefix, f"meta.profile[{index}]"), False))

        seen = set()
        resource_type = base.type
        definitions: List[StructureDefinition] = [base]
        for canonical, path, explicit in requested:
            if canonical in seen:
                continue
            seen.add(canonical)
            url, version = split_canonical(canonical)
            definition = self.store.find(url, version)
            if definition is None:
                message = f"Profile '{canonical}' is not loaded"
                if explicit:
                    builder.error(IssueKind.PROFILE_NOT_FOUND, path, message)
                else:
                    builder.warning(IssueKind.PROFILE_NOT_FOUND, path, message)
                continue
            if definition.type != resource_type:
                builder.error(
                    IssueKind.PROFILE_MISMATCH, path,
                    f"Profile '{canonical}' constrains {definition.type}, not {resource_type}",
                    source=definition.url,
                )
                continue
            if all(d.url != definition.url for d in definitions):
                definitions.append(definition)
        return definitions

    def _apply(
        self,
        builder: OutcomeBuilder,
        definition: StructureDefinition,
        instance: dict,
        prefix: str,
        options: ValidationOptions,
    ) -> None:
        local = OutcomeBuilder()
        session = ValidationSession(
            self.store, self.evaluator, options, builder=local, root=instance, source=definition.url,
        )
        ElementValidator(session).validate(definition, instance)
        logger.debug(f"Applied {definition.url}: {len(local)} issue(s)")
        builder.extend(local.issues, prefix=prefix)
