"""
Element Validator.

Walks instance data alongside the element list of a StructureDefinition.
For every element: cardinality, choice-type resolution, type, fixed and
pattern values, binding, slicing, invariants, then the children. Every
check runs; a failing element never stops the walk. Findings go to the
session's OutcomeBuilder. Only configuration class failures (an evaluator
crash) propagate as exceptions.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Optional, Set

from pydantic import BaseModel, Field

from ..config import Settings, get_settings
from .definitions import (
    ElementDefinition,
    ElementKind,
    StructureDefinition,
    TypeRef,
    choice_key,
    kind_of_type,
)
from .expressions import ExpressionEvaluator
from .matching import deep_equal, matches_pattern
from .outcome import IssueKind, OutcomeBuilder, ValidationSeverity, join_path
from .primitives import CODED_TYPES, check_primitive
from .references import ReferenceValidator
from .slicing import SliceMatcher, slicing_violations
from .store import SchemaStore
from .terminology import TerminologyChecker

logger = logging.getLogger(__name__)

# Present on every element or resource even when a minimal definition omits them
INHERITED_ELEMENTS = {"id", "extension", "modifierExtension"}
IGNORED_KEYS = {"fhir_comments"}

EMPTY_ELEMENT_KEY = "ele-1"
EMPTY_ELEMENT_MESSAGE = "All FHIR elements must have a @value or children"


class ValidationLevel(str, Enum):
    """Cumulative validation depth."""
    STRUCTURAL = "structural"
    CONSTRAINTS = "constraints"
    TERMINOLOGY = "terminology"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def includes(self, other: "ValidationLevel") -> bool:
        return self.rank >= other.rank


_LEVEL_ORDER = [
    ValidationLevel.STRUCTURAL,
    ValidationLevel.CONSTRAINTS,
    ValidationLevel.TERMINOLOGY,
    ValidationLevel.FULL,
]


class ValidationOptions(BaseModel):
    level: ValidationLevel = ValidationLevel.FULL
    include_warnings: bool = True
    validate_must_support: bool = False
    skip_invariants: List[str] = Field(default_factory=lambda: ["ele-1", "txt-1", "txt-2"])

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ValidationOptions":
        settings = settings or get_settings()
        return cls(
            level=ValidationLevel(settings.VALIDATION_LEVEL),
            include_warnings=settings.INCLUDE_WARNINGS,
            validate_must_support=settings.VALIDATE_MUST_SUPPORT,
            skip_invariants=settings.skipped_invariants(),
        )


class ValidationSession:
    """Per-call state shared by the validators of one validation pass."""

    def __init__(
        self,
        store: SchemaStore,
        evaluator: ExpressionEvaluator,
        options: ValidationOptions,
        builder: Optional[OutcomeBuilder] = None,
        root: Any = None,
        source: Optional[str] = None,
    ):
        self.store = store
        self.evaluator = evaluator
        self.options = options
        self.builder = builder if builder is not None else OutcomeBuilder()
        self.root = root
        self.source = source
        self.terminology = TerminologyChecker(store)
        self.references = ReferenceValidator(store)

    def at_level(self, level: ValidationLevel) -> bool:
        return self.options.level.includes(level)


class ElementValidator:
    """Validates instance data against one StructureDefinition's elements."""

    def __init__(self, session: ValidationSession):
        self.session = session
        self.builder = session.builder

    # -- entry points -----------------------------------------------------

    def validate(self, definition: StructureDefinition, data: Any, path: str = "", is_root: bool = True) -> None:
        """Validate an object node against the root element of ``definition``."""
        root = definition.root
        if root is None:
            logger.warning(f"StructureDefinition {definition.url} has no elements")
            return
        if not isinstance(data, dict):
            self._error(IssueKind.TYPE_MISMATCH, path, f"Expected an object for {definition.type}")
            return
        self._run_invariants(root, data, path)
        self._validate_children(definition, root.element_id, data, path, is_root=is_root)

    # -- children ---------------------------------------------------------

    def _validate_children(
        self,
        definition: StructureDefinition,
        parent_id: str,
        data: dict,
        path: str,
        is_root: bool = False,
        check_unknown: bool = True,
    ) -> None:
        known: Set[str] = set()
        for child in definition.children(parent_id):
            if child.kind == ElementKind.CHOICE:
                self._validate_choice(definition, child, data, path, known)
                continue
            name = child.name
            known.add(name)
            self._validate_element(definition, child, data.get(name), join_path(path, name), name in data)
        if check_unknown:
            self._check_unknown_keys(data, known, path, is_root)

    def _validate_choice(
        self,
        definition: StructureDefinition,
        element: ElementDefinition,
        data: dict,
        path: str,
        known: Set[str],
    ) -> None:
        base = element.choice_base
        candidates = [(choice_key(base, t.code), t) for t in element.type]
        known.update(key for key, _ in candidates)
        declared_names = {c.name for c in definition.children(element.element_id.rsplit(".", 1)[0])}

        for key in sorted(data):
            if key in known or key in declared_names or not key.startswith(base):
                continue
            suffix = key[len(base):]
            if suffix[:1].isupper():
                known.add(key)
                allowed = ", ".join(t.code for t in element.type)
                self._error(
                    IssueKind.TYPE_MISMATCH, join_path(path, key),
                    f"Type '{suffix}' is not allowed for {element.name}; allowed: {allowed}",
                )

        present = [(key, type_ref) for key, type_ref in candidates if key in data]
        choice_path = join_path(path, element.name)
        if not present:
            self._missing(element, choice_path, element.name, [key for key, _ in candidates])
            return
        if len(present) > 1:
            self._error(
                IssueKind.CHOICE_CONFLICT, choice_path,
                f"Multiple variants of {element.name} present: {', '.join(key for key, _ in present)}",
            )
        for key, type_ref in present:
            self._validate_element(definition, element, data[key], join_path(path, key), True, type_ref)

    # -- one element ------------------------------------------------------

    def _validate_element(
        self,
        definition: StructureDefinition,
        element: ElementDefinition,
        value: Any,
        path: str,
        present: bool,
        type_ref: Optional[TypeRef] = None,
    ) -> None:
        if not present:
            self._missing(element, path, element.name)
            return
        if value is None:
            self._error(IssueKind.STRUCTURE, path, f"Element '{element.name}' must not be null")
            self._missing(element, path, element.name)
            return

        is_array = isinstance(value, list)
        if is_array and not value:
            self._error(IssueKind.STRUCTURE, path, f"Array '{element.name}' must not be empty")
            self._missing(element, path, element.name)
            return
        if is_array and not element.is_repeating:
            self._error(
                IssueKind.STRUCTURE, path,
                f"Element '{element.name}' has max cardinality {element.max}; found an array",
            )
        if not is_array and element.is_repeating:
            self._error(IssueKind.STRUCTURE, path, f"Element '{element.name}' repeats and must be an array")
        items = value if is_array else [value]

        # 1. cardinality
        self._check_cardinality(element, len(items), path, f"Element '{element.name}'")

        # 3-5. type, fixed/pattern, binding
        if type_ref is None and element.type:
            type_ref = element.type[0]
        item_paths = [f"{path}[{i}]" for i in range(len(items))] if is_array else [path]
        for item, item_path in zip(items, item_paths):
            self._check_value(element, type_ref, item, item_path)

        # 6. slicing
        if element.slicing and self.session.at_level(ValidationLevel.CONSTRAINTS):
            self._check_slicing(definition, element, type_ref, items, item_paths, path)

        # 7-8. invariants, children
        for item, item_path in zip(items, item_paths):
            self._descend(definition, element, type_ref, item, item_path)

    def _missing(self, element: ElementDefinition, path: str, name: str, options: Optional[List[str]] = None) -> None:
        if element.min > 0:
            detail = f" (one of: {', '.join(options)})" if options else ""
            self._error(
                IssueKind.CARDINALITY_VIOLATION, path,
                f"Missing required element '{name}'{detail}: minimum cardinality is {element.min}",
            )
        elif element.mustSupport and self.session.options.validate_must_support:
            self.builder.warning(
                IssueKind.MUST_SUPPORT_MISSING, path,
                f"Must-support element '{name}' is not present",
                source=self.session.source,
            )

    def _check_cardinality(self, element: ElementDefinition, count: int, path: str, label: str) -> None:
        if count < element.min:
            self._error(
                IssueKind.CARDINALITY_VIOLATION, path,
                f"{label} requires at least {element.min} item(s) but found {count}",
            )
        bound = element.max_count
        if bound is not None and count > bound:
            self._error(
                IssueKind.CARDINALITY_VIOLATION, path,
                f"{label} allows at most {element.max} item(s) but found {count}",
                issue_type="value",
            )

    def _check_value(self, element: ElementDefinition, type_ref: Optional[TypeRef], item: Any, path: str) -> bool:
        if self.session.at_level(ValidationLevel.CONSTRAINTS) and (item == {} or item == ""):
            self._error(EMPTY_ELEMENT_KEY, path, EMPTY_ELEMENT_MESSAGE, issue_type="invariant")

        code = type_ref.code if type_ref else None
        kind = kind_of_type(code) if code else ElementKind.BACKBONE
        if kind == ElementKind.PRIMITIVE:
            problem = check_primitive(item, code)
            if problem:
                self._error(IssueKind.TYPE_MISMATCH, path, problem)
                return False
        elif not isinstance(item, dict):
            expected = code or "BackboneElement"
            self._error(IssueKind.TYPE_MISMATCH, path, f"Expected an object of type {expected}")
            return False

        self._check_fixed_pattern(element, item, path)
        if code:
            self._check_terminology(element, code, item, path)
        return True

    def _check_fixed_pattern(self, element: ElementDefinition, item: Any, path: str) -> None:
        if not self.session.at_level(ValidationLevel.CONSTRAINTS):
            return
        fixed = element.fixed
        if fixed is not None and not deep_equal(item, fixed[1]):
            self._error(
                IssueKind.FIXED_VALUE_VIOLATION, path,
                f"Value does not match {fixed[0]}: expected {fixed[1]!r}",
            )
        pattern = element.pattern
        if pattern is not None and not matches_pattern(item, pattern[1]):
            self._error(
                IssueKind.PATTERN_VIOLATION, path,
                f"Value does not match {pattern[0]}: expected {pattern[1]!r}",
            )

    def _check_terminology(self, element: ElementDefinition, code: str, item: Any, path: str) -> None:
        if element.binding and code in CODED_TYPES and self.session.at_level(ValidationLevel.TERMINOLOGY):
            self.session.terminology.check_binding(
                element.binding, code, item, path, self.builder, source=self.session.source,
            )
        if self.session.at_level(ValidationLevel.FULL):
            self.session.terminology.check_display(code, item, path, self.builder, source=self.session.source)

    # -- slicing ----------------------------------------------------------

    def _check_slicing(
        self,
        definition: StructureDefinition,
        element: ElementDefinition,
        type_ref: Optional[TypeRef],
        items: List[Any],
        item_paths: List[str],
        path: str,
    ) -> None:
        slices = definition.slices(element.element_id)
        if not slices:
            return
        matcher = SliceMatcher(definition, self.session.evaluator)
        assignments = matcher.assign(element, slices, items, path)

        for slice_element in slices:
            indices = [i for i, assigned in enumerate(assignments) if assigned is slice_element]
            self._check_cardinality(slice_element, len(indices), path, f"Slice '{slice_element.sliceName}'")
            for index in indices:
                self._check_slice_value(definition, slice_element, type_ref, items[index], item_paths[index])

        for index, message in slicing_violations(element, slices, assignments):
            self._error(IssueKind.SLICING_VIOLATION, item_paths[index], message)

    def _check_slice_value(
        self,
        definition: StructureDefinition,
        slice_element: ElementDefinition,
        type_ref: Optional[TypeRef],
        item: Any,
        path: str,
    ) -> None:
        self._check_fixed_pattern(slice_element, item, path)
        slice_type = slice_element.type[0] if slice_element.type else type_ref
        if slice_type is not None and slice_element.binding:
            self._check_terminology(slice_element, slice_type.code, item, path)
        if not isinstance(item, dict):
            return
        self._run_invariants(slice_element, item, path)
        if definition.children(slice_element.element_id):
            self._validate_children(definition, slice_element.element_id, item, path, check_unknown=False)
        if slice_type is not None:
            for profile in slice_type.profile:
                profiled = self.session.store.find(profile)
                if profiled is not None:
                    ElementValidator(self.session).validate(profiled, item, path, is_root=False)
                    break

    # -- invariants and children ------------------------------------------

    def _descend(
        self,
        definition: StructureDefinition,
        element: ElementDefinition,
        type_ref: Optional[TypeRef],
        item: Any,
        path: str,
    ) -> None:
        if not isinstance(item, dict):
            return
        self._run_invariants(element, item, path)

        code = type_ref.code if type_ref else None
        kind = kind_of_type(code) if code else ElementKind.BACKBONE
        if definition.children(element.element_id):
            self._validate_children(definition, element.element_id, item, path)
        elif element.contentReference:
            target = definition.content_reference_target(element)
            if target is not None:
                self._validate_children(definition, target.element_id, item, path)
        elif kind == ElementKind.COMPLEX:
            type_definition = self._type_definition(type_ref, item, path)
            if type_definition is not None:
                self.validate(type_definition, item, path, is_root=False)

        if code == "Reference":
            self.session.references.check(
                item, type_ref.targetProfile, path, self.builder, source=self.session.source,
            )

    def _type_definition(self, type_ref: TypeRef, item: dict, path: str) -> Optional[StructureDefinition]:
        store = self.session.store
        if type_ref.code == "Extension" and not type_ref.profile and isinstance(item.get("url"), str):
            definition = store.find(item["url"])
            if definition is not None:
                return definition
            self.builder.warning(
                IssueKind.PROFILE_NOT_FOUND, join_path(path, "url"),
                f"Extension definition not found for '{item['url']}'",
                source=self.session.source,
            )
        for profile in type_ref.profile:
            definition = store.find(profile)
            if definition is not None:
                return definition
            self.builder.warning(
                IssueKind.PROFILE_NOT_FOUND, path,
                f"Profile '{profile}' for type {type_ref.code} not found; validating against the base type",
                source=self.session.source,
            )
        definition = store.find_type(type_ref.code)
        if definition is None:
            self.builder.warning(
                IssueKind.UNKNOWN_TYPE, path,
                f"No definition for type '{type_ref.code}'; content not checked",
                source=self.session.source,
            )
        return definition

    def _run_invariants(self, element: ElementDefinition, item: dict, path: str) -> None:
        if not self.session.at_level(ValidationLevel.CONSTRAINTS):
            return
        skipped = self.session.options.skip_invariants
        for constraint in element.constraint:
            if not constraint.expression or constraint.key in skipped:
                continue
            if self.session.evaluator.is_satisfied(constraint.expression, item, self.session.root, path):
                continue
            severity = ValidationSeverity.WARNING if constraint.severity == "warning" else ValidationSeverity.ERROR
            message = f"Constraint {constraint.key} failed"
            if constraint.human:
                message = f"{message}: {constraint.human}"
            self.builder.issue(
                severity, constraint.key, path, message,
                issue_type="invariant",
                source=self.session.source,
            )

    def _check_unknown_keys(self, data: dict, known: Set[str], path: str, is_root: bool) -> None:
        for key in sorted(data):
            if key in known or key in IGNORED_KEYS:
                continue
            if is_root and key == "resourceType":
                continue
            if key.startswith("_") and key[1:] in known:
                companion = data[key]
                items = companion if isinstance(companion, list) else [companion]
                if not all(i is None or isinstance(i, dict) for i in items):
                    self._error(IssueKind.STRUCTURE, join_path(path, key), f"Primitive extension '{key}' must be an object")
                continue
            if key in INHERITED_ELEMENTS:
                continue
            self._error(IssueKind.UNKNOWN_ELEMENT, join_path(path, key), f"Unknown element '{key}'")

    def _error(self, code: str, path: str, message: str, **kwargs: Any) -> None:
        self.builder.error(code, path, message, source=self.session.source, **kwargs)
