"""
Binding checks against locally loaded ValueSets and CodeSystems.

No terminology server is consulted; membership is decided from the value
set's expansion or compose rules as found in the SchemaStore. When a rule
cannot be decided locally (a filter or whole-system include over a code
system that is not loaded) the code is given the benefit of the doubt.
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Set, Tuple

from .definitions import Binding, BindingStrength, CodeSystem, ValueSet, ValueSetInclude
from .outcome import IssueKind, OutcomeBuilder, ValidationSeverity
from .store import SchemaStore, split_canonical

logger = logging.getLogger(__name__)

# (system, code, display, path suffix)
CodedValue = Tuple[Optional[str], str, Optional[str], str]

STRENGTH_SEVERITY = {
    BindingStrength.REQUIRED: ValidationSeverity.ERROR,
    BindingStrength.EXTENSIBLE: ValidationSeverity.ERROR,
    BindingStrength.PREFERRED: ValidationSeverity.INFORMATION,
    BindingStrength.EXAMPLE: ValidationSeverity.INFORMATION,
}


def extract_codes(value: Any, type_code: str) -> Optional[List[CodedValue]]:
    """Coded values carried by ``value``; None when the type is not coded."""
    if type_code in ("code", "string", "uri"):
        return [(None, value, None, "")] if isinstance(value, str) else []
    if not isinstance(value, dict):
        return None
    if type_code in ("Coding", "Quantity"):
        code = value.get("code")
        if not isinstance(code, str):
            return []
        return [(value.get("system"), code, value.get("display"), "")]
    if type_code == "CodeableConcept":
        codes: List[CodedValue] = []
        for index, coding in enumerate(value.get("coding") or []):
            if isinstance(coding, dict) and isinstance(coding.get("code"), str):
                codes.append((coding.get("system"), coding["code"], coding.get("display"), f"coding[{index}]"))
        return codes
    return None


class TerminologyChecker:
    """Value set membership and display checks."""

    def __init__(self, store: SchemaStore):
        self.store = store

    # -- membership -------------------------------------------------------

    def contains(self, value_set: ValueSet, system: Optional[str], code: str) -> Optional[bool]:
        """
        Three-valued membership: True, False, or None when undecidable locally.
        ``system`` None matches a code from any system.
        """
        return self._contains(value_set, system, code, set())

    def _contains(self, value_set: ValueSet, system: Optional[str], code: str, seen: Set[str]) -> Optional[bool]:
        if value_set.url in seen:
            return None
        seen = seen | {value_set.url}

        expansion = list(value_set.iter_expansion())
        if expansion:
            return any(
                entry.code == code and (system is None or entry.system == system)
                for entry in expansion
            )

        if value_set.compose is None or not value_set.compose.include:
            return None

        included: Optional[bool] = False
        for clause in value_set.compose.include:
            matched = self._clause_matches(clause, system, code, seen)
            if matched:
                included = True
                break
            if matched is None:
                included = None

        if included:
            for clause in value_set.compose.exclude:
                if self._clause_matches(clause, system, code, seen):
                    return False
        return included

    def _clause_matches(self, clause: ValueSetInclude, system: Optional[str], code: str, seen: Set[str]) -> Optional[bool]:
        if clause.system and system is not None and clause.system != system:
            return False

        result: Optional[bool] = True
        for imported_url in clause.valueSet:
            url, version = split_canonical(imported_url)
            imported = self.store.find_value_set(url, version)
            member = self._contains(imported, system, code, seen) if imported else None
            if member is False:
                return False
            if member is None:
                result = None

        if not clause.system:
            return result

        if clause.concept:
            return result if any(c.code == code for c in clause.concept) else False

        code_system = self.store.find_code_system(clause.system, clause.version)
        if clause.filter:
            if code_system is None:
                return None
            for flt in clause.filter:
                verdict = self._filter_matches(code_system, flt.property, flt.op, flt.value, code)
                if verdict is False:
                    return False
                if verdict is None:
                    result = None
            return result

        if code_system is None or code_system.content != "complete":
            return None
        return result if code_system.lookup(code) is not None else False

    def _filter_matches(self, code_system: CodeSystem, prop: str, op: str, value: str, code: str) -> Optional[bool]:
        if code_system.lookup(code) is None:
            return False
        if prop not in ("concept", "code"):
            return None
        if op == "is-a":
            return code == value or code in code_system.descendants_of(value)
        if op == "descendent-of":
            return code in code_system.descendants_of(value)
        if op == "is-not-a":
            return not (code == value or code in code_system.descendants_of(value))
        if op == "=":
            return code == value
        if op == "in":
            return code in [v.strip() for v in value.split(",")]
        if op == "regex":
            return re.fullmatch(value, code) is not None
        return None

    # -- binding check ----------------------------------------------------

    def check_binding(
        self,
        binding: Binding,
        type_code: str,
        value: Any,
        path: str,
        builder: OutcomeBuilder,
        source: Optional[str] = None,
    ) -> None:
        codes = extract_codes(value, type_code)
        if codes is None or not binding.valueSet:
            return

        url, version = split_canonical(binding.valueSet)
        value_set = self.store.find_value_set(url, version)
        if value_set is None:
            if binding.strength in (BindingStrength.REQUIRED, BindingStrength.EXTENSIBLE):
                builder.warning(
                    IssueKind.VALUE_SET_NOT_FOUND, path,
                    f"Value set '{url}' is not available; {binding.strength.value} binding not checked",
                    source=source,
                )
            return

        label = value_set.name or url
        if not codes:
            if type_code == "CodeableConcept" and isinstance(value, dict) and value.get("text"):
                self._report(
                    binding, value_set, path, builder, source,
                    f"CodeableConcept has text only; no coding from value set '{label}'",
                    outside_systems=binding.strength != BindingStrength.REQUIRED,
                )
            return

        failures: List[CodedValue] = []
        for coded in codes:
            member = self.contains(value_set, coded[0], coded[1])
            if member or member is None:
                return
            failures.append(coded)

        enumerated = value_set.enumerated_systems()
        outside = bool(enumerated) and all(
            system is not None and system not in enumerated for system, _, _, _ in failures
        )
        system, code, _, suffix = failures[0]
        described = f"'{system}#{code}'" if system else f"'{code}'"
        if len(failures) > 1:
            described = "none of " + ", ".join(
                f"'{s}#{c}'" if s else f"'{c}'" for s, c, _, _ in failures
            )
        self._report(
            binding, value_set, path, builder, source,
            f"Code {described} is not in value set '{label}' ({binding.strength.value} binding)",
            outside_systems=outside,
        )

    def _report(
        self,
        binding: Binding,
        value_set: ValueSet,
        path: str,
        builder: OutcomeBuilder,
        source: Optional[str],
        message: str,
        outside_systems: bool,
    ) -> None:
        severity = STRENGTH_SEVERITY[binding.strength]
        if binding.strength == BindingStrength.EXTENSIBLE and outside_systems:
            severity = ValidationSeverity.WARNING
        builder.issue(severity, IssueKind.BINDING_VIOLATION, path, message, source=source)

    # -- display check ----------------------------------------------------

    def check_display(
        self,
        type_code: str,
        value: Any,
        path: str,
        builder: OutcomeBuilder,
        source: Optional[str] = None,
    ) -> None:
        if type_code not in ("Coding", "CodeableConcept"):
            return
        for system, code, display, suffix in extract_codes(value, type_code) or []:
            if not system or not display:
                continue
            code_system = self.store.find_code_system(system)
            if code_system is None:
                continue
            concept = code_system.lookup(code)
            if concept is None:
                continue
            accepted = [concept.display] if concept.display else []
            accepted.extend(d.value for d in concept.designation)
            if accepted and display.strip().lower() not in {a.strip().lower() for a in accepted}:
                location = f"{path}.{suffix}.display" if suffix else f"{path}.display"
                builder.warning(
                    IssueKind.DISPLAY_MISMATCH, location,
                    f"Display '{display}' does not match '{concept.display}' for code '{system}#{code}'",
                    source=source,
                )
