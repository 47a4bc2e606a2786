"""
Slice matching.

Each value of a sliced element is assigned to the first slice, in
declaration order, whose discriminators all succeed. Discriminators are
tried in their declared order as well, so the assignment never depends on
dictionary ordering.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple

from .definitions import (
    DiscriminatorType,
    Discriminator,
    ElementDefinition,
    SlicingRules,
    StructureDefinition,
    choice_key,
)
from .expressions import ExpressionEvaluator
from .matching import deep_equal, matches_pattern
from .primitives import json_type_matches

_SIMPLE_PATH = re.compile(r"^[A-Za-z][A-Za-z0-9]*(\.[A-Za-z][A-Za-z0-9]*)*$")

# (type code implied by a choice key or None, node)
TypedNode = Tuple[Optional[str], Any]


def navigate(value: Any, path: str) -> List[TypedNode]:
    """Walk a dotted path, flattening arrays and resolving choice keys."""
    current: List[TypedNode] = [(None, value)]
    for part in path.split("."):
        selected: List[TypedNode] = []
        for _, node in current:
            if not isinstance(node, dict):
                continue
            if part in node:
                found = [(None, node[part])]
            else:
                found = [
                    (key[len(part):], node[key]) for key in sorted(node)
                    if key.startswith(part) and key[len(part):][:1].isupper()
                ]
            for type_hint, item in found:
                items = item if isinstance(item, list) else [item]
                selected.extend((type_hint, i) for i in items)
        current = selected
    return current


class SliceMatcher:
    """Assigns values of one sliced element to its declared slices."""

    def __init__(self, definition: StructureDefinition, evaluator: ExpressionEvaluator):
        self.definition = definition
        self.evaluator = evaluator

    def assign(
        self,
        sliced: ElementDefinition,
        slices: List[ElementDefinition],
        values: List[Any],
        path: str,
    ) -> List[Optional[ElementDefinition]]:
        discriminators = sliced.slicing.discriminator if sliced.slicing else []
        assignments: List[Optional[ElementDefinition]] = []
        for index, value in enumerate(values):
            match = None
            if discriminators:
                for candidate in slices:
                    if all(self._matches(d, candidate, value, f"{path}[{index}]") for d in discriminators):
                        match = candidate
                        break
            assignments.append(match)
        return assignments

    # -- discriminators -----------------------------------------------------

    def _select(self, value: Any, path: str, location: str) -> List[TypedNode]:
        path = path.replace(".resolve()", "").replace("resolve()", "").strip(".")
        if path in ("", "$this"):
            return [(None, value)]
        if _SIMPLE_PATH.match(path):
            return navigate(value, path)
        return [(None, node) for node in self.evaluator.select(path, value, location)]

    def _slice_child(self, slice_element: ElementDefinition, path: str) -> Optional[ElementDefinition]:
        path = path.replace(".resolve()", "").replace("resolve()", "").strip(".")
        if path in ("", "$this"):
            return slice_element
        current = slice_element.element_id
        element = None
        for part in path.split("."):
            element = self.definition.element(f"{current}.{part}") or self.definition.element(f"{current}.{part}[x]")
            if element is None:
                return None
            current = element.element_id
        return element

    def _matches(self, discriminator: Discriminator, slice_element: ElementDefinition, value: Any, location: str) -> bool:
        kind = discriminator.type
        nodes = self._select(value, discriminator.path, location)
        child = self._slice_child(slice_element, discriminator.path)

        if kind in (DiscriminatorType.VALUE, DiscriminatorType.PATTERN):
            expected = self._expected_value(slice_element, child, discriminator.path)
            if expected is None:
                return False
            exact, target = expected
            compare = deep_equal if exact else matches_pattern
            return any(compare(node, target) for _, node in nodes)

        if kind == DiscriminatorType.EXISTS:
            must_exist = True
            if child is not None and child.max == "0":
                must_exist = False
            return bool(nodes) == must_exist

        if kind == DiscriminatorType.TYPE:
            allowed = [t.code for t in (child or slice_element).type]
            if not allowed:
                return False
            for type_hint, node in nodes:
                if type_hint is not None:
                    if any(choice_key("", code) == type_hint for code in allowed):
                        return True
                elif any(json_type_matches(node, code) for code in allowed):
                    return True
            return False

        if kind == DiscriminatorType.PROFILE:
            profiles = [p for t in (child or slice_element).type for p in (t.profile + t.targetProfile)]
            for _, node in nodes:
                if not isinstance(node, dict):
                    continue
                declared = (node.get("meta") or {}).get("profile") or []
                if any(p in declared for p in profiles):
                    return True
            return False

        return False

    def _expected_value(
        self,
        slice_element: ElementDefinition,
        child: Optional[ElementDefinition],
        path: str,
    ) -> Optional[Tuple[bool, Any]]:
        if child is not None:
            if child.fixed is not None:
                return True, child.fixed[1]
            if child.pattern is not None:
                return False, child.pattern[1]
        # Extension slices name their url through the type profile
        if path == "url" and slice_element.type and slice_element.type[0].profile:
            return True, slice_element.type[0].profile[0]
        return None


def slicing_violations(
    sliced: ElementDefinition,
    slices: List[ElementDefinition],
    assignments: List[Optional[ElementDefinition]],
) -> List[Tuple[int, str]]:
    """(value index, message) for values that break the slicing rules."""
    rules = sliced.slicing.rules if sliced.slicing else SlicingRules.OPEN
    violations: List[Tuple[int, str]] = []

    matched_indices = [i for i, a in enumerate(assignments) if a is not None]
    last_matched = matched_indices[-1] if matched_indices else -1
    for index, assigned in enumerate(assignments):
        if assigned is not None:
            continue
        if rules == SlicingRules.CLOSED:
            violations.append((index, f"Value at index {index} does not match any defined slice (slicing is closed)"))
        elif rules == SlicingRules.OPEN_AT_END and index < last_matched:
            violations.append((index, f"Value at index {index} does not match any slice and appears before sliced values (slicing is openAtEnd)"))

    if sliced.slicing and sliced.slicing.ordered:
        order = {s.element_id: position for position, s in enumerate(slices)}
        highest = -1
        for index in matched_indices:
            position = order[assignments[index].element_id]
            if position < highest:
                violations.append((index, f"Value at index {index} for slice '{assignments[index].sliceName}' is out of order (slicing is ordered)"))
            highest = max(highest, position)

    return sorted(violations, key=lambda v: v[0])
