"""
Schema artifact models.

StructureDefinition, ValueSet and CodeSystem are kept as thin pydantic
wrappers over the JSON documents found in conformance packages. Only the
attributes the validator reads are typed; every other key is preserved.
"""

from __future__ import annotations

from enum import Enum
from functools import cached_property
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .primitives import is_primitive_type


class BindingStrength(str, Enum):
    """FHIR value set binding strengths."""
    REQUIRED = "required"
    EXTENSIBLE = "extensible"
    PREFERRED = "preferred"
    EXAMPLE = "example"


class SlicingRules(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    OPEN_AT_END = "openAtEnd"


class DiscriminatorType(str, Enum):
    VALUE = "value"
    PATTERN = "pattern"
    EXISTS = "exists"
    TYPE = "type"
    PROFILE = "profile"


class ElementKind(str, Enum):
    """How the element validator treats an element's values."""
    PRIMITIVE = "primitive"
    COMPLEX = "complex"
    BACKBONE = "backbone"
    RESOURCE = "resource"
    CHOICE = "choice"


BACKBONE_TYPES = {"BackboneElement", "Element"}
RESOURCE_TYPES = {"Resource", "DomainResource"}

UNBOUNDED = "*"


class _Artifact(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TypeRef(_Artifact):
    code: str
    profile: List[str] = Field(default_factory=list)
    targetProfile: List[str] = Field(default_factory=list)


class Discriminator(_Artifact):
    type: DiscriminatorType
    path: str


class Slicing(_Artifact):
    discriminator: List[Discriminator] = Field(default_factory=list)
    rules: SlicingRules = SlicingRules.OPEN
    ordered: bool = False
    description: Optional[str] = None


class Binding(_Artifact):
    strength: BindingStrength
    valueSet: Optional[str] = None
    description: Optional[str] = None


class Constraint(_Artifact):
    key: str
    severity: str = "error"
    human: str = ""
    expression: Optional[str] = None


class ElementDefinition(_Artifact):
    id: Optional[str] = None
    path: str
    sliceName: Optional[str] = None
    min: int = 0
    max: str = UNBOUNDED
    type: List[TypeRef] = Field(default_factory=list)
    slicing: Optional[Slicing] = None
    binding: Optional[Binding] = None
    constraint: List[Constraint] = Field(default_factory=list)
    mustSupport: bool = False
    contentReference: Optional[str] = None

    @field_validator("max")
    def validate_max(cls, v):
        """Upper bound is '*' or a non-negative integer."""
        if v != UNBOUNDED and not v.isdigit():
            raise ValueError(f"max must be '*' or a non-negative integer, not '{v}'")
        return v

    @property
    def element_id(self) -> str:
        if self.id:
            return self.id
        if self.sliceName:
            return f"{self.path}:{self.sliceName}"
        return self.path

    @property
    def name(self) -> str:
        """Last path segment, e.g. ``value[x]`` for ``Observation.value[x]``."""
        return self.path.rsplit(".", 1)[-1]

    @property
    def is_choice(self) -> bool:
        return self.name.endswith("[x]") or len(self.type) > 1

    @property
    def choice_base(self) -> str:
        return self.name[:-3] if self.name.endswith("[x]") else self.name

    @property
    def max_count(self) -> Optional[int]:
        """Upper bound as an int, or None when unbounded."""
        if self.max == UNBOUNDED:
            return None
        return int(self.max)

    @property
    def is_repeating(self) -> bool:
        bound = self.max_count
        return bound is None or bound > 1

    @property
    def kind(self) -> ElementKind:
        if self.is_choice:
            return ElementKind.CHOICE
        if not self.type:
            return ElementKind.BACKBONE
        return kind_of_type(self.type[0].code)

    def _prefixed(self, prefix: str) -> Optional[Tuple[str, Any]]:
        for key, value in (self.model_extra or {}).items():
            if key.startswith(prefix) and len(key) > len(prefix) and key[len(prefix)].isupper():
                return key, value
        return None

    @property
    def fixed(self) -> Optional[Tuple[str, Any]]:
        """The ``fixed[x]`` key and value, if declared."""
        return self._prefixed("fixed")

    @property
    def pattern(self) -> Optional[Tuple[str, Any]]:
        """The ``pattern[x]`` key and value, if declared."""
        return self._prefixed("pattern")


def kind_of_type(code: str) -> ElementKind:
    if is_primitive_type(code):
        return ElementKind.PRIMITIVE
    if code in BACKBONE_TYPES:
        return ElementKind.BACKBONE
    if code in RESOURCE_TYPES:
        return ElementKind.RESOURCE
    return ElementKind.COMPLEX


def choice_key(base: str, type_code: str) -> str:
    """``value`` + ``Quantity`` -> ``valueQuantity``."""
    return base + type_code[:1].upper() + type_code[1:]


class Snapshot(_Artifact):
    element: List[ElementDefinition] = Field(default_factory=list)


class StructureDefinition(_Artifact):
    resourceType: str = "StructureDefinition"
    url: str
    version: Optional[str] = None
    name: Optional[str] = None
    type: str
    kind: str = "resource"
    abstract: bool = False
    derivation: Optional[str] = None
    baseDefinition: Optional[str] = None
    snapshot: Optional[Snapshot] = None
    differential: Optional[Snapshot] = None

    @property
    def is_constraint(self) -> bool:
        return self.derivation == "constraint"

    @property
    def elements(self) -> List[ElementDefinition]:
        if self.snapshot and self.snapshot.element:
            return self.snapshot.element
        if self.differential:
            return self.differential.element
        return []

    @cached_property
    def element_index(self) -> Dict[str, ElementDefinition]:
        return {e.element_id: e for e in self.elements}

    @cached_property
    def child_index(self) -> Dict[str, List[ElementDefinition]]:
        children: Dict[str, List[ElementDefinition]] = {}
        for element in self.elements:
            parent, sep, rest = element.element_id.rpartition(".")
            if sep and ":" not in rest:
                children.setdefault(parent, []).append(element)
        return children

    @cached_property
    def slice_index(self) -> Dict[str, List[ElementDefinition]]:
        slices: Dict[str, List[ElementDefinition]] = {}
        for element in self.elements:
            if not element.sliceName:
                continue
            sliced, sep, name = element.element_id.rpartition(":")
            if sep and "." not in name and "/" not in name:
                slices.setdefault(sliced, []).append(element)
        return slices

    @property
    def root(self) -> Optional[ElementDefinition]:
        elements = self.elements
        return elements[0] if elements else None

    def element(self, element_id: str) -> Optional[ElementDefinition]:
        return self.element_index.get(element_id)

    def children(self, element_id: str) -> List[ElementDefinition]:
        """Immediate child elements in snapshot order (slices excluded)."""
        return self.child_index.get(element_id, [])

    def slices(self, element_id: str) -> List[ElementDefinition]:
        """Named slices of a sliced element in declaration order."""
        return self.slice_index.get(element_id, [])

    def content_reference_target(self, element: ElementDefinition) -> Optional[ElementDefinition]:
        ref = element.contentReference
        if not ref:
            return None
        target = ref.split("#", 1)[-1]
        return self.element(target)


class ValueSetConcept(_Artifact):
    code: str
    display: Optional[str] = None


class ValueSetFilter(_Artifact):
    property: str
    op: str
    value: str


class ValueSetInclude(_Artifact):
    system: Optional[str] = None
    version: Optional[str] = None
    concept: List[ValueSetConcept] = Field(default_factory=list)
    filter: List[ValueSetFilter] = Field(default_factory=list)
    valueSet: List[str] = Field(default_factory=list)


class ValueSetCompose(_Artifact):
    include: List[ValueSetInclude] = Field(default_factory=list)
    exclude: List[ValueSetInclude] = Field(default_factory=list)


class ExpansionContains(_Artifact):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None
    contains: List["ExpansionContains"] = Field(default_factory=list)


class ValueSetExpansion(_Artifact):
    contains: List[ExpansionContains] = Field(default_factory=list)


class ValueSet(_Artifact):
    resourceType: str = "ValueSet"
    url: str
    version: Optional[str] = None
    name: Optional[str] = None
    compose: Optional[ValueSetCompose] = None
    expansion: Optional[ValueSetExpansion] = None

    def iter_expansion(self) -> Iterator[ExpansionContains]:
        stack = list(reversed(self.expansion.contains)) if self.expansion else []
        while stack:
            entry = stack.pop()
            yield entry
            stack.extend(reversed(entry.contains))

    def enumerated_systems(self) -> List[str]:
        """Code systems this value set claims to draw codes from."""
        systems: List[str] = []
        if self.compose:
            for include in self.compose.include:
                if include.system and include.system not in systems:
                    systems.append(include.system)
        for entry in self.iter_expansion():
            if entry.system and entry.system not in systems:
                systems.append(entry.system)
        return systems


class Designation(_Artifact):
    value: str
    language: Optional[str] = None


class CodeSystemConcept(_Artifact):
    code: str
    display: Optional[str] = None
    designation: List[Designation] = Field(default_factory=list)
    concept: List["CodeSystemConcept"] = Field(default_factory=list)


class CodeSystem(_Artifact):
    resourceType: str = "CodeSystem"
    url: str
    version: Optional[str] = None
    name: Optional[str] = None
    content: str = "complete"
    concept: List[CodeSystemConcept] = Field(default_factory=list)

    @cached_property
    def concept_index(self) -> Dict[str, CodeSystemConcept]:
        index: Dict[str, CodeSystemConcept] = {}
        stack = list(reversed(self.concept))
        while stack:
            concept = stack.pop()
            index.setdefault(concept.code, concept)
            stack.extend(reversed(concept.concept))
        return index

    def lookup(self, code: str) -> Optional[CodeSystemConcept]:
        return self.concept_index.get(code)

    def descendants_of(self, code: str) -> List[str]:
        concept = self.lookup(code)
        if concept is None:
            return []
        codes: List[str] = []
        stack = list(reversed(concept.concept))
        while stack:
            child = stack.pop()
            codes.append(child.code)
            stack.extend(reversed(child.concept))
        return codes


Artifact = Union[StructureDefinition, ValueSet, CodeSystem]

ARTIFACT_MODELS = {
    "StructureDefinition": StructureDefinition,
    "ValueSet": ValueSet,
    "CodeSystem": CodeSystem,
}


def parse_artifact(raw: Dict[str, Any]) -> Optional[Artifact]:
    """Parse a conformance resource by its ``resourceType``; None for other kinds."""
    model = ARTIFACT_MODELS.get(raw.get("resourceType", ""))
    if model is None:
        return None
    return model.model_validate(raw)
