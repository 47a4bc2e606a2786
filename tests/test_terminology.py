from conformance_engine.core.definitions import Binding, CodeSystem, ValueSet
from conformance_engine.core.outcome import OutcomeBuilder
from conformance_engine.core.terminology import TerminologyChecker, extract_codes

GENDER_VS = "http://hl7.org/fhir/ValueSet/administrative-gender"
GENDER_CS = "http://hl7.org/fhir/administrative-gender"
SHAPES_CS = "http://example.org/fhir/shapes"


def _shapes(store):
    store.put(CodeSystem.model_validate({
        "resourceType": "CodeSystem",
        "url": SHAPES_CS,
        "content": "complete",
        "concept": [
            {"code": "polygon", "display": "Polygon", "concept": [
                {"code": "triangle", "display": "Triangle"},
                {"code": "square", "display": "Square", "designation": [{"value": "Quadrat", "language": "de"}]},
            ]},
            {"code": "circle", "display": "Circle"},
        ],
    }))


def _value_set(url, compose=None, expansion=None):
    raw = {"resourceType": "ValueSet", "url": url}
    if compose is not None:
        raw["compose"] = compose
    if expansion is not None:
        raw["expansion"] = expansion
    return ValueSet.model_validate(raw)


def test_extract_codes():
    assert extract_codes("male", "code") == [(None, "male", None, "")]
    coding = {"system": GENDER_CS, "code": "male", "display": "Male"}
    assert extract_codes(coding, "Coding") == [(GENDER_CS, "male", "Male", "")]
    concept = {"coding": [{"system": "a", "code": "1"}, {"display": "no code"}, {"system": "b", "code": "2"}]}
    assert extract_codes(concept, "CodeableConcept") == [("a", "1", None, "coding[0]"), ("b", "2", None, "coding[2]")]
    assert extract_codes({"text": "only text"}, "CodeableConcept") == []
    assert extract_codes({"value": 1}, "Period") is None


def test_membership_from_system_include(store):
    checker = TerminologyChecker(store)
    vs = store.find_value_set(GENDER_VS)
    assert checker.contains(vs, GENDER_CS, "female") is True
    assert checker.contains(vs, None, "unknown") is True
    assert checker.contains(vs, GENDER_CS, "bogus") is False
    assert checker.contains(vs, "http://example.org/other", "female") is False


def test_membership_from_nested_expansion(store):
    vs = _value_set("http://example.org/fhir/ValueSet/expanded", expansion={"contains": [
        {"system": SHAPES_CS, "code": "polygon", "contains": [{"system": SHAPES_CS, "code": "square"}]},
    ]})
    checker = TerminologyChecker(store)
    assert checker.contains(vs, SHAPES_CS, "square") is True
    assert checker.contains(vs, SHAPES_CS, "circle") is False


def test_membership_concepts_filters_and_excludes(store):
    _shapes(store)
    checker = TerminologyChecker(store)

    listed = _value_set("http://example.org/fhir/ValueSet/listed", compose={
        "include": [{"system": SHAPES_CS, "concept": [{"code": "circle"}]}],
    })
    assert checker.contains(listed, SHAPES_CS, "circle") is True
    assert checker.contains(listed, SHAPES_CS, "square") is False

    polygons = _value_set("http://example.org/fhir/ValueSet/polygons", compose={
        "include": [{"system": SHAPES_CS, "filter": [{"property": "concept", "op": "is-a", "value": "polygon"}]}],
        "exclude": [{"system": SHAPES_CS, "concept": [{"code": "triangle"}]}],
    })
    assert checker.contains(polygons, SHAPES_CS, "square") is True
    assert checker.contains(polygons, SHAPES_CS, "polygon") is True
    assert checker.contains(polygons, SHAPES_CS, "triangle") is False
    assert checker.contains(polygons, SHAPES_CS, "circle") is False


def test_membership_undecidable_for_unknown_code_system(store):
    vs = _value_set("http://example.org/fhir/ValueSet/loinc", compose={
        "include": [{"system": "http://loinc.org"}],
    })
    assert TerminologyChecker(store).contains(vs, "http://loinc.org", "1234-5") is None


def test_value_set_imports(store):
    store.put(_value_set("http://example.org/fhir/ValueSet/imports", compose={
        "include": [{"valueSet": [GENDER_VS]}],
    }))
    vs = store.find_value_set("http://example.org/fhir/ValueSet/imports")
    checker = TerminologyChecker(store)
    assert checker.contains(vs, GENDER_CS, "male") is True
    assert checker.contains(vs, GENDER_CS, "bogus") is False


def _check(store, strength, type_code, value, value_set=GENDER_VS):
    b = OutcomeBuilder()
    binding = Binding(strength=strength, valueSet=f"{value_set}|4.0.1")
    TerminologyChecker(store).check_binding(binding, type_code, value, "gender", b)
    return b.build().issues


def test_binding_strengths(store):
    assert _check(store, "required", "code", "female") == []
    [issue] = _check(store, "required", "code", "bogus")
    assert issue.severity.value == "error"
    assert issue.code == "binding-violation"
    assert issue.path == "gender"
    assert _check(store, "preferred", "code", "bogus")[0].severity.value == "information"
    assert _check(store, "example", "code", "bogus")[0].severity.value == "information"
    assert _check(store, "extensible", "code", "bogus")[0].severity.value == "error"


def test_extensible_binding_outside_enumerated_systems_is_warning(store):
    concept = {"coding": [{"system": "http://example.org/local-genders", "code": "x"}]}
    [issue] = _check(store, "extensible", "CodeableConcept", concept)
    assert issue.severity.value == "warning"
    [issue] = _check(store, "required", "CodeableConcept", concept)
    assert issue.severity.value == "error"


def test_codeable_concept_passes_when_any_coding_is_member(store):
    concept = {"coding": [
        {"system": "http://example.org/local-genders", "code": "x"},
        {"system": GENDER_CS, "code": "male"},
    ]}
    assert _check(store, "required", "CodeableConcept", concept) == []


def test_text_only_concept_fails_required_binding(store):
    [issue] = _check(store, "required", "CodeableConcept", {"text": "Male"})
    assert issue.severity.value == "error"
    assert "text only" in issue.message
    assert _check(store, "extensible", "CodeableConcept", {"text": "Male"})[0].severity.value == "warning"


def test_missing_value_set(store):
    missing = "http://example.org/fhir/ValueSet/missing"
    [issue] = _check(store, "required", "code", "x", value_set=missing)
    assert issue.code == "value-set-not-found"
    assert issue.severity.value == "warning"
    assert _check(store, "preferred", "code", "x", value_set=missing) == []


def test_display_check(store):
    _shapes(store)
    checker = TerminologyChecker(store)
    b = OutcomeBuilder()
    checker.check_display("Coding", {"system": GENDER_CS, "code": "male", "display": "MALE"}, "gender", b)
    checker.check_display("Coding", {"system": SHAPES_CS, "code": "square", "display": "quadrat"}, "shape", b)
    assert len(b) == 0

    checker.check_display(
        "CodeableConcept",
        {"coding": [{"system": GENDER_CS, "code": "male", "display": "Female"}]},
        "code", b,
    )
    [issue] = b.build().issues
    assert issue.code == "display-mismatch"
    assert issue.severity.value == "warning"
    assert issue.path == "code.coding[0].display"
