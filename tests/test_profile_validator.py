import json

import pytest

from conformance_engine.core.element_validator import ValidationOptions
from conformance_engine.core.errors import ConformanceErrorCode, SchemaNotFoundError
from conformance_engine.core.profile_validator import ProfileValidator

from builders import EXAMPLE_BASE, derive_profile, status_report_definition, slice_identifier_profile


@pytest.fixture()
def reports(store):
    store.put(status_report_definition())
    return ProfileValidator(store, options=ValidationOptions())


def test_minimal_instance_with_allowed_status_is_valid(reports):
    outcome = reports.validate({"resourceType": "StatusReport", "status": "final"})
    assert outcome.is_valid()
    assert outcome.issues == []


def test_status_outside_required_value_set(reports):
    outcome = reports.validate({"resourceType": "StatusReport", "status": "finished"})
    assert len(outcome.errors) == 1
    [issue] = outcome.errors
    assert issue.code == "binding-violation"
    assert issue.path == "status"
    assert issue.source == f"{EXAMPLE_BASE}/StatusReport"


def test_binding_strength_monotonicity(store):
    severities = {}
    validator = ProfileValidator(store, options=ValidationOptions())
    for strength in ("required", "extensible", "preferred", "example"):
        store.put(status_report_definition(strength))
        outcome = validator.validate({"resourceType": "StatusReport", "status": "finished"})
        severities[strength] = {i.severity.value for i in outcome.by_code("binding-violation")}
    assert severities["required"] == {"error"}
    assert "error" not in severities["preferred"]
    assert "error" not in severities["example"]


def test_backbone_children(reports):
    outcome = reports.validate({
        "resourceType": "StatusReport",
        "status": "final",
        "reading": [{"label": "first"}, {"note": "no label"}],
    })
    assert sorted(i.path for i in outcome.errors) == ["reading[1].label", "reading[1].note"]


def test_unknown_resource_type_is_fatal(validator):
    with pytest.raises(SchemaNotFoundError) as exc:
        validator.validate({"resourceType": "Widget"})
    assert exc.value.code == ConformanceErrorCode.VALID_UNKNOWN_RESOURCE_TYPE


def test_not_a_resource(validator):
    [issue] = validator.validate(["not", "an", "object"]).issues
    assert issue.code == "structure"
    [issue] = validator.validate({"id": "x"}).issues
    assert issue.code == "structure"
    assert issue.issue_type == "required"


def test_meta_profile_is_applied(store, validator):
    url = f"{EXAMPLE_BASE}/dated-patient"
    store.put(derive_profile("Patient", url, constraints={"Patient.birthDate": {"min": 1}}))
    outcome = validator.validate({"resourceType": "Patient", "meta": {"profile": [url]}})
    [issue] = outcome.issues
    assert issue.code == "cardinality-violation"
    assert issue.path == "birthDate"
    assert issue.source == url

    assert validator.validate({"resourceType": "Patient", "birthDate": "1974-12-25", "meta": {"profile": [url]}}).is_valid()


def test_explicit_profile_is_applied(store, validator):
    url = f"{EXAMPLE_BASE}/dated-patient"
    store.put(derive_profile("Patient", url, constraints={"Patient.birthDate": {"min": 1}}))
    outcome = validator.validate({"resourceType": "Patient"}, profile_urls=[f"{url}|1.0.0"])
    assert [i.path for i in outcome.errors] == ["birthDate"]


def test_missing_profiles(validator):
    missing = f"{EXAMPLE_BASE}/missing"
    outcome = validator.validate({"resourceType": "Patient", "meta": {"profile": [missing]}})
    [issue] = outcome.issues
    assert issue.code == "profile-not-found"
    assert issue.severity.value == "warning"
    assert issue.path == "meta.profile[0]"
    assert outcome.is_valid()

    outcome = validator.validate({"resourceType": "Patient"}, profile_urls=[missing])
    [issue] = outcome.issues
    assert issue.severity.value == "error"
    assert issue.path == ""


def test_profile_for_another_type(store, validator):
    url = f"{EXAMPLE_BASE}/strict-observation"
    store.put(derive_profile("Observation", url))
    outcome = validator.validate({"resourceType": "Patient"}, profile_urls=[url])
    [issue] = outcome.issues
    assert issue.code == "profile-mismatch"


def test_identical_issues_reported_once(store, validator):
    url = f"{EXAMPLE_BASE}/plain-patient"
    store.put(derive_profile("Patient", url))
    outcome = validator.validate({"resourceType": "Patient", "active": "yes"}, profile_urls=[url])
    assert [i.path for i in outcome.issues] == ["active"]


def test_profiles_deduplicated_in_order(store, validator):
    url = f"{EXAMPLE_BASE}/dated-patient"
    store.put(derive_profile("Patient", url, constraints={"Patient.birthDate": {"min": 1}}))
    outcome = validator.validate(
        {"resourceType": "Patient", "meta": {"profile": [url, url]}},
        profile_urls=[url],
    )
    assert len(outcome.issues) == 1


def test_include_warnings_option(validator):
    resource = {"resourceType": "Patient", "meta": {"profile": [f"{EXAMPLE_BASE}/missing"]}}
    assert len(validator.validate(resource).issues) == 1
    quiet = validator.validate(resource, options=ValidationOptions(include_warnings=False))
    assert quiet.issues == []


def test_determinism(store, validator):
    profile = slice_identifier_profile("closed")
    store.put(profile)
    resource = {
        "resourceType": "Patient",
        "identifier": [{"system": "http://example.org/other", "value": "1"}],
        "gender": "bogus",
        "name": [{"given": "Pete"}, {}],
        "contact": [{"gender": "female"}],
        "favouriteColour": "blue",
    }
    first = validator.validate(resource, profile_urls=[profile.url])
    second = validator.validate(resource, profile_urls=[profile.url])
    assert first == second
    assert json.dumps(first.to_operation_outcome()) == json.dumps(second.to_operation_outcome())
    assert len(first.issues) >= 6


def test_is_valid_matches_error_presence(store, validator):
    store.put(status_report_definition())
    resources = [
        {"resourceType": "Patient"},
        {"resourceType": "Patient", "gender": "bogus"},
        {"resourceType": "Patient", "meta": {"profile": [f"{EXAMPLE_BASE}/missing"]}},
        {"resourceType": "StatusReport", "status": "final"},
        {"resourceType": "StatusReport"},
        {"resourceType": "Observation", "status": "final", "code": {"text": "x"}, "valueString": "a", "valueBoolean": True},
    ]
    for resource in resources:
        outcome = validator.validate(resource)
        assert outcome.is_valid() == (not any(i.severity.value == "error" for i in outcome.issues))


def test_contained_resources_are_validated(validator):
    outcome = validator.validate({
        "resourceType": "Patient",
        "contained": [{"resourceType": "Organization", "id": "org1", "name": "Acme", "active": "yes"}],
        "managingOrganization": {"reference": "#org1"},
    })
    assert [i.path for i in outcome.issues] == ["contained[0].active"]
