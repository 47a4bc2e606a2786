import pytest

from conformance_engine.core.bundle import BundleValidator, entry_identity
from conformance_engine.core.errors import SchemaNotFoundError

UUID = "urn:uuid:9d3f2a1c-4b5e-4f60-8a7b-1c2d3e4f5a6b"


@pytest.fixture()
def bundles(validator):
    return BundleValidator(validator)


def bundle(bundle_type, *entries):
    return {"resourceType": "Bundle", "type": bundle_type, "entry": list(entries)}


def patient(resource_id="1", **fields):
    resource = {"resourceType": "Patient", "id": resource_id}
    resource.update(fields)
    return resource


def observation(subject):
    return {
        "resourceType": "Observation",
        "status": "final",
        "code": {"text": "Heart rate"},
        "subject": {"reference": subject},
    }


def paths(outcome, code):
    return [i.path for i in outcome.issues if i.code == code]


def test_valid_collection(bundles):
    outcome = bundles.validate(bundle(
        "collection",
        {"fullUrl": "http://example.org/fhir/Patient/1", "resource": patient()},
        {"fullUrl": "http://example.org/fhir/Observation/2", "resource": observation("Patient/1")},
    ))
    assert outcome.issues == []


def test_duplicate_identity_regardless_of_member_validity(bundles):
    full_url = "http://example.org/fhir/Patient/1"
    outcome = bundles.validate(bundle(
        "collection",
        {"fullUrl": full_url, "resource": patient()},
        {"fullUrl": full_url, "resource": patient(gender="bogus")},
    ))
    [issue] = outcome.by_code("duplicate-identifier")
    assert issue.path == "entry[1]"
    assert paths(outcome, "binding-violation") == ["entry[1].resource.gender"]


def test_identity_from_type_and_id(bundles):
    outcome = bundles.validate(bundle("collection", {"resource": patient()}, {"resource": patient()}))
    assert paths(outcome, "duplicate-identifier") == ["entry[1]"]
    outcome = bundles.validate(bundle("collection", {"resource": patient()}, {"resource": patient("2")}))
    assert paths(outcome, "duplicate-identifier") == []


def test_history_identity_includes_version():
    first = {"fullUrl": "http://example.org/fhir/Patient/1", "resource": patient(meta={"versionId": "1"})}
    second = {"fullUrl": "http://example.org/fhir/Patient/1", "resource": patient(meta={"versionId": "2"})}
    assert entry_identity(first, "history") == "http://example.org/fhir/Patient/1/_history/1"
    assert entry_identity(first, "collection") == "http://example.org/fhir/Patient/1"
    assert entry_identity({"resource": patient()}, "searchset") == "Patient/1"
    assert entry_identity({"resource": {"resourceType": "Patient"}}, "searchset") is None
    assert entry_identity(first, "history") != entry_identity(second, "history")


def test_history_versions_are_not_duplicates(bundles):
    entries = [
        {"fullUrl": "http://example.org/fhir/Patient/1", "resource": patient(meta={"versionId": str(v)}),
         "request": {"method": "PUT", "url": "Patient/1"}}
        for v in (1, 2)
    ]
    assert paths(bundles.validate(bundle("history", *entries)), "duplicate-identifier") == []


def test_transaction_requests(bundles):
    outcome = bundles.validate(bundle(
        "transaction",
        {"fullUrl": UUID, "resource": patient()},
        {"resource": patient("2"), "request": {"method": "FETCH", "url": "Patient"}},
        {"resource": patient("3"), "request": {"method": "POST"}},
    ))
    assert paths(outcome, "bundle-rule") == [
        "entry[0].request",
        "entry[1].request.method",
        "entry[2].request.url",
    ]


def test_batch_response_status(bundles):
    outcome = bundles.validate(bundle(
        "batch-response",
        {"response": {"status": "201 Created"}},
        {"resource": patient()},
    ))
    assert paths(outcome, "bundle-rule") == ["entry[1].response.status"]


def test_document_must_start_with_composition(bundles):
    outcome = bundles.validate(bundle("document", {"fullUrl": UUID, "resource": patient()}))
    assert paths(outcome, "bundle-rule") == ["entry[0]"]
    assert paths(bundles.validate(bundle("document")), "bundle-rule") == ["entry"]


def test_invalid_bundle_type(bundles):
    outcome = bundles.validate(bundle("pile", {"resource": patient()}))
    assert paths(outcome, "bundle-rule") == ["type"]
    assert not outcome.is_valid()


def test_entry_needs_content(bundles):
    outcome = bundles.validate(bundle("collection", {"fullUrl": UUID}))
    assert paths(outcome, "bundle-rule") == ["entry[0]"]


def test_relative_full_url_is_warning(bundles):
    outcome = bundles.validate(bundle("collection", {"fullUrl": "Patient/1", "resource": patient()}))
    [issue] = outcome.issues
    assert issue.path == "entry[0].fullUrl"
    assert issue.severity.value == "warning"


def test_member_issues_are_prefixed(bundles):
    outcome = bundles.validate(bundle("collection", {"resource": patient(active="yes")}))
    assert paths(outcome, "type-mismatch") == ["entry[0].resource.active"]


def test_reference_resolution_inside_bundle(bundles):
    outcome = bundles.validate(bundle(
        "collection",
        {"fullUrl": "http://example.org/fhir/Patient/1", "resource": patient()},
        {"resource": observation("Patient/1")},
        {"resource": observation("Patient/999")},
        {"resource": observation(UUID)},
    ))
    unresolved = outcome.by_code("unresolved-reference")
    assert [(i.path, i.severity.value) for i in unresolved] == [
        ("entry[2].resource.subject.reference", "information"),
        ("entry[3].resource.subject.reference", "warning"),
    ]
    assert outcome.is_valid()


def test_urn_reference_resolves_to_full_url(bundles):
    outcome = bundles.validate(bundle(
        "transaction",
        {"fullUrl": UUID, "resource": patient(), "request": {"method": "POST", "url": "Patient"}},
        {"resource": observation(UUID), "request": {"method": "POST", "url": "Observation"}},
    ))
    assert outcome.issues == []


def test_validate_members(bundles):
    outcome = bundles.validate_members(
        [patient(), {"resource": patient("2"), "request": {"method": "PUT", "url": "Patient/2"}}],
        "transaction",
    )
    assert paths(outcome, "bundle-rule") == ["entry[0].request"]


def test_unknown_member_type_is_fatal(bundles):
    with pytest.raises(SchemaNotFoundError):
        bundles.validate(bundle("collection", {"resource": {"resourceType": "Widget", "id": "1"}}))


def test_not_a_bundle(bundles):
    [issue] = bundles.validate(patient()).issues
    assert issue.code == "structure"
    assert issue.path == ""
