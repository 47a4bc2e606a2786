from conformance_engine.core.outcome import (
    IssueKind,
    Outcome,
    OutcomeBuilder,
    ValidationIssue,
    ValidationSeverity,
    join_path,
)


def test_join_path():
    assert join_path("", "status") == "status"
    assert join_path("entry[0].resource", "") == "entry[0].resource"
    assert join_path("entry[0].resource", "name[1].given") == "entry[0].resource.name[1].given"
    assert join_path("identifier", "[2]") == "identifier[2]"
    assert join_path(None, None) == ""


def test_builder_keeps_discovery_order_and_collapses_duplicates():
    b = OutcomeBuilder()
    b.error(IssueKind.CARDINALITY_VIOLATION, "status", "Missing required element 'status'")
    b.warning(IssueKind.MUST_SUPPORT_MISSING, "birthDate", "Must-support element 'birthDate' is not present")
    b.error(IssueKind.CARDINALITY_VIOLATION, "status", "Missing required element 'status'", source="http://x/p")
    b.information(IssueKind.UNRESOLVED_REFERENCE, "subject.reference", "Reference 'Patient/1' is unresolved")

    out = b.build()
    assert [i.path for i in out.issues] == ["status", "birthDate", "subject.reference"]
    assert out.issues[0].code == "cardinality-violation"
    assert out.issues[0].issue_type == "required"
    assert out.issues[0].source is None


def test_extend_reroots_paths():
    inner = OutcomeBuilder()
    inner.error(IssueKind.TYPE_MISMATCH, "active", "Expected boolean, got string")
    inner.error(IssueKind.STRUCTURE, "", "Resource has no resourceType")

    outer = OutcomeBuilder()
    outer.extend(inner.issues, prefix="entry[1].resource")
    assert [i.path for i in outer.issues] == ["entry[1].resource.active", "entry[1].resource"]
    # the original issues are untouched
    assert inner.issues[0].path == "active"


def test_build_without_warnings_keeps_errors_only():
    b = OutcomeBuilder()
    b.warning(IssueKind.PROFILE_NOT_FOUND, "meta.profile[0]", "Profile 'x' is not loaded")
    b.information(IssueKind.UNRESOLVED_REFERENCE, "subject.reference", "unresolved")
    b.error(IssueKind.UNKNOWN_ELEMENT, "colour", "Unknown element 'colour'")
    out = b.build(include_warnings=False)
    assert [i.code for i in out.issues] == ["unknown-element"]
    assert len(b.build().issues) == 3


def test_is_valid_iff_no_error():
    warnings_only = OutcomeBuilder()
    warnings_only.warning(IssueKind.DISPLAY_MISMATCH, "code.coding[0].display", "Display mismatch")
    warnings_only.information(IssueKind.BINDING_VIOLATION, "code", "Not in preferred value set")
    assert warnings_only.is_valid()
    assert warnings_only.build().is_valid()

    with_error = OutcomeBuilder()
    with_error.warning(IssueKind.DISPLAY_MISMATCH, "code.coding[0].display", "Display mismatch")
    with_error.error(IssueKind.BINDING_VIOLATION, "status", "Code 'x' is not in value set")
    assert not with_error.is_valid()
    out = with_error.build()
    assert not out.is_valid()
    assert len(out.errors) == 1
    assert len(out.warnings) == 1
    assert Outcome().is_valid()


def test_to_operation_outcome():
    b = OutcomeBuilder()
    b.error("obs-6", "", "Constraint obs-6 failed", issue_type="invariant")
    b.error(IssueKind.BINDING_VIOLATION, "status", "Code 'done' is not in value set")
    oo = b.build().to_operation_outcome()
    assert oo["resourceType"] == "OperationOutcome"
    first, second = oo["issue"]
    assert first["code"] == "invariant"
    assert "expression" not in first
    assert first["details"]["coding"][0]["code"] == "obs-6"
    assert second["severity"] == "error"
    assert second["code"] == "code-invalid"
    assert second["expression"] == ["status"]


def test_empty_outcome_serializes_success():
    oo = Outcome().to_operation_outcome()
    assert oo["issue"] == [{
        "severity": "information",
        "code": "informational",
        "diagnostics": "Validation successful",
    }]


def test_to_dict():
    issue = ValidationIssue(
        severity=ValidationSeverity.WARNING,
        code="profile-not-found",
        path="meta.profile[0]",
        message="Profile 'x' is not loaded",
    )
    data = Outcome(issues=[issue]).to_dict()
    assert data["valid"] is True
    assert data["issues"][0]["severity"] == "warning"
    assert "source" not in data["issues"][0]
