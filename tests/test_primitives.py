import pytest

from conformance_engine.core.primitives import check_primitive, is_primitive_type, json_type_matches


@pytest.mark.parametrize(
    "value,code",
    [
        (True, "boolean"),
        (42, "integer"),
        (-2147483648, "integer"),
        (1, "positiveInt"),
        (0, "unsignedInt"),
        (3.14, "decimal"),
        (7, "decimal"),
        ("hello", "string"),
        ("final", "code"),
        ("example-1.a", "id"),
        ("http://example.org/fhir", "uri"),
        ("urn:uuid:c757873d-ec9a-4326-a141-556f43239520", "uuid"),
        ("urn:oid:1.2.36.146.595.217.0.1", "oid"),
        ("2024", "date"),
        ("2024-02-29", "date"),
        ("2024-02-29T10:15:00+01:00", "dateTime"),
        ("2024-02-29T10:15:00.123Z", "instant"),
        ("23:59:59", "time"),
        ("aGVsbG8=", "base64Binary"),
        ('<div xmlns="http://www.w3.org/1999/xhtml">text</div>', "xhtml"),
        ("abc", "http://hl7.org/fhirpath/System.String"),
    ],
)
def test_valid_primitives(value, code):
    assert check_primitive(value, code) is None


@pytest.mark.parametrize(
    "value,code",
    [
        ("true", "boolean"),
        (1, "boolean"),
        (True, "integer"),
        (1.5, "integer"),
        (2**31, "integer"),
        (0, "positiveInt"),
        (-1, "unsignedInt"),
        ("3.14", "decimal"),
        (12, "string"),
        ("   ", "string"),
        ("two  spaces", "code"),
        ("has space", "id"),
        ("x" * 65, "id"),
        ("2024-13-01", "date"),
        ("2024-02-29T10:15", "dateTime"),
        ("2024-02-29T10:15:00", "instant"),
        ("24:00:00", "time"),
        ("urn:uuid:not-a-uuid", "uuid"),
        ("<p>text</p>", "xhtml"),
    ],
)
def test_invalid_primitives(value, code):
    assert check_primitive(value, code) is not None


def test_problem_messages():
    assert check_primitive("yes", "boolean") == "Expected boolean, got string"
    assert check_primitive(0, "positiveInt") == "Expected positive integer (> 0), got 0"
    assert check_primitive("2024-13-01", "date") == "Invalid date format: '2024-13-01'"


def test_type_helpers():
    assert is_primitive_type("dateTime")
    assert is_primitive_type("http://hl7.org/fhirpath/System.String")
    assert not is_primitive_type("CodeableConcept")
    assert json_type_matches("2024-01-01", "date")
    assert json_type_matches({"value": 5}, "Quantity")
    assert not json_type_matches({"resourceType": "Patient"}, "Organization")
    assert not json_type_matches("text", "Quantity")
