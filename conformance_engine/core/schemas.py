from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class OperationOutcomeIssue(BaseModel):
    severity: Literal["fatal", "error", "warning", "information"] = "error"
    code: str = "invalid"
    diagnostics: str
    details: Optional[Dict[str, Any]] = None
    expression: Optional[List[str]] = None


class OperationOutcome(BaseModel):
    resourceType: Literal["OperationOutcome"] = "OperationOutcome"
    issue: List[OperationOutcomeIssue]


class ProblemDetails(BaseModel):
    """
    RFC 7807 Problem Details for HTTP APIs.
    """
    type: Optional[str] = Field(
        "about:blank",
        description="A URI reference that identifies the problem type"
    )
    title: Optional[str] = Field(
        None,
        description="A short, human-readable summary of the problem type"
    )
    status: Optional[int] = Field(
        None,
        description="The HTTP status code"
    )
    detail: Optional[str] = Field(
        None,
        description="A human-readable explanation specific to this occurrence"
    )
    instance: Optional[str] = Field(
        None,
        description="A URI reference that identifies the specific occurrence"
    )
    # FHIR OperationOutcome embedded for API clients that speak FHIR
    operationOutcome: Optional[OperationOutcome] = Field(
        None,
        description="Embedded FHIR OperationOutcome for detailed error information"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "https://conformance-engine.dev/problems/schema-not-found",
                    "title": "Schema Not Found",
                    "status": 422,
                    "detail": "Unknown resource type 'Widget': no base StructureDefinition is loaded",
                    "operationOutcome": {
                        "resourceType": "OperationOutcome",
                        "issue": [{
                            "severity": "error",
                            "code": "not-found",
                            "diagnostics": "Unknown resource type 'Widget': no base StructureDefinition is loaded"
                        }]
                    }
                }
            ]
        }
    }


class ReferenceResolveRequest(BaseModel):
    """A literal reference and the resource types it may point at."""
    reference: str = Field(..., description="Literal reference, e.g. 'Patient/123' or '#med1'")
    allowed_types: List[str] = Field(
        default_factory=list,
        description="Allowed target resource types; empty or 'Resource' allows any"
    )


class PackageLoadRequest(BaseModel):
    source: str = Field(
        ...,
        description="Directory, .tgz archive, http(s) URL or registry id such as 'hl7.fhir.us.core#6.1.0'"
    )
