"""
Outcome Builder.

Issues are accumulated in discovery order. An outcome is valid if and only
if none of its issues has ``error`` severity.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ValidationSeverity(str, Enum):
    """FHIR validation severity levels."""
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"


class IssueKind(str, Enum):
    """What kind of defect an issue reports."""
    CARDINALITY_VIOLATION = "cardinality-violation"
    CHOICE_CONFLICT = "choice-conflict"
    TYPE_MISMATCH = "type-mismatch"
    FIXED_VALUE_VIOLATION = "fixed-value-violation"
    PATTERN_VIOLATION = "pattern-violation"
    BINDING_VIOLATION = "binding-violation"
    DISPLAY_MISMATCH = "display-mismatch"
    VALUE_SET_NOT_FOUND = "value-set-not-found"
    SLICING_VIOLATION = "slicing-violation"
    UNKNOWN_ELEMENT = "unknown-element"
    STRUCTURE = "structure"
    MUST_SUPPORT_MISSING = "must-support-missing"
    REFERENCE_FORMAT_ERROR = "reference-format-error"
    INVALID_REFERENCE = "invalid-reference"
    UNRESOLVED_REFERENCE = "unresolved-reference"
    DUPLICATE_LOCAL_ID = "duplicate-local-id"
    DUPLICATE_IDENTIFIER = "duplicate-identifier"
    PROFILE_NOT_FOUND = "profile-not-found"
    PROFILE_MISMATCH = "profile-mismatch"
    UNKNOWN_TYPE = "unknown-type"
    BUNDLE_RULE = "bundle-rule"


# FHIR IssueType used when an issue is serialized into an OperationOutcome
ISSUE_TYPES: Dict[str, str] = {
    IssueKind.CARDINALITY_VIOLATION: "required",
    IssueKind.CHOICE_CONFLICT: "structure",
    IssueKind.TYPE_MISMATCH: "value",
    IssueKind.FIXED_VALUE_VIOLATION: "value",
    IssueKind.PATTERN_VIOLATION: "value",
    IssueKind.BINDING_VIOLATION: "code-invalid",
    IssueKind.DISPLAY_MISMATCH: "value",
    IssueKind.VALUE_SET_NOT_FOUND: "not-found",
    IssueKind.SLICING_VIOLATION: "structure",
    IssueKind.UNKNOWN_ELEMENT: "structure",
    IssueKind.STRUCTURE: "structure",
    IssueKind.MUST_SUPPORT_MISSING: "incomplete",
    IssueKind.REFERENCE_FORMAT_ERROR: "value",
    IssueKind.INVALID_REFERENCE: "invalid",
    IssueKind.UNRESOLVED_REFERENCE: "not-found",
    IssueKind.DUPLICATE_LOCAL_ID: "duplicate",
    IssueKind.DUPLICATE_IDENTIFIER: "duplicate",
    IssueKind.PROFILE_NOT_FOUND: "not-found",
    IssueKind.PROFILE_MISMATCH: "invalid",
    IssueKind.UNKNOWN_TYPE: "not-supported",
    IssueKind.BUNDLE_RULE: "invalid",
}

ISSUE_KIND_SYSTEM = "https://conformance-engine.dev/CodeSystem/issue-kind"


def join_path(prefix: Optional[str], path: Optional[str]) -> str:
    """Append ``path`` below ``prefix``; either side may be empty."""
    if not prefix:
        return path or ""
    if not path:
        return prefix
    if path.startswith("["):
        return prefix + path
    return f"{prefix}.{path}"


class ValidationIssue(BaseModel):
    """One finding at one instance path."""
    model_config = ConfigDict(frozen=True)

    severity: ValidationSeverity
    code: str
    issue_type: str = "invalid"
    path: str = ""
    message: str
    source: Optional[str] = None

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        return (self.severity.value, self.code, self.path, self.message)

    def to_fhir_issue(self) -> Dict[str, Any]:
        """Convert to FHIR OperationOutcome.issue format."""
        issue: Dict[str, Any] = {
            "severity": self.severity.value,
            "code": self.issue_type,
            "details": {
                "coding": [{"system": ISSUE_KIND_SYSTEM, "code": self.code}],
                "text": self.message,
            },
            "diagnostics": self.message,
        }
        if self.path:
            issue["expression"] = [self.path]
        return issue


class Outcome(BaseModel):
    """Ordered validation report for one call."""
    issues: List[ValidationIssue] = Field(default_factory=list)

    def is_valid(self) -> bool:
        return not any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    def by_code(self, code: str) -> List[ValidationIssue]:
        return [i for i in self.issues if i.code == code]

    def to_operation_outcome(self) -> Dict[str, Any]:
        """Convert to a FHIR OperationOutcome resource."""
        issues = [i.to_fhir_issue() for i in self.issues]
        if not issues:
            issues = [{
                "severity": "information",
                "code": "informational",
                "diagnostics": "Validation successful",
            }]
        return {"resourceType": "OperationOutcome", "issue": issues}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.is_valid(),
            "issues": [i.model_dump(mode="json", exclude_none=True) for i in self.issues],
        }


class OutcomeBuilder:
    """Accumulates issues for one validation call."""

    def __init__(self) -> None:
        self._issues: List[ValidationIssue] = []
        self._seen: Set[Tuple[str, str, str, str]] = set()

    def add(self, issue: ValidationIssue) -> None:
        if issue.identity in self._seen:
            return
        self._seen.add(issue.identity)
        self._issues.append(issue)

    def issue(
        self,
        severity: ValidationSeverity,
        code: str,
        path: str,
        message: str,
        issue_type: Optional[str] = None,
        source: Optional[str] = None,
    ) -> None:
        self.add(ValidationIssue(
            severity=severity,
            code=str(code.value if isinstance(code, IssueKind) else code),
            issue_type=issue_type or ISSUE_TYPES.get(code, "invalid"),
            path=path,
            message=message,
            source=source,
        ))

    def error(self, code: str, path: str, message: str, **kwargs: Any) -> None:
        self.issue(ValidationSeverity.ERROR, code, path, message, **kwargs)

    def warning(self, code: str, path: str, message: str, **kwargs: Any) -> None:
        self.issue(ValidationSeverity.WARNING, code, path, message, **kwargs)

    def information(self, code: str, path: str, message: str, **kwargs: Any) -> None:
        self.issue(ValidationSeverity.INFORMATION, code, path, message, **kwargs)

    def extend(self, issues: Iterable[ValidationIssue], prefix: Optional[str] = None) -> None:
        for issue in issues:
            if prefix:
                issue = issue.model_copy(update={"path": join_path(prefix, issue.path)})
            self.add(issue)

    def is_valid(self) -> bool:
        return not any(i.severity == ValidationSeverity.ERROR for i in self._issues)

    @property
    def issues(self) -> List[ValidationIssue]:
        return list(self._issues)

    def __len__(self) -> int:
        return len(self._issues)

    def build(self, include_warnings: bool = True) -> Outcome:
        issues = self._issues
        if not include_warnings:
            issues = [i for i in issues if i.severity == ValidationSeverity.ERROR]
        return Outcome(issues=list(issues))
