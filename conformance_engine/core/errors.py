"""
Structured error taxonomy for the conformance engine.

Only configuration and loader class failures are raised as exceptions.
Data-quality findings never travel through this module; they are recorded
as issues on an Outcome (see ``outcome.py``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorCategory(str, Enum):
    """High-level error categories."""
    STORE = "STORE"
    PACK = "PACK"
    EXPR = "EXPR"
    VALID = "VALID"
    CONFIG = "CONFIG"


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ConformanceErrorCode(str, Enum):
    """
    Structured error codes.

    Format: {CATEGORY}_{SPECIFIC_CODE}
    """

    # Schema store errors (STORE_xx)
    STORE_SCHEMA_NOT_FOUND = "STORE_001"
    STORE_VALUE_SET_NOT_FOUND = "STORE_002"
    STORE_CODE_SYSTEM_NOT_FOUND = "STORE_003"
    STORE_UNSUPPORTED_ARTIFACT = "STORE_004"

    # Package errors (PACK_xx)
    PACK_MANIFEST_MISSING = "PACK_001"
    PACK_MANIFEST_INVALID = "PACK_002"
    PACK_SOURCE_NOT_FOUND = "PACK_003"
    PACK_DOWNLOAD_FAILED = "PACK_004"
    PACK_ARCHIVE_CORRUPT = "PACK_005"
    PACK_VERSION_NOT_FOUND = "PACK_006"

    # Expression evaluation errors (EXPR_xx)
    EXPR_EVALUATION_FAILED = "EXPR_001"

    # Validation call errors (VALID_xx)
    VALID_UNKNOWN_RESOURCE_TYPE = "VALID_001"

    # Configuration errors (CONFIG_xx)
    CONFIG_INVALID_VALUE = "CONFIG_001"


class ConformanceErrorDetail(BaseModel):
    """
    Structured error detail following the FHIR OperationOutcome pattern.
    """
    code: ConformanceErrorCode
    severity: ErrorSeverity
    message: str
    details: Optional[str] = None
    path: Optional[str] = None
    context: Dict[str, Any] = {}

    @property
    def category(self) -> ErrorCategory:
        """Extract error category from code."""
        return ErrorCategory(self.code.value.split("_")[0])

    def to_fhir_issue(self) -> Dict[str, Any]:
        """Convert to FHIR OperationOutcome.issue format."""
        issue = {
            "severity": _FHIR_SEVERITIES[self.severity],
            "code": _FHIR_ISSUE_TYPES.get(self.category, "exception"),
            "diagnostics": f"[{self.code.value}] {self.message}"
        }

        if self.details:
            issue["diagnostics"] += f" - {self.details}"

        if self.path:
            issue["expression"] = [self.path]

        return issue

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and API responses."""
        result = {
            "error_code": self.code.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message
        }

        if self.details:
            result["details"] = self.details
        if self.path:
            result["path"] = self.path
        if self.context:
            result["context"] = self.context

        return result


_FHIR_SEVERITIES = {
    ErrorSeverity.INFO: "information",
    ErrorSeverity.WARNING: "warning",
    ErrorSeverity.ERROR: "error",
    ErrorSeverity.CRITICAL: "fatal",
}

_FHIR_ISSUE_TYPES = {
    ErrorCategory.STORE: "not-found",
    ErrorCategory.PACK: "exception",
    ErrorCategory.EXPR: "exception",
    ErrorCategory.VALID: "not-supported",
    ErrorCategory.CONFIG: "exception",
}


class ConformanceException(Exception):
    """
    Base exception class with structured error information.

    Raising one of these aborts the current validate or load call.
    """

    def __init__(
        self,
        error_detail: ConformanceErrorDetail,
        cause: Optional[Exception] = None
    ):
        self.error_detail = error_detail
        self.cause = cause
        super().__init__(error_detail.message)

    @property
    def code(self) -> ConformanceErrorCode:
        return self.error_detail.code

    @property
    def category(self) -> ErrorCategory:
        return self.error_detail.category

    @property
    def severity(self) -> ErrorSeverity:
        return self.error_detail.severity

    def to_operation_outcome(self) -> Dict[str, Any]:
        """Convert to FHIR OperationOutcome resource."""
        return {
            "resourceType": "OperationOutcome",
            "issue": [self.error_detail.to_fhir_issue()]
        }


class SchemaNotFoundError(ConformanceException):
    """A schema document, value set or code system is not in the store."""
    pass


class PackageManifestError(ConformanceException):
    """Package manifest is missing or corrupt."""
    pass


class PackageRetrievalError(ConformanceException):
    """Package could not be located, downloaded or unpacked."""
    pass


class ExpressionEvaluationError(ConformanceException):
    """The expression evaluator crashed on an invariant or discriminator."""
    pass


class ConfigurationError(ConformanceException):
    """Configuration and setup errors."""
    pass


# Convenience functions for creating common errors

def create_not_found_error(
    code: ConformanceErrorCode,
    message: str,
    url: Optional[str] = None,
    version: Optional[str] = None
) -> SchemaNotFoundError:
    """Create a structured store lookup error."""
    context = {}
    if url:
        context["url"] = url
    if version:
        context["version"] = version

    return SchemaNotFoundError(ConformanceErrorDetail(
        code=code,
        severity=ErrorSeverity.ERROR,
        message=message,
        context=context
    ))


def create_package_error(
    code: ConformanceErrorCode,
    message: str,
    source: Optional[str] = None,
    details: Optional[str] = None,
    cause: Optional[Exception] = None
) -> ConformanceException:
    """Create a structured package error; manifest codes map to PackageManifestError."""
    detail = ConformanceErrorDetail(
        code=code,
        severity=ErrorSeverity.ERROR,
        message=message,
        details=details,
        context={"source": source} if source else {}
    )
    if code in (ConformanceErrorCode.PACK_MANIFEST_MISSING, ConformanceErrorCode.PACK_MANIFEST_INVALID):
        return PackageManifestError(detail, cause)
    return PackageRetrievalError(detail, cause)


def create_expression_error(
    expression: str,
    message: str,
    path: Optional[str] = None,
    cause: Optional[Exception] = None
) -> ExpressionEvaluationError:
    """Create a structured expression evaluation error."""
    return ExpressionEvaluationError(ConformanceErrorDetail(
        code=ConformanceErrorCode.EXPR_EVALUATION_FAILED,
        severity=ErrorSeverity.CRITICAL,
        message=message,
        path=path,
        context={"expression": expression}
    ), cause)

