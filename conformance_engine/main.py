from __future__ import annotations

import logging
from typing import Dict, Optional, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .api.routes import router
from .config import Settings, get_settings
from .core.bundle import BundleValidator
from .core.element_validator import ValidationOptions
from .core.errors import (
    ConfigurationError,
    ConformanceErrorCode,
    ConformanceException,
    ExpressionEvaluationError,
    PackageManifestError,
    PackageRetrievalError,
    SchemaNotFoundError,
)
from .core.metrics import metrics
from .core.profile_validator import ProfileValidator
from .core.schemas import OperationOutcome, OperationOutcomeIssue, ProblemDetails
from .core.store import initialize_default_store
from .logging_setup import request_id, setup_logging

PROBLEM_BASE = "https://conformance-engine.dev/problems"

# HTTP status and problem slug per fatal error class
_PROBLEMS: Dict[Type[ConformanceException], tuple] = {
    SchemaNotFoundError: (422, "schema-not-found", "Schema Not Found"),
    PackageManifestError: (400, "package-manifest", "Invalid Package Manifest"),
    PackageRetrievalError: (502, "package-retrieval", "Package Retrieval Failed"),
    ExpressionEvaluationError: (500, "expression-evaluation", "Expression Evaluation Failed"),
    ConfigurationError: (500, "configuration", "Configuration Error"),
}

_NOT_FOUND_CODES = {
    ConformanceErrorCode.PACK_SOURCE_NOT_FOUND,
    ConformanceErrorCode.PACK_VERSION_NOT_FOUND,
}


def _problem_response(status_code: int, slug: str, title: str, detail: str, outcome: dict) -> JSONResponse:
    problem = ProblemDetails(
        type=f"{PROBLEM_BASE}/{slug}",
        title=title,
        status=status_code,
        detail=detail,
        operationOutcome=OperationOutcome.model_validate(outcome),
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    setup_logging()
    logger = logging.getLogger(__name__)
    settings = settings or get_settings()

    store, loader = initialize_default_store(settings)
    validator = ProfileValidator(store, options=ValidationOptions.from_settings(settings))
    metrics.set_service_info(service=settings.SERVICE_NAME, version=__version__)

    app = FastAPI(
        title="Conformance Engine",
        description="""
        ## Conformance Validation Service

        Validates JSON resource instances against StructureDefinition
        profiles loaded from conformance packages.

        ### Checks:
        - **Structure**: cardinality, choice types, datatypes, unknown elements
        - **Constraints**: fixed and pattern values, slicing, invariants
        - **Terminology**: value set bindings against locally loaded value sets
        - **References**: literal reference syntax, contained and Bundle resolution

        ### Authentication:
        Package loading requires the `X-Admin-Token` header.
        """,
        version=__version__,
        tags_metadata=[
            {"name": "health", "description": "Health check and monitoring endpoints"},
            {"name": "validation", "description": "Resource, Bundle and reference validation"},
            {"name": "administration", "description": "Administrative endpoints requiring authentication"},
            {"name": "metrics", "description": "Prometheus metrics for monitoring"},
        ]
    )
    app.state.settings = settings
    app.state.store = store
    app.state.loader = loader
    app.state.validator = validator
    app.state.bundle_validator = BundleValidator(validator)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or request_id()
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    @app.exception_handler(ConformanceException)
    async def conformance_error_handler(request: Request, exc: ConformanceException):
        status_code, slug, title = 500, "internal", "Conformance Engine Error"
        for error_class, problem in _PROBLEMS.items():
            if isinstance(exc, error_class):
                status_code, slug, title = problem
                break
        if exc.code in _NOT_FOUND_CODES:
            status_code = 404
        metrics.record_fatal_error(exc.category.value, exc.code.value)
        logger.error(
            f"{title}: {exc.error_detail.message}",
            extra={"error_code": exc.code.value, "path": request.url.path},
        )
        return _problem_response(status_code, slug, title, exc.error_detail.message, exc.to_operation_outcome())

    @app.exception_handler(RequestValidationError)
    async def request_error_handler(request: Request, exc: RequestValidationError):
        issues = [
            OperationOutcomeIssue(
                severity="error",
                code="structure",
                diagnostics=str(error.get("msg", "Invalid request")),
                expression=[".".join(str(p) for p in error.get("loc", ()))] or None,
            ).model_dump(exclude_none=True)
            for error in exc.errors()
        ] or [{"severity": "error", "code": "structure", "diagnostics": "Invalid request"}]
        return _problem_response(
            400, "invalid-request", "Invalid Request",
            "Request body is not a valid JSON object", {"resourceType": "OperationOutcome", "issue": issues},
        )

    app.include_router(router)
    logger.info("Conformance engine started", extra={"store": store.stats()})
    return app


app = create_app()
