from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .. import __version__
from ..config import Settings
from ..core.bundle import BundleValidator
from ..core.metrics import metrics as conformance_metrics
from ..core.package_loader import PackageLoader
from ..core.profile_validator import ProfileValidator
from ..core.references import DisallowedTargetError, ReferenceFormatError, resolve_reference
from ..core.schemas import (
    OperationOutcome,
    OperationOutcomeIssue,
    PackageLoadRequest,
    ProblemDetails,
    ReferenceResolveRequest,
)
from ..core.store import SchemaStore
from .deps import admin_auth, get_app_settings, get_bundle_validator, get_loader, get_store, get_validator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/healthz",
    tags=["health"],
    summary="Health Check",
    response_description="Service health status",
)
def healthz() -> dict:
    """Liveness check."""
    return {"status": "ok"}


@router.get(
    "/ready",
    tags=["health"],
    summary="Readiness Check",
    description="Ready once the schema store holds at least one artifact",
    responses={
        503: {
            "description": "Service is not ready",
            "content": {
                "application/json": {
                    "example": {"detail": {"status": "not ready", "reason": "Schema store is empty"}}
                }
            }
        }
    }
)
def ready(store: SchemaStore = Depends(get_store)) -> dict:
    if store.is_empty():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not ready", "reason": "Schema store is empty"}
        )
    return {"status": "ready", "store": store.stats()}


@router.get("/version", tags=["health"], summary="Service Version")
def version(settings: Settings = Depends(get_app_settings)) -> dict:
    return {"service": settings.SERVICE_NAME, "version": __version__}


@router.get(
    "/metrics",
    tags=["metrics"],
    summary="Prometheus Metrics",
    description="Validation, issue and package load counters in Prometheus text format",
)
def metrics() -> Response:
    data = generate_latest(conformance_metrics.registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@router.post(
    "/validate",
    tags=["validation"],
    summary="Validate a Resource",
    description="""
    **Validate one resource instance**

    The instance is validated against the base definition of its
    `resourceType`, every `profile` query parameter, and the profiles it
    declares in `meta.profile`.

    An invalid instance is still a `200` response; the returned
    OperationOutcome carries the issues. Unknown resource types are `422`
    problems.
    """,
    response_description="FHIR OperationOutcome",
)
def validate(
    resource: Dict[str, Any] = Body(...),
    profile: List[str] = Query(default=[]),
    validator: ProfileValidator = Depends(get_validator),
) -> dict:
    outcome = validator.validate(resource, profile_urls=profile or None)
    return outcome.to_operation_outcome()


@router.post(
    "/validate/bundle",
    tags=["validation"],
    summary="Validate a Bundle",
    description="Validates the Bundle, its entry rules and every member resource as one unit",
    response_description="FHIR OperationOutcome with entry-prefixed paths",
)
def validate_bundle(
    bundle: Dict[str, Any] = Body(...),
    validator: BundleValidator = Depends(get_bundle_validator),
) -> dict:
    outcome = validator.validate(bundle)
    return outcome.to_operation_outcome()


@router.post(
    "/references/resolve",
    tags=["validation"],
    summary="Parse a Reference",
    description="Parses a literal reference and checks it against the allowed target types",
)
def references_resolve(
    item: ReferenceResolveRequest,
    store: SchemaStore = Depends(get_store),
) -> dict:
    try:
        parsed = resolve_reference(item.reference, item.allowed_types)
    except (ReferenceFormatError, DisallowedTargetError) as e:
        problem = ProblemDetails(
            type="https://conformance-engine.dev/problems/invalid-reference",
            title="Invalid Reference",
            status=422,
            detail=str(e),
            operationOutcome=OperationOutcome(
                issue=[OperationOutcomeIssue(severity="error", code="value", diagnostics=str(e))]
            )
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=problem.model_dump(exclude_none=True),
        )
    result = parsed.model_dump()
    result["known_type"] = bool(parsed.resource_type and store.find_type(parsed.resource_type))
    return result


@router.post(
    "/admin/packages",
    tags=["administration"],
    summary="Load a Conformance Package",
    description="""
    **Load a conformance package into the schema store**

    `source` may be a directory, a `.tgz` archive, an http(s) URL or a
    registry id (`name` or `name#version`).
    Requires admin authentication via `X-Admin-Token` header.
    """,
    response_description="Package load summary",
)
def load_package(
    item: PackageLoadRequest,
    _: None = Depends(admin_auth),
    loader: PackageLoader = Depends(get_loader),
) -> dict:
    summary = loader.load(item.source)
    logger.info(f"Admin package load from {item.source}: {summary.loaded} artifact(s) loaded")
    return summary.model_dump()
