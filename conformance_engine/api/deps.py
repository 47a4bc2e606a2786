from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from ..config import Settings, get_settings
from ..core.bundle import BundleValidator
from ..core.package_loader import PackageLoader
from ..core.profile_validator import ProfileValidator
from ..core.store import SchemaStore


def admin_auth(request: Request, x_admin_token: str | None = Header(default=None)) -> None:
    """Require the configured admin token in the ``X-Admin-Token`` header."""
    settings = get_app_settings(request)
    if not settings.ADMIN_TOKEN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin functions disabled")
    if x_admin_token != settings.ADMIN_TOKEN:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def get_app_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()


def get_store(request: Request) -> SchemaStore:
    return request.app.state.store


def get_loader(request: Request) -> PackageLoader:
    return request.app.state.loader


def get_validator(request: Request) -> ProfileValidator:
    return request.app.state.validator


def get_bundle_validator(request: Request) -> BundleValidator:
    return request.app.state.bundle_validator
