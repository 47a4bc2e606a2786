from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


ValidationLevelName = Literal["structural", "constraints", "terminology", "full"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="")

    SERVICE_NAME: str = "conformance-engine"
    LOG_LEVEL: str = "INFO"
    ADMIN_TOKEN: Optional[str] = None

    # Schema store bootstrap
    LOAD_DEFAULT_SPECS: bool = True
    PRELOAD_PACKAGES: str = ""

    # Package retrieval
    PACKAGE_REGISTRY_URL: str = "https://packages.fhir.org"
    PACKAGE_CACHE_DIR: Optional[str] = None
    HTTP_TIMEOUT: float = 30.0

    # Validation defaults
    VALIDATION_LEVEL: ValidationLevelName = "full"
    INCLUDE_WARNINGS: bool = True
    VALIDATE_MUST_SUPPORT: bool = False
    SKIPPED_INVARIANTS: str = "ele-1,txt-1,txt-2"

    def preload_packages(self) -> List[str]:
        return [s.strip() for s in self.PRELOAD_PACKAGES.split(",") if s.strip()]

    def skipped_invariants(self) -> List[str]:
        return [s.strip() for s in self.SKIPPED_INVARIANTS.split(",") if s.strip()]

    def package_cache_dir(self) -> Optional[Path]:
        if not self.PACKAGE_CACHE_DIR:
            return None
        return Path(self.PACKAGE_CACHE_DIR)


def get_settings() -> Settings:
    return Settings()
