"""
In-memory Schema Store.

Indexes StructureDefinitions, ValueSets and CodeSystems by canonical url and
version. Resolution prefers an exact version, then the highest version.
Readers take no lock; writes are serialized.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type, TypeVar

from ..config import Settings, get_settings
from .definitions import Artifact, CodeSystem, StructureDefinition, ValueSet
from .errors import (
    ConfigurationError,
    ConformanceErrorCode,
    ConformanceErrorDetail,
    ErrorSeverity,
    create_not_found_error,
)

logger = logging.getLogger(__name__)

DEFAULT_SPECS_PATH = Path(__file__).parent.parent / "specs" / "defaults"

T = TypeVar("T", StructureDefinition, ValueSet, CodeSystem)

_NOT_FOUND_CODES = {
    StructureDefinition: ConformanceErrorCode.STORE_SCHEMA_NOT_FOUND,
    ValueSet: ConformanceErrorCode.STORE_VALUE_SET_NOT_FOUND,
    CodeSystem: ConformanceErrorCode.STORE_CODE_SYSTEM_NOT_FOUND,
}


def split_canonical(url: str, version: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """``http://x/SD/p|1.0`` -> (``http://x/SD/p``, ``1.0``); an explicit version wins."""
    if "|" in url:
        url, embedded = url.split("|", 1)
        version = version or embedded or None
    return url, version


def version_key(version: Optional[str]) -> Tuple:
    """Sort key for loosely semantic versions; releases rank above pre-releases."""
    if not version:
        return (0, ())
    release, _, prerelease = version.partition("-")
    numbers = []
    for part in release.split("."):
        match = re.match(r"\d+", part)
        numbers.append(int(match.group()) if match else 0)
    return (1, tuple(numbers), 0 if prerelease else 1, prerelease)


class SchemaStore:
    """Canonical-url keyed index of conformance artifacts."""

    def __init__(self) -> None:
        self._artifacts: Dict[type, Dict[str, Dict[Optional[str], Artifact]]] = {
            StructureDefinition: {},
            ValueSet: {},
            CodeSystem: {},
        }
        self._base_types: Dict[str, str] = {}
        self._profiles: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    # -- writes -----------------------------------------------------------

    def put(self, artifact: Artifact) -> None:
        kind = type(artifact)
        if kind not in self._artifacts:
            raise ConfigurationError(ConformanceErrorDetail(
                code=ConformanceErrorCode.STORE_UNSUPPORTED_ARTIFACT,
                severity=ErrorSeverity.ERROR,
                message=f"Unsupported artifact type: {kind.__name__}"
            ))
        with self._lock:
            versions = dict(self._artifacts[kind].get(artifact.url, {}))
            versions[artifact.version] = artifact
            self._artifacts[kind][artifact.url] = versions
            if isinstance(artifact, StructureDefinition):
                self._index_definition(artifact)
        logger.debug(f"Stored {kind.__name__} {artifact.url}|{artifact.version}")

    def _index_definition(self, definition: StructureDefinition) -> None:
        if definition.is_constraint:
            profiles = self._profiles.setdefault(definition.type, [])
            if definition.url not in profiles:
                profiles.append(definition.url)
        elif definition.kind != "logical":
            self._base_types[definition.type] = definition.url

    def clear(self) -> None:
        with self._lock:
            for index in self._artifacts.values():
                index.clear()
            self._base_types.clear()
            self._profiles.clear()

    # -- reads ------------------------------------------------------------

    def contains(self, url: str, version: Optional[str] = None) -> bool:
        url, version = split_canonical(url, version)
        for index in self._artifacts.values():
            versions = index.get(url)
            if versions and (version is None or version in versions):
                return True
        return False

    def has(self, kind: Type[Artifact], url: str, version: Optional[str] = None) -> bool:
        """Exact match on kind, url and version; None is its own version."""
        return version in self._artifacts.get(kind, {}).get(url, {})

    def _find(self, kind: Type[T], url: str, version: Optional[str]) -> Optional[T]:
        url, version = split_canonical(url, version)
        versions = self._artifacts[kind].get(url)
        if not versions:
            return None
        if version is not None and version in versions:
            return versions[version]
        best = max(versions, key=version_key)
        return versions[best]

    def _resolve(self, kind: Type[T], url: str, version: Optional[str]) -> T:
        found = self._find(kind, url, version)
        if found is None:
            raise create_not_found_error(
                _NOT_FOUND_CODES[kind],
                f"{kind.__name__} not found: {url}" + (f"|{version}" if version else ""),
                url=url,
                version=version,
            )
        return found

    def find(self, url: str, version: Optional[str] = None) -> Optional[StructureDefinition]:
        return self._find(StructureDefinition, url, version)

    def find_value_set(self, url: str, version: Optional[str] = None) -> Optional[ValueSet]:
        return self._find(ValueSet, url, version)

    def find_code_system(self, url: str, version: Optional[str] = None) -> Optional[CodeSystem]:
        return self._find(CodeSystem, url, version)

    def resolve(self, url: str, version: Optional[str] = None) -> StructureDefinition:
        return self._resolve(StructureDefinition, url, version)

    def resolve_value_set(self, url: str, version: Optional[str] = None) -> ValueSet:
        return self._resolve(ValueSet, url, version)

    def resolve_code_system(self, url: str, version: Optional[str] = None) -> CodeSystem:
        return self._resolve(CodeSystem, url, version)

    def find_type(self, type_name: str) -> Optional[StructureDefinition]:
        url = self._base_types.get(type_name)
        if url is None:
            return None
        return self.find(url)

    def resolve_type(self, type_name: str) -> StructureDefinition:
        """Base (non-constraint) definition for a resource or datatype name."""
        found = self.find_type(type_name)
        if found is None:
            raise create_not_found_error(
                ConformanceErrorCode.STORE_SCHEMA_NOT_FOUND,
                f"No base StructureDefinition for type '{type_name}'",
                url=type_name,
            )
        return found

    def profiles_for(self, type_name: str) -> List[str]:
        return list(self._profiles.get(type_name, []))

    def stats(self) -> Dict[str, int]:
        return {
            "structure_definitions": sum(len(v) for v in self._artifacts[StructureDefinition].values()),
            "value_sets": sum(len(v) for v in self._artifacts[ValueSet].values()),
            "code_systems": sum(len(v) for v in self._artifacts[CodeSystem].values()),
        }

    def is_empty(self) -> bool:
        return not any(self.stats().values())


def initialize_default_store(settings: Optional[Settings] = None) -> Tuple[SchemaStore, "PackageLoader"]:
    """
    Build a fresh store holding the bundled defaults plus configured preloads.

    Returns the store and the loader that filled it so callers can keep
    loading packages into the same store.
    """
    from .package_loader import PackageLoader

    settings = settings or get_settings()
    store = SchemaStore()
    loader = PackageLoader(store, settings=settings)
    if settings.LOAD_DEFAULT_SPECS:
        loader.load(str(DEFAULT_SPECS_PATH))
    for source in settings.preload_packages():
        loader.load(source)
    logger.info("Schema store initialized", extra={"stats": store.stats()})
    return store, loader
