"""
Package Loader.

Reads a conformance package (directory, .tgz archive, URL or registry id),
validates its manifest and feeds its StructureDefinitions, ValueSets and
CodeSystems into a SchemaStore. A corrupt manifest aborts the load; a bad
artifact is recorded on the summary and the rest of the package still loads.
"""

from __future__ import annotations

import io
import json
import logging
import re
import tarfile
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx
import yaml
from jsonschema import Draft202012Validator
from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from ..config import Settings, get_settings
from .definitions import ARTIFACT_MODELS, parse_artifact
from .errors import ConformanceErrorCode, create_package_error
from .metrics import metrics
from .store import SchemaStore, version_key

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"
MANIFEST_SCHEMA_PATH = Path(__file__).parent.parent / "specs" / "package-manifest.schema.json"
ARTIFACT_SUFFIXES = (".json", ".yaml", ".yml")
SKIPPED_FILES = {MANIFEST_NAME, ".index.json"}

_REGISTRY_ID = re.compile(r"^(?P<name>[A-Za-z0-9][A-Za-z0-9._\-]*)(?:[#@](?P<version>[A-Za-z0-9._+\-]+))?$")

RawArtifact = Tuple[str, Callable[[], bytes]]


class ArtifactFailure(BaseModel):
    artifact: str
    reason: str


class LoadSummary(BaseModel):
    """Result of one ``PackageLoader.load`` call."""
    package: str
    version: str
    source: str
    loaded: int = 0
    skipped: int = 0
    ignored: int = 0
    failures: List[ArtifactFailure] = Field(default_factory=list)
    already_loaded: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def key(self) -> str:
        return f"{self.package}#{self.version}"


class PackageLoader:
    """Loads conformance packages into a SchemaStore and remembers what it loaded."""

    def __init__(
        self,
        store: SchemaStore,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._transport = transport
        self._manifest_validator: Optional[Draft202012Validator] = None
        self.loaded_packages: Dict[str, LoadSummary] = {}

    # -- entry point --------------------------------------------------------

    def load(self, source: str) -> LoadSummary:
        path = Path(source)
        if path.is_dir():
            return self._load_directory(path, source)
        if path.is_file():
            return self._load_archive(path.read_bytes(), source)
        if source.startswith(("http://", "https://")):
            return self._load_archive(self._download(source, source), source)
        match = _REGISTRY_ID.match(source)
        if match and path.suffix.lower() not in (".tgz", ".gz"):
            return self._load_from_registry(match.group("name"), match.group("version"), source)
        raise create_package_error(
            ConformanceErrorCode.PACK_SOURCE_NOT_FOUND,
            f"Package source not found: {source}",
            source=source,
        )

    # -- sources ------------------------------------------------------------

    def _load_directory(self, root: Path, source: str) -> LoadSummary:
        if (root / "package").is_dir():
            root = root / "package"
        manifest_path = root / MANIFEST_NAME
        if not manifest_path.is_file():
            raise create_package_error(
                ConformanceErrorCode.PACK_MANIFEST_MISSING,
                f"No {MANIFEST_NAME} in {root}",
                source=source,
            )
        files = sorted(
            p for p in root.iterdir()
            if p.is_file() and p.suffix.lower() in ARTIFACT_SUFFIXES and p.name not in SKIPPED_FILES
        )
        artifacts: List[RawArtifact] = [(p.name, p.read_bytes) for p in files]
        return self._ingest(manifest_path.read_bytes(), artifacts, source)

    def _load_archive(self, data: bytes, source: str) -> LoadSummary:
        try:
            archive = tarfile.open(fileobj=io.BytesIO(data), mode="r:gz")
        except (tarfile.TarError, OSError) as e:
            raise create_package_error(
                ConformanceErrorCode.PACK_ARCHIVE_CORRUPT,
                f"Cannot open package archive: {source}",
                source=source,
                details=str(e),
                cause=e,
            )
        with archive:
            manifest: Optional[bytes] = None
            contents: Dict[str, bytes] = {}
            try:
                for member in archive.getmembers():
                    if not member.isfile():
                        continue
                    member_path = PurePosixPath(member.name)
                    parts = member_path.parts
                    if len(parts) != 2 or parts[0] != "package":
                        continue
                    fileobj = archive.extractfile(member)
                    if fileobj is None:
                        continue
                    if member_path.name == MANIFEST_NAME:
                        manifest = fileobj.read()
                    elif member_path.suffix.lower() == ".json" and member_path.name not in SKIPPED_FILES:
                        contents[member_path.name] = fileobj.read()
            except (tarfile.TarError, OSError) as e:
                raise create_package_error(
                    ConformanceErrorCode.PACK_ARCHIVE_CORRUPT,
                    f"Corrupt package archive: {source}",
                    source=source,
                    details=str(e),
                    cause=e,
                )
        if manifest is None:
            raise create_package_error(
                ConformanceErrorCode.PACK_MANIFEST_MISSING,
                f"No package/{MANIFEST_NAME} in archive {source}",
                source=source,
            )
        artifacts: List[RawArtifact] = [
            (name, (lambda blob=contents[name]: blob)) for name in sorted(contents)
        ]
        return self._ingest(manifest, artifacts, source)

    def _load_from_registry(self, name: str, version: Optional[str], source: str) -> LoadSummary:
        registry = self.settings.PACKAGE_REGISTRY_URL.rstrip("/")
        if not version:
            version = self._latest_version(registry, name, source)
        key = f"{name}#{version}"
        if key in self.loaded_packages:
            return self._already_loaded(key)

        cache_dir = self.settings.package_cache_dir()
        cached = cache_dir / f"{key}.tgz" if cache_dir else None
        if cached is not None and cached.is_file():
            logger.info(f"Using cached package {key}", extra={"path": str(cached)})
            return self._load_archive(cached.read_bytes(), source)

        data = self._download(f"{registry}/{name}/{version}", source)
        if cached is not None:
            cached.parent.mkdir(parents=True, exist_ok=True)
            cached.write_bytes(data)
        return self._load_archive(data, source)

    def _latest_version(self, registry: str, name: str, source: str) -> str:
        try:
            metadata = json.loads(self._download(f"{registry}/{name}", source))
        except json.JSONDecodeError as e:
            raise create_package_error(
                ConformanceErrorCode.PACK_DOWNLOAD_FAILED,
                f"Registry returned unreadable metadata for {name}",
                source=source,
                details=str(e),
                cause=e,
            )
        latest = (metadata.get("dist-tags") or {}).get("latest")
        if latest:
            return latest
        versions = list((metadata.get("versions") or {}).keys())
        if not versions:
            raise create_package_error(
                ConformanceErrorCode.PACK_VERSION_NOT_FOUND,
                f"No versions published for package {name}",
                source=source,
            )
        return max(versions, key=version_key)

    def _download(self, url: str, source: str) -> bytes:
        try:
            with httpx.Client(
                timeout=self.settings.HTTP_TIMEOUT,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise create_package_error(
                ConformanceErrorCode.PACK_DOWNLOAD_FAILED,
                f"Failed to download {url}",
                source=source,
                details=str(e),
                cause=e,
            )

    # -- manifest and artifacts ---------------------------------------------

    def _validate_manifest(self, raw: bytes, source: str) -> Dict[str, Any]:
        try:
            manifest = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise create_package_error(
                ConformanceErrorCode.PACK_MANIFEST_INVALID,
                f"Manifest is not valid JSON in {source}",
                source=source,
                details=str(e),
                cause=e,
            )
        if self._manifest_validator is None:
            with MANIFEST_SCHEMA_PATH.open("r", encoding="utf-8") as f:
                self._manifest_validator = Draft202012Validator(json.load(f))
        errors = sorted(self._manifest_validator.iter_errors(manifest), key=lambda e: list(e.path))
        if errors:
            msgs = [f"{list(e.path)}: {e.message}" for e in errors]
            raise create_package_error(
                ConformanceErrorCode.PACK_MANIFEST_INVALID,
                f"Manifest validation failed for {source}",
                source=source,
                details="; ".join(msgs),
            )
        return manifest

    def _already_loaded(self, key: str) -> LoadSummary:
        logger.info(f"Package {key} already loaded")
        return self.loaded_packages[key].model_copy(update={"already_loaded": True})

    def _ingest(self, manifest_raw: bytes, artifacts: Iterable[RawArtifact], source: str) -> LoadSummary:
        manifest = self._validate_manifest(manifest_raw, source)
        key = f"{manifest['name']}#{manifest['version']}"
        if key in self.loaded_packages:
            return self._already_loaded(key)

        summary = LoadSummary(package=manifest["name"], version=manifest["version"], source=source)
        for name, read in artifacts:
            self._ingest_artifact(name, read, summary)

        self.loaded_packages[key] = summary
        metrics.record_package_load(summary)
        logger.info(
            "Package loaded",
            extra={
                "package": key,
                "source": source,
                "loaded": summary.loaded,
                "skipped": summary.skipped,
                "ignored": summary.ignored,
                "failed": summary.failed,
            },
        )
        return summary

    def _ingest_artifact(self, name: str, read: Callable[[], bytes], summary: LoadSummary) -> None:
        try:
            text = read().decode("utf-8")
            if name.lower().endswith((".yaml", ".yml")):
                raw = yaml.safe_load(text)
            else:
                raw = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError, OSError) as e:
            summary.failures.append(ArtifactFailure(artifact=name, reason=f"Unreadable artifact: {e}"))
            return

        if not isinstance(raw, dict):
            summary.failures.append(ArtifactFailure(artifact=name, reason="Artifact is not a JSON object"))
            return
        if raw.get("resourceType") not in ARTIFACT_MODELS:
            summary.ignored += 1
            return
        url = raw.get("url")
        if not isinstance(url, str) or not url:
            summary.failures.append(ArtifactFailure(artifact=name, reason="Missing canonical url"))
            return

        version = raw.get("version")
        if self.store.has(ARTIFACT_MODELS[raw["resourceType"]], url, version):
            summary.skipped += 1
            return
        try:
            artifact = parse_artifact(raw)
        except ModelValidationError as e:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()[:5]
            )
            summary.failures.append(ArtifactFailure(artifact=name, reason=f"Invalid {raw['resourceType']}: {reasons}"))
            return
        self.store.put(artifact)
        summary.loaded += 1
