"""
Migration artifact discovery.

A migrations directory holds ``<version>_<description>.sql`` files and an
optional ``manifest.yaml`` classifying them::

    migrations:
      - file: 20250401500000_create_schema_version.sql
        transactional: false
        bootstrap: true
        description: Create schema_version table

Files the manifest does not list are transactional. Without a manifest, a
small fixed set of name markers identifies the special artifacts.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from tenantdb.core.errors import MigrationError
from tenantdb.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

MANIFEST_FILE = "manifest.yaml"

# marker -> bootstrap; used only when the directory has no manifest
SPECIAL_MARKERS = {
    "create_schema_version": True,
    "consolidated_schema_reset": False,
}

MANIFEST_ERROR = "MIGRATION_MANIFEST_ERROR"


@dataclass(frozen=True)
class MigrationArtifact:
    file: str
    path: Path
    version: str
    transactional: bool = True
    bootstrap: bool = False
    description: Optional[str] = None

    @property
    def special(self) -> bool:
        return not self.transactional

    @property
    def ledger_description(self) -> str:
        if self.description:
            return self.description
        prefix = "Special migration" if self.special else "Migration"
        return f"{prefix} from file {self.file}"

    def read_sql(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise MigrationError(
                f"Failed to read migration file: {e.strerror or e}",
                details={"file": self.file, "version": self.version, "originalError": str(e)},
            ) from e


def version_of(filename: str) -> str:
    """``001_init.sql`` -> ``001``; a name without ``_`` is its own version."""
    stem = filename[:-len(".sql")] if filename.endswith(".sql") else filename
    return stem.split("_", 1)[0]


def _is_artifact_file(path: Path) -> bool:
    return path.is_file() and path.name.endswith(".sql") and not path.name.endswith(".fixed.sql")


def _manifest_error(message: str, manifest: Path, **extra: Any) -> MigrationError:
    return MigrationError(message, code=MANIFEST_ERROR, details={"file": manifest.name, **extra})


def load_manifest(directory: Path) -> Optional[Dict[str, Dict[str, Any]]]:
    """Manifest entries keyed by file name, or None when there is no manifest."""
    manifest = directory / MANIFEST_FILE
    if not manifest.exists():
        return None
    try:
        with open(manifest, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise _manifest_error(f"Failed to read migration manifest: {e}", manifest, originalError=str(e)) from e

    entries = data.get("migrations") if isinstance(data, dict) else None
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise _manifest_error("Manifest 'migrations' must be a list", manifest)

    result: Dict[str, Dict[str, Any]] = {}
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict) or not isinstance(entry.get("file"), str):
            raise _manifest_error(f"Manifest entry {index} must be a mapping with a 'file' key", manifest)
        name = entry["file"]
        if name in result:
            raise _manifest_error(f"Manifest lists {name} more than once", manifest, entry=name)
        if not (directory / name).is_file():
            raise _manifest_error(f"Manifest entry {name} does not exist", manifest, entry=name)
        for flag in ("transactional", "bootstrap"):
            if flag in entry and not isinstance(entry[flag], bool):
                raise _manifest_error(f"Manifest entry {name}: '{flag}' must be true or false", manifest, entry=name)
        result[name] = entry
    return result


def _classify_by_marker(filename: str) -> Dict[str, Any]:
    for marker, bootstrap in SPECIAL_MARKERS.items():
        if marker in filename:
            return {"transactional": False, "bootstrap": bootstrap}
    return {"transactional": True, "bootstrap": False}


def discover_artifacts(directory: Union[str, Path]) -> List[MigrationArtifact]:
    """
    List the artifacts in ``directory`` sorted by file name.

    ``*.fixed.sql`` files are ignored. Raises ``MigrationError`` when the
    directory is missing or its manifest is invalid.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise MigrationError(
            f"Migrations directory not found: {directory}",
            details={"file": str(directory)},
        )

    manifest = load_manifest(directory)
    artifacts: List[MigrationArtifact] = []
    for path in sorted((p for p in directory.iterdir() if _is_artifact_file(p)), key=lambda p: p.name):
        if manifest is None:
            flags = _classify_by_marker(path.name)
            description = None
        else:
            entry = manifest.get(path.name, {})
            flags = {
                "transactional": entry.get("transactional", True),
                "bootstrap": entry.get("bootstrap", False),
            }
            description = entry.get("description")
        if flags["bootstrap"] and flags["transactional"]:
            logger.warning(f"Bootstrap migration {path.name} is marked transactional; running it as special")
            flags["transactional"] = False
        artifacts.append(
            MigrationArtifact(
                file=path.name,
                path=path,
                version=version_of(path.name),
                description=description,
                **flags,
            )
        )

    seen: Dict[str, str] = {}
    for artifact in artifacts:
        if artifact.version in seen:
            logger.warning(
                f"Migrations {seen[artifact.version]} and {artifact.file} share version {artifact.version}; "
                f"the later file is skipped once the version is applied"
            )
        else:
            seen[artifact.version] = artifact.file

    logger.info(
        f"Found {len(artifacts)} migration files in {directory} "
        f"({sum(1 for a in artifacts if a.special)} special)"
    )
    return artifacts
