"""Manifest and state snapshot loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_SNAPSHOT_FILE_SIZE_BYTES
from .errors import ManifestLoadError, ManifestValidationError
from .models import Manifest, ProjectState, ResourceKind, parse_manifest

logger = logging.getLogger(__name__)

# Wrapper kind bundling several manifests under ``resources``
APPLY_DOCUMENT_KIND = "ApplyDocument"

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def _format_validation_error(source: str, e: ValidationError) -> list[str]:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"{source}: {loc}: {error['msg']}")
    return errors


def read_documents(path: Path, max_size: int = MAX_MANIFEST_FILE_SIZE_BYTES) -> list[Any]:
    """Read every YAML document in a file.

    Raises:
        ManifestLoadError: If the file is missing, too large or not YAML.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > max_size:
        raise ManifestLoadError(f"Manifest file exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        return [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e


def expand_paths(paths: Iterable[str | Path]) -> list[Path]:
    """Files named directly plus manifest files inside named directories."""
    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(
                sorted(p for p in path.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES)
            )
        else:
            files.append(path)
    return files


def _raw_manifests(documents: list[Any], source: Path) -> list[tuple[str, Any]]:
    """Flatten ApplyDocument wrappers into individual manifest documents."""
    raw: list[tuple[str, Any]] = []
    for index, document in enumerate(documents):
        label = f"{source}[{index}]"
        if isinstance(document, dict) and document.get("kind") == APPLY_DOCUMENT_KIND:
            resources = document.get("resources") or []
            if not isinstance(resources, list):
                raw.append((label, resources))
                continue
            raw.extend((f"{label}.resources[{i}]", item) for i, item in enumerate(resources))
        else:
            raw.append((label, document))
    return raw


def parse_documents(documents: list[Any], source: Path) -> tuple[list[Manifest], list[str]]:
    """Validate raw documents; returns manifests and error messages."""
    manifests: list[Manifest] = []
    errors: list[str] = []
    for label, document in _raw_manifests(documents, source):
        if not isinstance(document, dict):
            errors.append(f"{label}: manifest must be a mapping")
            continue
        try:
            manifests.append(parse_manifest(document))
        except ValidationError as e:
            errors.extend(_format_validation_error(label, e))
        except ValueError as e:
            errors.append(f"{label}: {e}")
    return manifests, errors


def validate_manifests(manifests: list[Manifest]) -> list[str]:
    """Cross-manifest checks: unique (kind, name) and resolvable dependsOn."""
    errors: list[str] = []
    seen: set[tuple[ResourceKind, str]] = set()
    names: set[str] = set()
    for manifest in manifests:
        key = (manifest.kind, manifest.name)
        if key in seen:
            errors.append(f"duplicate resource {manifest.kind.value}/{manifest.name}")
        seen.add(key)
        names.add(manifest.name)

    for manifest in manifests:
        for dep in manifest.dependencies:
            if dep not in names:
                errors.append(
                    f"{manifest.kind.value}/{manifest.name} depends on unknown resource '{dep}'"
                )
    return errors


def load_manifests(paths: Iterable[str | Path]) -> list[Manifest]:
    """Load and validate manifests from files and directories.

    Raises:
        ManifestLoadError: If a file cannot be read or parsed as YAML.
        ManifestValidationError: If any manifest is invalid, listing every
            problem found across all files.
    """
    manifests: list[Manifest] = []
    errors: list[str] = []
    for path in expand_paths(paths):
        parsed, parse_errors = parse_documents(read_documents(path), path)
        manifests.extend(parsed)
        errors.extend(parse_errors)
        logger.debug("Loaded manifest file", extra={"path": str(path), "manifests": len(parsed)})

    errors.extend(validate_manifests(manifests))
    if errors:
        raise ManifestValidationError(errors)

    logger.info("Loaded manifests", extra={"manifests": len(manifests)})
    return manifests


def load_project_state(paths: Iterable[str | Path]) -> ProjectState:
    """Assemble the desired ``ProjectState`` from manifest files."""
    return ProjectState.from_manifests(load_manifests(paths))


def load_state_snapshot(path: str | Path) -> ProjectState:
    """Load a current-state snapshot.

    A snapshot is either a serialized ``ProjectState`` (YAML or JSON) or a
    manifest file describing what currently exists.

    Raises:
        ManifestLoadError: If the snapshot cannot be read or is invalid.
    """
    snapshot_path = Path(path)
    documents = read_documents(snapshot_path, max_size=MAX_SNAPSHOT_FILE_SIZE_BYTES)
    if len(documents) == 1 and isinstance(documents[0], dict) and "kind" not in documents[0]:
        try:
            return ProjectState.model_validate(documents[0])
        except ValidationError as e:
            error_list = "\n".join(f"  - {m}" for m in _format_validation_error(str(snapshot_path), e))
            raise ManifestLoadError(f"Invalid state snapshot {snapshot_path}:\n{error_list}") from e

    manifests, errors = parse_documents(documents, snapshot_path)
    if errors:
        error_list = "\n".join(f"  - {m}" for m in errors)
        raise ManifestLoadError(f"Invalid state snapshot {snapshot_path}:\n{error_list}")
    return ProjectState.from_manifests(manifests)
