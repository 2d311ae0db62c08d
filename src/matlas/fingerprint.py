"""Stable content fingerprints for resources and project states.

A fingerprint is the lowercase SHA-256 hex digest of a canonical JSON
serialization: keys sorted at every level, no insignificant whitespace,
volatile metadata fields removed. Equal canonical forms always produce
equal fingerprints regardless of mapping iteration order.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from .config import DEFAULT_IGNORE_METADATA_FIELDS
from .models import ProjectState, ResourceKind


def to_plain(value: Any) -> Any:
    """Convert models, dataclasses and enums into JSON-compatible values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        to_dict = getattr(value, "to_dict", None)
        if callable(to_dict):
            return to_plain(to_dict())
        return to_plain(dataclasses.asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        items = [to_plain(v) for v in value]
        if isinstance(value, set | frozenset):
            items.sort(key=canonical_json)
        return items
    return value


def canonical_json(value: Any) -> str:
    """Serialize to the canonical byte-stable form."""
    return json.dumps(
        to_plain(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def _strip_fields(value: Any, ignored: frozenset[str]) -> Any:
    if isinstance(value, dict):
        return {k: _strip_fields(v, ignored) for k, v in value.items() if k not in ignored}
    if isinstance(value, list):
        return [_strip_fields(v, ignored) for v in value]
    return value


def drop_path(document: dict[str, Any], path: str) -> None:
    """Remove a dotted path from a nested document, in place."""
    parts = path.split(".")
    node: Any = document
    for part in parts[:-1]:
        if not isinstance(node, dict) or part not in node:
            return
        node = node[part]
    if isinstance(node, dict):
        node.pop(parts[-1], None)


def _select_paths(document: dict[str, Any], paths: Iterable[str]) -> dict[str, Any]:
    selected: dict[str, Any] = {}
    for path in paths:
        parts = path.split(".")
        node: Any = document
        found = True
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                found = False
                break
            node = node[part]
        if not found:
            continue
        target = selected
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = node
    return selected


class FingerprintEngine:
    """Computes deterministic fingerprints with configurable field masks.

    Args:
        ignore_fields: Field names removed at any depth before hashing.
        include_fields: If non-empty, only these (dotted) paths are hashed.
        kind_masks: Extra dotted paths removed per resource kind.
    """

    def __init__(
        self,
        ignore_fields: Iterable[str] = DEFAULT_IGNORE_METADATA_FIELDS,
        include_fields: Iterable[str] = (),
        kind_masks: Mapping[ResourceKind, Iterable[str]] | None = None,
    ) -> None:
        self._ignore = frozenset(ignore_fields)
        self._include = tuple(include_fields)
        self._kind_masks = {k: tuple(v) for k, v in (kind_masks or {}).items()}

    def canonical_form(self, resource: Any, kind: ResourceKind | None = None) -> str:
        """Return the masked canonical serialization that gets hashed."""
        plain = to_plain(resource)
        if isinstance(plain, dict):
            if self._include:
                plain = _select_paths(plain, self._include)
            for path in self._kind_masks.get(kind, ()) if kind is not None else ():
                drop_path(plain, path)
        plain = _strip_fields(plain, self._ignore)
        return canonical_json(plain)

    def compute(self, resource: Any, kind: ResourceKind | None = None) -> str:
        """Compute the fingerprint of a resource."""
        return hashlib.sha256(self.canonical_form(resource, kind).encode("utf-8")).hexdigest()


def compute_fingerprint(resource: Any, kind: ResourceKind | None = None) -> str:
    """Fingerprint with the default ignore list."""
    return FingerprintEngine().compute(resource, kind)


def state_fingerprint(state: ProjectState) -> str:
    """Fingerprint a project state, excluding its timestamp and prior fingerprint."""
    document = state.to_document()
    document.pop("discoveredAt", None)
    document.pop("fingerprint", None)
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()
