"""Resource service contract and the per-kind handler registry.

The engine never talks HTTP itself. Each resource kind is backed by a
``ResourceService`` (the control-plane client, or a fake in tests) and
the executor dispatches through a typed registry of ``HandlerBundle``
objects instead of open-coded type switches.

Kind traits (how a live resource is identified, which fields are
excluded from equality) live here too so the diff engine and the
executor agree on them.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from .config import ROLE_CONNECTION_STRING_ANNOTATION, ROLE_CONNECTION_STRING_ENV
from .errors import ServiceUnavailableError, UnsupportedOperationError
from .models import (
    AlertManifest,
    DatabaseRoleManifest,
    DatabaseUserManifest,
    Manifest,
    NetworkAccessManifest,
    OperationType,
    ProjectManifest,
    ResourceKind,
    SearchIndexManifest,
    VPCEndpointManifest,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ResourceService(Protocol):
    """Typed CRUD surface for one resource kind."""

    async def create(self, project_id: str, manifest: Manifest, **options: Any) -> dict[str, Any]:
        ...

    async def update(
        self, project_id: str, identifier: str, manifest: Manifest, **options: Any
    ) -> dict[str, Any]:
        ...

    async def delete(self, project_id: str, identifier: str, **options: Any) -> None:
        ...

    async def list(self, project_id: str) -> list[Manifest]:
        ...

    async def get(self, project_id: str, identifier: str) -> Manifest:
        ...


# =============================================================================
# Kind traits
# =============================================================================


M = TypeVar("M", bound=Manifest)


def _expect(manifest: Manifest, cls: type[M]) -> M:
    if not isinstance(manifest, cls):
        raise TypeError(f"expected {cls.__name__}, got {type(manifest).__name__}")
    return manifest


def _by_name(manifest: Manifest) -> str:
    return manifest.name


def _user_identifier(manifest: Manifest) -> str:
    spec = _expect(manifest, DatabaseUserManifest).spec
    return f"{spec.auth_database or 'admin'}/{spec.username}"


def _role_identifier(manifest: Manifest) -> str:
    spec = _expect(manifest, DatabaseRoleManifest).spec
    return f"{spec.database_name}/{spec.role_name}"


def _network_identifier(manifest: Manifest) -> str:
    return _expect(manifest, NetworkAccessManifest).spec.address


def _search_index_identifier(manifest: Manifest) -> str:
    spec = _expect(manifest, SearchIndexManifest).spec
    return f"{spec.cluster_name}/{spec.database_name}/{spec.collection_name}/{spec.index_name}"


def _vpc_identifier(manifest: Manifest) -> str:
    return _expect(manifest, VPCEndpointManifest).spec.endpoint_id or manifest.name


def _alert_identifier(manifest: Manifest) -> str:
    return _expect(manifest, AlertManifest).spec.alert_id


def _project_identifier(manifest: Manifest) -> str:
    return _expect(manifest, ProjectManifest).spec.name


# Paths never compared by the diff engine for any kind
COMMON_COMPARISON_MASK = frozenset(
    {
        "apiVersion",
        "status",
        "metadata.annotations",
        "metadata.deletionPolicy",
        "metadata.dependsOn",
        "spec.dependsOn",
        "spec.projectName",
    }
)


@dataclass(frozen=True)
class KindTraits:
    """Static facts about a resource kind."""

    kind: ResourceKind
    identifier: Callable[[Manifest], str] = _by_name
    # Extra dotted paths excluded from equality (still fingerprinted)
    comparison_mask: frozenset[str] = frozenset()
    # Backend disallows in-place updates; diff expands Update to Delete+Create
    replace_on_update: bool = False
    # Read-only analysis kinds: never deleted, re-run instead of updated
    analysis_only: bool = False

    @property
    def full_mask(self) -> frozenset[str]:
        return COMMON_COMPARISON_MASK | self.comparison_mask


KIND_TRAITS: dict[ResourceKind, KindTraits] = {
    ResourceKind.PROJECT: KindTraits(ResourceKind.PROJECT, identifier=_project_identifier),
    ResourceKind.CLUSTER: KindTraits(ResourceKind.CLUSTER),
    ResourceKind.DATABASE_USER: KindTraits(
        ResourceKind.DATABASE_USER,
        identifier=_user_identifier,
        comparison_mask=frozenset({"spec.password"}),
    ),
    ResourceKind.DATABASE_ROLE: KindTraits(ResourceKind.DATABASE_ROLE, identifier=_role_identifier),
    ResourceKind.NETWORK_ACCESS: KindTraits(
        ResourceKind.NETWORK_ACCESS,
        identifier=_network_identifier,
        replace_on_update=True,
    ),
    ResourceKind.SEARCH_INDEX: KindTraits(
        ResourceKind.SEARCH_INDEX, identifier=_search_index_identifier
    ),
    ResourceKind.SEARCH_METRICS: KindTraits(ResourceKind.SEARCH_METRICS, analysis_only=True),
    ResourceKind.SEARCH_OPTIMIZATION: KindTraits(
        ResourceKind.SEARCH_OPTIMIZATION, analysis_only=True
    ),
    ResourceKind.SEARCH_QUERY_VALIDATION: KindTraits(
        ResourceKind.SEARCH_QUERY_VALIDATION, analysis_only=True
    ),
    ResourceKind.VPC_ENDPOINT: KindTraits(ResourceKind.VPC_ENDPOINT, identifier=_vpc_identifier),
    ResourceKind.ALERT_CONFIGURATION: KindTraits(ResourceKind.ALERT_CONFIGURATION),
    ResourceKind.ALERT: KindTraits(ResourceKind.ALERT, identifier=_alert_identifier),
}


def traits_for(kind: ResourceKind) -> KindTraits:
    return KIND_TRAITS[kind]


def resource_identifier(manifest: Manifest) -> str:
    """Backend identifier of a manifest's resource."""
    return KIND_TRAITS[manifest.kind].identifier(manifest)


# =============================================================================
# Handler registry
# =============================================================================

Handler = Callable[[str, Manifest], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class HandlerBundle:
    """Create/update/delete callables for one kind.

    Each handler receives ``(project_id, manifest)``; delete handlers get
    the current manifest and derive the identifier from it. Handlers
    return result metadata (assigned id, notes).
    """

    kind: ResourceKind
    traits: KindTraits
    create: Handler | None = None
    update: Handler | None = None
    delete: Handler | None = None

    def handler_for(self, operation_type: OperationType) -> Handler:
        handler = {
            OperationType.CREATE: self.create,
            OperationType.UPDATE: self.update,
            OperationType.DELETE: self.delete,
        }.get(operation_type)
        if handler is None:
            raise UnsupportedOperationError(
                f"unsupported operation {operation_type.value} for resource kind {self.kind.value}"
            )
        return handler


def resolve_role_connection_string(manifest: Manifest) -> str:
    """Find the database connection string for custom role DDL.

    Precedence: the resource annotation, then the environment variable.

    Raises:
        ValueError: If neither source provides a value.
    """
    annotated = manifest.metadata.annotations.get(ROLE_CONNECTION_STRING_ANNOTATION, "")
    if annotated.strip():
        return annotated
    from_env = os.environ.get(ROLE_CONNECTION_STRING_ENV, "")
    if from_env.strip():
        return from_env
    raise ValueError(
        "connection string not provided for DatabaseRole operation. Set "
        f"metadata.annotations['{ROLE_CONNECTION_STRING_ANNOTATION}'] or "
        f"{ROLE_CONNECTION_STRING_ENV}"
    )


@dataclass
class ServiceRegistry:
    """Resource services keyed by kind."""

    services: dict[ResourceKind, ResourceService] = field(default_factory=dict)

    def register(self, kind: ResourceKind, service: ResourceService) -> None:
        self.services[kind] = service

    def get(self, kind: ResourceKind) -> ResourceService:
        service = self.services.get(kind)
        if service is None:
            raise ServiceUnavailableError(f"{kind.value} service not available")
        return service

    def has(self, kind: ResourceKind) -> bool:
        return kind in self.services


def _standard_bundle(registry: ServiceRegistry, traits: KindTraits) -> HandlerBundle:
    kind = traits.kind

    async def create(project_id: str, manifest: Manifest) -> dict[str, Any]:
        result = await registry.get(kind).create(project_id, manifest)
        return {"resourceId": result.get("id", traits.identifier(manifest)), **result}

    async def update(project_id: str, manifest: Manifest) -> dict[str, Any]:
        identifier = traits.identifier(manifest)
        result = await registry.get(kind).update(project_id, identifier, manifest)
        return {"resourceId": result.get("id", identifier), **result}

    async def delete(project_id: str, manifest: Manifest) -> dict[str, Any]:
        identifier = traits.identifier(manifest)
        await registry.get(kind).delete(project_id, identifier)
        return {"resourceId": identifier}

    return HandlerBundle(kind=kind, traits=traits, create=create, update=update, delete=delete)


def _role_bundle(registry: ServiceRegistry, traits: KindTraits) -> HandlerBundle:
    kind = traits.kind

    async def create(project_id: str, manifest: Manifest) -> dict[str, Any]:
        connection_string = resolve_role_connection_string(manifest)
        result = await registry.get(kind).create(
            project_id, manifest, connection_string=connection_string
        )
        return {"resourceId": traits.identifier(manifest), **result}

    async def update(project_id: str, manifest: Manifest) -> dict[str, Any]:
        connection_string = resolve_role_connection_string(manifest)
        identifier = traits.identifier(manifest)
        result = await registry.get(kind).update(
            project_id, identifier, manifest, connection_string=connection_string
        )
        return {"resourceId": identifier, **result}

    async def delete(project_id: str, manifest: Manifest) -> dict[str, Any]:
        connection_string = resolve_role_connection_string(manifest)
        identifier = traits.identifier(manifest)
        await registry.get(kind).delete(project_id, identifier, connection_string=connection_string)
        return {"resourceId": identifier}

    return HandlerBundle(kind=kind, traits=traits, create=create, update=update, delete=delete)


def _project_bundle(registry: ServiceRegistry, traits: KindTraits) -> HandlerBundle:
    standard = _standard_bundle(registry, traits)

    async def delete(project_id: str, manifest: Manifest) -> dict[str, Any]:
        logger.info(
            "Skipping project deletion",
            extra={"project_id": project_id, "resource_name": manifest.name},
        )
        return {
            "operation": "skipProjectDelete",
            "resourceName": manifest.name,
            "reason": "project deletion is managed separately",
        }

    return HandlerBundle(
        kind=traits.kind,
        traits=traits,
        create=standard.create,
        update=standard.update,
        delete=delete,
    )


def _analysis_bundle(registry: ServiceRegistry, traits: KindTraits) -> HandlerBundle:
    kind = traits.kind

    async def run(project_id: str, manifest: Manifest) -> dict[str, Any]:
        result = await registry.get(kind).create(project_id, manifest)
        return {"resourceId": traits.identifier(manifest), "analysis": result}

    async def delete(project_id: str, manifest: Manifest) -> dict[str, Any]:
        return {"note": f"{kind.value} is read-only; nothing to delete"}

    return HandlerBundle(kind=kind, traits=traits, create=run, update=run, delete=delete)


def build_handler_registry(
    registry: ServiceRegistry,
    overrides: Mapping[ResourceKind, HandlerBundle] | None = None,
) -> dict[ResourceKind, HandlerBundle]:
    """Build the kind -> handler bundle map the executor dispatches through."""
    bundles: dict[ResourceKind, HandlerBundle] = {}
    for kind, traits in KIND_TRAITS.items():
        if kind == ResourceKind.DATABASE_ROLE:
            bundles[kind] = _role_bundle(registry, traits)
        elif kind == ResourceKind.PROJECT:
            bundles[kind] = _project_bundle(registry, traits)
        elif traits.analysis_only:
            bundles[kind] = _analysis_bundle(registry, traits)
        else:
            bundles[kind] = _standard_bundle(registry, traits)
    bundles.update(overrides or {})
    return bundles
