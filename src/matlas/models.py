"""Pydantic models for Atlas resource manifests and project state.

These models provide:
1. Type-safe parsing of already-loaded YAML/JSON documents
2. Validation at the boundary (fail fast, fail loudly)
3. A canonical, alias-keyed dump used by the diff and fingerprint engines

Manifests are frozen once constructed: the engine never mutates a
desired-state document after admitting it.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field, field_validator, model_validator

API_VERSION_V1 = "matlas.mongodb.com/v1"
SUPPORTED_API_VERSIONS = frozenset(
    {API_VERSION_V1, "matlas.mongodb.com/v1alpha1", "matlas.mongodb.com/v1beta1"}
)

MAX_RESOURCE_NAME_LENGTH = 64

VALID_PROVIDERS = {"AWS", "GCP", "AZURE", "TENANT"}
VALID_CLUSTER_TYPES = {"REPLICASET", "SHARDED", "GEOSHARDED"}
VALID_SCOPE_TYPES = {"CLUSTER", "DATA_LAKE"}
VALID_INDEX_TYPES = {"search", "vectorSearch"}


class ResourceKind(str, Enum):
    """Closed set of resource kinds the engine manages."""

    PROJECT = "Project"
    CLUSTER = "Cluster"
    DATABASE_USER = "DatabaseUser"
    DATABASE_ROLE = "DatabaseRole"
    NETWORK_ACCESS = "NetworkAccess"
    SEARCH_INDEX = "SearchIndex"
    SEARCH_METRICS = "SearchMetrics"
    SEARCH_OPTIMIZATION = "SearchOptimization"
    SEARCH_QUERY_VALIDATION = "SearchQueryValidation"
    VPC_ENDPOINT = "VPCEndpoint"
    ALERT_CONFIGURATION = "AlertConfiguration"
    ALERT = "Alert"


class OperationType(str, Enum):
    """Mutation types emitted by the diff engine."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NO_CHANGE = "NoChange"


class DeletionPolicy(str, Enum):
    """What happens to the live resource when its manifest is removed."""

    DELETE = "delete"
    RETAIN = "retain"
    SNAPSHOT = "snapshot"


# =============================================================================
# Base Models
# =============================================================================


class ResourceMetadata(BaseModel):
    """Metadata shared by every manifest."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_RESOURCE_NAME_LENGTH)]
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    deletion_policy: DeletionPolicy = Field(DeletionPolicy.DELETE, alias="deletionPolicy")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")


class ResourceSpec(BaseModel):
    """Base spec with fields common to every kind."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    project_name: str | None = Field(None, alias="projectName")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")


class Manifest(BaseModel):
    """A single declarative resource document."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    KIND: ClassVar[ResourceKind | None] = None

    api_version: str = Field(API_VERSION_V1, alias="apiVersion")
    kind: ResourceKind
    metadata: ResourceMetadata
    spec: ResourceSpec

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v not in SUPPORTED_API_VERSIONS:
            raise ValueError(f"apiVersion must be one of {sorted(SUPPORTED_API_VERSIONS)}")
        return v

    @model_validator(mode="after")
    def validate_kind(self) -> Manifest:
        if self.KIND is not None and self.kind != self.KIND:
            raise ValueError(f"kind must be {self.KIND.value} for {type(self).__name__}")
        return self

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def dependencies(self) -> list[str]:
        """Explicit dependencies declared in metadata or spec, deduplicated."""
        seen: dict[str, None] = {}
        for dep in [*self.metadata.depends_on, *self.spec.depends_on]:
            seen.setdefault(dep, None)
        return list(seen)

    def to_document(self) -> dict[str, Any]:
        """Dump to the alias-keyed JSON-compatible form used for diffs."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Project
# =============================================================================


class ProjectSpec(ResourceSpec):
    """Project-level settings."""

    name: Annotated[str, Field(min_length=1, max_length=MAX_RESOURCE_NAME_LENGTH)]
    organization_id: str | None = Field(None, alias="organizationId")
    tags: dict[str, str] = Field(default_factory=dict)


class ProjectManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.PROJECT

    kind: ResourceKind = ResourceKind.PROJECT
    spec: ProjectSpec


# =============================================================================
# Cluster
# =============================================================================


class ClusterSpec(ResourceSpec):
    """Cluster specification.

    Nested blocks (replication specs, autoscaling, encryption) are kept as
    plain documents and forwarded to the backend as-is.
    """

    provider: str
    region: Annotated[str, Field(min_length=1, max_length=50)]
    instance_size: str = Field(alias="instanceSize")
    disk_size_gb: float | None = Field(None, alias="diskSizeGB")
    backup_enabled: bool | None = Field(None, alias="backupEnabled")
    tier_type: str | None = Field(None, alias="tierType")
    mongodb_version: str | None = Field(None, alias="mongodbVersion")
    cluster_type: str = Field("REPLICASET", alias="clusterType")
    replication_specs: list[dict[str, Any]] = Field(default_factory=list, alias="replicationSpecs")
    auto_scaling: dict[str, Any] | None = Field(None, alias="autoScaling")
    encryption: dict[str, Any] | None = None
    bi_connector: dict[str, Any] | None = Field(None, alias="biConnector")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_PROVIDERS:
            raise ValueError(f"provider must be one of {sorted(VALID_PROVIDERS)}")
        return v

    @field_validator("cluster_type")
    @classmethod
    def validate_cluster_type(cls, v: str) -> str:
        if v not in VALID_CLUSTER_TYPES:
            raise ValueError(f"clusterType must be one of {sorted(VALID_CLUSTER_TYPES)}")
        return v

    @field_validator("disk_size_gb")
    @classmethod
    def validate_disk_size(cls, v: float | None) -> float | None:
        if v is not None and not (1 <= v <= 4096):
            raise ValueError("diskSizeGB must be between 1 and 4096")
        return v


class ClusterManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.CLUSTER

    kind: ResourceKind = ResourceKind.CLUSTER
    spec: ClusterSpec


# =============================================================================
# Database access
# =============================================================================


class RoleAssignment(BaseModel):
    """A built-in or custom role granted to a database user."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    role_name: Annotated[str, Field(min_length=1, alias="roleName")]
    database_name: Annotated[str, Field(min_length=1, alias="databaseName")]
    collection_name: str | None = Field(None, alias="collectionName")


class UserScope(BaseModel):
    """Restricts a user to specific clusters or data lakes."""

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=1)]
    type: str = "CLUSTER"

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in VALID_SCOPE_TYPES:
            raise ValueError(f"scope type must be one of {sorted(VALID_SCOPE_TYPES)}")
        return v


class DatabaseUserSpec(ResourceSpec):
    """Database user specification."""

    username: Annotated[str, Field(min_length=1, max_length=1024)]
    password: str | None = Field(None, min_length=8, max_length=256)
    auth_database: str = Field("admin", alias="authDatabase")
    roles: list[RoleAssignment] = Field(min_length=1)
    scopes: list[UserScope] = Field(default_factory=list)


class DatabaseUserManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.DATABASE_USER

    kind: ResourceKind = ResourceKind.DATABASE_USER
    spec: DatabaseUserSpec


class DatabaseRoleSpec(ResourceSpec):
    """Custom database role, applied through a direct database connection."""

    role_name: Annotated[str, Field(min_length=1, alias="roleName")]
    database_name: Annotated[str, Field(min_length=1, alias="databaseName")]
    privileges: list[dict[str, Any]] = Field(default_factory=list)
    inherited_roles: list[dict[str, Any]] = Field(default_factory=list, alias="inheritedRoles")


class DatabaseRoleManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.DATABASE_ROLE

    kind: ResourceKind = ResourceKind.DATABASE_ROLE
    spec: DatabaseRoleSpec


class NetworkAccessSpec(ResourceSpec):
    """IP access list entry. Exactly one address field must be set."""

    ip_address: str | None = Field(None, alias="ipAddress")
    cidr: str | None = None
    aws_security_group: str | None = Field(None, alias="awsSecurityGroup")
    comment: str | None = Field(None, max_length=80)
    delete_after_date: str | None = Field(None, alias="deleteAfterDate")

    @model_validator(mode="after")
    def validate_single_address(self) -> NetworkAccessSpec:
        present = [v for v in (self.ip_address, self.cidr, self.aws_security_group) if v]
        if len(present) != 1:
            raise ValueError("exactly one of ipAddress, cidr or awsSecurityGroup must be set")
        return self

    @property
    def address(self) -> str:
        return self.ip_address or self.cidr or self.aws_security_group or ""


class NetworkAccessManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.NETWORK_ACCESS

    kind: ResourceKind = ResourceKind.NETWORK_ACCESS
    spec: NetworkAccessSpec


# =============================================================================
# Search
# =============================================================================


class SearchIndexSpec(ResourceSpec):
    """Atlas Search index.

    ``definition`` is an opaque document forwarded to the backend; analyzer
    and synonym shapes depend on the backend API version.
    """

    cluster_name: str = Field(alias="clusterName")
    database_name: str = Field(alias="databaseName")
    collection_name: str = Field(alias="collectionName")
    index_name: str = Field(alias="indexName")
    index_type: str = Field("search", alias="indexType")
    definition: dict[str, Any] = Field(default_factory=dict)

    @field_validator("index_type")
    @classmethod
    def validate_index_type(cls, v: str) -> str:
        if v not in VALID_INDEX_TYPES:
            raise ValueError(f"indexType must be one of {sorted(VALID_INDEX_TYPES)}")
        return v


class SearchIndexManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.SEARCH_INDEX

    kind: ResourceKind = ResourceKind.SEARCH_INDEX
    spec: SearchIndexSpec


class SearchMetricsSpec(ResourceSpec):
    cluster_name: str = Field(alias="clusterName")
    index_name: str | None = Field(None, alias="indexName")
    metrics: list[str] = Field(default_factory=list)
    time_range: str = Field("24h", alias="timeRange")


class SearchMetricsManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.SEARCH_METRICS

    kind: ResourceKind = ResourceKind.SEARCH_METRICS
    spec: SearchMetricsSpec


class SearchOptimizationSpec(ResourceSpec):
    cluster_name: str = Field(alias="clusterName")
    index_name: str | None = Field(None, alias="indexName")
    analyze_all: bool = Field(False, alias="analyzeAll")
    categories: list[str] = Field(default_factory=list)


class SearchOptimizationManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.SEARCH_OPTIMIZATION

    kind: ResourceKind = ResourceKind.SEARCH_OPTIMIZATION
    spec: SearchOptimizationSpec


class SearchQueryValidationSpec(ResourceSpec):
    cluster_name: str = Field(alias="clusterName")
    index_name: str = Field(alias="indexName")
    test_queries: list[dict[str, Any]] = Field(default_factory=list, alias="testQueries")


class SearchQueryValidationManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.SEARCH_QUERY_VALIDATION

    kind: ResourceKind = ResourceKind.SEARCH_QUERY_VALIDATION
    spec: SearchQueryValidationSpec


# =============================================================================
# Networking and alerting
# =============================================================================


class VPCEndpointSpec(ResourceSpec):
    cloud_provider: str = Field(alias="cloudProvider")
    region: str
    endpoint_id: str | None = Field(None, alias="endpointId")

    @field_validator("cloud_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_PROVIDERS - {"TENANT"}:
            raise ValueError("cloudProvider must be one of AWS, AZURE, GCP")
        return v


class VPCEndpointManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.VPC_ENDPOINT

    kind: ResourceKind = ResourceKind.VPC_ENDPOINT
    spec: VPCEndpointSpec


class AlertConfigurationSpec(ResourceSpec):
    event_type_name: str = Field(alias="eventTypeName")
    enabled: bool = True
    matchers: list[dict[str, Any]] = Field(default_factory=list)
    notifications: list[dict[str, Any]] = Field(default_factory=list)
    metric_threshold: dict[str, Any] | None = Field(None, alias="metricThreshold")


class AlertConfigurationManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.ALERT_CONFIGURATION

    kind: ResourceKind = ResourceKind.ALERT_CONFIGURATION
    spec: AlertConfigurationSpec


class AlertSpec(ResourceSpec):
    alert_id: str = Field(alias="alertId")
    acknowledged_until: str | None = Field(None, alias="acknowledgedUntil")
    acknowledgement_comment: str | None = Field(None, alias="acknowledgementComment")


class AlertManifest(Manifest):
    KIND: ClassVar[ResourceKind | None] = ResourceKind.ALERT

    kind: ResourceKind = ResourceKind.ALERT
    spec: AlertSpec


# =============================================================================
# Kind registry
# =============================================================================

MANIFEST_CLASSES: dict[ResourceKind, type[Manifest]] = {
    ResourceKind.PROJECT: ProjectManifest,
    ResourceKind.CLUSTER: ClusterManifest,
    ResourceKind.DATABASE_USER: DatabaseUserManifest,
    ResourceKind.DATABASE_ROLE: DatabaseRoleManifest,
    ResourceKind.NETWORK_ACCESS: NetworkAccessManifest,
    ResourceKind.SEARCH_INDEX: SearchIndexManifest,
    ResourceKind.SEARCH_METRICS: SearchMetricsManifest,
    ResourceKind.SEARCH_OPTIMIZATION: SearchOptimizationManifest,
    ResourceKind.SEARCH_QUERY_VALIDATION: SearchQueryValidationManifest,
    ResourceKind.VPC_ENDPOINT: VPCEndpointManifest,
    ResourceKind.ALERT_CONFIGURATION: AlertConfigurationManifest,
    ResourceKind.ALERT: AlertManifest,
}


def get_manifest_class(kind: ResourceKind | str) -> type[Manifest]:
    """Get the manifest class for a kind.

    Raises:
        ValueError: If kind is unknown.
    """
    try:
        return MANIFEST_CLASSES[ResourceKind(kind)]
    except ValueError as e:
        raise ValueError(f"Unknown resource kind: {kind}") from e


def parse_manifest(document: dict[str, Any]) -> Manifest:
    """Validate a raw document into its kind-specific manifest class.

    Raises:
        ValueError: If the kind is missing or unknown.
        pydantic.ValidationError: If the document fails validation.
    """
    kind = document.get("kind")
    if not kind:
        raise ValueError("Manifest is missing 'kind'")
    return get_manifest_class(kind).model_validate(document)


# =============================================================================
# Project state
# =============================================================================

# Attribute holding each kind's manifests, in dependency-friendly order
STATE_FIELDS: dict[ResourceKind, str] = {
    ResourceKind.CLUSTER: "clusters",
    ResourceKind.DATABASE_ROLE: "database_roles",
    ResourceKind.DATABASE_USER: "database_users",
    ResourceKind.NETWORK_ACCESS: "network_access",
    ResourceKind.SEARCH_INDEX: "search_indexes",
    ResourceKind.SEARCH_METRICS: "search_metrics",
    ResourceKind.SEARCH_OPTIMIZATION: "search_optimizations",
    ResourceKind.SEARCH_QUERY_VALIDATION: "search_query_validations",
    ResourceKind.VPC_ENDPOINT: "vpc_endpoints",
    ResourceKind.ALERT_CONFIGURATION: "alert_configurations",
    ResourceKind.ALERT: "alerts",
}


class ProjectState(BaseModel):
    """Aggregate of a project's settings and child resources.

    Produced by discovery (current state) or assembled from manifests
    (desired state), consumed by the diff engine, cached by project id.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    project: ProjectManifest | None = None
    clusters: list[ClusterManifest] = Field(default_factory=list)
    database_users: list[DatabaseUserManifest] = Field(default_factory=list, alias="databaseUsers")
    database_roles: list[DatabaseRoleManifest] = Field(default_factory=list, alias="databaseRoles")
    network_access: list[NetworkAccessManifest] = Field(default_factory=list, alias="networkAccess")
    search_indexes: list[SearchIndexManifest] = Field(default_factory=list, alias="searchIndexes")
    search_metrics: list[SearchMetricsManifest] = Field(default_factory=list, alias="searchMetrics")
    search_optimizations: list[SearchOptimizationManifest] = Field(
        default_factory=list, alias="searchOptimizations"
    )
    search_query_validations: list[SearchQueryValidationManifest] = Field(
        default_factory=list, alias="searchQueryValidations"
    )
    vpc_endpoints: list[VPCEndpointManifest] = Field(default_factory=list, alias="vpcEndpoints")
    alert_configurations: list[AlertConfigurationManifest] = Field(
        default_factory=list, alias="alertConfigurations"
    )
    alerts: list[AlertManifest] = Field(default_factory=list)
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="discoveredAt")
    fingerprint: str = ""

    @classmethod
    def from_manifests(cls, manifests: Iterable[Manifest]) -> ProjectState:
        """Assemble a state from a flat collection of manifests."""
        state = cls()
        for manifest in manifests:
            if isinstance(manifest, ProjectManifest):
                state.project = manifest
            else:
                state.by_kind(manifest.kind).append(manifest)
        return state

    def by_kind(self, kind: ResourceKind) -> list[Any]:
        """Return the live list holding manifests of ``kind``."""
        if kind == ResourceKind.PROJECT:
            return [self.project] if self.project is not None else []
        return getattr(self, STATE_FIELDS[kind])

    def resources(self) -> Iterator[Manifest]:
        """Iterate over every manifest, project first."""
        if self.project is not None:
            yield self.project
        for kind in STATE_FIELDS:
            yield from self.by_kind(kind)

    def find(self, kind: ResourceKind, name: str) -> Manifest | None:
        for manifest in self.by_kind(kind):
            if manifest.name == name:
                return manifest
        return None

    def resource_count(self) -> int:
        return sum(1 for _ in self.resources())

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
