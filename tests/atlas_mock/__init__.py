"""Atlas API Mock for Integration Testing.

This module provides in-memory implementations of the Atlas resource
services that enable integration testing without control plane access.

Key Features:
- In-memory resource storage per project, keyed by backend identifier
- Conflict on duplicate create, not-found on missing update/delete
- Ordered call log for asserting on mutations
- Error injection for testing retry, recovery and rollback
- Manifest builders and zero-backoff retry configurations

Usage:
    from atlas_mock import MockAtlasContext, cluster

    ctx = MockAtlasContext()
    executor = Executor(ctx.handlers)
    result = await executor.execute(plan)

    assert ctx.mutations == [("create", ResourceKind.CLUSTER, "c1")]
"""

from .context import DEFAULT_PROJECT_ID, MockAtlasContext
from .manifests import (
    cluster,
    database_user,
    fast_executor_config,
    fast_retry_config,
    network_access,
    project,
)
from .services import MockAtlasState, MockCall, MockProjectService, MockResourceService

__all__ = [
    "DEFAULT_PROJECT_ID",
    "MockAtlasContext",
    "MockAtlasState",
    "MockCall",
    "MockProjectService",
    "MockResourceService",
    "cluster",
    "database_user",
    "fast_executor_config",
    "fast_retry_config",
    "network_access",
    "project",
]
