"""
Tessera runtime.

This module provides:
- EntityRegistry: immutable entity descriptors and relation graph
- CrudDispatcher: the generic action state machine
- NestedExecutor: atomic multi-entity batches
- DatabaseManager: SQLite storage backend
- Access control: Actor, RequestContext, ResourcePolicy, PolicyRegistry

The FastAPI assembly lives in ``tessera.runtime.app_factory``:
    >>> from tessera.runtime.app_factory import create_app
    >>> app = create_app(spec, actor_resolver=resolve_actor)
"""

from tessera.runtime.access_control import (
    Actor,
    Capability,
    Gatekeeper,
    PolicyRegistry,
    RequestContext,
    ResourcePolicy,
    RoleAssignment,
)
from tessera.runtime.crud import CrudDispatcher, OperationRequest, OperationResult
from tessera.runtime.errors import (
    AuthorizationError,
    ConfigurationError,
    EngineError,
    NotFoundError,
    PersistenceError,
    StorageBusyError,
    StructuralError,
    ValidationFailed,
)
from tessera.runtime.nested import NestedExecutor
from tessera.runtime.registry import EntityRegistry, RelationInfo
from tessera.runtime.repository import DatabaseManager, SQLiteRepository

__all__ = [
    # Access control
    "Actor",
    "Capability",
    "Gatekeeper",
    "PolicyRegistry",
    "RequestContext",
    "ResourcePolicy",
    "RoleAssignment",
    # Engine
    "CrudDispatcher",
    "EntityRegistry",
    "NestedExecutor",
    "OperationRequest",
    "OperationResult",
    "RelationInfo",
    # Storage
    "DatabaseManager",
    "SQLiteRepository",
    # Errors
    "AuthorizationError",
    "ConfigurationError",
    "EngineError",
    "NotFoundError",
    "PersistenceError",
    "StorageBusyError",
    "StructuralError",
    "ValidationFailed",
]
