"""
Authorization for the generic dispatcher.

Provides:
- Actor: the caller, with role assignments and permission strings
- RequestContext: actor plus tenant, created per request
- ResourcePolicy: per-entity capability checks and hidden columns
- PolicyRegistry: slug -> policy, with a default policy factory
- Gatekeeper: primary capability checks and include-path checks

Permission strings are ``{slug}.{capability}``. ``*`` grants everything and
``{slug}.*`` grants every capability on one entity.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from tessera.runtime.errors import AuthorizationError
from tessera.runtime.logging import get_logger, log_with_context
from tessera.runtime.query_builder import IncludePath, resolve_include_path, split_csv
from tessera.specs.entity import EntityAction, EntitySpec

if TYPE_CHECKING:
    from tessera.runtime.registry import EntityRegistry

logger = get_logger("Access")

WILDCARD_PERMISSION = "*"


# =============================================================================
# Capabilities
# =============================================================================


class Capability(StrEnum):
    """Named authorization checks."""

    LIST = "list"
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LIST_TRASHED = "list_trashed"
    RESTORE = "restore"
    PURGE = "purge"

    @classmethod
    def for_action(cls, action: EntityAction) -> Capability:
        if action == EntityAction.TRASHED:
            return cls.LIST_TRASHED
        return cls(action.value)


# =============================================================================
# Actor
# =============================================================================


class RoleAssignment(BaseModel):
    """A role held by the actor, optionally within one tenant."""

    role: str = Field(description="Role slug used to pick validation buckets")
    tenant_id: str | None = Field(default=None, description="Tenant scope, None for global")
    permissions: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class Actor(BaseModel):
    """
    The authenticated caller.

    Example:
        Actor(user_id=7, roles=[RoleAssignment(role="editor", tenant_id="acme",
                                               permissions=["posts.*", "comments.list"])])
    """

    user_id: int | str
    roles: list[RoleAssignment] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list, description="Direct global grants")

    model_config = ConfigDict(frozen=True)

    def _assignments(self, tenant_id: str | None) -> list[RoleAssignment]:
        return [r for r in self.roles if r.tenant_id is None or r.tenant_id == tenant_id]

    def permissions_for(self, tenant_id: str | None = None) -> set[str]:
        granted = set(self.permissions)
        for assignment in self._assignments(tenant_id):
            granted.update(assignment.permissions)
        return granted

    def has_permission(self, permission: str, tenant_id: str | None = None) -> bool:
        """Exact match, global wildcard, or per-entity wildcard."""
        granted = self.permissions_for(tenant_id)
        if WILDCARD_PERMISSION in granted or permission in granted:
            return True
        slug, _, _ = permission.partition(".")
        return f"{slug}.*" in granted

    def role_slug_for_validation(self, tenant_id: str | None = None) -> str | None:
        """
        Role used to pick a validation bucket.

        Prefers the role held in the given tenant, then a global role.
        """
        if tenant_id is not None:
            for assignment in self.roles:
                if assignment.tenant_id == tenant_id:
                    return assignment.role
        for assignment in self.roles:
            if assignment.tenant_id is None:
                return assignment.role
        if tenant_id is None and self.roles:
            return self.roles[0].role
        return None


@dataclass
class RequestContext:
    """Per-request authorization state. Never shared between requests."""

    actor: Actor | None = None
    tenant_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.actor is not None

    @property
    def role_slug(self) -> str | None:
        if self.actor is None:
            return None
        return self.actor.role_slug_for_validation(self.tenant_id)


# =============================================================================
# Policies
# =============================================================================


class ResourcePolicy:
    """
    Default policy: each capability maps to the ``{slug}.{capability}`` permission.

    Subclass and override a ``can_*`` method for instance-aware rules, or
    ``hidden_columns`` to hide fields from some callers.
    """

    def __init__(self, slug: str):
        self.slug = slug

    def check(
        self, ctx: RequestContext, capability: Capability, record: dict[str, Any] | None = None
    ) -> bool:
        if ctx.actor is None:
            return False
        method: Callable[[RequestContext, dict[str, Any] | None], bool] = getattr(
            self, f"can_{capability.value}"
        )
        return method(ctx, record)

    def has_permission(self, ctx: RequestContext, capability: Capability) -> bool:
        if ctx.actor is None:
            return False
        return ctx.actor.has_permission(f"{self.slug}.{capability.value}", ctx.tenant_id)

    def can_list(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.LIST)

    def can_read(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.READ)

    def can_create(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.CREATE)

    def can_update(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.UPDATE)

    def can_delete(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.DELETE)

    def can_list_trashed(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.LIST_TRASHED)

    def can_restore(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.RESTORE)

    def can_purge(self, ctx: RequestContext, record: dict[str, Any] | None = None) -> bool:
        return self.has_permission(ctx, Capability.PURGE)

    def hidden_columns(self, ctx: RequestContext) -> set[str]:
        """Columns to strip from this entity's output for the caller."""
        return set()


class PolicyRegistry:
    """
    Registry of policies by entity slug.

    Entities without a registered policy get one from the default factory.
    """

    def __init__(self, default_factory: Callable[[str], ResourcePolicy] = ResourcePolicy):
        self._policies: dict[str, ResourcePolicy] = {}
        self._default_factory = default_factory

    def register(self, slug: str, policy: ResourcePolicy) -> None:
        self._policies[slug] = policy

    def set_default(self, factory: Callable[[str], ResourcePolicy]) -> None:
        self._default_factory = factory

    def get(self, slug: str) -> ResourcePolicy:
        policy = self._policies.get(slug)
        if policy is None:
            policy = self._default_factory(slug)
            self._policies[slug] = policy
        return policy


# =============================================================================
# Gatekeeper
# =============================================================================


class Gatekeeper:
    """
    Capability checks on the primary entity and on every include path.

    Include checks run before any relation data is loaded.
    """

    def __init__(self, registry: EntityRegistry, policies: PolicyRegistry):
        self.registry = registry
        self.policies = policies

    def allows(
        self,
        ctx: RequestContext,
        capability: Capability,
        entity: EntitySpec,
        record: dict[str, Any] | None = None,
    ) -> bool:
        return self.policies.get(entity.slug).check(ctx, capability, record)

    def check_primary(
        self,
        ctx: RequestContext,
        capability: Capability,
        entity: EntitySpec,
        record: dict[str, Any] | None = None,
    ) -> None:
        """
        Raises:
            AuthorizationError: If the policy denies the capability
        """
        if not self.allows(ctx, capability, entity, record):
            log_with_context(
                logger,
                logging.INFO,
                "Capability denied",
                entity=entity.slug,
                capability=capability.value,
                instance=record.get("id") if record else None,
            )
            raise AuthorizationError()

    def check_include(
        self, ctx: RequestContext, entity: EntitySpec, include: str
    ) -> IncludePath | None:
        """
        Authorize one include path segment by segment.

        Each hop needs LIST on the entity it reaches. An aggregate suffix is
        authorized as its base relation. Paths that are not allowed includes
        are skipped (None), not denied.

        Raises:
            AuthorizationError: Naming the full requested path
        """
        path = resolve_include_path(self.registry, entity, include)
        if path is None:
            return None
        for hop in path.relations:
            target = self.registry.lookup(hop.to_entity)
            if not self.allows(ctx, Capability.LIST, target):
                log_with_context(
                    logger, logging.INFO, "Include denied", path=path.raw, segment=hop.name
                )
                raise AuthorizationError(f"You do not have permission to include {path.raw}.")
        return path

    def check_includes(
        self, ctx: RequestContext, entity: EntitySpec, raw: Any
    ) -> tuple[IncludePath, ...]:
        """Authorize a comma-separated include parameter, in request order."""
        paths: list[IncludePath] = []
        for token in split_csv(raw):
            path = self.check_include(ctx, entity, token)
            if path is not None and path.raw not in {p.raw for p in paths}:
                paths.append(path)
        return tuple(paths)
