"""
CRUD action dispatcher.

One generic state machine serves every entity in the registry:

    lookup -> action exposed? (404) -> primary capability (403)
           -> load target (404) -> instance capability (403)
           -> validate (422) -> persist -> visibility -> respond

List, read and trashed also authorize every include path before anything is
loaded. Writes run inside a single storage transaction so a failure at any
step leaves nothing behind.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from tessera.runtime.access_control import (
    Capability,
    Gatekeeper,
    PolicyRegistry,
    RequestContext,
)
from tessera.runtime.errors import NotFoundError, StructuralError, ValidationFailed
from tessera.runtime.logging import get_logger, log_with_context
from tessera.runtime.pagination import Page, Paginated, decide
from tessera.runtime.query_builder import QueryComposer, TrashScope
from tessera.runtime.registry import EntityRegistry
from tessera.runtime.storage import StorageBackend, StorageSession
from tessera.runtime.validation import ValidationResolver
from tessera.runtime.visibility import ColumnVisibility
from tessera.specs.entity import EntityAction, EntitySpec

logger = get_logger("CRUD")


@dataclass(frozen=True)
class OperationRequest:
    """One action against one entity."""

    action: EntityAction
    entity: str
    id: int | None = None
    payload: Any = None
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class OperationResult:
    """Status, body and headers. A None body means an empty response."""

    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


class CrudDispatcher:
    """
    Runs OperationRequests against any registered entity.

    Example:
        dispatcher = CrudDispatcher(registry, db, policies)
        result = dispatcher.dispatch(ctx, OperationRequest(EntityAction.LIST, "posts"))
    """

    def __init__(
        self,
        registry: EntityRegistry,
        storage: StorageBackend,
        policies: PolicyRegistry | None = None,
    ):
        self.registry = registry
        self.storage = storage
        self.policies = policies or PolicyRegistry()
        self.gatekeeper = Gatekeeper(registry, self.policies)
        self.composer = QueryComposer(registry)
        self.validation = ValidationResolver(registry)

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def dispatch(self, ctx: RequestContext, request: OperationRequest) -> OperationResult:
        """
        Run one action.

        Raises:
            NotFoundError: Unknown entity, unexposed action or missing row
            AuthorizationError: Denied capability or include path
            ValidationFailed: Payload failed the effective rules
            PersistenceError: Storage constraint violated
        """
        entity = self.registry.lookup(request.entity)
        action = request.action

        if not entity.supports(action):
            if action.needs_soft_deletes and not entity.soft_deletes:
                raise NotFoundError("This resource does not support soft deletes.")
            raise NotFoundError()

        self.gatekeeper.check_primary(ctx, Capability.for_action(action), entity)

        if action.loads_record and request.id is None:
            raise NotFoundError("Resource ID not specified.")

        handlers = {
            EntityAction.LIST: self._list,
            EntityAction.TRASHED: self._list,
            EntityAction.READ: self._read,
            EntityAction.CREATE: self._create,
            EntityAction.UPDATE: self._update,
            EntityAction.DELETE: self._delete,
            EntityAction.RESTORE: self._restore,
            EntityAction.PURGE: self._purge,
        }
        return handlers[action](ctx, entity, request)

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    def tenant_scope(self, ctx: RequestContext, entity: EntitySpec) -> dict[str, Any]:
        """
        Row filter restricting an entity to the caller's tenant, if scoped.

        Entities without their own tenant column are scoped through their
        ``tenant_owner`` path, e.g. ``{"project.org": "acme"}``.
        """
        path = self.registry.tenant_path(entity.slug)
        if ctx.tenant_id is not None and path is not None:
            return {path: ctx.tenant_id}
        return {}

    def load_target(
        self,
        ctx: RequestContext,
        session: StorageSession,
        entity: EntitySpec,
        id: int,
        capability: Capability,
        scope: TrashScope = "active",
    ) -> dict[str, Any]:
        """
        Load the target row and re-check the capability against it.

        Raises:
            NotFoundError: If no row matches in this scope
            AuthorizationError: If the policy denies this instance
        """
        row = session.find(entity, id, scope=scope, where=self.tenant_scope(ctx, entity))
        if row is None:
            raise NotFoundError()
        self.gatekeeper.check_primary(ctx, capability, entity, row)
        return row

    def validated_data(
        self,
        ctx: RequestContext,
        entity: EntitySpec,
        action: EntityAction,
        payload: Any,
    ) -> dict[str, Any]:
        """
        Validate a payload and reduce it to writable fields.

        Raises:
            StructuralError: If the payload is not an object
            ValidationFailed: If the payload fails its rules
        """
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise StructuralError(errors={"data": ["The request body must be a JSON object."]})

        validator = self.validation.resolve(entity, action, payload, ctx.role_slug)
        if validator.fails():
            log_with_context(
                logger,
                logging.DEBUG,
                "Validation failed",
                entity=entity.slug,
                action=action.value,
                fields=sorted(validator.errors()),
            )
            raise ValidationFailed(errors=validator.errors())

        writable = set(entity.writable_fields)
        data = {k: v for k, v in validator.validated().items() if k in writable}
        if ctx.tenant_id is not None and entity.tenant_field:
            data[entity.tenant_field] = ctx.tenant_id
        return data

    def visibility(self, ctx: RequestContext) -> ColumnVisibility:
        return ColumnVisibility(ctx, self.registry, self.policies)

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _list(
        self, ctx: RequestContext, entity: EntitySpec, request: OperationRequest
    ) -> OperationResult:
        params = request.params
        includes = self.gatekeeper.check_includes(ctx, entity, params.get("include"))
        plan = self.composer.build(entity, params, includes)
        scope: TrashScope = "trashed" if request.action == EntityAction.TRASHED else "active"
        where = self.tenant_scope(ctx, entity)
        decision = decide(entity, params)

        page: Page | None = None
        with self.storage.transaction() as session:
            if isinstance(decision, Paginated):
                total = session.count(entity, plan, scope=scope, where=where)
                rows = session.select(
                    entity,
                    plan,
                    scope=scope,
                    where=where,
                    limit=decision.per_page,
                    offset=decision.offset,
                )
                page = Page(rows, total, decision.page, decision.per_page)
            else:
                rows = session.select(entity, plan, scope=scope, where=where)
            rows = session.load_includes(entity, rows, plan.includes)

        body = self.visibility(ctx).apply_many(entity, rows, plan)
        return OperationResult(200, body, page.headers() if page else {})

    def _read(
        self, ctx: RequestContext, entity: EntitySpec, request: OperationRequest
    ) -> OperationResult:
        includes = self.gatekeeper.check_includes(ctx, entity, request.params.get("include"))
        plan = self.composer.build(entity, request.params, includes)
        assert request.id is not None
        with self.storage.transaction() as session:
            row = self.load_target(ctx, session, entity, request.id, Capability.READ)
            row = session.load_includes(entity, [row], plan.includes)[0]
        return OperationResult(200, self.visibility(ctx).apply(entity, row, plan))

    def _create(
        self, ctx: RequestContext, entity: EntitySpec, request: OperationRequest
    ) -> OperationResult:
        data = self.validated_data(ctx, entity, EntityAction.CREATE, request.payload)
        with self.storage.transaction(write=True) as session:
            row = session.insert(entity, data)
        log_with_context(logger, logging.INFO, "Created", entity=entity.slug, id=row["id"])
        return OperationResult(201, self.visibility(ctx).apply(entity, row))

    def _update(
        self, ctx: RequestContext, entity: EntitySpec, request: OperationRequest
    ) -> OperationResult:
        assert request.id is not None
        with self.storage.transaction(write=True) as session:
            self.load_target(ctx, session, entity, request.id, Capability.UPDATE)
            data = self.validated_data(ctx, entity, EntityAction.UPDATE, request.payload)
            row = session.update(entity, request.id, data)
        return OperationResult(200, self.visibility(ctx).apply(entity, row))

    def _delete(
        self, ctx: RequestContext, entity: EntitySpec, request: OperationRequest
    ) -> OperationResult:
        assert request.id is not None
        with self.storage.transaction(write=True) as session:
            self.load_target(ctx, session, entity, request.id, Capability.DELETE)
            if entity.soft_deletes:
                session.soft_delete(entity, request.id)
            else:
                session.delete(entity, request.id)
        log_with_context(
            logger,
            logging.INFO,
            "Deleted",
            entity=entity.slug,
            id=request.id,
            soft=entity.soft_deletes,
        )
        return OperationResult(204)

    def _restore(
        self, ctx: RequestContext, entity: EntitySpec, request: OperationRequest
    ) -> OperationResult:
        assert request.id is not None
        with self.storage.transaction(write=True) as session:
            self.load_target(
                ctx, session, entity, request.id, Capability.RESTORE, scope="trashed"
            )
            row = session.restore(entity, request.id)
        return OperationResult(200, self.visibility(ctx).apply(entity, row))

    def _purge(
        self, ctx: RequestContext, entity: EntitySpec, request: OperationRequest
    ) -> OperationResult:
        assert request.id is not None
        with self.storage.transaction(write=True) as session:
            self.load_target(ctx, session, entity, request.id, Capability.PURGE, scope="trashed")
            session.delete(entity, request.id)
        log_with_context(logger, logging.INFO, "Purged", entity=entity.slug, id=request.id)
        return OperationResult(204)
