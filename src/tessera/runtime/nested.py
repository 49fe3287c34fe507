"""
Nested transaction executor.

Runs an ordered batch of create/update operations across entity types as
one atomic unit. Wire format:

    {"operations": [
        {"entity": "blogs", "action": "create", "data": {"title": "B"}},
        {"entity": "posts", "action": "update", "id": 4, "data": {"title": "T"}}
    ]}

Three phases:
1. Structure of every operation is checked (422, first offending index)
2. Capability of every operation is checked (403, first offending index)
3. One transaction runs the operations in order. Any missing row (404),
   validation failure (422) or storage error rolls everything back.

Operations cannot reference ids created earlier in the same batch.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from tessera.runtime.access_control import Capability, RequestContext
from tessera.runtime.crud import CrudDispatcher
from tessera.runtime.errors import (
    AuthorizationError,
    EngineError,
    PersistenceError,
    StructuralError,
    ValidationFailed,
)
from tessera.runtime.logging import get_logger, log_with_context
from tessera.runtime.storage import StorageSession
from tessera.runtime.visibility import ColumnVisibility
from tessera.specs.app import NestedSpec
from tessera.specs.entity import EntityAction, EntitySpec

logger = get_logger("Nested")

NESTED_ACTIONS = (EntityAction.CREATE, EntityAction.UPDATE)


@dataclass(frozen=True)
class NestedOperation:
    """One structurally valid operation."""

    index: int
    entity: EntitySpec
    action: EntityAction
    id: int | None
    data: Mapping[str, Any]

    @property
    def capability(self) -> Capability:
        return Capability.CREATE if self.action == EntityAction.CREATE else Capability.UPDATE


def _structural(index: int, key: str, message: str, summary: str | None = None) -> StructuralError:
    return StructuralError(summary, errors={f"operations.{index}.{key}": [message]}, index=index)


class NestedExecutor:
    """
    Executes transaction requests.

    Example:
        executor = NestedExecutor(dispatcher, registry.nested)
        results = executor.execute(ctx, {"operations": [...]})
    """

    def __init__(self, dispatcher: CrudDispatcher, options: NestedSpec | None = None):
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.options = options or dispatcher.registry.nested

    def execute(self, ctx: RequestContext, body: Any) -> list[dict[str, Any]]:
        """
        Run a batch.

        Returns:
            Ordered ``{entity, action, id, data}`` results

        Raises:
            EngineError: Tagged with the failing operation's index
        """
        operations = self.check_structure(body)
        self.authorize(ctx, operations)
        return self._run(ctx, operations)

    # -------------------------------------------------------------------------
    # Phase 1: structure
    # -------------------------------------------------------------------------

    def check_structure(self, body: Any) -> list[NestedOperation]:
        """
        Raises:
            StructuralError: For the first malformed operation
        """
        raw_ops = body.get("operations") if isinstance(body, Mapping) else None
        if not isinstance(raw_ops, list) or not raw_ops:
            raise StructuralError(
                errors={"operations": ["The operations field is required and must be an array."]}
            )
        limit = self.options.max_operations
        if len(raw_ops) > limit:
            raise StructuralError(
                "Too many operations.",
                errors={"operations": [f"The operations may not have more than {limit} items."]},
            )
        return [self._parse_operation(index, raw) for index, raw in enumerate(raw_ops)]

    def _parse_operation(self, index: int, raw: Any) -> NestedOperation:
        if not isinstance(raw, Mapping):
            raise StructuralError(
                errors={f"operations.{index}": ["Each operation must be an object."]}, index=index
            )

        slug = raw.get("entity")
        entity = self.registry.get(slug) if isinstance(slug, str) else None
        if entity is None:
            raise _structural(
                index, "entity", f'The entity "{slug}" does not exist.', "Unknown entity."
            )
        allowed = self.options.allowed_entities
        if allowed is not None and entity.slug not in allowed:
            raise _structural(
                index,
                "entity",
                f'The entity "{entity.slug}" is not allowed in nested operations.',
                "Operation not allowed.",
            )

        raw_action = raw.get("action")
        if raw_action not in [a.value for a in NESTED_ACTIONS]:
            raise _structural(index, "action", "The action must be create or update.")
        action = EntityAction(raw_action)
        if not entity.supports(action):
            raise _structural(
                index,
                "action",
                f"The {action.value} action is not available on {entity.slug}.",
                "Operation not allowed.",
            )

        data = raw.get("data")
        if not isinstance(data, Mapping):
            raise _structural(index, "data", "The data field is required and must be an object.")

        id_value = raw.get("id")
        if action == EntityAction.UPDATE:
            if isinstance(id_value, bool) or not isinstance(id_value, (int, str)):
                raise _structural(index, "id", "The id field is required for update.")
            try:
                id_value = int(id_value)
            except ValueError:
                raise _structural(index, "id", "The id must be an integer.") from None
        else:
            id_value = None

        return NestedOperation(index=index, entity=entity, action=action, id=id_value, data=data)

    # -------------------------------------------------------------------------
    # Phase 2: capabilities
    # -------------------------------------------------------------------------

    def authorize(self, ctx: RequestContext, operations: list[NestedOperation]) -> None:
        """
        Raises:
            AuthorizationError: For the first denied operation
        """
        gatekeeper = self.dispatcher.gatekeeper
        for op in operations:
            if not gatekeeper.allows(ctx, op.capability, op.entity):
                log_with_context(
                    logger,
                    logging.INFO,
                    "Nested operation denied",
                    index=op.index,
                    entity=op.entity.slug,
                    action=op.action.value,
                )
                raise AuthorizationError(index=op.index)

    # -------------------------------------------------------------------------
    # Phase 3: transaction
    # -------------------------------------------------------------------------

    def _run(self, ctx: RequestContext, operations: list[NestedOperation]) -> list[dict[str, Any]]:
        visibility = self.dispatcher.visibility(ctx)
        results: list[dict[str, Any]] = []
        current: NestedOperation | None = None
        try:
            with self.dispatcher.storage.transaction(write=True) as session:
                for op in operations:
                    current = op
                    results.append(self._apply(ctx, session, op, visibility))
        except EngineError as exc:
            if current is None:
                # The transaction never opened (storage busy)
                raise
            if isinstance(exc, (ValidationFailed, PersistenceError)):
                exc.at_index(current.index, prefix=f"operations.{current.index}.data")
            else:
                exc.at_index(current.index)
            log_with_context(
                logger,
                logging.WARNING,
                "Transaction rolled back",
                index=current.index,
                status=exc.status_code,
                reason=exc.message,
            )
            raise

        log_with_context(logger, logging.INFO, "Transaction committed", operations=len(results))
        return results

    def _apply(
        self,
        ctx: RequestContext,
        session: StorageSession,
        op: NestedOperation,
        visibility: ColumnVisibility,
    ) -> dict[str, Any]:
        dispatcher = self.dispatcher
        if op.action == EntityAction.UPDATE:
            assert op.id is not None
            dispatcher.load_target(ctx, session, op.entity, op.id, Capability.UPDATE)
            data = dispatcher.validated_data(ctx, op.entity, op.action, op.data)
            row = session.update(op.entity, op.id, data)
        else:
            data = dispatcher.validated_data(ctx, op.entity, op.action, op.data)
            row = session.insert(op.entity, data)
        return {
            "entity": op.entity.slug,
            "action": op.action.value,
            "id": row["id"],
            "data": visibility.apply(op.entity, row),
        }
