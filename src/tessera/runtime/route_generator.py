"""
Route generator - builds FastAPI routes from the entity registry.

Every entity gets the same route set; excluded actions stay routed and the
dispatcher answers 404 for them. Soft-delete routes exist only for
soft-delete entities and are registered before the ``{id}`` routes so
``/trashed`` is never captured as an id. Handlers are plain ``def``
functions: FastAPI runs them on its worker thread pool.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from tessera.runtime.access_control import RequestContext
from tessera.runtime.crud import CrudDispatcher, OperationRequest, OperationResult
from tessera.runtime.errors import ConfigurationError, NotFoundError
from tessera.runtime.nested import NestedExecutor
from tessera.runtime.query_builder import parse_query_params
from tessera.runtime.registry import EntityRegistry
from tessera.specs.entity import EntityAction

ContextFactory = Callable[[Request], RequestContext]


@dataclass(frozen=True)
class RouteSpec:
    """One generated route."""

    method: str
    path: str
    action: EntityAction | None  # None for the nested endpoint
    entity: str | None = None

    @property
    def name(self) -> str:
        if self.entity is None:
            return "nested"
        return f"{self.entity}.{self.action.value if self.action else ''}"


_COLLECTION = "/{slug}"
_RECORD = "/{slug}/{{id}}"

# Order matters: static segments before {id}.
_ROUTE_TABLE: list[tuple[str, str, EntityAction]] = [
    ("GET", _COLLECTION, EntityAction.LIST),
    ("POST", _COLLECTION, EntityAction.CREATE),
    ("GET", "/{slug}/trashed", EntityAction.TRASHED),
    ("POST", "/{slug}/{{id}}/restore", EntityAction.RESTORE),
    ("DELETE", "/{slug}/{{id}}/force-delete", EntityAction.PURGE),
    ("GET", _RECORD, EntityAction.READ),
    ("PUT", _RECORD, EntityAction.UPDATE),
    ("PATCH", _RECORD, EntityAction.UPDATE),
    ("DELETE", _RECORD, EntityAction.DELETE),
]


def plan_routes(registry: EntityRegistry) -> list[RouteSpec]:
    """
    List the routes a registry produces, in registration order.

    Raises:
        ConfigurationError: If an entity slug collides with the nested path
    """
    nested_path = registry.nested.path.strip("/")
    routes = [RouteSpec("POST", f"/{nested_path}", None)]
    for entity in registry:
        if entity.slug == nested_path:
            raise ConfigurationError(
                f"Entity slug '{entity.slug}' collides with the nested endpoint path"
            )
        for method, template, action in _ROUTE_TABLE:
            if action.needs_soft_deletes and not entity.soft_deletes:
                continue
            routes.append(RouteSpec(method, template.format(slug=entity.slug), action, entity.slug))
    return routes


def to_response(result: OperationResult) -> Response:
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(
        content=jsonable_encoder(result.body),
        status_code=result.status_code,
        headers=result.headers,
    )


def _parse_id(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise NotFoundError() from None


class RouteGenerator:
    """
    Generates the API router.

    Example:
        generator = RouteGenerator(dispatcher, nested, context_factory, middleware={"audit": dep})
        app.include_router(generator.generate_all_routes(), prefix="/api")
    """

    def __init__(
        self,
        dispatcher: CrudDispatcher,
        nested: NestedExecutor,
        context_factory: ContextFactory,
        middleware: Mapping[str, Callable[..., Any]] | None = None,
    ):
        """
        Initialize the route generator.

        Args:
            dispatcher: CRUD dispatcher shared by all routes
            nested: Nested transaction executor
            context_factory: Builds the RequestContext from the incoming request
            middleware: Named FastAPI dependencies entities may attach
        """
        self.dispatcher = dispatcher
        self.nested = nested
        self.context_factory = context_factory
        self.middleware = dict(middleware or {})
        self._router = APIRouter()

    def _dependencies(self, names: list[str], where: str) -> list[Any]:
        unknown = [n for n in names if n not in self.middleware]
        if unknown:
            raise ConfigurationError(f"{where}: unknown middleware {unknown}")
        return [Depends(self.middleware[n]) for n in names]

    def _entity_handler(self, slug: str, action: EntityAction) -> Callable[..., Response]:
        dispatcher = self.dispatcher
        context_factory = self.context_factory

        def run(request: Request, id: str | None, payload: Any) -> Response:
            ctx = context_factory(request)
            operation = OperationRequest(
                action=action,
                entity=slug,
                id=_parse_id(id) if id is not None else None,
                payload=payload,
                params=parse_query_params(request.query_params.multi_items()),
            )
            return to_response(dispatcher.dispatch(ctx, operation))

        if action == EntityAction.CREATE:

            def create_handler(request: Request, payload: Any = Body(default=None)) -> Response:
                return run(request, None, payload)

            return create_handler

        if action == EntityAction.UPDATE:

            def update_handler(
                request: Request, id: str, payload: Any = Body(default=None)
            ) -> Response:
                return run(request, id, payload)

            return update_handler

        if action.loads_record:

            def record_handler(request: Request, id: str) -> Response:
                return run(request, id, None)

            return record_handler

        def collection_handler(request: Request) -> Response:
            return run(request, None, None)

        return collection_handler

    def _nested_handler(self) -> Callable[..., Response]:
        nested = self.nested
        context_factory = self.context_factory

        def nested_handler(request: Request, payload: Any = Body(default=None)) -> Response:
            results = nested.execute(context_factory(request), payload)
            return JSONResponse(content=jsonable_encoder({"results": results}), status_code=200)

        return nested_handler

    def generate_all_routes(self) -> APIRouter:
        """Register every planned route and return the router."""
        registry = self.dispatcher.registry
        for route in plan_routes(registry):
            if route.entity is None:
                handler = self._nested_handler()
                dependencies: list[Any] = []
                tags = ["nested"]
            else:
                assert route.action is not None
                entity = registry.lookup(route.entity)
                handler = self._entity_handler(entity.slug, route.action)
                dependencies = self._dependencies(
                    entity.middleware_for(route.action), f"{entity.slug}.{route.action.value}"
                )
                tags = [entity.label or entity.slug]

            self._router.add_api_route(
                route.path,
                handler,
                methods=[route.method],
                name=f"{route.name}.{route.method.lower()}",
                dependencies=dependencies,
                tags=tags,  # type: ignore[arg-type]
            )
        return self._router

    @property
    def router(self) -> APIRouter:
        return self._router
