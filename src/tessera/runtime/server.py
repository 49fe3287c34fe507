"""
Runtime server - assembles a FastAPI application from an entity registry.

The builder wires the pieces in a fixed order:

    registry -> database schema -> dispatcher + nested executor
             -> generated routes -> exception handlers

Authentication is not part of the engine. Callers supply an
``actor_resolver`` and a ``tenant_resolver`` that read whatever the request
carries (session, token, header) and return the Actor and tenant id.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request

from tessera.core.config import EngineConfig
from tessera.runtime.access_control import Actor, PolicyRegistry, RequestContext
from tessera.runtime.crud import CrudDispatcher
from tessera.runtime.exception_handlers import register_exception_handlers
from tessera.runtime.logging import get_logger
from tessera.runtime.nested import NestedExecutor
from tessera.runtime.registry import EntityRegistry
from tessera.runtime.repository import DatabaseManager
from tessera.runtime.route_generator import RouteGenerator
from tessera.specs import AppSpec

logger = get_logger("Server")

ActorResolver = Callable[[Request], Actor | None]
TenantResolver = Callable[[Request], str | None]


def _no_actor(request: Request) -> Actor | None:
    return None


def _no_tenant(request: Request) -> str | None:
    return None


@dataclass
class ServerConfig:
    """
    Configuration for TesseraApp.

    Groups the request-level hooks that cannot live in a config file.
    """

    # Engine settings (database path, API prefix)
    engine: EngineConfig = field(default_factory=EngineConfig)

    # Authorization hooks
    policies: PolicyRegistry = field(default_factory=PolicyRegistry)
    actor_resolver: ActorResolver = _no_actor
    tenant_resolver: TenantResolver = _no_tenant

    # Named FastAPI dependencies entities reference via `middleware`
    middleware: dict[str, Callable[..., Any]] = field(default_factory=dict)

    # Create missing tables on startup
    create_tables: bool = True


class TesseraApp:
    """
    Tessera application builder.

    Creates a complete FastAPI application from an AppSpec or a prebuilt
    EntityRegistry.
    """

    def __init__(
        self,
        spec: AppSpec | EntityRegistry,
        config: ServerConfig | None = None,
        *,
        database_path: str | Path | None = None,
    ):
        """
        Initialize the application builder.

        Args:
            spec: Application spec, or a registry built from one
            config: Server configuration object
            database_path: Overrides config.engine.database_path
        """
        self.config = config or ServerConfig()
        self.registry = (
            spec if isinstance(spec, EntityRegistry) else EntityRegistry.from_spec(spec)
        )
        self._database_path = Path(database_path or self.config.engine.database_path)
        self._app: FastAPI | None = None
        self._db: DatabaseManager | None = None
        self._dispatcher: CrudDispatcher | None = None
        self._nested: NestedExecutor | None = None

    # -------------------------------------------------------------------------
    # Build steps
    # -------------------------------------------------------------------------

    def _create_app(self) -> None:
        self._app = FastAPI(
            title="Tessera",
            description="Declarative resource API",
            version="1.0.0",
        )

    def _setup_database(self) -> None:
        self._db = DatabaseManager(self._database_path, self.registry)
        if self.config.create_tables:
            self._db.create_all_tables()

    def _setup_engine(self) -> None:
        assert self._db is not None
        self._dispatcher = CrudDispatcher(self.registry, self._db, self.config.policies)
        self._nested = NestedExecutor(self._dispatcher, self.registry.nested)

    def _context_factory(self) -> Callable[[Request], RequestContext]:
        actor_resolver = self.config.actor_resolver
        tenant_resolver = self.config.tenant_resolver

        def context_for(request: Request) -> RequestContext:
            return RequestContext(
                actor=actor_resolver(request), tenant_id=tenant_resolver(request)
            )

        return context_for

    def _setup_routes(self) -> None:
        assert self._app is not None
        assert self._dispatcher is not None and self._nested is not None
        generator = RouteGenerator(
            self._dispatcher,
            self._nested,
            self._context_factory(),
            middleware=self.config.middleware,
        )
        self._app.include_router(
            generator.generate_all_routes(), prefix=self.config.engine.api_prefix
        )
        register_exception_handlers(self._app)

    def build(self) -> FastAPI:
        """
        Build the FastAPI application.

        Returns:
            FastAPI application instance

        Raises:
            ConfigurationError: If routes collide or middleware names are unknown
        """
        self._create_app()
        self._setup_database()
        self._setup_engine()
        self._setup_routes()

        assert self._app is not None
        self._app.state.tessera = self
        logger.info(
            f"Application built with {len(self.registry)} entities "
            f"at prefix '{self.config.engine.api_prefix}'"
        )
        return self._app

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def app(self) -> FastAPI | None:
        """Get the FastAPI application (None if not built)."""
        return self._app

    @property
    def db(self) -> DatabaseManager | None:
        return self._db

    @property
    def dispatcher(self) -> CrudDispatcher | None:
        return self._dispatcher

    @property
    def entity_slugs(self) -> list[str]:
        return self.registry.slugs()
