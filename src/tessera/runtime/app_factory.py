"""
Application factory for Tessera.

Convenience functions for creating and running an application from an
AppSpec, a plain dict, or a registry file on disk.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tessera.core.config import EngineConfig, load_app_spec
from tessera.runtime.access_control import PolicyRegistry
from tessera.runtime.registry import EntityRegistry
from tessera.runtime.server import (
    ActorResolver,
    ServerConfig,
    TenantResolver,
    TesseraApp,
    _no_actor,
    _no_tenant,
)
from tessera.specs import AppSpec

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)


# =============================================================================
# App Factory
# =============================================================================


def create_app(
    spec: AppSpec | EntityRegistry,
    config: EngineConfig | None = None,
    *,
    policies: PolicyRegistry | None = None,
    actor_resolver: ActorResolver | None = None,
    tenant_resolver: TenantResolver | None = None,
    middleware: dict[str, Callable[..., Any]] | None = None,
    database_path: str | Path | None = None,
) -> FastAPI:
    """
    Create a FastAPI application from an AppSpec.

    Args:
        spec: Application spec or a prebuilt registry
        config: Engine configuration (defaults to EngineConfig())
        policies: Per-entity policies; entities without one use ResourcePolicy
        actor_resolver: Returns the authenticated Actor for a request, or None
        tenant_resolver: Returns the tenant id for a request, or None
        middleware: Named FastAPI dependencies entities may reference
        database_path: Overrides config.database_path

    Returns:
        FastAPI application

    Example:
        >>> from tessera.specs import AppSpec
        >>> spec = AppSpec.model_validate({"entities": [{"slug": "posts", ...}]})
        >>> app = create_app(spec, actor_resolver=my_resolver)
    """
    server_config = ServerConfig(
        engine=config or EngineConfig(),
        policies=policies or PolicyRegistry(),
        actor_resolver=actor_resolver or _no_actor,
        tenant_resolver=tenant_resolver or _no_tenant,
        middleware=dict(middleware or {}),
    )
    builder = TesseraApp(spec, server_config, database_path=database_path)
    return builder.build()


def run_app(
    spec: AppSpec | EntityRegistry,
    config: EngineConfig | None = None,
    reload: bool = False,
    **kwargs: Any,
) -> None:
    """
    Run a Tessera application with uvicorn.

    Args:
        spec: Application spec or a prebuilt registry
        config: Engine configuration; host and port are read from it
        reload: Enable auto-reload (for development)
        **kwargs: Passed through to create_app

    Example:
        >>> run_app(load_app_spec("registry.json"), EngineConfig(port=9000))
    """
    import uvicorn

    engine = config or EngineConfig()
    app = create_app(spec, engine, **kwargs)
    logger.info("Serving on http://%s:%s%s", engine.host, engine.port, engine.api_prefix)
    uvicorn.run(app, host=engine.host, port=engine.port, reload=reload)


# =============================================================================
# App from JSON/Dict
# =============================================================================


def create_app_from_dict(spec_dict: dict[str, Any], **kwargs: Any) -> FastAPI:
    """
    Create a FastAPI application from a registry document held in a dict.

    Args:
        spec_dict: Dictionary representation of AppSpec
        **kwargs: Passed through to create_app

    Returns:
        FastAPI application
    """
    spec = AppSpec.model_validate(spec_dict)
    return create_app(spec, **kwargs)


def create_app_from_json(json_path: str | Path, **kwargs: Any) -> FastAPI:
    """
    Create a FastAPI application from a registry file.

    Both JSON and TOML registry files are accepted.

    Args:
        json_path: Path to the registry file
        **kwargs: Passed through to create_app

    Returns:
        FastAPI application
    """
    return create_app(load_app_spec(json_path), **kwargs)
