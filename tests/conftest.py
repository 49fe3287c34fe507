"""Shared pytest fixtures for Tessera tests.

The fixture registry models a small blog:

    blogs 1-* posts 1-* comments *-1 users 1-1 profiles
                 posts *-1 users (author)

Posts carry soft deletes, role-keyed rule tables and a hidden column.
Blogs are hard-deleting with a flat rule list.

A second registry (projects 1-* tasks 1-* notes) is tenant-scoped: projects
carry the tenant column, tasks and notes reach it through tenant_owner.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from tessera.core.config import EngineConfig
from tessera.runtime.access_control import Actor, RequestContext, RoleAssignment
from tessera.runtime.app_factory import create_app
from tessera.runtime.crud import CrudDispatcher
from tessera.runtime.registry import EntityRegistry
from tessera.runtime.repository import DatabaseManager
from tessera.specs import AppSpec


def blog_app_dict() -> dict[str, Any]:
    """Registry document for the blog fixture (as a registry file would hold it)."""
    return {
        "name": "blog",
        "nested": {"path": "nested", "max_operations": 10},
        "entities": [
            {
                "slug": "blogs",
                "label": "Blogs",
                "columns": [
                    {"name": "title", "nullable": False},
                    {"name": "description", "type": "text"},
                ],
                "relations": [{"name": "posts", "target": "posts", "kind": "has_many"}],
                "validation_rules": {"title": "required|string|max:255", "description": "string"},
                "validation_rules_store": ["title", "description"],
                "validation_rules_update": {
                    "*": {"title": "sometimes", "description": "sometimes"}
                },
                "allowed_filters": ["title"],
                "allowed_sorts": ["title", "id"],
                "allowed_includes": ["posts"],
                "default_sort": "id",
            },
            {
                "slug": "posts",
                "label": "Posts",
                "columns": [
                    {"name": "blog_id", "type": "integer", "nullable": False},
                    {"name": "user_id", "type": "integer"},
                    {"name": "title", "nullable": False},
                    {"name": "content", "type": "text"},
                    {"name": "status", "default": "draft"},
                    {"name": "views", "type": "integer", "default": 0},
                    {"name": "secret_note"},
                ],
                "relations": [
                    {"name": "blog", "target": "blogs"},
                    {"name": "author", "target": "users", "foreign_key": "user_id"},
                    {"name": "comments", "target": "comments", "kind": "has_many"},
                ],
                "validation_rules": {
                    "blog_id": "integer",
                    "user_id": "nullable|integer",
                    "title": "string|max:255",
                    "content": "nullable|string",
                    "status": "in:draft,published",
                    "views": "integer|min:0",
                    "secret_note": "nullable|string",
                },
                "validation_rules_store": {
                    "*": {
                        "blog_id": "required",
                        "title": "required",
                        "content": "sometimes",
                        "status": "sometimes",
                    },
                    "admin": {
                        "blog_id": "required",
                        "title": "required",
                        "content": "sometimes",
                        "status": "sometimes",
                        "views": "sometimes",
                        "user_id": "sometimes",
                        "secret_note": "sometimes",
                    },
                },
                "validation_rules_update": {
                    "*": {"title": "sometimes", "content": "sometimes", "status": "sometimes"},
                },
                "validation_messages": {"title.max": "Titles are limited to :max characters."},
                "allowed_filters": ["title", "status", "blog_id"],
                "allowed_sorts": ["title", "created_at", "views", "id"],
                "allowed_fields": ["title", "content", "status", "created_at"],
                "allowed_includes": ["blog", "author", "comments"],
                "allowed_search": ["title", "content"],
                "default_sort": "id",
                "soft_deletes": True,
                "additional_hidden_columns": ["secret_note"],
            },
            {
                "slug": "comments",
                "columns": [
                    {"name": "post_id", "type": "integer", "nullable": False},
                    {"name": "user_id", "type": "integer"},
                    {"name": "body", "type": "text", "nullable": False},
                ],
                "relations": [
                    {"name": "post", "target": "posts"},
                    {"name": "user", "target": "users"},
                ],
                "validation_rules": {
                    "post_id": "required|integer",
                    "user_id": "nullable|integer",
                    "body": "required|string",
                },
                "validation_rules_update": ["body"],
                "allowed_includes": ["user", "post"],
                "allowed_filters": ["post_id"],
                "default_sort": "id",
                "except_actions": ["delete"],
            },
            {
                "slug": "users",
                "columns": [
                    {"name": "name", "nullable": False},
                    {"name": "email", "nullable": False, "unique": True},
                    {"name": "password"},
                ],
                "relations": [{"name": "profile", "target": "profiles", "kind": "has_one"}],
                "validation_rules": {
                    "name": "required|string",
                    "email": "required|email",
                    "password": "string|min:8",
                },
                "allowed_includes": ["profile"],
                "allowed_search": ["name", "profile.bio"],
                "default_sort": "id",
            },
            {
                "slug": "profiles",
                "columns": [
                    {"name": "user_id", "type": "integer", "nullable": False},
                    {"name": "bio", "type": "text"},
                ],
                "relations": [{"name": "user", "target": "users"}],
                "allowed_includes": ["user"],
            },
        ],
    }


def tenancy_app_dict() -> dict[str, Any]:
    """projects carry the tenant column; tasks and notes reach it through relations."""
    return {
        "entities": [
            {
                "slug": "projects",
                "columns": [
                    {"name": "name", "nullable": False},
                    {"name": "org", "nullable": False},
                ],
                "relations": [{"name": "tasks", "target": "tasks", "kind": "has_many"}],
                "validation_rules": {"name": "required|string"},
                "tenant_field": "org",
                "default_sort": "id",
            },
            {
                "slug": "tasks",
                "columns": [
                    {"name": "project_id", "type": "integer", "nullable": False},
                    {"name": "title", "nullable": False},
                ],
                "relations": [{"name": "project", "target": "projects"}],
                "validation_rules": {"project_id": "integer", "title": "string"},
                "validation_rules_update": ["title"],
                "tenant_owner": "project",
                "default_sort": "id",
            },
            {
                "slug": "notes",
                "columns": [
                    {"name": "task_id", "type": "integer", "nullable": False},
                    {"name": "body", "nullable": False},
                ],
                "relations": [{"name": "task", "target": "tasks"}],
                "tenant_owner": "task",
                "default_sort": "id",
            },
        ]
    }


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def app_dict() -> dict[str, Any]:
    return blog_app_dict()


@pytest.fixture
def app_spec(app_dict: dict[str, Any]) -> AppSpec:
    return AppSpec.model_validate(app_dict)


@pytest.fixture
def tenancy_spec() -> AppSpec:
    return AppSpec.model_validate(tenancy_app_dict())


@pytest.fixture
def registry(app_spec: AppSpec) -> EntityRegistry:
    return EntityRegistry.from_spec(app_spec)


@pytest.fixture
def db(tmp_path: Path, registry: EntityRegistry) -> DatabaseManager:
    manager = DatabaseManager(tmp_path / "engine.db", registry)
    manager.create_all_tables()
    return manager


@pytest.fixture
def dispatcher(registry: EntityRegistry, db: DatabaseManager) -> CrudDispatcher:
    return CrudDispatcher(registry, db)


@pytest.fixture
def actors() -> dict[str, Actor]:
    """Named callers. ``editor`` may not list users, so user includes are denied."""
    return {
        "admin": Actor(user_id=1, roles=[RoleAssignment(role="admin")], permissions=["*"]),
        "editor": Actor(
            user_id=2,
            roles=[
                RoleAssignment(
                    role="editor",
                    permissions=["posts.*", "blogs.list", "blogs.read", "comments.list"],
                )
            ],
        ),
        "reader": Actor(user_id=3, permissions=["posts.list", "posts.read"]),
    }


@pytest.fixture
def admin_ctx(actors: dict[str, Actor]) -> RequestContext:
    return RequestContext(actor=actors["admin"])


@pytest.fixture
def editor_ctx(actors: dict[str, Actor]) -> RequestContext:
    return RequestContext(actor=actors["editor"])


def _insert_into(manager: DatabaseManager) -> Callable[..., dict[str, Any]]:
    def insert(slug: str, **data: Any) -> dict[str, Any]:
        entity = manager.registry.lookup(slug)
        with manager.transaction() as session:
            return session.insert(entity, data)

    return insert


@pytest.fixture
def insert(db: DatabaseManager) -> Callable[..., dict[str, Any]]:
    """Insert a row directly through storage, bypassing authorization and validation."""
    return _insert_into(db)


# =============================================================================
# HTTP fixtures
# =============================================================================


@pytest.fixture
def app(app_spec: AppSpec, tmp_path: Path, actors: dict[str, Actor]) -> FastAPI:
    """App whose caller is chosen by the X-Actor header."""

    def resolve_actor(request: Request) -> Actor | None:
        return actors.get(request.headers.get("X-Actor", ""))

    def resolve_tenant(request: Request) -> str | None:
        return request.headers.get("X-Tenant")

    return create_app(
        app_spec,
        EngineConfig(log_dir=None),
        actor_resolver=resolve_actor,
        tenant_resolver=resolve_tenant,
        database_path=tmp_path / "api.db",
    )


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Client acting as ``admin`` unless a request overrides X-Actor."""
    return TestClient(app, headers={"X-Actor": "admin"})


@pytest.fixture
def seed(app: FastAPI) -> Callable[..., dict[str, Any]]:
    """Insert rows into the app's own database."""
    return _insert_into(app.state.tessera.db)
