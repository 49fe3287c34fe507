"""Tenant scoping over HTTP, with the tenant taken from the X-Tenant header."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from tessera.core.config import EngineConfig
from tessera.runtime.access_control import Actor
from tessera.runtime.app_factory import create_app
from tessera.specs import AppSpec


@pytest.fixture
def tenant_client(tenancy_spec: AppSpec, tmp_path: Path) -> tuple[TestClient, dict[str, Any]]:
    def resolve_actor(request: Request) -> Actor:
        return Actor(user_id=1, permissions=["*"])

    def resolve_tenant(request: Request) -> str | None:
        return request.headers.get("X-Tenant")

    app = create_app(
        tenancy_spec,
        EngineConfig(log_dir=None),
        actor_resolver=resolve_actor,
        tenant_resolver=resolve_tenant,
        database_path=tmp_path / "tenancy.db",
    )
    db = app.state.tessera.db
    ids: dict[str, Any] = {}
    with db.transaction(write=True) as session:
        for org in ("a", "b"):
            project = session.insert(
                db.registry.lookup("projects"), {"name": org.upper(), "org": org}
            )
            task = session.insert(
                db.registry.lookup("tasks"), {"project_id": project["id"], "title": f"task-{org}"}
            )
            ids[f"task_{org}"] = task["id"]
    return TestClient(app, headers={"X-Tenant": "a"}), ids


class TestTenantScopedApi:
    def test_list_through_owner(self, tenant_client: tuple[TestClient, dict[str, Any]]) -> None:
        client, _ = tenant_client
        assert [t["title"] for t in client.get("/api/tasks").json()] == ["task-a"]
        assert [p["name"] for p in client.get("/api/projects").json()] == ["A"]

    def test_other_tenants_row_is_not_found(
        self, tenant_client: tuple[TestClient, dict[str, Any]]
    ) -> None:
        client, ids = tenant_client
        response = client.get(f"/api/tasks/{ids['task_b']}")
        assert response.status_code == 404
        assert response.json() == {"message": "Resource not found."}
        own = client.get(f"/api/tasks/{ids['task_b']}", headers={"X-Tenant": "b"})
        assert own.status_code == 200

    def test_nested_update_of_other_tenants_row(
        self, tenant_client: tuple[TestClient, dict[str, Any]]
    ) -> None:
        client, ids = tenant_client
        response = client.post(
            "/api/nested",
            json={
                "operations": [
                    {
                        "entity": "tasks",
                        "action": "update",
                        "id": ids["task_b"],
                        "data": {"title": "x"},
                    }
                ]
            },
        )
        assert response.status_code == 404
        assert response.json()["index"] == 0
        titles = client.get("/api/tasks", headers={"X-Tenant": "b"}).json()
        assert [t["title"] for t in titles] == ["task-b"]
