"""Tests for the CRUD dispatcher state machine."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import pytest

from tessera.runtime.access_control import Actor, RequestContext
from tessera.runtime.crud import CrudDispatcher, OperationRequest
from tessera.runtime.errors import (
    AuthorizationError,
    NotFoundError,
    StructuralError,
    ValidationFailed,
)
from tessera.specs import EntityAction

Insert = Callable[..., dict[str, Any]]


def _op(action: EntityAction, entity: str, **kwargs: Any) -> OperationRequest:
    return OperationRequest(action=action, entity=entity, **kwargs)


# =============================================================================
# Gating
# =============================================================================


class TestGating:
    def test_unknown_entity(self, dispatcher: CrudDispatcher, admin_ctx: RequestContext) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            dispatcher.dispatch(admin_ctx, _op(EntityAction.LIST, "widgets"))
        assert exc_info.value.message == "The widgets resource does not exist."

    def test_excluded_action(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B")
        post = insert("posts", blog_id=blog["id"], title="T")
        comment = insert("comments", post_id=post["id"], body="hi")
        with pytest.raises(NotFoundError) as exc_info:
            dispatcher.dispatch(admin_ctx, _op(EntityAction.DELETE, "comments", id=comment["id"]))
        assert exc_info.value.message == "Resource not found."

    def test_soft_delete_action_on_plain_entity(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext
    ) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            dispatcher.dispatch(admin_ctx, _op(EntityAction.TRASHED, "blogs"))
        assert exc_info.value.message == "This resource does not support soft deletes."

    def test_missing_id(self, dispatcher: CrudDispatcher, admin_ctx: RequestContext) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            dispatcher.dispatch(admin_ctx, _op(EntityAction.READ, "posts"))
        assert exc_info.value.message == "Resource ID not specified."

    def test_anonymous_is_denied(self, dispatcher: CrudDispatcher) -> None:
        with pytest.raises(AuthorizationError):
            dispatcher.dispatch(RequestContext(), _op(EntityAction.LIST, "posts"))

    def test_capability_checked_before_lookup(
        self, dispatcher: CrudDispatcher, editor_ctx: RequestContext
    ) -> None:
        # the row does not exist, but the editor may not delete blogs at all
        with pytest.raises(AuthorizationError):
            dispatcher.dispatch(editor_ctx, _op(EntityAction.DELETE, "blogs", id=999))

    def test_missing_row(self, dispatcher: CrudDispatcher, admin_ctx: RequestContext) -> None:
        with pytest.raises(NotFoundError):
            dispatcher.dispatch(admin_ctx, _op(EntityAction.READ, "posts", id=999))


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    def test_list_unpaged(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        insert("blogs", title="A")
        insert("blogs", title="B")
        result = dispatcher.dispatch(admin_ctx, _op(EntityAction.LIST, "blogs"))
        assert result.status_code == 200
        assert [row["title"] for row in result.body] == ["A", "B"]
        assert result.headers == {}

    def test_list_paginated_headers(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        for i in range(5):
            insert("blogs", title=f"B{i}")
        result = dispatcher.dispatch(
            admin_ctx, _op(EntityAction.LIST, "blogs", params={"per_page": "2", "page": "3"})
        )
        assert [row["title"] for row in result.body] == ["B4"]
        assert result.headers["X-Total"] == "5"
        assert result.headers["X-Last-Page"] == "3"

    def test_read_with_include(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B")
        post = insert("posts", blog_id=blog["id"], title="T", secret_note="x")
        result = dispatcher.dispatch(
            admin_ctx,
            _op(EntityAction.READ, "posts", id=post["id"], params={"include": "blog"}),
        )
        assert result.body["blog"]["title"] == "B"
        assert "secret_note" not in result.body

    def test_search_through_related_table(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        ann = insert("users", name="Ann", email="ann@example.com")
        bob = insert("users", name="Bob", email="bob@example.com")
        insert("users", name="Cy", email="cy@example.com")
        insert("profiles", user_id=ann["id"], bio="Writes RUST daily")
        insert("profiles", user_id=bob["id"], bio="Gardening")
        result = dispatcher.dispatch(
            admin_ctx, _op(EntityAction.LIST, "users", params={"search": "rust"})
        )
        assert [row["name"] for row in result.body] == ["Ann"]

        by_name = dispatcher.dispatch(
            admin_ctx, _op(EntityAction.LIST, "users", params={"search": "bo"})
        )
        assert [row["name"] for row in by_name.body] == ["Bob"]

    def test_include_denied_before_loading(
        self, dispatcher: CrudDispatcher, editor_ctx: RequestContext
    ) -> None:
        with pytest.raises(AuthorizationError, match="comments.user"):
            dispatcher.dispatch(
                editor_ctx, _op(EntityAction.LIST, "posts", params={"include": "comments.user"})
            )

    def test_tenant_scope(self, dispatcher: CrudDispatcher) -> None:
        entity = dispatcher.registry.lookup("blogs")
        ctx = RequestContext(actor=Actor(user_id=1, permissions=["*"]), tenant_id="acme")
        # blogs has no tenant field, so tenant context adds no filter
        assert dispatcher.tenant_scope(ctx, entity) == {}


# =============================================================================
# Writes
# =============================================================================


class TestWrites:
    def test_create(self, dispatcher: CrudDispatcher, admin_ctx: RequestContext) -> None:
        result = dispatcher.dispatch(
            admin_ctx, _op(EntityAction.CREATE, "blogs", payload={"title": "New"})
        )
        assert result.status_code == 201
        assert result.body["title"] == "New"
        assert result.body["description"] is None

    def test_create_validation_failure(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext
    ) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            dispatcher.dispatch(admin_ctx, _op(EntityAction.CREATE, "blogs", payload={}))
        assert exc_info.value.errors == {"title": ["The title field is required."]}

    def test_non_object_payload(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext
    ) -> None:
        with pytest.raises(StructuralError):
            dispatcher.dispatch(admin_ctx, _op(EntityAction.CREATE, "blogs", payload=[1, 2]))

    def test_role_bucket_drops_unlisted_fields(
        self, dispatcher: CrudDispatcher, editor_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B")
        result = dispatcher.dispatch(
            editor_ctx,
            _op(
                EntityAction.CREATE,
                "posts",
                payload={"blog_id": blog["id"], "title": "T", "user_id": 1, "views": 50},
            ),
        )
        assert result.body["user_id"] is None
        assert result.body["views"] == 0

    def test_update(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B", description="d")
        result = dispatcher.dispatch(
            admin_ctx,
            _op(EntityAction.UPDATE, "blogs", id=blog["id"], payload={"title": "B2"}),
        )
        assert result.status_code == 200
        assert result.body["title"] == "B2"
        assert result.body["description"] == "d"

    def test_update_missing_row(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext
    ) -> None:
        with pytest.raises(NotFoundError):
            dispatcher.dispatch(
                admin_ctx, _op(EntityAction.UPDATE, "blogs", id=42, payload={"title": "x"})
            )

    def test_concurrent_updates_of_one_row(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B")
        workers = 6
        start = threading.Barrier(workers)
        statuses: list[int] = []
        errors: list[Exception] = []

        def rename(n: int) -> None:
            start.wait()
            try:
                result = dispatcher.dispatch(
                    admin_ctx,
                    _op(EntityAction.UPDATE, "blogs", id=blog["id"], payload={"title": f"B{n}"}),
                )
                statuses.append(result.status_code)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=rename, args=(n,)) for n in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert statuses == [200] * workers


# =============================================================================
# Deletes
# =============================================================================


class TestDeletes:
    def test_soft_delete_cycle(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B")
        post_id = insert("posts", blog_id=blog["id"], title="T")["id"]

        deleted = dispatcher.dispatch(admin_ctx, _op(EntityAction.DELETE, "posts", id=post_id))
        assert deleted.status_code == 204
        assert deleted.body is None
        with pytest.raises(NotFoundError):
            dispatcher.dispatch(admin_ctx, _op(EntityAction.READ, "posts", id=post_id))

        trashed = dispatcher.dispatch(admin_ctx, _op(EntityAction.TRASHED, "posts"))
        assert [row["id"] for row in trashed.body] == [post_id]

        restored = dispatcher.dispatch(admin_ctx, _op(EntityAction.RESTORE, "posts", id=post_id))
        assert restored.body["deleted_at"] is None

        dispatcher.dispatch(admin_ctx, _op(EntityAction.DELETE, "posts", id=post_id))
        purged = dispatcher.dispatch(admin_ctx, _op(EntityAction.PURGE, "posts", id=post_id))
        assert purged.status_code == 204
        with pytest.raises(NotFoundError):
            dispatcher.dispatch(admin_ctx, _op(EntityAction.RESTORE, "posts", id=post_id))

    def test_restore_requires_trashed_row(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B")
        post = insert("posts", blog_id=blog["id"], title="T")
        with pytest.raises(NotFoundError):
            dispatcher.dispatch(admin_ctx, _op(EntityAction.RESTORE, "posts", id=post["id"]))

    def test_hard_delete_without_soft_deletes(
        self, dispatcher: CrudDispatcher, admin_ctx: RequestContext, insert: Insert
    ) -> None:
        blog = insert("blogs", title="B")
        result = dispatcher.dispatch(admin_ctx, _op(EntityAction.DELETE, "blogs", id=blog["id"]))
        assert result.status_code == 204
        with dispatcher.storage.transaction() as session:
            assert session.find(dispatcher.registry.lookup("blogs"), blog["id"]) is None
