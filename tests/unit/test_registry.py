"""Tests for the entity registry: lookups, relation resolution and startup checks."""

from __future__ import annotations

import pytest

from tessera.runtime.errors import ConfigurationError, NotFoundError
from tessera.runtime.registry import EntityRegistry
from tessera.runtime.validation import FlatRuleTable, RoleKeyedRuleTable
from tessera.specs import ColumnSpec, EntityAction, EntitySpec, RelationKind, RelationSpec


def _entity(slug: str, columns: list[str] | None = None, **kwargs: object) -> EntitySpec:
    return EntitySpec(
        slug=slug,
        columns=[ColumnSpec(name=c) for c in (columns or [])],
        **kwargs,  # type: ignore[arg-type]
    )


class TestLookup:
    def test_lookup_known_slug(self, registry: EntityRegistry) -> None:
        assert registry.lookup("posts").slug == "posts"

    def test_lookup_unknown_slug(self, registry: EntityRegistry) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            registry.lookup("widgets")
        assert exc_info.value.message == "The widgets resource does not exist."

    def test_get_returns_none(self, registry: EntityRegistry) -> None:
        assert registry.get("widgets") is None

    def test_iteration_and_membership(self, registry: EntityRegistry) -> None:
        assert "blogs" in registry
        assert "widgets" not in registry
        assert len(registry) == 5
        assert [e.slug for e in registry] == registry.slugs()


class TestRelations:
    def test_belongs_to_default_key(self, registry: EntityRegistry) -> None:
        info = registry.relation("posts", "blog")
        assert info is not None
        assert info.foreign_key == "blog_id"
        assert info.key_on_owner
        assert info.is_to_one

    def test_belongs_to_explicit_key(self, registry: EntityRegistry) -> None:
        info = registry.relation("posts", "author")
        assert info is not None
        assert info.to_entity == "users"
        assert info.foreign_key == "user_id"

    def test_has_many_key_inferred_from_inverse(self, registry: EntityRegistry) -> None:
        info = registry.relation("posts", "comments")
        assert info is not None
        assert info.kind == RelationKind.HAS_MANY
        assert info.foreign_key == "post_id"
        assert not info.key_on_owner

    def test_has_one_key_inferred(self, registry: EntityRegistry) -> None:
        info = registry.relation("users", "profile")
        assert info is not None
        assert info.foreign_key == "user_id"
        assert info.is_to_one

    def test_relations_of(self, registry: EntityRegistry) -> None:
        names = {r.name for r in registry.relations_of("posts")}
        assert names == {"blog", "author", "comments"}

    def test_unknown_target(self) -> None:
        posts = _entity("posts", ["blog_id"], relations=[RelationSpec(name="blog", target="blogs")])
        with pytest.raises(ConfigurationError, match="unknown target"):
            EntityRegistry.from_entities([posts])

    def test_missing_foreign_key_column(self) -> None:
        blogs = _entity("blogs")
        posts = _entity("posts", ["title"], relations=[RelationSpec(name="blog", target="blogs")])
        with pytest.raises(ConfigurationError, match="blog_id"):
            EntityRegistry.from_entities([blogs, posts])

    def test_ambiguous_inverse_needs_explicit_key(self) -> None:
        users = _entity(
            "users", relations=[RelationSpec(name="posts", target="posts", kind="has_many")]
        )
        posts = _entity(
            "posts",
            ["author_id", "editor_id"],
            relations=[
                RelationSpec(name="author", target="users"),
                RelationSpec(name="editor", target="users"),
            ],
        )
        with pytest.raises(ConfigurationError, match="cannot infer foreign key"):
            EntityRegistry.from_entities([users, posts])


class TestWhitelistChecks:
    def test_unknown_filter_column(self) -> None:
        with pytest.raises(ConfigurationError, match="allowed_filters"):
            EntityRegistry.from_entities([_entity("tags", ["name"], allowed_filters=["nope"])])

    def test_managed_columns_are_filterable(self) -> None:
        registry = EntityRegistry.from_entities(
            [_entity("tags", ["name"], allowed_sorts=["created_at", "id"])]
        )
        assert "tags" in registry

    def test_unknown_include(self) -> None:
        with pytest.raises(ConfigurationError, match="allowed_includes"):
            EntityRegistry.from_entities([_entity("tags", ["name"], allowed_includes=["posts"])])

    def test_unknown_search_path(self) -> None:
        with pytest.raises(ConfigurationError, match="allowed_search"):
            EntityRegistry.from_entities([_entity("tags", ["name"], allowed_search=["owner.name"])])

    def test_unknown_default_sort(self) -> None:
        with pytest.raises(ConfigurationError, match="default_sort"):
            EntityRegistry.from_entities([_entity("tags", ["name"], default_sort="-rank")])

    def test_unknown_rule(self) -> None:
        with pytest.raises(ConfigurationError, match="tags.name"):
            EntityRegistry.from_entities(
                [_entity("tags", ["name"], validation_rules={"name": "string|shiny"})]
            )

    def test_nested_allow_list_must_name_entities(self) -> None:
        with pytest.raises(ConfigurationError, match="nested.allowed_entities"):
            EntityRegistry.from_entities(
                [_entity("tags", ["name"])], nested={"allowed_entities": ["widgets"]}
            )


class TestTenantOwner:
    def _projects(self, **kwargs: object) -> EntitySpec:
        return _entity("projects", ["name", "org"], **kwargs)

    def _tasks(self, **kwargs: object) -> EntitySpec:
        return _entity(
            "tasks",
            ["project_id", "title"],
            relations=[RelationSpec(name="project", target="projects")],
            **kwargs,
        )

    def test_owner_path_resolves_to_tenant_column(self) -> None:
        registry = EntityRegistry.from_entities(
            [self._projects(tenant_field="org"), self._tasks(tenant_owner="project")]
        )
        assert registry.tenant_path("tasks") == "project.org"
        assert registry.tenant_path("projects") == "org"

    def test_unscoped_entity_has_no_path(self, registry: EntityRegistry) -> None:
        assert registry.tenant_path("posts") is None

    def test_unknown_owner_relation(self) -> None:
        with pytest.raises(ConfigurationError, match="tenant_owner: unknown relation"):
            EntityRegistry.from_entities(
                [self._projects(tenant_field="org"), self._tasks(tenant_owner="board")]
            )

    def test_owner_without_tenant_column(self) -> None:
        with pytest.raises(ConfigurationError, match="'projects' has no tenant_field"):
            EntityRegistry.from_entities([self._projects(), self._tasks(tenant_owner="project")])

    def test_field_and_owner_are_exclusive(self) -> None:
        with pytest.raises(ConfigurationError, match="not both"):
            EntityRegistry.from_entities(
                [
                    self._projects(tenant_field="org"),
                    self._tasks(tenant_owner="project", tenant_field="title"),
                ]
            )

    def test_ownership_cycle(self) -> None:
        projects = _entity(
            "projects",
            ["name", "task_id"],
            relations=[RelationSpec(name="task", target="tasks")],
            tenant_owner="task",
        )
        with pytest.raises(ConfigurationError, match="ownership cycle"):
            EntityRegistry.from_entities([projects, self._tasks(tenant_owner="project")])


class TestRuleTables:
    def test_tables_normalized_at_build(self, registry: EntityRegistry) -> None:
        assert isinstance(registry.rule_table("blogs", EntityAction.CREATE), FlatRuleTable)
        assert isinstance(registry.rule_table("posts", EntityAction.CREATE), RoleKeyedRuleTable)
        assert isinstance(registry.rule_table("comments", EntityAction.UPDATE), FlatRuleTable)
