"""
Entity registry.

The registry is the immutable, process-wide map from resource slug to its
descriptor. It is built once at startup, cross-checks every descriptor
against the rest of the entity set, resolves relation keys and normalizes
validation rule tables. Nothing in it changes at request time.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from tessera.runtime.errors import ConfigurationError, NotFoundError
from tessera.runtime.logging import get_logger
from tessera.runtime.validation import RuleTable, build_rule_tables
from tessera.specs.app import DEFAULT_HIDDEN_COLUMNS, AppSpec, NestedSpec
from tessera.specs.entity import EntityAction, EntitySpec, RelationKind, RelationSpec

logger = get_logger("Registry")


# =============================================================================
# Relations
# =============================================================================


@dataclass(frozen=True)
class RelationInfo:
    """A relation with its foreign key resolved."""

    name: str
    from_entity: str
    to_entity: str
    kind: RelationKind
    foreign_key: str  # belongs_to: column on from_entity, otherwise on to_entity

    @property
    def is_to_one(self) -> bool:
        return self.kind in (RelationKind.BELONGS_TO, RelationKind.HAS_ONE)

    @property
    def key_on_owner(self) -> bool:
        return self.kind == RelationKind.BELONGS_TO


def _resolve_foreign_key(
    owner: EntitySpec, relation: RelationSpec, entities: Mapping[str, EntitySpec]
) -> str:
    target = entities[relation.target]
    if relation.kind == RelationKind.BELONGS_TO:
        fk = relation.foreign_key or f"{relation.name}_id"
        if owner.get_column(fk) is None:
            raise ConfigurationError(
                f"{owner.slug}.{relation.name}: foreign key '{fk}' "
                f"is not a column of '{owner.slug}'"
            )
        return fk

    if relation.foreign_key:
        fk = relation.foreign_key
    else:
        inverse = [
            r
            for r in target.relations
            if r.kind == RelationKind.BELONGS_TO and r.target == owner.slug
        ]
        if len(inverse) != 1:
            raise ConfigurationError(
                f"{owner.slug}.{relation.name}: cannot infer foreign key, declare 'foreign_key'"
            )
        fk = inverse[0].foreign_key or f"{inverse[0].name}_id"
    if target.get_column(fk) is None:
        raise ConfigurationError(
            f"{owner.slug}.{relation.name}: foreign key '{fk}' is not a column of '{target.slug}'"
        )
    return fk


# =============================================================================
# Registry
# =============================================================================


class EntityRegistry:
    """
    Immutable slug -> descriptor map.

    Example:
        registry = EntityRegistry.from_spec(app_spec)
        posts = registry.lookup("posts")
        author = registry.relation("posts", "author")
    """

    def __init__(
        self,
        entities: Mapping[str, EntitySpec],
        relations: Mapping[tuple[str, str], RelationInfo],
        rule_tables: Mapping[tuple[str, EntityAction], RuleTable],
        nested: NestedSpec | None = None,
        base_hidden_columns: frozenset[str] = frozenset(DEFAULT_HIDDEN_COLUMNS),
        tenant_paths: Mapping[str, str] | None = None,
    ):
        self._entities = MappingProxyType(dict(entities))
        self._relations = MappingProxyType(dict(relations))
        self._rule_tables = MappingProxyType(dict(rule_tables))
        self._tenant_paths = MappingProxyType(dict(tenant_paths or {}))
        self.nested = nested or NestedSpec()
        self.base_hidden_columns = base_hidden_columns

    @classmethod
    def from_spec(cls, spec: AppSpec) -> EntityRegistry:
        """
        Build and cross-check a registry.

        Raises:
            ConfigurationError: If a relation, whitelist or rule is inconsistent
        """
        entities = {e.slug: e for e in spec.entities}
        relations: dict[tuple[str, str], RelationInfo] = {}
        rule_tables: dict[tuple[str, EntityAction], RuleTable] = {}

        for entity in spec.entities:
            for rel in entity.relations:
                if rel.target not in entities:
                    raise ConfigurationError(
                        f"{entity.slug}.{rel.name}: unknown target entity '{rel.target}'"
                    )
                relations[(entity.slug, rel.name)] = RelationInfo(
                    name=rel.name,
                    from_entity=entity.slug,
                    to_entity=rel.target,
                    kind=rel.kind,
                    foreign_key=_resolve_foreign_key(entity, rel, entities),
                )
            for action, table in build_rule_tables(entity).items():
                rule_tables[(entity.slug, action)] = table

        tenant_paths: dict[str, str] = {}
        for entity in spec.entities:
            _check_whitelists(entity, entities)
            path = _resolve_tenant_path(entity, entities)
            if path is not None:
                tenant_paths[entity.slug] = path

        for slug in spec.nested.allowed_entities or []:
            if slug not in entities:
                raise ConfigurationError(f"nested.allowed_entities: unknown entity '{slug}'")

        registry = cls(
            entities,
            relations,
            rule_tables,
            nested=spec.nested,
            base_hidden_columns=frozenset(spec.base_hidden_columns),
            tenant_paths=tenant_paths,
        )
        logger.info(f"Registry built: {len(entities)} entities, {len(relations)} relations")
        return registry

    @classmethod
    def from_entities(cls, entities: list[EntitySpec], **kwargs: object) -> EntityRegistry:
        return cls.from_spec(AppSpec(entities=entities, **kwargs))  # type: ignore[arg-type]

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def lookup(self, slug: str) -> EntitySpec:
        """
        Get a descriptor by slug.

        Raises:
            NotFoundError: If no entity has this slug
        """
        entity = self._entities.get(slug)
        if entity is None:
            raise NotFoundError(f"The {slug} resource does not exist.")
        return entity

    def get(self, slug: str) -> EntitySpec | None:
        return self._entities.get(slug)

    def relation(self, slug: str, name: str) -> RelationInfo | None:
        return self._relations.get((slug, name))

    def relations_of(self, slug: str) -> list[RelationInfo]:
        return [info for (owner, _), info in self._relations.items() if owner == slug]

    def tenant_path(self, slug: str) -> str | None:
        """
        Column holding an entity's tenant id, or a dotted relation path to it.

        Examples:
            projects (tenant_field="org") -> "org"
            tasks (tenant_owner="project") -> "project.org"
        """
        return self._tenant_paths.get(slug)

    def rule_table(self, slug: str, action: EntityAction) -> RuleTable:
        return self._rule_tables[(slug, action)]

    def slugs(self) -> list[str]:
        return list(self._entities)

    def __contains__(self, slug: object) -> bool:
        return slug in self._entities

    def __iter__(self) -> Iterator[EntitySpec]:
        return iter(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)


def _check_whitelists(entity: EntitySpec, entities: Mapping[str, EntitySpec]) -> None:
    columns = set(entity.column_names)

    def require_columns(option: str, names: list[str]) -> None:
        unknown = [n for n in names if n not in columns]
        if unknown:
            raise ConfigurationError(f"{entity.slug}.{option}: unknown columns {unknown}")

    require_columns("allowed_filters", entity.allowed_filters)
    require_columns("allowed_sorts", entity.allowed_sorts)
    require_columns("allowed_fields", entity.allowed_fields)
    require_columns("fillable", entity.fillable or [])
    if entity.default_sort:
        sort_columns = [s.strip().lstrip("-") for s in entity.default_sort.split(",")]
        require_columns("default_sort", sort_columns)
    if entity.tenant_field:
        require_columns("tenant_field", [entity.tenant_field])

    for include in entity.allowed_includes:
        if entity.get_relation(include) is None:
            raise ConfigurationError(
                f"{entity.slug}.allowed_includes: unknown relation '{include}'"
            )

    for path in entity.allowed_search:
        *hops, column = path.split(".")
        current = entity
        for hop in hops:
            rel = current.get_relation(hop)
            if rel is None:
                raise ConfigurationError(
                    f"{entity.slug}.allowed_search: unknown relation in '{path}'"
                )
            current = entities[rel.target]
        if column not in current.column_names:
            raise ConfigurationError(f"{entity.slug}.allowed_search: unknown column in '{path}'")


def _resolve_tenant_path(entity: EntitySpec, entities: Mapping[str, EntitySpec]) -> str | None:
    """
    Follow ``tenant_owner`` hops until an entity with a ``tenant_field``.

    An owner may itself declare ``tenant_owner``; the paths are chained.
    """
    if entity.tenant_field:
        if entity.tenant_owner:
            raise ConfigurationError(f"{entity.slug}: set tenant_field or tenant_owner, not both")
        return entity.tenant_field

    hops: list[str] = []
    seen = {entity.slug}
    current = entity
    while current.tenant_owner:
        owner, owner_path = current, current.tenant_owner
        for hop in owner_path.split("."):
            rel = current.get_relation(hop)
            if rel is None:
                raise ConfigurationError(
                    f"{owner.slug}.tenant_owner: unknown relation in '{owner_path}'"
                )
            hops.append(hop)
            current = entities[rel.target]
        if current.tenant_field:
            return ".".join([*hops, current.tenant_field])
        if current.slug in seen:
            raise ConfigurationError(f"{entity.slug}.tenant_owner: ownership cycle")
        seen.add(current.slug)

    if hops:
        raise ConfigurationError(
            f"{entity.slug}.tenant_owner: '{current.slug}' has no tenant_field"
        )
    return None
