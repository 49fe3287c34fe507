"""
Role-sensitive validation resolver.

Each entity carries a store and an update rule configuration in one of two
shapes:

- flat: a list of field names, each validated by its base rule only
- role-keyed: ``{role_slug | "*": {field: presence_rule}}``

Both are normalized into a tagged RuleTable once, when the registry is
built. At request time the resolver only selects a bucket and evaluates it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal

from tessera.runtime.errors import ConfigurationError, ValidationFailed
from tessera.runtime.rules import RULE_SEPARATOR, Rule, check_field, parse_rule_string
from tessera.specs.entity import EntityAction, EntitySpec, RuleConfig

if TYPE_CHECKING:
    from tessera.runtime.registry import EntityRegistry

WILDCARD_ROLE = "*"

CompiledRules = Mapping[str, tuple[Rule, ...]]

_EMPTY: CompiledRules = MappingProxyType({})


def effective_rule(presence: str | None, base: str | None) -> str | None:
    """
    Combine a presence rule with a field's base format rule.

    A presence rule that is already compound (contains ``|``) replaces the
    base rule; otherwise the two are concatenated.
    """
    if not presence:
        return base
    if RULE_SEPARATOR in presence or not base:
        return presence
    return f"{presence}{RULE_SEPARATOR}{base}"


# =============================================================================
# Rule Tables
# =============================================================================


@dataclass(frozen=True)
class FlatRuleTable:
    """Legacy list of fields, validated by base rules only."""

    rules: CompiledRules
    kind: Literal["flat"] = "flat"

    def select(self, role_slug: str | None) -> CompiledRules:
        return self.rules


@dataclass(frozen=True)
class RoleKeyedRuleTable:
    """Buckets keyed by role slug, with ``*`` as fallback."""

    buckets: Mapping[str, CompiledRules]
    kind: Literal["role_keyed"] = "role_keyed"

    def select(self, role_slug: str | None) -> CompiledRules:
        if role_slug is not None and role_slug in self.buckets:
            return self.buckets[role_slug]
        return self.buckets.get(WILDCARD_ROLE, _EMPTY)


RuleTable = FlatRuleTable | RoleKeyedRuleTable


def _compile(field_name: str, rule: str | None, entity: EntitySpec) -> tuple[Rule, ...]:
    try:
        return parse_rule_string(rule or "")
    except ConfigurationError as e:
        raise ConfigurationError(f"{entity.slug}.{field_name}: {e}") from e


def normalize_rule_table(config: RuleConfig | None, entity: EntitySpec) -> RuleTable:
    """
    Classify and compile a rule configuration.

    ``None`` means a flat table over every writable field, each checked by
    its base rule if it has one. In an explicit flat list, fields without a
    base rule are dropped.
    """
    base = entity.validation_rules

    if config is None:
        compiled = {name: _compile(name, base.get(name), entity) for name in entity.writable_fields}
        return FlatRuleTable(MappingProxyType(compiled))

    if isinstance(config, list):
        compiled = {name: _compile(name, base[name], entity) for name in config if name in base}
        return FlatRuleTable(MappingProxyType(compiled))

    buckets: dict[str, CompiledRules] = {}
    for role, bucket in config.items():
        if isinstance(bucket, list):
            bucket = {name: "" for name in bucket}
        buckets[role] = MappingProxyType(
            {
                name: _compile(name, effective_rule(presence, base.get(name)), entity)
                for name, presence in bucket.items()
            }
        )
    return RoleKeyedRuleTable(MappingProxyType(buckets))


def build_rule_tables(entity: EntitySpec) -> dict[EntityAction, RuleTable]:
    """Normalize an entity's store and update configurations."""
    return {
        EntityAction.CREATE: normalize_rule_table(entity.validation_rules_store, entity),
        EntityAction.UPDATE: normalize_rule_table(entity.validation_rules_update, entity),
    }


# =============================================================================
# Validator
# =============================================================================


@dataclass
class Validator:
    """Request-scoped evaluation of one payload against one bucket."""

    rules: CompiledRules
    payload: Mapping[str, Any]
    messages: Mapping[str, str] = field(default_factory=dict)
    _errors: dict[str, list[str]] | None = field(default=None, init=False, repr=False)

    def errors(self) -> dict[str, list[str]]:
        if self._errors is None:
            found: dict[str, list[str]] = {}
            for name, rules in self.rules.items():
                problems = check_field(name, rules, self.payload, self.messages)
                if problems:
                    found[name] = problems
            self._errors = found
        return self._errors

    def fails(self) -> bool:
        return bool(self.errors())

    def passes(self) -> bool:
        return not self.fails()

    def validated(self) -> dict[str, Any]:
        """
        Fields from the selected bucket that were present in the payload.

        Raises:
            ValidationFailed: If the payload does not pass
        """
        if self.fails():
            raise ValidationFailed(errors=self.errors())
        return {name: self.payload[name] for name in self.rules if name in self.payload}


class ValidationResolver:
    """Selects the effective rules for an operation and caller role."""

    def __init__(self, registry: EntityRegistry):
        self.registry = registry

    def resolve(
        self,
        entity: EntitySpec,
        action: EntityAction,
        payload: Mapping[str, Any],
        role_slug: str | None,
    ) -> Validator:
        """
        Build a validator for one payload.

        Args:
            entity: Target entity
            action: CREATE or UPDATE
            payload: Raw request data
            role_slug: Caller's role in the current tenant, if any

        Returns:
            Validator over exactly the selected bucket's fields
        """
        table = self.registry.rule_table(entity.slug, action)
        return Validator(table.select(role_slug), payload, entity.validation_messages)
