"""
Registry model types.

This module exports the declarative types a registry is built from.
"""

from tessera.specs.app import DEFAULT_HIDDEN_COLUMNS, AppSpec, NestedSpec
from tessera.specs.entity import (
    ColumnSpec,
    ColumnType,
    EntityAction,
    EntitySpec,
    RelationKind,
    RelationSpec,
    RuleConfig,
)

__all__ = [
    "AppSpec",
    "ColumnSpec",
    "ColumnType",
    "DEFAULT_HIDDEN_COLUMNS",
    "EntityAction",
    "EntitySpec",
    "NestedSpec",
    "RelationKind",
    "RelationSpec",
    "RuleConfig",
]
