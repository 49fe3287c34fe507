"""
Tessera - declarative resource API engine.

Describe entities once (columns, relations, whitelists, validation rules,
soft deletes) and serve them through a uniform JSON REST surface with
filtering, sorting, includes, search, pagination and atomic nested writes.
"""

__version__ = "0.4.0"

from tessera.runtime.app_factory import create_app, create_app_from_dict, create_app_from_json
from tessera.specs import AppSpec, EntitySpec

__all__ = [
    "__version__",
    "AppSpec",
    "EntitySpec",
    "create_app",
    "create_app_from_dict",
    "create_app_from_json",
]
