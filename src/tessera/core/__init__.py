"""Configuration loading shared by the runtime and the CLI."""

from tessera.core.config import EngineConfig, load_app_spec, load_config

__all__ = ["EngineConfig", "load_app_spec", "load_config"]
