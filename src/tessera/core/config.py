"""
Engine configuration.

Settings come from an optional ``tessera.toml``:

    [engine]
    database_path = ".tessera/data.db"
    api_prefix = "/api"
    registry = "registry.json"

    [logging]
    dir = ".tessera/logs"
    level = "INFO"

    [server]
    host = "127.0.0.1"
    port = 8000

Environment variables override the file: TESSERA_DATABASE_PATH,
TESSERA_LOG_LEVEL and TESSERA_API_PREFIX.
"""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from tessera.runtime.errors import ConfigurationError
from tessera.specs import AppSpec

CONFIG_FILENAME = "tessera.toml"

ENV_DATABASE_PATH = "TESSERA_DATABASE_PATH"
ENV_LOG_LEVEL = "TESSERA_LOG_LEVEL"
ENV_API_PREFIX = "TESSERA_API_PREFIX"


@dataclass(frozen=True)
class EngineConfig:
    """Settings shared by the app factory and the CLI."""

    # Storage
    database_path: Path = field(default_factory=lambda: Path(".tessera/data.db"))

    # HTTP
    api_prefix: str = "/api"
    host: str = "127.0.0.1"
    port: int = 8000

    # Logging
    log_dir: Path | None = field(default_factory=lambda: Path(".tessera/logs"))
    log_level: str = "INFO"

    # Registry file, relative to the working directory
    registry_path: Path | None = None

    def with_env(self, environ: dict[str, str] | None = None) -> EngineConfig:
        """Apply TESSERA_* environment overrides."""
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        if env.get(ENV_DATABASE_PATH):
            overrides["database_path"] = Path(env[ENV_DATABASE_PATH])
        if env.get(ENV_LOG_LEVEL):
            overrides["log_level"] = env[ENV_LOG_LEVEL].upper()
        if env.get(ENV_API_PREFIX):
            overrides["api_prefix"] = normalize_prefix(env[ENV_API_PREFIX])
        return replace(self, **overrides) if overrides else self


def normalize_prefix(prefix: str) -> str:
    """'api/' -> '/api'; '' and '/' mean no prefix."""
    stripped = prefix.strip().strip("/")
    return f"/{stripped}" if stripped else ""


def load_config(
    path: Path | str | None = None, environ: dict[str, str] | None = None
) -> EngineConfig:
    """
    Load engine configuration.

    Args:
        path: Path to a tessera.toml. When None, ./tessera.toml is used if present.
        environ: Environment to read overrides from (defaults to os.environ)

    Returns:
        EngineConfig with file values and environment overrides applied

    Raises:
        ConfigurationError: If an explicit path is missing or the file is not valid TOML
    """
    if path is None:
        candidate = Path(CONFIG_FILENAME)
        config_path = candidate if candidate.is_file() else None
    else:
        config_path = Path(path)
        if not config_path.is_file():
            raise ConfigurationError(f"Config file not found: {config_path}")

    if config_path is None:
        return EngineConfig().with_env(environ)

    try:
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

    engine = data.get("engine", {})
    logging_data = data.get("logging", {})
    server = data.get("server", {})
    defaults = EngineConfig()

    log_dir = logging_data.get("dir", defaults.log_dir)
    registry = engine.get("registry")

    config = EngineConfig(
        database_path=Path(engine.get("database_path", defaults.database_path)),
        api_prefix=normalize_prefix(engine.get("api_prefix", defaults.api_prefix)),
        host=str(server.get("host", defaults.host)),
        port=int(server.get("port", defaults.port)),
        log_dir=Path(log_dir) if log_dir else None,
        log_level=str(logging_data.get("level", defaults.log_level)).upper(),
        registry_path=Path(registry) if registry else None,
    )
    return config.with_env(environ)


def load_app_spec(path: Path | str) -> AppSpec:
    """
    Read a registry file into an AppSpec.

    JSON and TOML are supported, chosen by file extension.

    Raises:
        ConfigurationError: If the file is missing, unparseable or of unknown type
        pydantic.ValidationError: If the content does not describe a valid AppSpec
    """
    spec_path = Path(path)
    if not spec_path.is_file():
        raise ConfigurationError(f"Registry file not found: {spec_path}")

    text = spec_path.read_text(encoding="utf-8")
    suffix = spec_path.suffix.lower()
    try:
        if suffix == ".json":
            data = json.loads(text)
        elif suffix == ".toml":
            data = tomllib.loads(text)
        else:
            raise ConfigurationError(
                f"Unsupported registry format '{suffix}' (expected .json or .toml)"
            )
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Could not parse {spec_path}: {e}") from e

    return AppSpec.model_validate(data)
