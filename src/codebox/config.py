"""Pydantic settings for Codebox loaded from an optional YAML file and CODEBOX_ environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from codebox.errors import ConfigurationError, UnsupportedLanguageError
from codebox.models import Language
from codebox.utils.envvars import resolve_environment
from codebox.utils.logging import get_logger

logger = get_logger(__name__)

# Searched in order when no explicit path is given.
_DEFAULT_CONFIG_PATHS = ("config.yaml", "config.yml", "config/config.yaml", "config/config.yml")

_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class LanguageConfig(BaseModel):
    """Static metadata for one runtime: naming, commands, hooks, environment, exclusions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str
    file_name: str
    run_cmd: str
    build_cmd: str = ""
    local_run_cmd: str | None = None
    local_build_cmd: str | None = None
    prefix_code: str = ""
    postfix_code: str = ""
    environment: dict[str, str] = Field(default_factory=dict)
    exclude_patterns: list[str] = Field(default_factory=list)

    @field_validator("file_name")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        if not value or "/" in value or value in {".", ".."}:
            raise ValueError(f"file_name must be a plain file name, got: {value!r}")
        return value

    @field_validator("environment")
    @classmethod
    def _resolve_references(cls, value: dict[str, str]) -> dict[str, str]:
        return resolve_environment(value)

    def command(self, local: bool = False) -> str:
        """Return the shell command that builds (if needed) and runs the program.

        Args:
            local: Use the host-toolchain variants of the commands when set.
        """
        run = self.local_run_cmd if local and self.local_run_cmd else self.run_cmd
        build = self.local_build_cmd if local and self.local_build_cmd is not None else self.build_cmd
        return f"{build} && {run}" if build else run

    def wrap(self, code: str) -> str:
        """Apply the configured prefix/postfix hooks around caller code."""
        return f"{self.prefix_code}{code}{self.postfix_code}"


def default_languages() -> dict[Language, LanguageConfig]:
    """Built-in per-language metadata used when the operator does not override it."""
    return {
        Language.PYTHON: LanguageConfig(
            image="python:3.11-slim",
            file_name="main.py",
            run_cmd="python main.py",
            local_run_cmd="python3 main.py",
            environment={"PYTHONDONTWRITEBYTECODE": "1", "PYTHONUNBUFFERED": "1"},
            exclude_patterns=["__pycache__/", "*.pyc", "*.pyo", ".pytest_cache/"],
        ),
        Language.NODEJS: LanguageConfig(
            image="node:20-alpine",
            file_name="index.js",
            run_cmd="node index.js",
            exclude_patterns=["node_modules/"],
        ),
        Language.GO: LanguageConfig(
            image="golang:1.23-alpine",
            file_name="main.go",
            build_cmd="go build -o app main.go",
            run_cmd="./app",
            environment={"GOCACHE": "/tmp/go-cache", "GOPATH": "/tmp/go"},
            exclude_patterns=["app"],
        ),
        Language.CPP: LanguageConfig(
            image="gcc:13",
            file_name="main.cpp",
            build_cmd="g++ -std=c++17 -O2 -o app main.cpp",
            run_cmd="./app",
            exclude_patterns=["app", "*.o"],
        ),
    }


class ServerConfig(BaseModel):
    """MCP transport settings."""

    model_config = ConfigDict(frozen=True)

    transport: Literal["stdio", "http"] = "stdio"
    host: str = "127.0.0.1"
    port: int = Field(default=8080, gt=0, lt=65536)


class SandboxConfig(BaseModel):
    """Execution defaults and limits shared by every backend."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["docker", "podman", "local"] = "docker"
    timeout_sec: float = Field(default=10, gt=0)
    memory_mb: int = Field(default=512, gt=0)
    max_artifact_size_mb: int = Field(default=20, gt=0)
    network_enabled: bool = False
    enable_local_backend: bool = False
    stop_grace_seconds: float = Field(default=5, ge=0)
    max_output_bytes: int = Field(default=1_048_576, gt=0)
    workspace_root: str | None = None
    container_user: str = ""

    @model_validator(mode="after")
    def _local_requires_opt_in(self) -> SandboxConfig:
        if self.backend == "local" and not self.enable_local_backend:
            raise ValueError("unsupported sandbox.backend: local (set sandbox.enable_local_backend to allow it)")
        return self

    @property
    def max_artifact_size_bytes(self) -> int:
        return self.max_artifact_size_mb * 1024 * 1024


class LoggingConfig(BaseModel):
    """Log rendering settings."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["production", "development"] = "production"
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.lower() not in _LOG_LEVELS:
            raise ValueError(f"invalid logging level: {value}, must be one of {', '.join(_LOG_LEVELS)}")
        return value.lower()


class CodeboxConfig(BaseSettings):
    """Main Codebox configuration.

    Values come from (highest precedence first) CODEBOX_ prefixed environment
    variables, a ``.env`` file, then the YAML document handed to the constructor.
    Nested keys use ``__``, e.g. ``CODEBOX_SANDBOX__TIMEOUT_SEC=5``.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODEBOX_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    languages: dict[Language, LanguageConfig] = Field(default_factory=default_languages)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("languages", mode="before")
    @classmethod
    def _merge_language_defaults(cls, value: Any) -> Any:
        """Overlay operator entries on the built-in defaults, field by field."""
        if not isinstance(value, dict):
            return value
        merged: dict[Any, Any] = {lang: cfg.model_dump() for lang, cfg in default_languages().items()}
        for name, override in value.items():
            try:
                lang = Language(name)
            except ValueError as exc:
                raise ValueError(f"unknown language in configuration: {name}") from exc
            if isinstance(override, LanguageConfig):
                override = override.model_dump(exclude_unset=True)
            merged[lang] = {**merged[lang], **(override or {})}
        return merged

    def language(self, name: str | Language) -> LanguageConfig:
        """Look up the metadata for a language.

        Raises:
            UnsupportedLanguageError: If the identifier is not a supported runtime.
            ConfigurationError: If the runtime is supported but not configured.
        """
        try:
            lang = Language(name)
        except ValueError as exc:
            raise UnsupportedLanguageError(str(name)) from exc
        try:
            return self.languages[lang]
        except KeyError as exc:
            raise ConfigurationError(f"language {lang} has no configuration") from exc


def _find_config_file(path: str | None) -> Path | None:
    if path:
        return Path(path)
    env_path = os.environ.get("CODEBOX_CONFIG_FILE")
    if env_path:
        return Path(env_path)
    for candidate in _DEFAULT_CONFIG_PATHS:
        if Path(candidate).is_file():
            return Path(candidate)
    return None


def load_config(path: str | None = None) -> CodeboxConfig:
    """Load, merge and validate the Codebox configuration.

    Args:
        path: Explicit YAML file. Falls back to ``CODEBOX_CONFIG_FILE`` and
            then the default search locations; a missing default file is not an error.

    Returns:
        Validated, immutable CodeboxConfig instance.

    Raises:
        ConfigurationError: When the file cannot be read or the values are invalid.
    """
    config_path = _find_config_file(path)
    raw: dict[str, Any] = {}
    if config_path is not None:
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"error reading config file {config_path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"config file {config_path} must contain a mapping")
        raw = loaded or {}

    try:
        config = CodeboxConfig(**raw)
    except ValidationError as exc:
        raise ConfigurationError(f"config validation error: {exc}") from exc

    logger.debug(
        "config_loaded",
        path=str(config_path) if config_path else None,
        backend=config.sandbox.backend,
        languages=sorted(config.languages),
    )
    return config
