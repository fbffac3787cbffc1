"""Configuration management for Bacchus."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any
import os

import yaml
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

COORDINATION_DIRNAME = ".bacchus"
WORKSPACE_CONFIG_NAME = "config.yaml"


class ConfigLoadError(RuntimeError):
    """Raised when the workspace configuration file cannot be parsed."""


def discover_workspace_root(start: Path | None = None) -> Path:
    """Locate the workspace that owns the current directory.

    The nearest ancestor holding a ``.bacchus`` directory wins, so an agent
    running inside one of the managed worktrees still resolves to the main
    checkout. Failing that, the nearest ancestor with a ``.beads`` directory is
    used, and finally the starting directory itself.
    """

    origin = (start or Path.cwd()).resolve()
    candidates = [origin, *origin.parents]
    for marker in (COORDINATION_DIRNAME, ".beads"):
        for candidate in candidates:
            if (candidate / marker).is_dir():
                return candidate
    return origin


def workspace_config_path() -> Path:
    """Return the path of the YAML file holding per-workspace overrides."""

    explicit = os.environ.get("BACCHUS_CONFIG_FILE")
    if explicit:
        return Path(explicit).expanduser()
    workspace = os.environ.get("BACCHUS_WORKSPACE")
    root = Path(workspace).expanduser() if workspace else discover_workspace_root()
    return root / COORDINATION_DIRNAME / WORKSPACE_CONFIG_NAME


def load_workspace_config(path: Path) -> dict[str, Any]:
    """Parse a workspace configuration file, returning an empty mapping when absent."""

    if not path.exists():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"Failed to parse YAML in {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigLoadError(f"Workspace config {path} must be a mapping of settings")
    return document


class WorkspaceFileSource(PydanticBaseSettingsSource):
    """Settings source backed by ``.bacchus/config.yaml``."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path | None = None) -> None:
        super().__init__(settings_cls)
        self._path = path
        self._document: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._document is None:
            self._document = load_workspace_config(self._path or workspace_config_path())
        return self._document

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._load().get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        known = self.settings_cls.model_fields
        return {name: value for name, value in self._load().items() if name in known}


class BacchusSettings(BaseSettings):
    """Runtime configuration sourced from the environment, ``.env`` and the workspace file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    workspace_root: Path | None = Field(default=None, validation_alias="BACCHUS_WORKSPACE")
    db_path: Path | None = Field(default=None, validation_alias="BACCHUS_DB_PATH")
    worktrees_dir: Path | None = Field(default=None, validation_alias="BACCHUS_WORKTREES")
    branch_prefix: str = Field(default="coord/", validation_alias="BACCHUS_BRANCH_PREFIX")
    target_branch: str = Field(default="main", validation_alias="BACCHUS_TARGET_BRANCH")
    git_path: str | None = Field(default=None, validation_alias="GIT_PATH")
    bd_path: str | None = Field(default=None, validation_alias="BD_PATH")
    beads_db_path: Path | None = Field(default=None, validation_alias="BEADS_DB_PATH")
    journal_enabled: bool = Field(default=True, validation_alias="BACCHUS_JOURNAL")
    journal_path: Path | None = Field(default=None, validation_alias="BACCHUS_JOURNAL_PATH")
    stale_minutes: int = Field(default=15, validation_alias="BACCHUS_STALE_MINUTES")
    max_concurrent: int = Field(default=3, validation_alias="BACCHUS_MAX_CONCURRENT")
    log_level: str = Field(default="INFO", validation_alias="BACCHUS_LOG_LEVEL")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            WorkspaceFileSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "BACCHUS_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("branch_prefix")
    @classmethod
    def _validate_branch_prefix(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or not normalized.endswith("/"):
            raise ValueError("BACCHUS_BRANCH_PREFIX must be a non-empty namespace ending in '/'")
        return normalized

    @field_validator("stale_minutes", "max_concurrent")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("stale_minutes and max_concurrent must be >= 1")
        return value

    @property
    def root(self) -> Path:
        base = self.workspace_root or discover_workspace_root()
        return base.expanduser().resolve()

    @property
    def coordination_dir(self) -> Path:
        return self.root / COORDINATION_DIRNAME

    def _under_root(self, value: Path | None, default: Path) -> Path:
        if value is None:
            return default
        value = value.expanduser()
        return value if value.is_absolute() else (self.root / value)

    @property
    def resolved_db_path(self) -> Path:
        return self._under_root(self.db_path, self.coordination_dir / "bacchus.db")

    @property
    def resolved_worktrees_dir(self) -> Path:
        return self._under_root(self.worktrees_dir, self.coordination_dir / "worktrees")

    @property
    def resolved_journal_path(self) -> Path:
        return self._under_root(self.journal_path, self.coordination_dir / "journal")


@lru_cache(maxsize=1)
def get_settings() -> BacchusSettings:
    """Return cached settings instance pinned to the discovered workspace."""

    settings = BacchusSettings()
    settings.workspace_root = settings.root
    return settings


__all__ = [
    "BacchusSettings",
    "ConfigLoadError",
    "WorkspaceFileSource",
    "discover_workspace_root",
    "get_settings",
    "load_workspace_config",
    "workspace_config_path",
]
