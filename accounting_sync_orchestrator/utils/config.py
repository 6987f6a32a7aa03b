"""
Configuration for Accounting Sync Orchestrator

Settings are read from a YAML file and overridden by ``ASO_``-prefixed
environment variables. Nested keys use a double underscore, for example
``ASO_ACCOUNTING_API__API_TOKEN``.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..core.exceptions import ConfigurationError
from ..models.migration import MigrationConfig
from ..services.retry_manager import RetryPolicy

ENV_PREFIX = "ASO_"


class AccountingApiSettings(BaseModel):
    base_url: str = "http://localhost:8080/api"
    api_token: Optional[str] = None
    timeout_seconds: float = Field(30.0, gt=0)
    rate_limit: int = Field(10, ge=1)
    rate_period_seconds: float = Field(1.0, gt=0)


class RetrySettings(BaseModel):
    initial_delay: float = Field(1.0, gt=0)
    exponential_base: float = Field(2.0, gt=1)
    attempt_timeout: Optional[float] = Field(30.0, gt=0)

    def to_policy(self, max_retries: int = 3) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max_retries,
            initial_delay=self.initial_delay,
            exponential_base=self.exponential_base,
            attempt_timeout=self.attempt_timeout
        )


class OrchestratorSettings(BaseModel):
    """Top-level settings."""

    database_url: Optional[str] = None
    accounting_api: AccountingApiSettings = Field(default_factory=AccountingApiSettings)
    migration_defaults: Dict[str, Any] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    queues: Dict[str, int] = Field(default_factory=lambda: {"sync": 1})
    log_level: str = "INFO"
    structured_logs: bool = True

    def migration_config(self, **overrides) -> MigrationConfig:
        """Default MigrationConfig with explicit overrides (``None`` values ignored)."""
        data = dict(self.migration_defaults)
        data.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return MigrationConfig.from_dict(data).validate()
        except TypeError as e:
            raise ConfigurationError("migration_defaults", str(e))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OrchestratorSettings":
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first["loc"])
            raise ConfigurationError(key or "settings", first["msg"])

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "OrchestratorSettings":
        """Load settings from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(str(path), f"cannot read settings: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(str(path), "top level must be a mapping")
        return cls.from_mapping(data)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None,
             environ: Optional[Mapping[str, str]] = None) -> "OrchestratorSettings":
        """Settings from an optional YAML file with environment overrides applied."""
        data: Dict[str, Any] = {}
        if path:
            data = cls.from_yaml(path).model_dump()
        return cls.from_mapping(apply_env_overrides(data, environ if environ is not None else os.environ))


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Merge ``ASO_*`` variables into ``data``; values are parsed as YAML scalars."""
    merged = dict(data)
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = name[len(ENV_PREFIX):].lower().split("__")
        target = merged
        for key in path[:-1]:
            existing = target.get(key)
            target[key] = dict(existing) if isinstance(existing, dict) else {}
            target = target[key]
        target[path[-1]] = yaml.safe_load(raw) if raw != "" else None
    return merged
