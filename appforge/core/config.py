"""Configuration loader for appforge.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from appforge.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class BackendConfig(BaseModel):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-pro"
    timeout_seconds: int = 120
    connect_timeout_seconds: int = 30
    max_attempts: int = Field(default=3, ge=1)
    throttle_backoff_seconds: float = Field(default=9.0, ge=0.0)
    default_thinking_budget: int = 10_000


class RateLimitConfig(BaseModel):
    max_requests: int = Field(default=1, ge=1)
    period_seconds: float = Field(default=60.0, gt=0.0)


class QuotaConfig(BaseModel):
    daily_limit: int = Field(default=2_000_000, ge=0)
    minute_limit: int = Field(default=123_999, ge=0)
    chars_per_unit: int = Field(default=3, ge=1)
    usage_log_path: Optional[str] = None  # JSONL shadow log of committed debits


class VaultConfig(BaseModel):
    backend: Literal["encrypted_file", "memory"] = "encrypted_file"
    path: str = "artifacts/vault/credentials.enc"
    key_path: str = "artifacts/vault/vault.key"
    key_env_var: str = "APPFORGE_VAULT_KEY"


class OrchestratorConfig(BaseModel):
    max_auto_fix_attempts: int = Field(default=2, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def default_config_dir() -> Path:
    return Path(__file__).parent.parent.parent / "config"


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (GEMINI_BASE_URL, GEMINI_MODEL)
    """
    if config_dir is None:
        config_dir = default_config_dir()

    # Base config
    merged = _load_yaml(config_dir / "default.yaml")

    # Environment overlay
    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    # Environment variable overrides
    base_url = os.getenv("GEMINI_BASE_URL")
    if base_url:
        merged.setdefault("backend", {})
        merged["backend"]["base_url"] = base_url
    model = os.getenv("GEMINI_MODEL")
    if model:
        merged.setdefault("backend", {})
        merged["backend"]["model"] = model

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
