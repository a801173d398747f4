"""Configuration loader for PhaseForge.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from phaseforge.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class VendorConfig(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4.1"
    semaphore: Optional[int] = None
    use_tool_choice: bool = True
    timeout_seconds: float = 600.0
    provider_retries: int = 5
    backoff_base_seconds: float = 4.0
    backoff_max_seconds: float = 60.0
    backoff_jitter: float = 0.8


class OrchestratorConfig(BaseModel):
    retry: int = 4
    function_calling_retry: int = 3
    compiler_retry: int = 4
    rag_limit: int = 10
    semaphore: int = 8
    critical_permits: int = 2
    timeout_seconds: Optional[float] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class TelemetryConfig(BaseModel):
    enabled: bool = False
    jsonl_path: str = "artifacts/phaseforge/events.jsonl"


class TokenUsageConfig(BaseModel):
    jsonl_path: Optional[str] = None


class AppConfig(BaseModel):
    vendor: VendorConfig = Field(default_factory=VendorConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    token_usage: TokenUsageConfig = Field(default_factory=TokenUsageConfig)


# ---------------------------------------------------------------------------
# Model registry (models.yaml)
# ---------------------------------------------------------------------------

class ModelRegistry(BaseModel):
    """Maps conversation roles to vendor model IDs."""
    roles: dict[str, str] = Field(default_factory=dict)
    fallbacks: dict[str, list[str]] = Field(default_factory=dict)

    def get_model(self, role: str) -> str:
        if role not in self.roles:
            raise ConfigError(f"No model configured for role '{role}'. Update config/models.yaml.")
        return self.roles[role]

    def get_fallback_models(self, role: str) -> list[str]:
        return list(self.fallbacks.get(role, []))

    def resolve(self, role: str, default: str) -> str:
        """Model for ``role``, or ``default`` when the role is not configured."""
        return self.roles.get(role, default)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"


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
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(merged: dict[str, Any]) -> dict[str, Any]:
    vendor = dict(merged.get("vendor") or {})
    model = os.getenv("PHASEFORGE_MODEL")
    if model:
        vendor["model"] = model
    base_url = os.getenv("PHASEFORGE_BASE_URL")
    if base_url:
        vendor["base_url"] = base_url
    if vendor:
        merged["vendor"] = vendor

    timeout = os.getenv("PHASEFORGE_TIMEOUT")
    if timeout:
        try:
            seconds = float(timeout)
        except ValueError as e:
            raise ConfigError(f"PHASEFORGE_TIMEOUT must be a number, got '{timeout}'") from e
        orchestrator = dict(merged.get("orchestrator") or {})
        orchestrator["timeout_seconds"] = seconds
        merged["orchestrator"] = orchestrator
    return merged


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (PHASEFORGE_MODEL, etc.)
    """
    if config_dir is None:
        config_dir = _DEFAULT_CONFIG_DIR

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    merged = _apply_env_overrides(merged)

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_model_registry(config_dir: Optional[Path] = None) -> ModelRegistry:
    """Load the model registry from models.yaml."""
    if config_dir is None:
        config_dir = _DEFAULT_CONFIG_DIR

    data = _load_yaml(config_dir / "models.yaml")
    return ModelRegistry(**data)


def resolve_api_key(config: AppConfig) -> Optional[str]:
    return os.getenv(config.vendor.api_key_env) or os.getenv("OPENAI_API_KEY")


# ---------------------------------------------------------------------------
# Prompt loader
# ---------------------------------------------------------------------------

class PromptLoader:
    """Loads prompt templates from config/prompts/ directory.

    Falls back to hardcoded defaults if the file doesn't exist, so prompts
    can be iterated on without code changes.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        if prompts_dir is None:
            prompts_dir = _DEFAULT_CONFIG_DIR / "prompts"
        self.prompts_dir = prompts_dir

    def load(self, name: str, default: str = "") -> str:
        """Load a prompt template by filename.

        Args:
            name: Filename within config/prompts/ (e.g. "consent_system.md").
            default: Fallback text if file doesn't exist.

        Returns:
            Prompt text (stripped of leading/trailing whitespace).
        """
        path = self.prompts_dir / name
        if path.exists():
            return path.read_text().strip()
        return default
