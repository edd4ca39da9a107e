"""
Configuration management and loading.

Reads gateway settings from YAML. Every section is optional and falls back
to the built-in defaults, but whatever is present is validated strictly.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Set

import yaml

from calm_gateway.core.context import ContextLimits
from calm_gateway.core.gateway import DEFAULT_OUTPUT_ESTIMATE
from calm_gateway.core.ledger import MAX_SAVE_ATTEMPTS
from calm_gateway.core.pricing import CreditPolicy
from calm_gateway.sdk.generation_client import (
    DEFAULT_API_KEY_ENV,
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_TIMEOUT_SECONDS,
)
from calm_gateway.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class GenerationSettings:
    """Where and how generation calls are made."""
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key_env: str = DEFAULT_API_KEY_ENV
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    output_estimate_tokens: int = DEFAULT_OUTPUT_ESTIMATE

    def __post_init__(self):
        """Validate generation settings."""
        if not self.model or not self.model.strip():
            raise ValueError("model must be a non-empty string")
        if not self.base_url or not self.base_url.strip():
            raise ValueError("base_url must be a non-empty string")
        if not self.api_key_env or not self.api_key_env.strip():
            raise ValueError("api_key_env must be a non-empty string")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.output_estimate_tokens <= 0:
            raise ValueError("output_estimate_tokens must be > 0")


@dataclass(frozen=True)
class StorageSettings:
    """Durable store location and write retry bound."""
    db_path: str = DEFAULT_DB_PATH
    max_save_attempts: int = MAX_SAVE_ATTEMPTS

    def __post_init__(self):
        if not self.db_path or not self.db_path.strip():
            raise ValueError("db_path must be a non-empty string")
        if self.max_save_attempts <= 0:
            raise ValueError("max_save_attempts must be > 0")


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    credits: CreditPolicy = field(default_factory=CreditPolicy)
    context: ContextLimits = field(default_factory=ContextLimits)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)


def default_config() -> GatewayConfig:
    """Configuration with every built-in default."""
    return GatewayConfig()


_SECTION_KEYS: Dict[str, Set[str]] = {
    "credits": {"daily_limit", "input_weight", "output_weight", "chars_per_token"},
    "context": {"casual_window", "history_fetch_limit"},
    "generation": {"model", "base_url", "api_key_env", "timeout_seconds", "output_estimate_tokens"},
    "storage": {"db_path", "max_save_attempts"},
}

_INTEGER_KEYS = {
    "daily_limit",
    "input_weight",
    "output_weight",
    "chars_per_token",
    "casual_window",
    "history_fetch_limit",
    "output_estimate_tokens",
    "max_save_attempts",
}
_NUMBER_KEYS = {"timeout_seconds"}


def load_gateway_config(path: str) -> GatewayConfig:
    """Load and validate gateway configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    let users spend more than intended.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _parse_section(raw_config, name) for name in _SECTION_KEYS}

    return GatewayConfig(
        credits=CreditPolicy(**sections["credits"]),
        context=ContextLimits(**sections["context"]),
        generation=GenerationSettings(**sections["generation"]),
        storage=StorageSettings(**sections["storage"]),
    )


def _parse_section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Validate one section's keys and value types.

    Args:
        raw_config: Whole parsed YAML document
        name: Section to read

    Returns:
        Keyword arguments for the section's dataclass (empty if the section is absent)

    Raises:
        ValueError: If the section is malformed
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        if key in _INTEGER_KEYS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' in {name} must be an integer")
        elif key in _NUMBER_KEYS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {name} must be a number")
            value = float(value)
        elif not isinstance(value, str):
            raise ValueError(f"'{key}' in {name} must be a string")
        values[key] = value
    return values
