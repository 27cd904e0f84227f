"""Configuration loader: YAML file plus environment variable substitution."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from incident_sync.models.config import AppConfig

log = structlog.stdlib.get_logger()

CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""


class ConfigLoader:
    """Loads and validates ``AppConfig`` from YAML with ``${VAR}`` placeholders.

    ``${VAR}`` requires the variable to be set; ``${VAR:-fallback}`` uses the
    fallback when it is not.
    """

    env_var_pattern = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = config_dir or CONFIG_DIR

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from YAML file with environment variable overrides.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                config/<APP_ENV>.yaml, falling back to config/default.yaml

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._substitute_env_vars(self._load_yaml_file(config_path))

        try:
            app_config = AppConfig(**config_dict)
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        log.info("configuration_loaded_successfully")
        return app_config

    def _get_default_config_path(self) -> str:
        env = os.getenv("APP_ENV", "default")
        config_file = self.config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = self.config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Create config/default.yaml or set APP_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file {config_path}: {e}") from e

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        if isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        if isinstance(config, str):
            return self.env_var_pattern.sub(self._resolve_placeholder, config)
        return config

    def _resolve_placeholder(self, match: re.Match) -> str:
        var_name, fallback = match.group(1), match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if fallback is not None:
            return fallback
        raise ConfigurationError(
            f"Required environment variable not set: {var_name}. "
            f"Set {var_name} in your environment or .env file."
        )

    def validate_config(self, config: AppConfig) -> list[str]:
        """Return warnings for settings that are valid but likely unintended."""
        warnings = []
        quota = config.quota

        if quota.list_page_cost > quota.capacity:
            warnings.append(
                f"quota.list_page_cost ({quota.list_page_cost}) exceeds quota.capacity "
                f"({quota.capacity}); no list page will ever be admitted"
            )
        elif quota.list_page_cost + quota.detail_cost > quota.capacity:
            warnings.append(
                "quota.capacity cannot cover one list page and one detail fetch per window"
            )

        if config.upstream.page_size * quota.detail_cost > quota.capacity:
            warnings.append(
                f"one list page ({config.upstream.page_size} items) cannot be fully hydrated "
                f"within a single window"
            )

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings
