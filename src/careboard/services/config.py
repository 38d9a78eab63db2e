"""
Configuration management for the insight orchestrator.

Values are layered DEFAULT < FILE (JSON or YAML) < ENVIRONMENT, validated
against per-field rules and exposed as an OrchestratorConfig.
"""

import os
import json
import yaml
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
from dataclasses import dataclass, asdict, fields
from enum import Enum
from pathlib import Path

from ..models.insight import ConfigurationError, ExponentialBackoff, RequestConfig


class ConfigSource(Enum):
    """Configuration sources in order of precedence."""
    ENVIRONMENT = "environment"
    FILE = "file"
    RUNTIME = "runtime"
    DEFAULT = "default"


@dataclass
class ConfigValue:
    """Configuration value with metadata."""
    key: str
    value: Any
    source: ConfigSource
    last_updated: datetime
    description: Optional[str] = None


@dataclass
class OrchestratorConfig:
    """Complete orchestrator configuration."""

    # Cache defaults
    default_ttl_millis: int = 60000
    stale_while_revalidate: bool = True

    # Retry settings
    max_retries: int = 2
    retry_base_delay_millis: float = 200.0
    retry_max_delay_millis: float = 5000.0
    retry_exponential_base: float = 2.0
    retry_jitter: bool = True

    # Producer settings
    timeout_millis: float = 15000.0
    cancel_when_abandoned: bool = False

    # Observability
    audit_enabled: bool = True
    audit_subscriptions: bool = True
    audit_history_size: int = 500
    metrics_enabled: bool = True
    log_level: str = "INFO"

    environment: str = "development"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrchestratorConfig':
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def request_config(self, **overrides) -> RequestConfig:
        """Default RequestConfig derived from these settings."""
        values = dict(
            ttl_millis=self.default_ttl_millis,
            stale_while_revalidate=self.stale_while_revalidate,
            max_retries=self.max_retries,
            retry_backoff_millis=ExponentialBackoff(
                base_delay_millis=self.retry_base_delay_millis,
                max_delay_millis=self.retry_max_delay_millis,
                exponential_base=self.retry_exponential_base,
                jitter=self.retry_jitter,
            ),
            timeout_millis=self.timeout_millis,
            cancel_when_abandoned=self.cancel_when_abandoned,
        )
        values.update(overrides)
        return RequestConfig(**values)


class ConfigValidator:
    """Configuration validation with type checking and consistency rules."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

        self.validation_rules = {
            'default_ttl_millis': {
                'type': int,
                'min': 0,
                'max': 86400000,  # 24 hours
                'description': 'Default cache lifetime for insight results'
            },
            'max_retries': {
                'type': int,
                'min': 0,
                'max': 10,
                'description': 'Retries after the first failed producer attempt'
            },
            'retry_base_delay_millis': {
                'type': (int, float),
                'min': 0,
                'max': 60000,
                'description': 'Backoff before the first retry'
            },
            'retry_max_delay_millis': {
                'type': (int, float),
                'min': 0,
                'max': 300000,
                'description': 'Upper bound for any single backoff'
            },
            'retry_exponential_base': {
                'type': (int, float),
                'min': 1.0,
                'max': 10.0,
                'description': 'Backoff growth factor'
            },
            'timeout_millis': {
                'type': (int, float),
                'min': 1,
                'max': 600000,
                'description': 'Producer timeout per attempt'
            },
            'audit_history_size': {
                'type': int,
                'min': 0,
                'max': 100000,
                'description': 'Audit entries kept in memory for the admin API'
            },
            'environment': {
                'type': str,
                'allowed_values': ['development', 'testing', 'staging', 'production'],
                'description': 'Deployment environment'
            },
            'log_level': {
                'type': str,
                'allowed_values': ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                'description': 'Logging level'
            }
        }

    def validate_config(self, config: OrchestratorConfig) -> List[str]:
        """
        Validate configuration against rules.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for key, value in config.to_dict().items():
            if key in self.validation_rules:
                errors.extend(self._validate_field(key, value, self.validation_rules[key]))

        errors.extend(self._validate_business_rules(config))
        return errors

    def _validate_field(self, field_name: str, value: Any, rules: Dict[str, Any]) -> List[str]:
        """Validate individual field against rules."""
        errors = []

        expected_type = rules.get('type')
        if expected_type and (isinstance(value, bool) or not isinstance(value, expected_type)):
            type_name = getattr(expected_type, '__name__', 'number')
            errors.append(f"{field_name}: Expected {type_name}, got {type(value).__name__}")
            return errors

        if isinstance(value, (int, float)):
            min_val = rules.get('min')
            max_val = rules.get('max')

            if min_val is not None and value < min_val:
                errors.append(f"{field_name}: Value {value} below minimum {min_val}")

            if max_val is not None and value > max_val:
                errors.append(f"{field_name}: Value {value} above maximum {max_val}")

        allowed_values = rules.get('allowed_values')
        if allowed_values and value not in allowed_values:
            errors.append(f"{field_name}: Value '{value}' not in allowed values: {allowed_values}")

        return errors

    def _validate_business_rules(self, config: OrchestratorConfig) -> List[str]:
        errors = []

        if config.retry_max_delay_millis < config.retry_base_delay_millis:
            errors.append("Maximum retry delay must be greater than base delay")

        if config.environment == "production" and config.log_level == "DEBUG":
            errors.append("Debug logging should not be used in production")

        return errors


class ConfigManager:
    """
    Loads orchestrator settings from defaults, an optional JSON/YAML file and
    CAREBOARD_* environment variables, in that order of precedence.
    """

    ENV_PREFIX = "CAREBOARD_"

    def __init__(self, config_file_path: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self.logger = logging.getLogger(__name__)
        self.validator = ConfigValidator()
        self.config_file_path = config_file_path
        self._environ = environ if environ is not None else os.environ

        self.config_values: Dict[str, ConfigValue] = {}
        self.current_config: Optional[OrchestratorConfig] = None
        self.config_watchers: List[Callable[[Optional[OrchestratorConfig], OrchestratorConfig], Any]] = []

    def load(self) -> OrchestratorConfig:
        """
        Build configuration from all sources.

        Raises:
            ConfigurationError: if the file cannot be parsed or validation fails
        """
        self._load_default_config()
        if self.config_file_path:
            self._load_file_config(self.config_file_path)
        self._load_environment_config()
        return self._build_current_config()

    def get_config(self) -> OrchestratorConfig:
        if self.current_config is None:
            raise RuntimeError("Configuration not initialized")
        return self.current_config

    def update_config_value(self, key: str, value: Any) -> OrchestratorConfig:
        """Override a single value at runtime and rebuild."""
        if key not in self.config_values:
            raise ValueError(f"Unknown configuration key: {key}")

        self.config_values[key] = ConfigValue(
            key=key,
            value=value,
            source=ConfigSource.RUNTIME,
            last_updated=datetime.now(timezone.utc),
            description="Updated at runtime"
        )
        config = self._build_current_config()
        self.logger.info(f"Configuration value updated: {key} = {value}")
        return config

    def register_watcher(self, watcher: Callable[[Optional[OrchestratorConfig], OrchestratorConfig], Any]):
        self.config_watchers.append(watcher)

    def get_config_summary(self) -> Dict[str, Any]:
        return {
            key: {
                "value": value.value,
                "source": value.source.value,
                "last_updated": value.last_updated.isoformat(),
            }
            for key, value in sorted(self.config_values.items())
        }

    def _load_default_config(self):
        for key, value in OrchestratorConfig().to_dict().items():
            self.config_values[key] = ConfigValue(
                key=key,
                value=value,
                source=ConfigSource.DEFAULT,
                last_updated=datetime.now(timezone.utc),
                description=f"Default value for {key}"
            )
        self.logger.debug("Default configuration loaded")

    def _load_file_config(self, file_path: str):
        path = Path(file_path)
        if not path.exists():
            self.logger.warning(f"Configuration file {file_path} does not exist")
            return

        suffix = path.suffix.lower()
        try:
            with open(path, 'r') as f:
                if suffix == '.json':
                    file_config = json.load(f)
                elif suffix in ('.yml', '.yaml'):
                    file_config = yaml.safe_load(f) or {}
                else:
                    self.logger.warning(f"Unsupported configuration file format: {path.suffix}")
                    return
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration from {file_path}: {e}")

        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Configuration file {file_path} must contain a mapping")

        for key, value in file_config.items():
            if key not in self.config_values:
                self.logger.warning(f"Ignoring unknown configuration key in {file_path}: {key}")
                continue
            self.config_values[key] = ConfigValue(
                key=key,
                value=value,
                source=ConfigSource.FILE,
                last_updated=datetime.now(timezone.utc),
                description=f"Value from file {file_path}"
            )
        self.logger.info(f"Configuration loaded from file: {file_path}")

    def _load_environment_config(self):
        defaults = OrchestratorConfig().to_dict()
        for key in self.config_values:
            env_var = f"{self.ENV_PREFIX}{key.upper()}"
            env_value = self._environ.get(env_var)
            if env_value is None:
                continue

            # Parse against the declared default type; file values may be loosely typed
            try:
                parsed_value = self._parse_env_value(env_value, type(defaults[key]))
            except ValueError:
                raise ConfigurationError(f"Invalid value for {env_var}: {env_value!r}")

            self.config_values[key] = ConfigValue(
                key=key,
                value=parsed_value,
                source=ConfigSource.ENVIRONMENT,
                last_updated=datetime.now(timezone.utc),
                description=f"Value from environment variable {env_var}"
            )
        self.logger.debug("Environment configuration loaded")

    def _parse_env_value(self, env_value: str, target_type: type) -> Any:
        """Parse environment variable value to target type."""
        if target_type == bool:
            return env_value.lower() in ('true', '1', 'yes', 'on')
        elif target_type == int:
            return int(env_value)
        elif target_type == float:
            return float(env_value)
        else:
            return env_value

    def _build_current_config(self) -> OrchestratorConfig:
        config_dict = {key: value.value for key, value in self.config_values.items()}
        new_config = OrchestratorConfig.from_dict(config_dict)

        validation_errors = self.validator.validate_config(new_config)
        if validation_errors:
            self.logger.error(f"Configuration validation failed: {validation_errors}")
            raise ConfigurationError(f"Configuration validation errors: {validation_errors}")

        old_config = self.current_config
        self.current_config = new_config

        if old_config != new_config:
            for watcher in self.config_watchers:
                try:
                    watcher(old_config, new_config)
                except Exception as e:
                    self.logger.error(f"Error in configuration watcher: {str(e)}")

        self.logger.info("Configuration built and validated successfully")
        return new_config


def load_config(config_file_path: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> OrchestratorConfig:
    """Shortcut for ConfigManager(...).load()."""
    return ConfigManager(config_file_path, environ).load()
