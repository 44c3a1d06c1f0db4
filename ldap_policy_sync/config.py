"""
Configuration loading and management for LDAP Policy Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. It also defines the immutable connection snapshot
handed to the synchronizer and the retry policy used while connecting.
"""

import os
import yaml
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Union

logger = logging.getLogger(__name__)

CONNECTION_FIELDS = ('address', 'base_dn', 'username', 'password')

# Keys accepted in plugin configuration documents, mapped to their canonical name
CONNECTION_FIELD_ALIASES = {
    'addr': 'address',
}

DEFAULT_RETRY_INTERVAL = 5.0

# Optional sections and the values filled in when a key is absent
SECTION_DEFAULTS = {
    'tls': {
        'validate': False,
        'ca_cert_file': None,
    },
    'retry': {
        'interval_seconds': DEFAULT_RETRY_INTERVAL,
        'max_attempts': None,
    },
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
        'console_output': True,
        'console_level': 'WARNING',
    },
    'store': {
        'initial_data_file': None,
    },
}


def _canonical_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {CONNECTION_FIELD_ALIASES.get(key, key): value for key, value in data.items()}


def _connection_field_errors(values: Dict[str, Any]) -> List[str]:
    errors = []
    for field in CONNECTION_FIELDS:
        value = values.get(field)
        if value is None or value == '':
            errors.append(f"Missing required directory field: {field}")
        elif not isinstance(value, str):
            errors.append(f"Directory field {field} must be a string")
    return errors


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class ConnectionConfig:
    """Connection parameters for one directory connection attempt."""

    address: str
    base_dn: str
    username: str
    password: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionConfig':
        """
        Build a connection snapshot from a configuration mapping.

        Args:
            data: Mapping holding address, base_dn, username and password

        Returns:
            ConnectionConfig instance

        Raises:
            ConfigurationError: If a field is missing or not a string
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"Connection configuration must be a mapping, got {type(data).__name__}")

        values = _canonical_fields(data)
        errors = _connection_field_errors(values)
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

        return cls(**{field: values[field] for field in CONNECTION_FIELDS})

    def __repr__(self):
        return (f"ConnectionConfig(address={self.address!r}, base_dn={self.base_dn!r}, "
                f"username={self.username!r}, password='****')")


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-interval retry policy for connection attempts."""

    interval_seconds: float = DEFAULT_RETRY_INTERVAL
    max_attempts: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RetryPolicy':
        data = data or {}
        interval = data.get('interval_seconds', DEFAULT_RETRY_INTERVAL)
        max_attempts = data.get('max_attempts')

        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval < 0:
            raise ConfigurationError(f"retry.interval_seconds must be a non-negative number, got {interval!r}")
        if max_attempts is not None and (
                isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1):
            raise ConfigurationError(f"retry.max_attempts must be a positive integer or null, got {max_attempts!r}")

        return cls(interval_seconds=float(interval), max_attempts=max_attempts)


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.password': 'LDAP_BIND_PASSWORD',
        'directory.username': 'LDAP_BIND_DN',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directory = self.config.get('directory')
        if not isinstance(directory, dict):
            errors.append("Missing required section: directory")
        else:
            errors.extend(_connection_field_errors(_canonical_fields(directory)))

        sections = {}
        for section in SECTION_DEFAULTS:
            value = self.config.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Section {section} must be a mapping")
                value = None
            sections[section] = value or {}

        try:
            RetryPolicy.from_dict(sections['retry'])
        except ConfigurationError as e:
            errors.append(str(e))

        ca_cert_file = sections['tls'].get('ca_cert_file')
        if ca_cert_file and not os.path.exists(ca_cert_file):
            errors.append(f"CA certificate file not found: {ca_cert_file}")

        initial_data_file = sections['store'].get('initial_data_file')
        if initial_data_file and not os.path.exists(initial_data_file):
            errors.append(f"Initial store data file not found: {initial_data_file}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Fill every optional section with its default values."""
        for section, defaults in SECTION_DEFAULTS.items():
            self.config[section] = {**defaults, **(self.config.get(section) or {})}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def parse_connection_config(raw: Union[bytes, str, Dict[str, Any]]) -> ConnectionConfig:
    """
    Parse a plugin configuration document into a connection snapshot.

    JSON documents are accepted as well as YAML, JSON being a subset of YAML.

    Args:
        raw: Raw configuration bytes or text, or an already decoded mapping

    Returns:
        ConnectionConfig instance

    Raises:
        ConfigurationError: If the document cannot be parsed or is incomplete
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ConfigurationError(f"Plugin configuration is not valid UTF-8: {e}")

    if isinstance(raw, str):
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid plugin configuration: {e}")
    else:
        data = raw

    if data is None:
        data = {}
    return ConnectionConfig.from_dict(data)


def connection_config_from(config: Dict[str, Any]) -> ConnectionConfig:
    """Extract the connection snapshot from a loaded application configuration."""
    return ConnectionConfig.from_dict(config.get('directory') or {})


def retry_policy_from(config: Dict[str, Any]) -> RetryPolicy:
    """Extract the connection retry policy from a loaded application configuration."""
    return RetryPolicy.from_dict(config.get('retry'))

