"""Configuration loader with YAML support and environment variable substitution."""

import copy
import os
import re
from typing import Any, Dict
from urllib.parse import urlparse

import yaml


class ConfigLoader:
    """Handles loading and validation of configuration files."""

    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')
    TABLE_PREFIX_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')

    @classmethod
    def load(cls, config_path: str) -> Dict[str, Any]:
        """
        Load configuration from YAML file with environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Parsed configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML parsing fails
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f)

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a dictionary")

        return cls._substitute_env_vars_recursive(config_data)

    @classmethod
    def validate(cls, config: Dict[str, Any], require_source: bool = True) -> None:
        """
        Validate configuration for required fields and correct values.

        Args:
            config: Configuration dictionary to validate
            require_source: Whether a source URL and secret (or connection key) are needed

        Raises:
            ValueError: If validation fails
        """
        # A run needs a source, either as url+secret or as a connection key
        if require_source and not get_nested(config, 'source.connection_key'):
            cls._validate_required_field(config, 'source.url')
            cls._validate_required_field(config, 'source.secret')

        source_url = get_nested(config, 'source.url')
        if source_url:
            cls._validate_url(source_url, 'source.url')

        cls._validate_required_field(config, 'destination.site_url')
        cls._validate_url(get_nested(config, 'destination.site_url'), 'destination.site_url')

        home_url = get_nested(config, 'destination.home_url')
        if home_url:
            cls._validate_url(home_url, 'destination.home_url')

        cls._validate_required_field(config, 'destination.content_dir')
        content_dir = get_nested(config, 'destination.content_dir')
        if os.path.exists(content_dir) and not os.path.isdir(content_dir):
            raise ValueError(f"destination.content_dir '{content_dir}' is not a directory")

        prefix = get_nested(config, 'destination.table_prefix', 'wp_')
        if not isinstance(prefix, str) or not cls.TABLE_PREFIX_PATTERN.match(prefix):
            raise ValueError("destination.table_prefix may only contain letters, digits and underscores")

        cls.validate_database(get_nested(config, 'destination.database', {}), 'destination.database')

        # Validate timeout and retry settings
        timeout = get_nested(config, 'advanced.request_timeout', 30)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("advanced.request_timeout must be a positive number")

        for key in ('advanced.max_retries', 'advanced.chunk_max_retries'):
            retries = get_nested(config, key)
            if retries is not None and (not isinstance(retries, int) or retries < 0):
                raise ValueError(f"{key} must be a non-negative integer")

        interval = get_nested(config, 'migration.progress_save_interval', 10)
        if not isinstance(interval, int) or interval < 1:
            raise ValueError("migration.progress_save_interval must be a positive integer")

        max_files = get_nested(config, 'migration.max_files_per_batch', 100)
        if not isinstance(max_files, int) or max_files < 1:
            raise ValueError("migration.max_files_per_batch must be a positive integer")

    @classmethod
    def validate_database(cls, database: Dict[str, Any], field_name: str) -> None:
        """Validate a database connection block."""
        if not isinstance(database, dict) or not database:
            raise ValueError(f"Missing required configuration: {field_name}")

        engine = database.get('engine', 'sqlite')
        if engine not in ['sqlite', 'mysql']:
            raise ValueError(f"{field_name}.engine must be 'sqlite' or 'mysql'")

        if engine == 'sqlite':
            cls._validate_required_field(database, 'path', f"{field_name}.path")
        else:
            for key in ('host', 'user', 'name'):
                cls._validate_required_field(database, key, f"{field_name}.{key}")

    @classmethod
    def merge_with_args(cls, config: Dict[str, Any], args) -> Dict[str, Any]:
        """
        Merge configuration file with CLI arguments.
        CLI arguments take precedence over config file values.

        Args:
            config: Base configuration dictionary
            args: CLI arguments with attributes matching config keys

        Returns:
            Merged configuration dictionary
        """
        merged = copy.deepcopy(config)

        for section in ('source', 'destination', 'migration', 'logging'):
            if section not in merged or merged[section] is None:
                merged[section] = {}

        if getattr(args, 'source_url', None):
            merged['source']['url'] = args.source_url

        if getattr(args, 'connection_key', None):
            merged['source']['connection_key'] = args.connection_key

        if getattr(args, 'state_path', None):
            merged['migration']['state_path'] = args.state_path

        if getattr(args, 'dry_run', False):
            merged['migration']['dry_run'] = True

        if getattr(args, 'log_file', None):
            merged['logging']['file'] = args.log_file

        verbose = getattr(args, 'verbose', 0) or 0
        if verbose >= 2:
            merged['logging']['level'] = 'DEBUG'
        elif verbose == 1:
            merged['logging']['level'] = 'INFO'

        return merged

    @classmethod
    def _substitute_env_vars_recursive(cls, data: Any) -> Any:
        """Recursively substitute environment variables in data structure."""
        if isinstance(data, dict):
            return {key: cls._substitute_env_vars_recursive(value) for key, value in data.items()}
        elif isinstance(data, list):
            return [cls._substitute_env_vars_recursive(item) for item in data]
        elif isinstance(data, str):
            return cls._substitute_env_vars(data)
        else:
            return data

    @classmethod
    def _substitute_env_vars(cls, value: str) -> str:
        """Substitute environment variables in a string value."""
        def replace_match(match):
            env_value = os.getenv(match.group(1))
            return env_value if env_value is not None else match.group(0)

        return cls.ENV_VAR_PATTERN.sub(replace_match, value)

    @staticmethod
    def _validate_required_field(config_section: dict, field: str, label: str = None) -> None:
        """Validate that a required field exists and has a value."""
        label = label or field
        value = get_nested(config_section, field)
        if value is None or value == '':
            raise ValueError(f"Missing required configuration: {label}")

        # Check for unsubstituted environment variables
        if isinstance(value, str) and '${' in value:
            match = ConfigLoader.ENV_VAR_PATTERN.search(value)
            var_name = match.group(1) if match else value
            raise ValueError(
                f"Configuration field '{label}' contains unsubstituted environment variable: {value}. "
                f"Please set the {var_name} environment variable or provide a value in config file."
            )

    @staticmethod
    def _validate_url(url: str, field_name: str) -> None:
        """Validate URL format."""
        parsed = urlparse(url)
        if not parsed.scheme or parsed.scheme not in ['http', 'https']:
            raise ValueError(f"{field_name} must use http or https scheme: {url}")
        if not parsed.netloc:
            raise ValueError(f"{field_name} missing hostname: {url}")


def get_nested(config: dict, path: str, default: Any = None) -> Any:
    """Safely retrieve nested configuration values using dot notation.

    Args:
        config: Configuration dictionary
        path: Dot-separated path (e.g., "source.url")
        default: Default value if path doesn't exist

    Returns:
        Value at the nested path or default
    """
    keys = path.split('.')
    value = config

    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default

    return value


__all__ = ['ConfigLoader', 'get_nested']
