"""Persistent migration settings with clamped numeric values."""

import copy
import logging
import os
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger('site_migrator.settings')


DEFAULTS: Dict[str, Any] = {
    # Operator-configurable
    'chunk_size': 2097152,
    'batch_size': 1000,
    'max_retries': 5,
    'max_backups': 3,
    'lock_timeout': 1800,

    # Developer-only
    'protected_tables': ['users', 'usermeta'],
    'protected_options': [
        'siteurl',
        'home',
        'admin_email',
        'active_plugins',
        'current_theme',
        'template',
        'stylesheet',
        'sm_migration_secret',
        'sm_source_url',
        'sm_source_mode',
    ],
    'exclude_files': [
        '.git',
        '.svn',
        '.hg',
        'node_modules',
        'bower_components',
        '.DS_Store',
        'Thumbs.db',
        '.env',
        '.htaccess',
        'debug.log',
    ],
    'exclude_dirs': ['cache', 'backups', 'sm-backups', 'upgrade', 'uploads/cache'],
    'exclude_extensions': ['log', 'tmp', 'bak', 'swp', 'swo'],

    # Site state
    'mode': 'none',
    'migration_secret': '',
    'source_url': '',
    'saved_source_key': '',
    'connected_destinations': [],
}

VALIDATION_RULES: Dict[str, Tuple[int, int]] = {
    'chunk_size': (524288, 10485760),
    'batch_size': (100, 5000),
    'max_retries': (1, 10),
    'max_backups': (1, 10),
    'lock_timeout': (300, 7200),
}


class Settings:
    """Key/value settings store backed by a YAML file.

    Only values that differ from the defaults are written, so the file stays
    small and picks up new defaults automatically.
    """

    def __init__(self, path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize settings.

        Args:
            path: YAML file to load from and save to (None keeps settings in memory)
            overrides: Initial values applied on top of the file, validated
        """
        self.path = path
        self._settings = copy.deepcopy(DEFAULTS)
        self._load()

        for key, value in (overrides or {}).items():
            if key in DEFAULTS:
                self._settings[key] = self.validate(key, value)

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return

        with open(self.path, 'r', encoding='utf-8') as f:
            saved = yaml.safe_load(f) or {}

        if not isinstance(saved, dict):
            logger.warning(f"Ignoring malformed settings file: {self.path}")
            return

        for key, value in saved.items():
            if key in DEFAULTS:
                self._settings[key] = self.validate(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        """Return a setting value, or default for unknown keys."""
        return copy.deepcopy(self._settings.get(key, default))

    def update(self, key: str, value: Any) -> bool:
        """
        Validate and persist a single setting.

        Args:
            key: Setting name
            value: New value (numeric settings are clamped)

        Returns:
            False if the key is unknown, True otherwise
        """
        if key not in DEFAULTS:
            return False

        self._settings[key] = self.validate(key, value)
        self.save()
        return True

    def update_all(self, values: Dict[str, Any]) -> None:
        """Validate and persist several settings, ignoring unknown keys."""
        for key, value in values.items():
            if key not in DEFAULTS:
                continue
            self._settings[key] = self.validate(key, value)
        self.save()

    def reset(self) -> None:
        """Restore all defaults."""
        self._settings = copy.deepcopy(DEFAULTS)
        self.save()

    @staticmethod
    def validate(key: str, value: Any) -> Any:
        """Clamp numeric settings to their allowed range."""
        if key in VALIDATION_RULES:
            minimum, maximum = VALIDATION_RULES[key]
            value = max(minimum, min(maximum, int(value)))
        return value

    @staticmethod
    def get_validation_rules(key: str) -> Optional[Tuple[int, int]]:
        return VALIDATION_RULES.get(key)

    def save(self) -> None:
        """Write non-default values to the settings file."""
        if not self.path:
            return

        to_save = {
            key: value for key, value in self._settings.items()
            if DEFAULTS.get(key) != value
        }

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(to_save, f, default_flow_style=False, sort_keys=True)

        logger.debug(f"Settings saved to {self.path}")

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._settings)


__all__ = ['Settings', 'DEFAULTS', 'VALIDATION_RULES']
