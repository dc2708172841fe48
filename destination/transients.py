"""Durable key/value entries with a time-to-live, stored as JSON files."""

import json
import logging
import os
import re
import time
from typing import Any, Optional

logger = logging.getLogger('site_migrator.destination.transients')

KEY_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+$')


class TransientStore:
    """Stores JSON-serializable values that expire after a TTL.

    Entries survive process restarts; an expired entry reads as missing and
    is removed on access or by purge_expired().
    """

    def __init__(self, directory: str, default_ttl: int = 3600):
        """
        Initialize transient store.

        Args:
            directory: Directory holding one JSON file per key
            default_ttl: TTL in seconds used when set() is given none
        """
        self.directory = os.path.abspath(directory)
        self.default_ttl = default_ttl
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, key: str) -> str:
        if not KEY_PATTERN.match(key):
            raise ValueError(f"Invalid transient key: {key!r}")
        return os.path.join(self.directory, f"{key}.json")

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value, replacing any previous entry for the key."""
        ttl = self.default_ttl if ttl is None else ttl
        now = time.time()
        entry = {
            'created_at': now,
            'expires_at': now + ttl,
            'data': value
        }

        path = self._path(key)
        temp_path = f"{path}.tmp"
        with open(temp_path, 'w', encoding='utf-8') as f:
            json.dump(entry, f, ensure_ascii=False)
        os.replace(temp_path, path)
        logger.debug(f"Transient stored: {key} (ttl {ttl}s)")

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or default when missing or expired."""
        path = self._path(key)
        if not os.path.exists(path):
            return default

        try:
            with open(path, 'r', encoding='utf-8') as f:
                entry = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Transient read error for {key}: {e}")
            self.delete(key)
            return default

        if entry.get('expires_at', 0) <= time.time():
            logger.debug(f"Transient expired: {key}")
            self.delete(key)
            return default

        return entry.get('data', default)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not os.path.exists(path):
            return False
        os.remove(path)
        return True

    def purge_expired(self) -> int:
        """Remove every expired entry; returns the number removed."""
        removed = 0
        now = time.time()
        for filename in os.listdir(self.directory):
            if not filename.endswith('.json'):
                continue
            path = os.path.join(self.directory, filename)
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    expires_at = json.load(f).get('expires_at', 0)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Removing unreadable transient {filename}: {e}")
                expires_at = 0

            if expires_at <= now:
                os.remove(path)
                removed += 1

        if removed:
            logger.info(f"Purged {removed} expired transients")
        return removed


__all__ = ['TransientStore']
