"""Single-session mutual exclusion for the destination."""

import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from errors import ConcurrencyConflict

DEFAULT_LOCK_TIMEOUT = 1800


class MigrationLock:
    """Lock file recording which session owns the destination, with a TTL.

    The holder refreshes the lock after each unit of work. A lock whose TTL
    has passed is considered abandoned and may be taken over.
    """

    def __init__(self, path: str, timeout: int = DEFAULT_LOCK_TIMEOUT,
                 logger: Optional[logging.Logger] = None):
        self.path = os.path.abspath(path)
        self.timeout = timeout
        self.logger = logger or logging.getLogger('site_migrator.destination.lock')

    @contextmanager
    def _guard(self) -> Iterator[None]:
        # Serializes read-modify-write of the lock file across processes
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(f"{self.path}.guard", 'a') as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def read(self) -> Optional[Dict[str, Any]]:
        """Return the current unexpired holder record, or None."""
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                record = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            self.logger.warning(f"Ignoring unreadable lock file {self.path}: {e}")
            return None

        if record.get('expires_at', 0) <= time.time():
            return None
        return record

    def _write(self, session_id: str, acquired_at: float) -> Dict[str, Any]:
        record = {
            'session_id': session_id,
            'acquired_at': acquired_at,
            'expires_at': time.time() + self.timeout
        }
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(record, f)
        return record

    def acquire(self, session_id: str) -> Dict[str, Any]:
        """
        Take the lock for a session (re-entrant for the same session).

        Raises:
            ConcurrencyConflict: If another unexpired session holds the lock
        """
        with self._guard():
            holder = self.read()
            if holder and holder.get('session_id') != session_id:
                self.logger.error(
                    f"Lock held by session {holder.get('session_id')} until {holder.get('expires_at')}"
                )
                raise ConcurrencyConflict(holder.get('session_id'), holder.get('expires_at'))

            acquired_at = holder['acquired_at'] if holder else time.time()
            record = self._write(session_id, acquired_at)

        self.logger.debug(f"Lock acquired by session {session_id}")
        return record

    def refresh(self, session_id: str) -> None:
        """Extend the TTL; fails like acquire() if another session took over."""
        self.acquire(session_id)

    def release(self, session_id: str) -> bool:
        """Release the lock if this session holds it."""
        with self._guard():
            holder = self.read()
            if holder and holder.get('session_id') != session_id:
                return False
            if os.path.exists(self.path):
                os.remove(self.path)

        self.logger.debug(f"Lock released by session {session_id}")
        return True

    def is_locked(self) -> bool:
        return self.read() is not None


__all__ = ['MigrationLock', 'DEFAULT_LOCK_TIMEOUT']
