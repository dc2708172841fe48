"""Cooperative pause and cancel signals checked between units of work."""

import logging
import threading
from typing import Optional


class MigrationControl:
    """Pause/cancel token shared between the driver loop and its callers.

    Requests never interrupt a write in progress; the orchestrator polls
    should_stop() at batch, file and chunk boundaries.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._pause = threading.Event()
        self._cancel = threading.Event()
        self.logger = logger or logging.getLogger('site_migrator.control')

    def request_pause(self) -> None:
        if not self._pause.is_set():
            self.logger.info("Pause requested; stopping after the current unit of work")
        self._pause.set()

    def request_cancel(self) -> None:
        if not self._cancel.is_set():
            self.logger.info("Cancel requested; stopping after the current unit of work")
        self._cancel.set()

    @property
    def pause_requested(self) -> bool:
        return self._pause.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def should_stop(self) -> bool:
        return self._pause.is_set() or self._cancel.is_set()

    def reset(self) -> None:
        """Clear both signals before a new run."""
        self._pause.clear()
        self._cancel.clear()


__all__ = ['MigrationControl']
