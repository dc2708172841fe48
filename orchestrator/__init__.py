"""
Orchestration package for driving resumable site migrations.

This package sequences the migration phases (Scan → Database Transfer →
File Transfer → Finalize), persists the session between units of work and
reports on the outcome.
"""

from .migration_control import MigrationControl
from .migration_orchestrator import MigrationOrchestrator, cancel_saved_session
from .migration_report import MigrationReport
from .session_store import STATE_VERSION, SessionStore

__all__ = [
    'MigrationControl',
    'MigrationOrchestrator',
    'cancel_saved_session',
    'MigrationReport',
    'SessionStore',
    'STATE_VERSION'
]
