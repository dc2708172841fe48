#!/usr/bin/env python3
"""
Site Migrator - Main CLI Entry Point

This script provides the command-line interface for pulling a site (database
tables and content files) from a source site into this destination, with
Smart-Merge preservation of destination identity and resumable progress.
"""

import argparse
import base64
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional

from config_loader import ConfigLoader, get_nested
from destination import (
    DestinationService,
    GetDestinationConfig,
    LoadConnectionKey,
    MigrationLock,
    RegenerateSecret,
    SaveConnectionKey,
    SetMode,
    TransientStore,
)
from errors import ConcurrencyConflict, InvalidConnectionKey, MigrationError, StateVersionError
from logger import log_config, log_section, setup_logging
from models import MigrationPhase, SiteMode, __version__
from orchestrator import (
    MigrationControl,
    MigrationOrchestrator,
    MigrationReport,
    SessionStore,
    cancel_saved_session,
)
from settings import Settings
from source_client import SourceClient
from stores import StoreFactory

DEFAULT_STATE_PATH = '.migration-state.json'
DEFAULT_SETTINGS_PATH = '.migration-settings.yaml'
DEFAULT_TRANSIENT_DIR = '.migration-transients'
DEFAULT_LOCK_PATH = '.migration.lock'


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for CLI."""
    parser = argparse.ArgumentParser(
        description="Pull a site's database and content files from a source site into this destination",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run (or resume) a migration
  python migrate.py --config config.yaml

  # Start over, discarding saved progress
  python migrate.py --no-resume

  # Preview tables and files without changing anything
  python migrate.py --dry-run

  # Use a connection key copied from the source site
  python migrate.py --connection-key "https://old.example.com|c2VjcmV0..."

  # Remember a connection key for later runs
  python migrate.py --save-connection-key "https://old.example.com|c2VjcmV0..."

  # Generate a new secret for this site and print its connection key
  python migrate.py --regenerate-key

  # Verbose logging
  python migrate.py -vv
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--config',
        type=str,
        default='config.yaml',
        help='Path to configuration YAML file (default: config.yaml)'
    )

    parser.add_argument(
        '--state-path',
        type=str,
        help=f'Path of the saved migration session (default: {DEFAULT_STATE_PATH})'
    )

    parser.add_argument(
        '--resume',
        action=argparse.BooleanOptionalAction,
        default=True,
        help='Resume a paused or interrupted session if one is saved (default: on)'
    )

    parser.add_argument(
        '--dry-run',
        action=argparse.BooleanOptionalAction,
        default=None,
        help='Scan the source and preview the migration without making changes'
    )

    parser.add_argument(
        '--cancel',
        action='store_true',
        help='Cancel the saved session so the next run starts fresh'
    )

    parser.add_argument(
        '--source-url',
        type=str,
        help='Source site URL (overrides config)'
    )

    parser.add_argument(
        '--connection-key',
        type=str,
        help='Source connection key in the form url|base64(secret)'
    )

    parser.add_argument(
        '--regenerate-key',
        action='store_true',
        help="Generate a new migration secret for this site and print its connection key"
    )

    parser.add_argument(
        '--save-connection-key',
        type=str,
        metavar='KEY',
        help='Store a source connection key for later runs'
    )

    parser.add_argument(
        '--show-connection-key',
        action='store_true',
        help='Print the stored source connection key'
    )

    parser.add_argument(
        '--set-mode',
        choices=[mode.value for mode in SiteMode],
        help='Set the role this site plays in a migration'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='count',
        default=0,
        help='Increase verbosity (-v for INFO, -vv for DEBUG)'
    )

    parser.add_argument(
        '--log-file',
        type=str,
        help='Also write logs to this file'
    )

    return parser


def is_management_command(args: argparse.Namespace) -> bool:
    return bool(args.regenerate_key or args.save_connection_key or args.show_connection_key
                or args.set_mode or args.cancel)


def build_destination(config: Dict[str, Any], settings: Settings,
                      logger: logging.Logger) -> DestinationService:
    """Construct the destination write service from configuration."""
    destination_config = config.get('destination', {})
    store = StoreFactory.create_store(destination_config.get('database', {}), logger=logger)
    transients = TransientStore(
        get_nested(config, 'migration.transient_dir', DEFAULT_TRANSIENT_DIR),
        default_ttl=settings.get('lock_timeout')
    )

    content_dir = destination_config['content_dir']
    os.makedirs(content_dir, exist_ok=True)

    return DestinationService(
        store=store,
        settings=settings,
        content_root=content_dir,
        transients=transients,
        site_url=destination_config['site_url'],
        home_url=destination_config.get('home_url'),
        table_prefix=destination_config.get('table_prefix', 'wp_'),
        logger=logger
    )


def apply_saved_connection_key(config: Dict[str, Any], settings: Settings, logger: logging.Logger) -> None:
    """Fall back to the stored connection key when config names no source."""
    source = config.setdefault('source', {}) or {}
    config['source'] = source
    if source.get('connection_key') or (source.get('url') and source.get('secret')):
        return

    encoded = settings.get('saved_source_key')
    if encoded:
        logger.info("Using stored source connection key")
        source['connection_key'] = base64.b64decode(encoded).decode('utf-8')


def run_management_command(args: argparse.Namespace, destination: DestinationService,
                           logger: logging.Logger) -> int:
    """Execute a one-shot settings command against the destination service."""
    if args.set_mode:
        result = destination.dispatch(SetMode(args.set_mode))
        print(f"Site mode: {result['mode']}")

    if args.regenerate_key:
        result = destination.dispatch(RegenerateSecret())
        print("New connection key (paste it into the destination site):")
        print(result['key'])

    if args.save_connection_key:
        result = destination.dispatch(SaveConnectionKey(args.save_connection_key))
        print(f"Connection key saved for {result['source_url']}")

    if args.show_connection_key:
        result = destination.dispatch(LoadConnectionKey())
        print(result['key'] or "No connection key stored")

    return 0


def export_reports(report_generator: MigrationReport, report: Dict[str, Any],
                   migration_config: Dict[str, Any]) -> None:
    """Write the JSON report, plus the error log as CSV when errors_csv_path is set."""
    report_generator.export_json_report(report, migration_config.get('report_path', 'migration_report.json'))

    errors_csv_path = migration_config.get('errors_csv_path')
    if errors_csv_path and report['summary'].get('total_errors', 0):
        report_generator.export_csv_errors(report, errors_csv_path)


def run_migration(config: Dict[str, Any], args: argparse.Namespace, destination: DestinationService,
                  logger: logging.Logger) -> int:
    """Execute (or resume) the migration pipeline."""
    logger.info("Starting migration pipeline")

    migration_config = config.get('migration', {})
    dry_run = args.dry_run if args.dry_run is not None else migration_config.get('dry_run', False)
    state_path = migration_config.get('state_path', DEFAULT_STATE_PATH)

    logger.debug(f"Destination config: {destination.dispatch(GetDestinationConfig())}")

    session_store = SessionStore(state_path, logger)
    lock = MigrationLock(
        migration_config.get('lock_path', DEFAULT_LOCK_PATH),
        timeout=destination.settings.get('lock_timeout'),
        logger=logger
    )

    if args.cancel:
        session = cancel_saved_session(session_store, lock, logger)
        print(f"Session {session.session_id} is {session.phase.value}" if session else "No saved session")
        return 0

    control = MigrationControl(logger)
    interrupted = {'value': False}

    def handle_interrupt(signum, frame):
        # A second Ctrl-C falls through to KeyboardInterrupt
        interrupted['value'] = True
        signal.signal(signal.SIGINT, signal.default_int_handler)
        logger.warning("Interrupt received, pausing after the current unit of work (Ctrl-C again to abort)")
        control.request_pause()

    with SourceClient.from_config(config) as client:
        orchestrator = MigrationOrchestrator(
            source=client,
            destination=destination,
            session_store=session_store,
            lock=lock,
            control=control,
            config=config,
            current_user_id=destination.smart_merge.user_id_for_login(
                get_nested(config, 'destination.operator_login', '')
            ),
            logger=logger
        )

        previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
        try:
            report = orchestrator.run(resume=args.resume, dry_run=dry_run)
        finally:
            signal.signal(signal.SIGINT, previous_handler)

    report_generator = MigrationReport(logger)
    print("\n" + report_generator.format_console_report(report))

    if dry_run:
        logger.info("Dry-run complete. No changes made.")
        return 0

    export_reports(report_generator, report, migration_config)

    phase = report['summary']['phase']
    if phase == MigrationPhase.PAUSED.value and interrupted['value']:
        logger.warning(f"Migration paused; progress saved to {state_path}")
        return 130

    errors = report['summary'].get('total_errors', 0)
    if phase != MigrationPhase.COMPLETE.value:
        logger.error(f"Migration ended in state '{phase}'")
        return 1
    if errors > 0:
        logger.warning(f"Migration completed with {errors} errors")
        return 1

    logger.info("Migration completed successfully")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        logger = setup_logging(verbosity=args.verbose, log_file=args.log_file)

        log_section("Site Migrator")
        logger.info(f"Version: {__version__}")

        logger.info(f"Loading configuration from {args.config}")
        config = ConfigLoader.load(args.config)

        # CLI takes precedence over the config file
        config = ConfigLoader.merge_with_args(config, args)

        logging_config = config.get('logging', {})
        logger = setup_logging(
            verbosity=args.verbose,
            log_file=logging_config.get('file'),
            log_format=logging_config.get('format'),
            date_format=logging_config.get('date_format'),
            level=logging_config.get('level')
        )

        settings = Settings(get_nested(config, 'migration.settings_path', DEFAULT_SETTINGS_PATH))
        management = is_management_command(args)

        if not management:
            apply_saved_connection_key(config, settings, logger)
        ConfigLoader.validate(config, require_source=not management)
        log_config(config)

        destination = build_destination(config, settings, logger)
        try:
            if management and not args.cancel:
                return run_management_command(args, destination, logger)
            return run_migration(config, args, destination, logger)
        finally:
            destination.store.close()

    except FileNotFoundError as e:
        print(f"ERROR: File not found: {e}", file=sys.stderr)
        return 2
    except (InvalidConnectionKey, StateVersionError) as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"ERROR: Configuration error: {e}", file=sys.stderr)
        return 2
    except ConcurrencyConflict as e:
        print(f"ERROR: {e.message} (held by session {e.details.get('holder')})", file=sys.stderr)
        return 1
    except MigrationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nMigration interrupted by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
