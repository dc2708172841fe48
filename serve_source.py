#!/usr/bin/env python3
"""
Site Migrator - Source API server

Serves the shared-secret read API a destination pulls from. Run it on the
source site with the same YAML configuration format as migrate.py; only the
``source`` section (url, content_dir, table_prefix, database) is required.
"""

import argparse
import logging
import sys
from typing import Optional

from config_loader import ConfigLoader, get_nested
from destination.connection_key import build_connection_key, generate_secret
from logger import log_section, setup_logging
from models import SiteMode, __version__
from settings import Settings
from source import SourceService, create_source_app
from stores import StoreFactory

DEFAULT_SETTINGS_PATH = '.migration-settings.yaml'


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the source server."""
    parser = argparse.ArgumentParser(description="Serve this site as a migration source")

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', type=str, default='config.yaml',
                        help='Path to configuration YAML file (default: config.yaml)')
    parser.add_argument('--host', type=str, default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=8080, help='Bind port (default: 8080)')
    parser.add_argument('--regenerate-key', action='store_true',
                        help='Generate a new migration secret before serving')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase verbosity (-v for INFO, -vv for DEBUG)')
    parser.add_argument('--log-file', type=str, help='Also write logs to this file')

    return parser


def validate_source_config(config: dict) -> None:
    """
    Raises:
        ValueError: If a required source setting is missing
    """
    for field in ('source.url', 'source.content_dir'):
        ConfigLoader._validate_required_field(config, field)
    ConfigLoader._validate_url(get_nested(config, 'source.url'), 'source.url')

    prefix = get_nested(config, 'source.table_prefix', 'wp_')
    if not isinstance(prefix, str) or not ConfigLoader.TABLE_PREFIX_PATTERN.match(prefix):
        raise ValueError("source.table_prefix may only contain letters, digits and underscores")

    ConfigLoader.validate_database(get_nested(config, 'source.database', {}), 'source.database')


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the source server."""
    args = create_argument_parser().parse_args(argv)

    try:
        logger = setup_logging(verbosity=max(args.verbose, 1), log_file=args.log_file)
        log_section("Site Migrator Source API")

        config = ConfigLoader.load(args.config)
        validate_source_config(config)
        source_config = config['source']

        settings = Settings(get_nested(config, 'migration.settings_path', DEFAULT_SETTINGS_PATH))
        if args.regenerate_key or not settings.get('migration_secret'):
            settings.update('migration_secret', generate_secret())
            logger.info("Generated a new migration secret")
        if settings.get('mode') != SiteMode.SOURCE.value:
            settings.update('mode', SiteMode.SOURCE.value)

        store = StoreFactory.create_store(source_config['database'], logger=logger)
        service = SourceService(
            store=store,
            content_root=source_config['content_dir'],
            settings=settings,
            site_url=source_config['url'],
            home_url=source_config.get('home_url'),
            table_prefix=source_config.get('table_prefix', 'wp_'),
            logger=logger
        )
        app = create_source_app(service, settings, source_config.get('allowed_origins') or [])

        print("Connection key for the destination site:")
        print(build_connection_key(service.home_url, settings.get('migration_secret')))

        logger.info(f"Serving source API on http://{args.host}:{args.port}")
        try:
            app.run(host=args.host, port=args.port)
        finally:
            store.close()
        return 0

    except FileNotFoundError as e:
        print(f"ERROR: File not found: {e}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"ERROR: Configuration error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        logging.getLogger('site_migrator').info("Source server stopped")
        return 130


if __name__ == "__main__":
    sys.exit(main())
