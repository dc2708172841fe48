"""HTTP surface of the source read service (Flask + flask-cors)."""

import hmac
import json
import logging
import re
from typing import Any, Iterable, List, Optional, Pattern, Union

from flask import Blueprint, Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from errors import AuthFailure, MigrationError, PathViolation
from settings import Settings
from source.service import SourceService, origin_from_headers

API_PREFIX = '/simple-migrator/v1'
SECRET_HEADER = 'X-Migration-Secret'

LOCAL_ORIGIN_PATTERNS = [
    re.compile(r'^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$', re.IGNORECASE),
    re.compile(r'^https?://10\.\d{1,3}\.\d{1,3}\.\d{1,3}(:\d+)?$'),
    re.compile(r'^https?://172\.(1[6-9]|2\d|3[01])\.\d{1,3}\.\d{1,3}(:\d+)?$'),
    re.compile(r'^https?://192\.168\.\d{1,3}\.\d{1,3}(:\d+)?$'),
    re.compile(r'^https?://[^/:]+\.(local|dev|test|wp|example)(:\d+)?$', re.IGNORECASE),
]

logger = logging.getLogger('site_migrator.source.api')


def is_local_origin(origin: str) -> bool:
    """True for localhost, private network and local development origins."""
    return any(pattern.match(origin or '') for pattern in LOCAL_ORIGIN_PATTERNS)


def build_allowed_origins(site_url: str, settings: Settings,
                          extra_origins: Iterable[str] = ()) -> List[Union[str, Pattern]]:
    """
    Collect the CORS allow-list: site URL, configured and connected origins,
    plus the local origin patterns.

    Origins recorded by a handshake take effect the next time the app is built.
    """
    origins: List[Union[str, Pattern]] = []
    for origin in [site_url, *extra_origins, *(settings.get('connected_destinations') or [])]:
        origin = (origin or '').rstrip('/')
        if origin and origin not in origins:
            origins.append(origin)
    return origins + list(LOCAL_ORIGIN_PATTERNS)


def _error_response(message: str, code: str, status: int):
    response = jsonify({'error': message, 'code': code})
    response.status_code = status
    return response


def _int_arg(name: str, default: int = 0) -> int:
    value = request.args.get(name, default)
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid integer parameter: {name}")


def _cursor_arg(name: str) -> Any:
    value = request.args.get(name)
    if value is None:
        return None
    return int(value) if value.lstrip('-').isdigit() else value


def create_source_app(service: SourceService, settings: Settings,
                      allowed_origins: Iterable[str] = ()) -> Flask:
    """
    Build the Flask application exposing the source read API.

    Args:
        service: Source read service
        settings: Settings holding the shared secret and connected destinations
        allowed_origins: Extra CORS origins from configuration

    Returns:
        Flask application
    """
    app = Flask('site_migrator_source')
    CORS(
        app,
        resources={f"{API_PREFIX}/*": {
            'origins': build_allowed_origins(service.site_url, settings, allowed_origins)
        }},
        allow_headers=[SECRET_HEADER, 'Content-Type', 'Authorization'],
        methods=['GET', 'POST', 'OPTIONS'],
        supports_credentials=True,
        max_age=86400
    )

    api = Blueprint('source_api', __name__, url_prefix=API_PREFIX)

    @api.before_request
    def check_secret():
        if request.method == 'OPTIONS':
            return None

        supplied = request.headers.get(SECRET_HEADER)
        if not supplied:
            raise AuthFailure("Migration secret is required.", 401)

        stored = settings.get('migration_secret') or ''
        if not stored or not hmac.compare_digest(stored.encode('utf-8'), supplied.encode('utf-8')):
            logger.warning(f"Rejected request to {request.path}: invalid secret")
            raise AuthFailure("Invalid migration secret.", 403)
        return None

    @api.route('/handshake', methods=['POST'])
    def handshake():
        origin = origin_from_headers(request.headers.get('Origin'), request.headers.get('Referer'))
        return jsonify(service.handshake(origin))

    @api.route('/scan/manifest', methods=['GET'])
    def manifest():
        include_uploads = request.args.get('include_uploads', '1') not in ('0', 'false')
        return jsonify(service.get_manifest(include_uploads))

    @api.route('/scan/database', methods=['GET'])
    def database():
        return jsonify(service.get_database_info())

    @api.route('/stream/schema', methods=['GET'])
    def schema():
        return jsonify(service.get_table_schema(request.args.get('table', '')))

    @api.route('/stream/rows', methods=['GET'])
    def rows():
        return jsonify(service.get_rows(
            request.args.get('table', ''),
            last_id=_cursor_arg('last_id'),
            offset=_int_arg('offset'),
            batch=_int_arg('batch') or None
        ))

    @api.route('/stream/file', methods=['GET'])
    def stream_file():
        path = request.args.get('path', '')
        if not path:
            raise ValueError("Missing path parameter")
        return jsonify(service.get_file_chunk(path, _int_arg('start'), _int_arg('end')))

    @api.route('/stream/batch', methods=['GET'])
    def stream_batch():
        try:
            files = json.loads(request.args.get('files', ''))
        except json.JSONDecodeError:
            raise ValueError("Invalid files parameter")
        return jsonify(service.get_batch(files))

    @api.route('/config/info', methods=['GET'])
    def info():
        return jsonify(service.get_source_info())

    app.register_blueprint(api)

    @app.errorhandler(AuthFailure)
    def handle_auth(e: AuthFailure):
        return _error_response(e.message, e.code.value, e.status_code or 403)

    @app.errorhandler(PathViolation)
    def handle_path(e: PathViolation):
        logger.warning(str(e))
        return _error_response(e.message, e.code.value, 400)

    @app.errorhandler(MigrationError)
    def handle_migration_error(e: MigrationError):
        logger.error(f"Request failed: {e.message}")
        return _error_response(e.message, e.code.value, 500)

    @app.errorhandler(ValueError)
    def handle_bad_request(e: ValueError):
        return _error_response(str(e), 'invalid_request', 400)

    @app.errorhandler(LookupError)
    def handle_lookup(e: LookupError):
        return _error_response(str(e).strip("'\""), 'not_found', 404)

    @app.errorhandler(FileNotFoundError)
    def handle_missing_file(e: FileNotFoundError):
        return _error_response(str(e), 'not_found', 404)

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Unexpected error handling {request.path}")
        return _error_response("Internal server error", 'unknown_error', 500)

    return app


__all__ = ['create_source_app', 'build_allowed_origins', 'is_local_origin', 'API_PREFIX', 'SECRET_HEADER']
