"""Source side: read service and its shared-secret HTTP API."""

from .api import API_PREFIX, SECRET_HEADER, build_allowed_origins, create_source_app, is_local_origin
from .service import SourceService, origin_from_headers

__all__ = [
    'API_PREFIX',
    'SECRET_HEADER',
    'build_allowed_origins',
    'create_source_app',
    'is_local_origin',
    'SourceService',
    'origin_from_headers',
]
