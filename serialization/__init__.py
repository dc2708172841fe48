"""Serialization codec and serialization-safe URL rewriter."""

from .php_serializer import PHPObject, SerializationError, dumps, is_serialized, loads
from .rewriter import (
    TABLES_TO_SCAN,
    SerializationRewriter,
    build_substitutions,
    rewrite_value,
    simple_replace,
)

__all__ = [
    'PHPObject',
    'SerializationError',
    'dumps',
    'is_serialized',
    'loads',
    'TABLES_TO_SCAN',
    'SerializationRewriter',
    'build_substitutions',
    'rewrite_value',
    'simple_replace',
]
