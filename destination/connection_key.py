"""Connection keys of the form url|base64(secret)."""

import base64
import binascii
import secrets
import string
from typing import Tuple
from urllib.parse import urlparse

from errors import InvalidConnectionKey

SECRET_LENGTH = 64
SECRET_ALPHABET = string.ascii_letters + string.digits + string.punctuation


def generate_secret(length: int = SECRET_LENGTH) -> str:
    return ''.join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def build_connection_key(url: str, secret: str) -> str:
    encoded = base64.b64encode(secret.encode('utf-8')).decode('ascii')
    return f"{url.rstrip('/')}|{encoded}"


def parse_connection_key(key: str) -> Tuple[str, str]:
    """
    Split a connection key into (url, secret).

    Raises:
        InvalidConnectionKey: If the key is not url|base64(secret) with an http(s) URL
    """
    parts = (key or '').strip().split('|')
    if len(parts) != 2:
        raise InvalidConnectionKey()

    url, encoded = parts
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise InvalidConnectionKey(f"Invalid source URL in connection key: {url}")

    try:
        secret = base64.b64decode(encoded, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidConnectionKey("Connection key secret is not valid base64")

    if not secret:
        raise InvalidConnectionKey("Connection key has an empty secret")

    return url.rstrip('/'), secret


__all__ = ['generate_secret', 'build_connection_key', 'parse_connection_key', 'SECRET_LENGTH']
