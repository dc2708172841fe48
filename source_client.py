"""HTTP client for the source read API with retry and backoff."""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from destination.connection_key import parse_connection_key
from errors import AuthFailure, SourceRequestError, TransientNetworkFailure

logger = logging.getLogger('site_migrator.client')

API_PREFIX = '/simple-migrator/v1'
SECRET_HEADER = 'X-Migration-Secret'
MAX_BACKOFF = 16.0


class SourceClient:
    """Client for the source site's shared-secret API.

    Metadata and row requests retry up to max_retries; file chunk and batch
    requests use the smaller chunk_max_retries budget, since a partial file
    is cheaper to resume than to retry indefinitely.
    """

    def __init__(
        self,
        base_url: str,
        secret: str,
        api_prefix: str = API_PREFIX,
        verify_ssl: bool = True,
        timeout: int = 30,
        max_retries: int = 5,
        chunk_max_retries: int = 3,
        retry_backoff_factor: float = 1.0,
        max_backoff: float = MAX_BACKOFF,
        rate_limit: float = 0.0
    ):
        """
        Initialize source client.

        Args:
            base_url: Source site URL (e.g., "https://old.example.com")
            secret: Shared migration secret
            api_prefix: Path prefix of the source API
            verify_ssl: Whether to verify SSL certificates
            timeout: HTTP request timeout in seconds
            max_retries: Retry budget for metadata and row requests
            chunk_max_retries: Retry budget for file chunk and batch requests
            retry_backoff_factor: Base delay; doubles per attempt
            max_backoff: Upper bound on a single wait (never above 16s)
            rate_limit: Minimum seconds between requests (0.0 = no rate limiting)
        """
        if not base_url:
            raise ValueError("Source URL is required")
        if not secret:
            raise ValueError("Migration secret is required")

        self.base_url = base_url.rstrip('/')
        self.api_url = self.base_url + '/' + api_prefix.strip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.chunk_max_retries = chunk_max_retries
        self.retry_backoff_factor = retry_backoff_factor
        self.max_backoff = min(max_backoff, MAX_BACKOFF)
        self.rate_limit = rate_limit
        self.last_request_time = 0.0
        self.retry_count = 0

        self.session = requests.Session()
        self.session.headers[SECRET_HEADER] = secret
        self.session.headers['Accept'] = 'application/json'

        self.session.verify = verify_ssl
        if not verify_ssl:
            logger.warning("SSL verification disabled - this is insecure!")
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        # Retries are counted here, not in urllib3, so each call type keeps its own budget
        adapter = HTTPAdapter(max_retries=Retry(total=0, raise_on_status=False))
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        logger.debug(f"Client configured for {self.api_url} with timeout={timeout}s, "
                     f"max_retries={max_retries}, chunk_max_retries={chunk_max_retries}")

    def _enforce_rate_limit(self) -> None:
        if self.rate_limit <= 0:
            return

        time_since_last = time.time() - self.last_request_time
        if time_since_last < self.rate_limit:
            time.sleep(self.rate_limit - time_since_last)

    def backoff(self, attempt: int) -> float:
        """Wait before retry number attempt + 1."""
        return min(self.retry_backoff_factor * (2 ** attempt), self.max_backoff)

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:500] or response.reason or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get('error') or data.get('message') or data)
        return str(data)

    def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        retries: Optional[int] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Call an endpoint and return its decoded JSON body.

        Args:
            method: HTTP method
            endpoint: Path below the API prefix (e.g., "/scan/manifest")
            retries: Retry budget (defaults to max_retries)
            **kwargs: Additional arguments for requests

        Raises:
            AuthFailure: On 401/403, without retry
            SourceRequestError: On other 4xx or an unreadable body, without retry
            TransientNetworkFailure: When 5xx, timeouts or connection errors outlast the budget
        """
        retries = self.max_retries if retries is None else retries
        url = self.api_url + '/' + endpoint.lstrip('/')

        for attempt in range(retries + 1):
            self._enforce_rate_limit()
            status_code = None
            logger.debug(f"API Request: {method} {url} (attempt {attempt + 1})")

            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                error = f"{type(e).__name__}: {e}"
            else:
                status_code = response.status_code
                if 200 <= status_code < 300:
                    try:
                        return response.json()
                    except ValueError:
                        raise SourceRequestError(f"Invalid JSON response from {endpoint}", status_code)

                message = self._error_message(response)
                if status_code in (401, 403):
                    logger.error(f"Authentication failed ({status_code}): {message}")
                    raise AuthFailure(message, status_code)
                if 400 <= status_code < 500 and status_code != 429:
                    raise SourceRequestError(f"{method} {endpoint} failed ({status_code}): {message}", status_code)
                error = f"HTTP {status_code}: {message}"
            finally:
                self.last_request_time = time.time()

            if attempt >= retries:
                logger.error(f"{method} {endpoint} failed after {attempt + 1} attempts: {error}")
                raise TransientNetworkFailure(
                    f"{method} {endpoint} failed after {attempt + 1} attempts: {error}",
                    attempts=attempt + 1,
                    status_code=status_code
                )

            wait_time = self.backoff(attempt)
            self.retry_count += 1
            logger.warning(f"Attempt {attempt + 1} failed ({error}), retrying in {wait_time:.1f}s: {endpoint}")
            time.sleep(wait_time)

        # Loop always returns or raises
        raise TransientNetworkFailure(f"{method} {endpoint} failed", attempts=retries + 1)

    def handshake(self) -> Dict[str, Any]:
        return self._request_with_retry('POST', '/handshake')

    def get_manifest(self, include_uploads: bool = True) -> Dict[str, Any]:
        return self._request_with_retry('GET', '/scan/manifest',
                                        params={'include_uploads': '1' if include_uploads else '0'})

    def get_database_info(self) -> Dict[str, Any]:
        return self._request_with_retry('GET', '/scan/database')

    def get_table_schema(self, table: str) -> Dict[str, Any]:
        return self._request_with_retry('GET', '/stream/schema', params={'table': table})

    def get_rows(self, table: str, last_id: Any = None, offset: int = 0,
                 batch: Optional[int] = None) -> Dict[str, Any]:
        params = {'table': table, 'offset': offset}
        if last_id is not None:
            params['last_id'] = last_id
        if batch:
            params['batch'] = batch
        return self._request_with_retry('GET', '/stream/rows', params=params)

    def get_file_chunk(self, path: str, start: int = 0, end: int = 0) -> Dict[str, Any]:
        return self._request_with_retry('GET', '/stream/file', retries=self.chunk_max_retries,
                                        params={'path': path, 'start': start, 'end': end})

    def get_batch(self, paths: List[str]) -> Dict[str, Any]:
        return self._request_with_retry('GET', '/stream/batch', retries=self.chunk_max_retries,
                                        params={'files': json.dumps(paths)})

    def get_source_info(self) -> Dict[str, Any]:
        return self._request_with_retry('GET', '/config/info')

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> 'SourceClient':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SourceClient':
        """
        Initialize source client from configuration dictionary.

        Uses source.connection_key when present, else source.url and source.secret.

        Raises:
            InvalidConnectionKey: If the connection key is malformed
        """
        source_config = config.get('source', {})
        advanced_config = config.get('advanced', {})

        if source_config.get('connection_key'):
            base_url, secret = parse_connection_key(source_config['connection_key'])
        else:
            base_url, secret = source_config.get('url'), source_config.get('secret')

        return cls(
            base_url=base_url,
            secret=secret,
            api_prefix=source_config.get('api_prefix', API_PREFIX),
            verify_ssl=source_config.get('verify_ssl', True),
            timeout=advanced_config.get('request_timeout', 30),
            max_retries=advanced_config.get('max_retries', 5),
            chunk_max_retries=advanced_config.get('chunk_max_retries', 3),
            retry_backoff_factor=advanced_config.get('retry_backoff_factor', 1.0),
            max_backoff=advanced_config.get('max_backoff', MAX_BACKOFF),
            rate_limit=advanced_config.get('rate_limit', 0.0)
        )


__all__ = ['SourceClient', 'API_PREFIX', 'SECRET_HEADER', 'MAX_BACKOFF']
