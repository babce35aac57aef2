"""HTTP transport for the Cloudant/CouchDB REST API.

This module provides:
- CloudantClient: Authenticated access to database, document, _all_docs,
  _changes, view, search, _find and _bulk_docs endpoints
- Retry with exponential backoff for transient failures (network errors,
  429 and 5xx responses)

A single client holds one ``httpx.Client`` connection pool and is safe to share
between partition workers.
"""

import logging
import time
from types import TracebackType
from typing import Any, Self, TypeAlias
from urllib.parse import quote

import httpx

from cloudant_connector.config import DESIGN_DOC_PREFIX, CloudantConnectionConfig
from cloudant_connector.errors import CloudantConnectionError, CloudantRequestError
from cloudant_connector.models import BulkDocResult, DatabaseInfo

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
# Outcomes after which a write is known not to have been applied
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
_UNPROCESSED_STATUS = frozenset({429, 503})

JsonObject: TypeAlias = dict[str, Any]


def _db_path(database: str) -> str:
    return "/" + quote(database, safe="")


def _doc_path(database: str, doc_id: str) -> str:
    if doc_id.startswith(DESIGN_DOC_PREFIX):
        name = doc_id.removeprefix(DESIGN_DOC_PREFIX)
        return f"{_db_path(database)}/_design/{quote(name, safe='')}"
    return f"{_db_path(database)}/{quote(doc_id, safe='')}"


def _query_params(params: dict[str, Any] | None) -> dict[str, str] | None:
    """Render query parameters the way CouchDB expects them.

    Booleans become ``true``/``false``; ``None`` values are dropped. Key
    parameters (``startkey`` etc.) must already be JSON encoded by the caller.
    """
    if not params:
        return None
    rendered: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            rendered[key] = "true" if value else "false"
        else:
            rendered[key] = str(value)
    return rendered


class CloudantClient:
    """Authenticated client for one Cloudant/CouchDB server.

    Example:
        >>> config = CloudantConnectionConfig.from_properties({"host": "localhost:5984"})
        >>> with CloudantClient(config) as client:
        ...     client.database_exists("n_flight")

    """

    def __init__(
        self,
        config: CloudantConnectionConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialise the client and its connection pool.

        Args:
            config: Validated connection configuration
            transport: Optional httpx transport, used to plug in test doubles

        """
        self._config = config
        auth = (
            httpx.BasicAuth(config.username, config.password)
            if config.username is not None and config.password is not None
            else None
        )
        self._client = httpx.Client(
            base_url=config.base_url,
            auth=auth,
            timeout=config.request_timeout,
            limits=httpx.Limits(max_connections=config.max_connections),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def config(self) -> CloudantConnectionConfig:
        """Return the connection configuration."""
        return self._config

    def close(self) -> None:
        """Close the connection pool, aborting idle connections."""
        self._client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Request execution
    # ------------------------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: Any = None,
        allowed: tuple[int, ...] = (),
        idempotent: bool = True,
    ) -> httpx.Response:
        """Issue a request, retrying transient failures with exponential backoff.

        Requests that are not idempotent are only retried when the failure
        shows the server never applied them: a connection that could not be
        opened, or a 429 or 503 answer.

        Args:
            method: HTTP method
            path: Path relative to the server root
            params: Query parameters
            body: JSON request body
            allowed: Non-2xx status codes the caller handles itself
            idempotent: Whether repeating the request is harmless

        Returns:
            The successful (or explicitly allowed) response

        Raises:
            CloudantConnectionError: If the server is unreachable after all retries
            CloudantRequestError: If the server answers with an error status

        """
        attempts = self._config.retries + 1
        query = _query_params(params)
        retryable = _RETRYABLE_STATUS if idempotent else _UNPROCESSED_STATUS
        failure: httpx.Response | httpx.TransportError | None = None
        tried = 0

        for attempt in range(attempts):
            if attempt:
                delay = self._config.backoff_factor * 2 ** (attempt - 1)
                logger.warning(
                    "Retrying %s %s (attempt %d/%d) after %.2fs: %s",
                    method,
                    path,
                    attempt + 1,
                    attempts,
                    delay,
                    failure,
                )
                time.sleep(delay)

            logger.debug("%s %s params=%s", method, path, query)
            tried += 1
            try:
                response = self._client.request(
                    method, path, params=query, json=body
                )
            except httpx.TransportError as e:
                failure = e
                if not idempotent and not isinstance(e, _UNSENT_ERRORS):
                    # The server may have applied the request already
                    break
                continue

            if response.status_code not in retryable:
                return self._check(method, path, response, allowed)
            failure = response

        if isinstance(failure, httpx.Response):
            return self._check(method, path, failure, allowed)

        logger.error(f"{method} {path} failed after {tried} attempt(s): {failure}")
        raise CloudantConnectionError(
            f"{method} {path} failed after {tried} attempt(s): {failure}"
        ) from failure

    def _check(
        self,
        method: str,
        path: str,
        response: httpx.Response,
        allowed: tuple[int, ...],
    ) -> httpx.Response:
        if response.is_success or response.status_code in allowed:
            return response

        error: str | None = None
        reason: str | None = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            error = payload.get("error")
            reason = payload.get("reason")

        raise CloudantRequestError(
            f"{method} {path} returned {response.status_code}: {error or ''} {reason or ''}".strip(),
            status_code=response.status_code,
            error=error,
            reason=reason,
        )

    def _json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        return self.request(method, path, params=params, body=body).json()

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    def database_exists(self, database: str) -> bool:
        """Return whether the database exists."""
        response = self.request("HEAD", _db_path(database), allowed=(404,))
        return response.status_code != 404

    def create_database(self, database: str) -> bool:
        """Create a database.

        Returns:
            True if created, False if it already existed

        """
        response = self.request("PUT", _db_path(database), allowed=(412,))
        if response.status_code == 412:
            logger.warning("Database '%s' already exists", database)
            return False
        logger.info("Created database '%s'", database)
        return True

    def delete_database(self, database: str) -> bool:
        """Delete a database.

        Returns:
            True if deleted, False if it did not exist

        """
        response = self.request("DELETE", _db_path(database), allowed=(404,))
        return response.status_code != 404

    def database_info(self, database: str) -> DatabaseInfo:
        """Return document counts and the update sequence of a database."""
        return DatabaseInfo.model_validate(self._json("GET", _db_path(database)))

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get_document(self, database: str, doc_id: str) -> JsonObject | None:
        """Return a document, or None when it does not exist."""
        response = self.request("GET", _doc_path(database, doc_id), allowed=(404,))
        if response.status_code == 404:
            return None
        return response.json()

    def delete_document(self, database: str, doc_id: str, rev: str) -> str:
        """Delete a document revision and return the tombstone revision."""
        response = self.request(
            "DELETE", _doc_path(database, doc_id), params={"rev": rev}
        )
        return response.json()["rev"]

    def bulk_docs(self, database: str, docs: list[JsonObject]) -> list[BulkDocResult]:
        """Persist documents in one call and return per-document outcomes."""
        response = self.request(
            "POST",
            f"{_db_path(database)}/_bulk_docs",
            body={"docs": docs},
            idempotent=False,
        )
        return [BulkDocResult.model_validate(item) for item in response.json()]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_docs(self, database: str, params: dict[str, Any]) -> JsonObject:
        """Query ``_all_docs``."""
        return self._json("GET", f"{_db_path(database)}/_all_docs", params=params)

    def changes(
        self,
        database: str,
        params: dict[str, Any],
        body: JsonObject | None = None,
    ) -> JsonObject:
        """Query the ``_changes`` feed, POSTing when a filter body is given."""
        path = f"{_db_path(database)}/_changes"
        if body is not None:
            return self._json("POST", path, params=params, body=body)
        return self._json("GET", path, params=params)

    def find(self, database: str, body: JsonObject) -> JsonObject:
        """Run a Mango query through ``_find``."""
        return self._json("POST", f"{_db_path(database)}/_find", body=body)

    def view(self, database: str, path: str, params: dict[str, Any]) -> JsonObject:
        """Query a view, e.g. ``_design/ddoc/_view/name``."""
        return self._json("GET", f"{_db_path(database)}/{path}", params=params)

    def search(self, database: str, path: str, params: dict[str, Any]) -> JsonObject:
        """Query a search index, e.g. ``_design/ddoc/_search/name``."""
        return self._json("GET", f"{_db_path(database)}/{path}", params=params)
