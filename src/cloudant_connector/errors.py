"""Error classes for the Cloudant connector.

This module provides:
- CloudantError: Base exception class for all connector errors
- ConnectorConfigError: Invalid configuration or read/write options
- CloudantConnectionError, CloudantRequestError: Transport failures
- SchemaInferenceError, QueryTranslationError: Read preparation failures
- ReadError, WriteError: Failures while streaming or persisting documents
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cloudant_connector.models import WriteFailure


class CloudantError(Exception):
    """Base exception for all Cloudant connector errors."""

    pass


class ConnectorConfigError(CloudantError):
    """Raised when connector configuration or options are invalid."""

    pass


class CloudantConnectionError(CloudantError):
    """Raised when the store cannot be reached after exhausting retries."""

    pass


class CloudantRequestError(CloudantError):
    """Raised when the store answers with a non-2xx status after retries."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error: str | None = None,
        reason: str | None = None,
    ) -> None:
        """Initialise with the HTTP status and the CouchDB error body.

        Args:
            message: Human readable description of the failed request
            status_code: HTTP status code returned by the store
            error: CouchDB ``error`` field, e.g. ``not_found`` or ``conflict``
            reason: CouchDB ``reason`` field

        """
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.reason = reason


class SchemaInferenceError(CloudantError):
    """Raised when no schema can be inferred (empty or invalid sample)."""

    pass


class QueryTranslationError(CloudantError):
    """Raised when a predicate cannot be translated nor left as residual."""

    pass


class ReadError(CloudantError):
    """Raised when a partition read fails mid-stream."""

    pass


class WriteError(CloudantError):
    """Raised when one or more documents could not be persisted."""

    def __init__(self, message: str, failures: list[WriteFailure]) -> None:
        """Initialise with the per-document failures.

        Args:
            message: Summary of the failed write
            failures: Every document that ultimately failed to persist

        """
        super().__init__(message)
        self.failures = failures
