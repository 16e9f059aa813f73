"""
exceptions.py — Error taxonomy for the extraction and resolution pipeline.
"""
from __future__ import annotations

from typing import Optional


class CatalogError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class ConfigurationError(CatalogError):
    """Required backend identity or setting is missing. Never caught internally."""


class NotFound(CatalogError):
    """Blob store object is absent."""


class PageLimitError(CatalogError):
    """OCR engine rejected a request for exceeding its page ceiling."""


class ExtractionFailure(CatalogError):
    """A single extraction backend produced nothing usable."""


class SchemaMigrationError(CatalogError):
    """A DDL statement failed mid-sequence; earlier statements stay applied."""

    def __init__(
        self,
        message: str,
        executed: list[str],
        failed_statement: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error)
        self.executed = executed
        self.failed_statement = failed_statement
