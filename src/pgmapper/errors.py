from __future__ import annotations

from typing import Sequence


class PgMapperError(Exception):
    """Base class for errors raised by pgmapper."""


class CatalogValidationError(PgMapperError):
    """
    A model, column, or relationship rejected while building the catalog.

    These are collected on Catalog.errors rather than raised; the offending
    item is disabled and the rest of the catalog stays usable.
    """

    def __init__(
        self,
        model: str,
        message: str,
        *,
        column: str | None = None,
        relationship: str | None = None,
    ):
        self.model = model
        self.column = column
        self.relationship = relationship
        where = model
        if column:
            where += f".{column}"
        if relationship:
            where += f".{relationship}"
        super().__init__(f"{where}: {message}")


class SchemaSyncError(PgMapperError):
    """Schema synchronization aborted; `pending` lists tables never created."""

    def __init__(self, message: str, pending: Sequence[tuple[str, str]] = ()):
        self.pending = list(pending)
        if self.pending:
            names = ", ".join(f"{schema}.{table}" for schema, table in self.pending)
            message = f"{message}: {names}"
        super().__init__(message)
