"""pgmapper - query builder, identity map and schema sync over a PostgreSQL connection."""

from pgmapper.catalog import (
    Catalog,
    Check,
    ColumnDescriptor,
    FkAction,
    ForeignKey,
    ModelDescriptor,
    RelationKind,
    RelationshipDescriptor,
)
from pgmapper.errors import CatalogValidationError, PgMapperError, SchemaSyncError
from pgmapper.psql_client import ConnectionStatus, PgConnection, QueryResult, ResultStatus
from pgmapper.query import QueryBuilder, process_format_str
from pgmapper.relationships import RelationshipResolver
from pgmapper.schema_sync import SchemaSynchronizer, ensure_schema
from pgmapper.session import IdentityKey, Session, SessionRegistry

__version__ = "0.1.0"

__all__ = [
    "Catalog",
    "Check",
    "ColumnDescriptor",
    "FkAction",
    "ForeignKey",
    "ModelDescriptor",
    "RelationKind",
    "RelationshipDescriptor",
    "CatalogValidationError",
    "PgMapperError",
    "SchemaSyncError",
    "ConnectionStatus",
    "PgConnection",
    "QueryResult",
    "ResultStatus",
    "QueryBuilder",
    "process_format_str",
    "RelationshipResolver",
    "SchemaSynchronizer",
    "ensure_schema",
    "IdentityKey",
    "Session",
    "SessionRegistry",
]
