"""
SQL-backed export catalog.

Keeps the catalog in one table of any SQLAlchemy-supported database, for
deployments where every host can already reach a shared PostgreSQL (or a
SQLite file on shared storage).

Table Schema (sshtrust_export_catalog):
    - identifier: Primary key, ``<kind>:<role>@<cluster>``
    - value: Serialized key line or absolute path reference
    - updated_at: ISO-8601 UTC timestamp of the last change

Overwrite-by-key uses ``INSERT ... ON CONFLICT (identifier) DO UPDATE``,
supported by PostgreSQL and SQLite 3.24+.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import CatalogUnavailableError
from .base import ExportCatalog

logger = logging.getLogger(__name__)

TABLE_NAME = "sshtrust_export_catalog"


class SQLCatalog(ExportCatalog):
    """
    Export catalog stored in a database table.

    Attributes:
        engine: SQLAlchemy engine for the catalog database
    """

    def __init__(self, url: str, engine: Optional[Engine] = None, **engine_kwargs: Any) -> None:
        self.location = url
        try:
            self.engine = engine or create_engine(url, future=True, **engine_kwargs)
        except (SQLAlchemyError, ImportError, ValueError) as e:
            raise CatalogUnavailableError(url, details=str(e))
        self._init_schema()

    def _init_schema(self) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        f"""
                        CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                            identifier VARCHAR(255) PRIMARY KEY,
                            value TEXT NOT NULL,
                            updated_at VARCHAR(40) NOT NULL
                        )
                        """
                    )
                )
        except SQLAlchemyError as e:
            raise CatalogUnavailableError(self.location, details=str(e))

    def _read(self, key: str) -> Optional[str]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text(f"SELECT value FROM {TABLE_NAME} WHERE identifier = :identifier"),
                    {"identifier": key},
                ).first()
        except SQLAlchemyError as e:
            raise CatalogUnavailableError(self.location, details=str(e), identifier=key)
        return row.value if row else None

    def _read_all(self) -> Dict[str, str]:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text(f"SELECT identifier, value FROM {TABLE_NAME}"))
                return {row.identifier: row.value for row in result}
        except SQLAlchemyError as e:
            raise CatalogUnavailableError(self.location, details=str(e))

    def _write(self, key: str, value: str) -> bool:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    text(f"SELECT value FROM {TABLE_NAME} WHERE identifier = :identifier"),
                    {"identifier": key},
                ).first()
                if row is not None and row.value == value:
                    return False
                conn.execute(
                    text(
                        f"""
                        INSERT INTO {TABLE_NAME} (identifier, value, updated_at)
                        VALUES (:identifier, :value, :updated_at)
                        ON CONFLICT (identifier) DO UPDATE
                        SET value = excluded.value, updated_at = excluded.updated_at
                        """
                    ),
                    {
                        "identifier": key,
                        "value": value,
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
                return True
        except SQLAlchemyError as e:
            raise CatalogUnavailableError(self.location, details=str(e), identifier=key)

    def _delete(self, key: str) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    text(f"DELETE FROM {TABLE_NAME} WHERE identifier = :identifier"),
                    {"identifier": key},
                )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise CatalogUnavailableError(self.location, details=str(e), identifier=key)

    def close(self) -> None:
        self.engine.dispose()
