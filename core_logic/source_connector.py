# QueryBridge/core_logic/source_connector.py
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import ENFORCE_READ_ONLY, MAX_QUERY_TIMEOUT_SECONDS

security_logger = logging.getLogger('QueryBridge.Security')
security_logger.setLevel(logging.WARNING)
connector_logger = logging.getLogger('QueryBridge.Connector')
connector_logger.setLevel(logging.INFO)


def _statement_timeout_listener(timeout_seconds: int):
    def set_pg_statement_timeout(dbapi_connection, connection_record):
        """Sets a statement-level timeout on PostgreSQL connections upon creation."""
        cursor = dbapi_connection.cursor()
        # Timeout is set in milliseconds in PostgreSQL
        cursor.execute(f"SET statement_timeout = {int(timeout_seconds * 1000)}")
        cursor.close()
    return set_pg_statement_timeout


class SourceConnector:
    """
    Query-execution capability for one relational source.

    Wraps an async SQLAlchemy engine and returns rows as plain dicts. Every
    connection gets a statement-level timeout. The SELECT/WITH guard is off by
    default: read-only access is expected to come from the database role.
    """
    def __init__(
        self,
        name: str,
        label: str,
        db_uri: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        enforce_read_only: bool = ENFORCE_READ_ONLY,
        timeout_seconds: int = MAX_QUERY_TIMEOUT_SECONDS,
    ):
        if engine is None and db_uri is None:
            raise ValueError("SourceConnector needs either db_uri or engine")
        self.name = name
        self.label = label
        self.enforce_read_only = enforce_read_only
        self.timeout_seconds = timeout_seconds
        self.engine = engine if engine is not None else create_async_engine(db_uri, pool_pre_ping=True)
        if engine is None:
            event.listen(self.engine.sync_engine, "connect", _statement_timeout_listener(timeout_seconds))

    def _check_read_only(self, sql_query: str) -> None:
        normalized_query = sql_query.strip().upper()
        if not (normalized_query.startswith("SELECT") or normalized_query.startswith("WITH")):
            security_logger.error(f"SECURITY ALERT: Non-SELECT/WITH query attempt on {self.name}: {sql_query}")
            raise PermissionError("Query failed security validation. Only read (SELECT/WITH) statements are allowed.")

    async def fetch(self, sql_query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Executes one statement and returns its rows as a list of dicts."""
        if self.enforce_read_only:
            self._check_read_only(sql_query)

        try:
            async with self.engine.connect() as connection:
                result = await connection.execute(text(sql_query), params or {})
                if not result.returns_rows:
                    return []
                return [dict(row._mapping) for row in result.all()]

        except DBAPIError as e:
            if "statement timeout" in str(e):
                raise TimeoutError(
                    f"Query on {self.name} exceeded time limits (>{self.timeout_seconds}s)."
                ) from e
            raise ValueError(f"Database Execution Error on {self.name}: {e.orig!r}") from e

        except SQLAlchemyError as e:
            raise RuntimeError(f"A general error occurred on {self.name}: {e!r}") from e

        except TimeoutError:
            raise

        except OSError as e:
            # Connect failures from the driver are not wrapped by SQLAlchemy
            raise RuntimeError(f"Could not reach {self.name}: {e!r}") from e

    async def close(self) -> None:
        await self.engine.dispose()
        connector_logger.info(f"Connection pool for {self.name} disposed.")
