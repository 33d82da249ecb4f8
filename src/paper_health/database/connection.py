"""SQLAlchemy adapter exposing a database to the health probes."""

import asyncio
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..utils.logging import LogContext, get_logger

logger = get_logger(__name__, LogContext.DATABASE)


class SQLAlchemyQueryClient:
    """Runs plain SQL against an Engine without blocking the event loop."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(
        cls,
        database_url: str,
        pool_pre_ping: bool = True,
        pool_timeout: int = 30,
    ) -> "SQLAlchemyQueryClient":
        """Create a client with its own engine.

        Args:
            database_url: SQLAlchemy database URL
            pool_pre_ping: Whether to validate pooled connections before use
            pool_timeout: Timeout for getting a connection from the pool
        """
        engine_kwargs: dict[str, Any] = {"pool_pre_ping": pool_pre_ping}

        if database_url.startswith("sqlite"):
            engine_kwargs.update(
                {
                    "poolclass": StaticPool,
                    "connect_args": {
                        "check_same_thread": False,
                        "timeout": pool_timeout,
                    },
                }
            )
        else:
            engine_kwargs["pool_timeout"] = pool_timeout

        return cls(create_engine(database_url, **engine_kwargs))

    def _execute(self, sql: str) -> Any:
        with self.engine.connect() as connection:
            result = connection.execute(text(sql))
            if result.returns_rows:
                return result.fetchall()
            connection.commit()
            return result.rowcount

    async def query(self, sql: str) -> Any:
        """Execute a statement in a worker thread.

        Returns:
            Fetched rows, or the affected row count for statements without rows
        """
        return await asyncio.to_thread(self._execute, sql)

    async def reconnect(self) -> bool:
        """Drop every pooled connection and verify a fresh one can be opened.

        Returns:
            True if the database answered after the pool was recycled
        """
        try:
            await asyncio.to_thread(self.engine.dispose)
            await self.query("SELECT 1")
        except SQLAlchemyError as e:
            logger.error("Database reconnect failed", error=str(e))
            return False

        logger.info("Database connection pool recycled")
        return True

    def close(self) -> None:
        self.engine.dispose()
