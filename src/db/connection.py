"""
PostgreSQL async connection management using SQLAlchemy 2.0.

Note: Uses per-event-loop engine management so the same manager works
from the API event loop and from background jobs running their own loop
(e.g., the monthly reset script).
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy import text
from sqlalchemy.pool import AsyncAdaptedQueuePool

from src.constants import (
    DEFAULT_DB_MAX_OVERFLOW,
    DEFAULT_DB_POOL_RECYCLE,
    DEFAULT_DB_POOL_SIZE,
    DEFAULT_DB_POOL_TIMEOUT,
)
from src.utils.env_utils import parse_bool_env, parse_int_env, parse_str_env

load_dotenv()

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """Ledger database settings read from the environment (``.env`` is loaded on import)."""

    def __init__(self):
        # DATABASE_ENABLED=false makes every session() yield None
        self.enabled = parse_bool_env("DATABASE_ENABLED", True)

        self.db_host = parse_str_env("DATABASE_HOST", "localhost")
        self.db_port = parse_int_env("DATABASE_PORT", 5432)
        self.db_name = parse_str_env("DATABASE_NAME", "credit_ledger")
        self.db_user = parse_str_env("DATABASE_USER", "postgres")
        self.db_password = os.getenv("DATABASE_PASSWORD", "")

        self.pool_size = parse_int_env("DB_POOL_SIZE", DEFAULT_DB_POOL_SIZE)
        self.max_overflow = parse_int_env("DB_MAX_OVERFLOW", DEFAULT_DB_MAX_OVERFLOW)
        self.pool_timeout = parse_int_env("DB_POOL_TIMEOUT", DEFAULT_DB_POOL_TIMEOUT)
        self.pool_recycle = parse_int_env("DB_POOL_RECYCLE", DEFAULT_DB_POOL_RECYCLE)
        self.echo_sql = parse_bool_env("DB_ECHO", False)

        self.database_url = parse_str_env("DATABASE_URL") or (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def safe_url(self) -> str:
        """Database URL with the password masked for logging."""
        url = self.database_url
        try:
            scheme, rest = url.split("://", 1)
            if "@" not in rest:
                return url
            credentials, host = rest.rsplit("@", 1)
            user = credentials.split(":", 1)[0]
            return f"{scheme}://{user}:****@{host}"
        except ValueError:
            return "[URL masked]"


class DatabaseManager:
    """
    Manages async PostgreSQL connections.

    Implements singleton pattern with per-event-loop resource management.
    """

    _instance: Optional["DatabaseManager"] = None
    _initialized: bool = False
    _shutdown: bool = False  # Prevents new connections after close_all()

    # Per-loop resources: maps loop_id -> resource
    _engines: Dict[int, AsyncEngine] = {}
    _session_factories: Dict[int, async_sessionmaker] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.config = DatabaseConfig()
        self._initialized = True
        # Engine setup is deferred until first use per event loop

    def _get_loop_id(self) -> int:
        """Get the id of the running event loop, or 0 if no loop is running."""
        try:
            loop = asyncio.get_running_loop()
            return id(loop)
        except RuntimeError:
            return 0

    def _setup_engine_for_loop(self, loop_id: int) -> None:
        if self._shutdown:
            logger.debug(f"Skipping engine setup for loop {loop_id} - shutdown in progress")
            return

        if not self.config.enabled:
            logger.debug(f"Skipping engine setup for loop {loop_id} - database disabled")
            return

        if loop_id in self._engines:
            return

        logger.info(f"Creating database connection: {self.config.safe_url}")
        engine = create_async_engine(
            self.config.database_url,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_timeout=self.config.pool_timeout,
            pool_recycle=self.config.pool_recycle,
            echo=self.config.echo_sql,
        )
        self._engines[loop_id] = engine
        self._session_factories[loop_id] = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info(f"Database engine initialized for loop {loop_id}: pool_size={self.config.pool_size}")

    async def get_engine_async(self) -> Optional[AsyncEngine]:
        """Get the async engine, initializing for the current event loop if necessary."""
        if not self.config.enabled:
            return None
        loop_id = self._get_loop_id()
        if loop_id not in self._engines:
            self._setup_engine_for_loop(loop_id)
        return self._engines.get(loop_id)

    async def test_connection(self, timeout: float = 15.0) -> bool:
        """
        Test database connectivity with timeout.

        Args:
            timeout: Maximum time to wait for connection test (seconds)

        Returns:
            True if connection successful, False otherwise
        """
        if not self.config.enabled:
            logger.info("Database disabled - skipping connection test")
            return True

        engine = await self.get_engine_async()
        if not engine:
            logger.warning("No database engine available")
            return False

        try:
            async with asyncio.timeout(timeout):
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            logger.info("Database connection test successful")
            return True
        except asyncio.TimeoutError:
            logger.error(f"Database connection test timed out after {timeout}s")
            return False
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[Optional[AsyncSession], None]:
        """
        Get an async session with automatic commit/rollback.

        Returns None if database is disabled.

        Usage:
            async with db.session() as session:
                if session:
                    result = await session.execute(...)
        """
        if not self.config.enabled:
            yield None
            return

        loop_id = self._get_loop_id()
        if loop_id not in self._session_factories:
            self._setup_engine_for_loop(loop_id)

        if loop_id not in self._session_factories:
            yield None
            return

        session = self._session_factories[loop_id]()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_tables(self):
        """
        Create all tables (for development/testing).

        In production, use migrations instead.
        """
        from .models import Base

        engine = await self.get_engine_async()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def drop_tables(self):
        """Drop all tables (for testing only)."""
        from .models import Base

        engine = await self.get_engine_async()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    def get_pool_stats(self) -> Dict[str, Any]:
        """Connection pool statistics per event loop."""
        stats = {
            "pools_count": len(self._engines),
            "shutdown_mode": self._shutdown,
            "pools": {}
        }

        for loop_id, engine in self._engines.items():
            try:
                pool = engine.pool
                if pool:
                    stats["pools"][str(loop_id)] = {
                        "size": pool.size(),
                        "checked_out": pool.checkedout(),
                        "overflow": pool.overflow(),
                        "checked_in": pool.checkedin(),
                    }
            except Exception as e:
                stats["pools"][str(loop_id)] = {"error": str(e)}

        return stats

    async def close(self):
        """Close the engine for the CURRENT event loop only."""
        loop_id = self._get_loop_id()

        if loop_id in self._engines:
            try:
                await self._engines[loop_id].dispose()
            except Exception as e:
                logger.debug(f"Error disposing engine for loop {loop_id}: {e}")
            finally:
                del self._engines[loop_id]

        self._session_factories.pop(loop_id, None)
        logger.info("Database connections closed for current loop")

    async def close_all(self):
        """Close ALL engines across ALL event loops (application shutdown)."""
        self._shutdown = True

        # Dispose current loop's engine (we can only await in current loop)
        current_loop_id = self._get_loop_id()
        if current_loop_id in self._engines:
            try:
                await self._engines[current_loop_id].dispose()
            except Exception as e:
                logger.debug(f"Error disposing engine: {e}")

        for loop_id, engine in list(self._engines.items()):
            if loop_id == current_loop_id:
                continue
            try:
                engine.pool.dispose()
            except Exception as e:
                logger.debug(f"Could not dispose pool for loop {loop_id}: {e}")

        self._engines.clear()
        self._session_factories.clear()
        self._initialized = False

        logger.info("All database connections closed")


# Global database manager instance
db = DatabaseManager()

