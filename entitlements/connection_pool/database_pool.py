"""
Database connection pool manager for the entitlement store.
"""
import asyncio
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

import asyncpg
from asyncpg import Pool

from entitlements.config.settings import DatabaseConfig
from entitlements.utils.logging import get_logger

logger = get_logger(__name__)


class DatabasePoolManager:
    """
    Manages named asyncpg pools.

    Pools are created lazily from a :class:`DatabaseConfig`; the command
    timeout on each pool bounds every statement so a stalled database
    surfaces as an error instead of a hung request.
    """

    def __init__(self):
        self._pools: Dict[str, Pool] = {}
        self._lock = asyncio.Lock()

    async def get_or_create_pool(self, pool_id: str, config: DatabaseConfig) -> Pool:
        """
        Get existing pool or create it from ``config``.

        Args:
            pool_id: Unique identifier for the pool
            config: Connection and sizing settings

        Returns:
            Connection pool
        """
        async with self._lock:
            pool = self._pools.get(pool_id)
            if pool is not None:
                return pool

            try:
                pool = await asyncpg.create_pool(
                    host=config.host,
                    port=config.port,
                    database=config.database,
                    user=config.username,
                    password=config.password,
                    min_size=config.min_pool_size,
                    max_size=config.max_pool_size,
                    command_timeout=config.command_timeout
                )
            except Exception as e:
                logger.error(f"Failed to create database connection pool '{pool_id}': {e}")
                raise

            self._pools[pool_id] = pool
            logger.info(
                f"Created database connection pool '{pool_id}' "
                f"with size {config.min_pool_size}-{config.max_pool_size}"
            )
            return pool

    async def get_pool(self, pool_id: str) -> Optional[Pool]:
        return self._pools.get(pool_id)

    @asynccontextmanager
    async def get_connection(self, pool_id: str):
        """
        Context manager for a pooled connection.

        Raises:
            ValueError: If pool doesn't exist
        """
        pool = await self.get_pool(pool_id)
        if pool is None:
            raise ValueError(f"Pool '{pool_id}' not found")

        async with pool.acquire() as connection:
            yield connection

    async def health_check(self, pool_id: str) -> bool:
        try:
            async with self.get_connection(pool_id) as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.error(f"Health check failed for pool '{pool_id}': {e}")
            return False

    async def get_pool_stats(self, pool_id: str) -> Optional[Dict[str, Any]]:
        pool = await self.get_pool(pool_id)
        if pool is None:
            return None
        return {
            'pool_id': pool_id,
            'min_size': pool.get_min_size(),
            'max_size': pool.get_max_size(),
            'current_size': pool.get_size(),
            'idle_size': pool.get_idle_size()
        }

    async def close_pool(self, pool_id: str) -> None:
        async with self._lock:
            pool = self._pools.pop(pool_id, None)
            if pool is None:
                return
            try:
                await pool.close()
                logger.info(f"Closed database connection pool '{pool_id}'")
            except Exception as e:
                logger.error(f"Error closing database connection pool '{pool_id}': {e}")

    async def close_all_pools(self) -> None:
        for pool_id in list(self._pools):
            await self.close_pool(pool_id)


# Global instance
_database_pool_manager: Optional[DatabasePoolManager] = None


def get_database_pool_manager() -> DatabasePoolManager:
    """Get global database pool manager instance."""
    global _database_pool_manager
    if _database_pool_manager is None:
        _database_pool_manager = DatabasePoolManager()
    return _database_pool_manager

