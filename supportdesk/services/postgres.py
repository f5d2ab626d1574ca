from __future__ import annotations

import asyncio
from dataclasses import dataclass

import asyncpg


@dataclass(slots=True)
class PostgresPoolManager:
    """Owns the shared asyncpg pool used by the ticket repository."""

    dsn: str
    min_size: int = 1
    max_size: int = 10
    _pool: asyncpg.Pool | None = None

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self.dsn, min_size=self.min_size, max_size=self.max_size)
        return self._pool

    async def test_connection(self) -> bool:
        pool = await self.get_pool()
        async with pool.acquire() as connection:
            await connection.execute("SELECT 1")
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def test_connection_sync(self, timeout: float = 5.0) -> bool:
        """Blocking helper for scripts and health probes outside the event loop."""

        return asyncio.run(asyncio.wait_for(self.test_connection(), timeout=timeout))
