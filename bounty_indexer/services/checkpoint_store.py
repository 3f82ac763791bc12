from __future__ import annotations

from typing import Protocol

from bounty_indexer.services.repository import PostgresProjectionRepository


class CheckpointStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...


class PostgresCheckpointStore:
    """Durable key/value rows in ``indexer_state``, sharing the projection pool."""

    def __init__(self, repository: PostgresProjectionRepository) -> None:
        self.repository = repository

    async def get(self, key: str) -> str | None:
        pool = await self.repository.get_pool()
        return await pool.fetchval("select value from indexer_state where key = $1", key)

    async def set(self, key: str, value: str) -> None:
        pool = await self.repository.get_pool()
        await pool.execute(
            """
            insert into indexer_state (key, value)
            values ($1, $2)
            on conflict (key) do update
            set value = excluded.value, updated_at = now()
            """,
            key,
            value,
        )
