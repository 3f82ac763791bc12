from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from bounty_indexer.core.config import get_settings
from bounty_indexer.core.errors import IndexerError
from bounty_indexer.indexer.events import ChainEvent
from bounty_indexer.services.projection import (
    AGENT_MUTABLE_FIELDS,
    BOUNTY_MUTABLE_FIELDS,
    AgentRecord,
    BountyRecord,
    Mutation,
    ReviewRecord,
    check_fields,
)
from bounty_indexer.services.schema import SCHEMA_STATEMENTS

logger = logging.getLogger(__name__)


class RepositoryError(IndexerError):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class PostgresProjectionWriter:
    """ProjectionWriter bound to the connection of one event transaction."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self.conn = conn

    async def insert_agent(
        self,
        *,
        on_chain_id: int,
        owner_address: str,
        wallet_address: str,
        registration_uri: str,
        reputation_score: int,
    ) -> bool:
        inserted = await self.conn.fetchval(
            """
            insert into agents (
              on_chain_id,
              owner_address,
              wallet_address,
              registration_uri,
              reputation_score
            )
            values ($1, $2, $3, $4, $5)
            on conflict (on_chain_id) do nothing
            returning on_chain_id
            """,
            on_chain_id,
            owner_address,
            wallet_address,
            registration_uri,
            reputation_score,
        )
        return inserted is not None

    async def agent_exists(self, on_chain_id: int) -> bool:
        found = await self.conn.fetchval("select 1 from agents where on_chain_id = $1", on_chain_id)
        return found is not None

    async def update_agent(self, on_chain_id: int, fields: dict[str, Any]) -> bool:
        check_fields(fields, AGENT_MUTABLE_FIELDS)
        if not fields:
            return await self.agent_exists(on_chain_id)
        values = dict(fields)
        if "skills" in values and values["skills"] is not None:
            values["skills"] = json.dumps(values["skills"])
        return await self._update("agents", on_chain_id, values, casts={"skills": "jsonb"})

    async def add_agent_totals(self, on_chain_id: int, *, earnings: int = 0, completed: int = 0) -> bool:
        # Relative accumulation in one statement; concurrent or retried adds never lose updates.
        status = await self.conn.execute(
            """
            update agents
            set
              total_earnings = total_earnings + $2::numeric,
              completed_bounties = completed_bounties + $3,
              updated_at = now()
            where on_chain_id = $1
            """,
            on_chain_id,
            Decimal(earnings),
            completed,
        )
        return _affected_rows(status) > 0

    async def insert_bounty(
        self,
        *,
        on_chain_id: int,
        creator_agent_id: int,
        title: str,
        reward_amount: int,
        reward_token: str,
        deadline: datetime | None,
    ) -> bool:
        inserted = await self.conn.fetchval(
            """
            insert into bounties (
              on_chain_id,
              creator_agent_id,
              title,
              reward_amount,
              reward_token,
              deadline,
              status
            )
            values ($1, $2, $3, $4::numeric, $5, $6, 'open')
            on conflict (on_chain_id) do nothing
            returning on_chain_id
            """,
            on_chain_id,
            creator_agent_id,
            title,
            Decimal(reward_amount),
            reward_token,
            deadline,
        )
        return inserted is not None

    async def get_bounty_creator(self, on_chain_id: int) -> int | None:
        return await self.conn.fetchval(
            "select creator_agent_id from bounties where on_chain_id = $1",
            on_chain_id,
        )

    async def update_bounty(self, on_chain_id: int, fields: dict[str, Any]) -> bool:
        check_fields(fields, BOUNTY_MUTABLE_FIELDS)
        if not fields:
            return await self.get_bounty_creator(on_chain_id) is not None
        return await self._update("bounties", on_chain_id, dict(fields), casts={})

    async def insert_review(
        self,
        *,
        bounty_on_chain_id: int,
        from_agent_id: int | None,
        to_agent_id: int,
        rating: int,
        feedback: str = "",
    ) -> bool:
        inserted = await self.conn.fetchval(
            """
            insert into reviews (bounty_on_chain_id, from_agent_id, to_agent_id, rating, feedback)
            values ($1, $2, $3, $4, $5)
            on conflict (bounty_on_chain_id, to_agent_id) do nothing
            returning id
            """,
            bounty_on_chain_id,
            from_agent_id,
            to_agent_id,
            rating,
            feedback,
        )
        return inserted is not None

    async def _update(self, table: str, on_chain_id: int, values: dict[str, Any], *, casts: dict[str, str]) -> bool:
        # Column names come from the AGENT/BOUNTY_MUTABLE_FIELDS allowlists only.
        assignments = []
        params: list[Any] = [on_chain_id]
        for column, value in values.items():
            params.append(value)
            cast = f"::{casts[column]}" if column in casts else ""
            assignments.append(f"{column} = ${len(params)}{cast}")
        assignments.append("updated_at = now()")
        status = await self.conn.execute(
            f"update {table} set {', '.join(assignments)} where on_chain_id = $1",
            *params,
        )
        return _affected_rows(status) > 0


class PostgresProjectionRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

    async def apply_once(self, event: ChainEvent, mutation: Mutation) -> bool:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                receipt = await conn.fetchval(
                    """
                    insert into applied_events (block_number, log_index, source, event_name)
                    values ($1, $2, $3, $4)
                    on conflict (block_number, log_index) do nothing
                    returning block_number
                    """,
                    event.block_number,
                    event.log_index,
                    event.source.value,
                    event.event_name,
                )
                if receipt is None:
                    return False
                await mutation(PostgresProjectionWriter(conn))
        return True

    async def get_agent(self, on_chain_id: int) -> AgentRecord | None:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            """
            select
              on_chain_id,
              owner_address,
              wallet_address,
              registration_uri,
              name,
              description,
              image_url,
              skills,
              reputation_score,
              completed_bounties,
              total_earnings
            from agents
            where on_chain_id = $1
            """,
            on_chain_id,
        )
        if row is None:
            return None
        skills = row["skills"]
        if isinstance(skills, str):
            skills = json.loads(skills)
        return AgentRecord(
            on_chain_id=row["on_chain_id"],
            owner_address=row["owner_address"],
            wallet_address=row["wallet_address"],
            registration_uri=row["registration_uri"],
            name=row["name"],
            description=row["description"],
            image_url=row["image_url"],
            skills=skills,
            reputation_score=row["reputation_score"],
            completed_bounties=row["completed_bounties"],
            total_earnings=Decimal(row["total_earnings"]),
        )

    async def get_bounty(self, on_chain_id: int) -> BountyRecord | None:
        pool = await self.get_pool()
        row = await pool.fetchrow(
            """
            select
              on_chain_id,
              creator_agent_id,
              title,
              reward_amount,
              reward_token,
              deadline,
              status,
              claimed_by,
              claimed_at,
              submission_uri,
              submitted_at,
              rejection_reason,
              dispute_id
            from bounties
            where on_chain_id = $1
            """,
            on_chain_id,
        )
        if row is None:
            return None
        return BountyRecord(**dict(row))

    async def list_reviews(self, bounty_on_chain_id: int | None = None) -> list[ReviewRecord]:
        pool = await self.get_pool()
        rows = await pool.fetch(
            """
            select bounty_on_chain_id, from_agent_id, to_agent_id, rating, feedback
            from reviews
            where $1::bigint is null or bounty_on_chain_id = $1
            order by id
            """,
            bounty_on_chain_id,
        )
        return [ReviewRecord(**dict(row)) for row in rows]

    async def get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("BI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


def _affected_rows(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


@lru_cache
def get_repository() -> PostgresProjectionRepository:
    settings = get_settings()
    return PostgresProjectionRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
