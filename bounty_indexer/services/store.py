from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from bounty_indexer.indexer.events import ChainEvent
from bounty_indexer.services.projection import (
    AGENT_MUTABLE_FIELDS,
    BOUNTY_MUTABLE_FIELDS,
    AgentRecord,
    BountyRecord,
    Mutation,
    ProjectionSnapshot,
    ReviewRecord,
    check_fields,
)


def _restore_fields(record: object, previous: dict[str, Any]) -> Callable[[], None]:
    def undo() -> None:
        for name, value in previous.items():
            setattr(record, name, value)

    return undo


class InMemoryProjectionWriter:
    """Writes straight into the live projection, logging how to undo each change."""

    def __init__(self, state: ProjectionSnapshot) -> None:
        self.state = state
        self._undo: list[Callable[[], None]] = []

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    async def insert_agent(
        self,
        *,
        on_chain_id: int,
        owner_address: str,
        wallet_address: str,
        registration_uri: str,
        reputation_score: int,
    ) -> bool:
        if on_chain_id in self.state.agents:
            return False
        self.state.agents[on_chain_id] = AgentRecord(
            on_chain_id=on_chain_id,
            owner_address=owner_address,
            wallet_address=wallet_address,
            registration_uri=registration_uri,
            reputation_score=reputation_score,
        )
        self._undo.append(lambda: self.state.agents.pop(on_chain_id, None))
        return True

    async def agent_exists(self, on_chain_id: int) -> bool:
        return on_chain_id in self.state.agents

    async def update_agent(self, on_chain_id: int, fields: dict[str, Any]) -> bool:
        check_fields(fields, AGENT_MUTABLE_FIELDS)
        agent = self.state.agents.get(on_chain_id)
        if agent is None:
            return False
        self._undo.append(_restore_fields(agent, {name: getattr(agent, name) for name in fields}))
        for name, value in fields.items():
            setattr(agent, name, value)
        return True

    async def add_agent_totals(self, on_chain_id: int, *, earnings: int = 0, completed: int = 0) -> bool:
        agent = self.state.agents.get(on_chain_id)
        if agent is None:
            return False
        self._undo.append(
            _restore_fields(
                agent,
                {"total_earnings": agent.total_earnings, "completed_bounties": agent.completed_bounties},
            )
        )
        agent.total_earnings += Decimal(earnings)
        agent.completed_bounties += completed
        return True

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
        if on_chain_id in self.state.bounties:
            return False
        self.state.bounties[on_chain_id] = BountyRecord(
            on_chain_id=on_chain_id,
            creator_agent_id=creator_agent_id,
            title=title,
            reward_amount=Decimal(reward_amount),
            reward_token=reward_token,
            deadline=deadline,
        )
        self._undo.append(lambda: self.state.bounties.pop(on_chain_id, None))
        return True

    async def get_bounty_creator(self, on_chain_id: int) -> int | None:
        bounty = self.state.bounties.get(on_chain_id)
        return bounty.creator_agent_id if bounty is not None else None

    async def update_bounty(self, on_chain_id: int, fields: dict[str, Any]) -> bool:
        check_fields(fields, BOUNTY_MUTABLE_FIELDS)
        bounty = self.state.bounties.get(on_chain_id)
        if bounty is None:
            return False
        self._undo.append(_restore_fields(bounty, {name: getattr(bounty, name) for name in fields}))
        for name, value in fields.items():
            setattr(bounty, name, value)
        return True

    async def insert_review(
        self,
        *,
        bounty_on_chain_id: int,
        from_agent_id: int | None,
        to_agent_id: int,
        rating: int,
        feedback: str = "",
    ) -> bool:
        for review in self.state.reviews:
            if review.bounty_on_chain_id == bounty_on_chain_id and review.to_agent_id == to_agent_id:
                return False
        review = ReviewRecord(
            bounty_on_chain_id=bounty_on_chain_id,
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            rating=rating,
            feedback=feedback,
        )
        self.state.reviews.append(review)
        self._undo.append(lambda: self.state.reviews.remove(review))
        return True


class InMemoryProjectionStore:
    """Projection kept in process memory, for tests and local dry runs."""

    def __init__(self) -> None:
        self.state = ProjectionSnapshot()
        self.applied: set[tuple[int, int]] = set()
        self._lock = asyncio.Lock()

    async def apply_once(self, event: ChainEvent, mutation: Mutation) -> bool:
        # One event at a time, all-or-nothing like a database transaction.
        async with self._lock:
            if event.position in self.applied:
                return False
            writer = InMemoryProjectionWriter(self.state)
            try:
                await mutation(writer)
            except BaseException:
                writer.rollback()
                raise
            self.applied.add(event.position)
            return True

    async def close(self) -> None:
        return None

    async def get_agent(self, on_chain_id: int) -> AgentRecord | None:
        return self.state.agents.get(on_chain_id)

    async def get_bounty(self, on_chain_id: int) -> BountyRecord | None:
        return self.state.bounties.get(on_chain_id)

    async def list_reviews(self, bounty_on_chain_id: int | None = None) -> list[ReviewRecord]:
        return [
            review
            for review in self.state.reviews
            if bounty_on_chain_id is None or review.bounty_on_chain_id == bounty_on_chain_id
        ]


class InMemoryCheckpointStore:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self.values: dict[str, str] = dict(values or {})
        self.writes: list[tuple[str, str]] = []

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value
        self.writes.append((key, value))
