from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from bounty_indexer.indexer.events import ChainEvent

BOUNTY_STATUSES = (
    "open",
    "claimed",
    "submitted",
    "approved",
    "rejected",
    "disputed",
    "paid",
    "cancelled",
    "expired",
)
AGENT_MUTABLE_FIELDS = frozenset(
    {
        "owner_address",
        "wallet_address",
        "registration_uri",
        "name",
        "description",
        "image_url",
        "skills",
        "reputation_score",
    }
)
BOUNTY_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "claimed_by",
        "claimed_at",
        "submission_uri",
        "submitted_at",
        "rejection_reason",
        "dispute_id",
    }
)
NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"


@dataclass(slots=True)
class AgentRecord:
    on_chain_id: int
    owner_address: str
    wallet_address: str
    registration_uri: str = ""
    name: str | None = None
    description: str | None = None
    image_url: str | None = None
    skills: list[str] | None = None
    reputation_score: int = 50
    completed_bounties: int = 0
    total_earnings: Decimal = Decimal(0)


@dataclass(slots=True)
class BountyRecord:
    on_chain_id: int
    creator_agent_id: int
    title: str
    reward_amount: Decimal
    reward_token: str
    deadline: datetime | None
    status: str = "open"
    claimed_by: int | None = None
    claimed_at: datetime | None = None
    submission_uri: str | None = None
    submitted_at: datetime | None = None
    rejection_reason: str | None = None
    dispute_id: int | None = None


@dataclass(slots=True)
class ReviewRecord:
    bounty_on_chain_id: int
    from_agent_id: int | None
    to_agent_id: int
    rating: int
    feedback: str = ""


@dataclass(slots=True)
class ProjectionSnapshot:
    agents: dict[int, AgentRecord] = field(default_factory=dict)
    bounties: dict[int, BountyRecord] = field(default_factory=dict)
    reviews: list[ReviewRecord] = field(default_factory=list)


class ProjectionWriter(Protocol):
    """Mutations available to a handler inside one event's transaction.

    ``insert_*`` return False when the row already existed (insert-or-ignore);
    ``update_*``/``add_*`` return False when no row matched.
    """

    async def insert_agent(
        self,
        *,
        on_chain_id: int,
        owner_address: str,
        wallet_address: str,
        registration_uri: str,
        reputation_score: int,
    ) -> bool: ...

    async def agent_exists(self, on_chain_id: int) -> bool: ...

    async def update_agent(self, on_chain_id: int, fields: dict[str, Any]) -> bool: ...

    async def add_agent_totals(self, on_chain_id: int, *, earnings: int = 0, completed: int = 0) -> bool: ...

    async def insert_bounty(
        self,
        *,
        on_chain_id: int,
        creator_agent_id: int,
        title: str,
        reward_amount: int,
        reward_token: str,
        deadline: datetime | None,
    ) -> bool: ...

    async def get_bounty_creator(self, on_chain_id: int) -> int | None: ...

    async def update_bounty(self, on_chain_id: int, fields: dict[str, Any]) -> bool: ...

    async def insert_review(
        self,
        *,
        bounty_on_chain_id: int,
        from_agent_id: int | None,
        to_agent_id: int,
        rating: int,
        feedback: str = "",
    ) -> bool: ...


Mutation = Callable[[ProjectionWriter], Awaitable[None]]


class ProjectionStore(Protocol):
    async def apply_once(self, event: ChainEvent, mutation: Mutation) -> bool:
        """Run ``mutation`` in a transaction unless ``event`` was already applied.

        Returns False for a duplicate delivery.
        """
        ...

    async def close(self) -> None: ...


def check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"unsupported projection fields: {sorted(unknown)}")
    status = fields.get("status")
    if status is not None and status not in BOUNTY_STATUSES:
        raise ValueError(f"unknown bounty status: {status}")
