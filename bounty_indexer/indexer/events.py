from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bounty_indexer.core.errors import EventDecodeError


class EventSource(str, Enum):
    AGENT_REGISTRY = "agent_registry"
    BOUNTY_REGISTRY = "bounty_registry"
    REPUTATION_REGISTRY = "reputation_registry"


class EventKind(str, Enum):
    REGISTERED = "Registered"
    METADATA_SET = "MetadataSet"
    AGENT_WALLET_SET = "AgentWalletSet"
    BOUNTY_CREATED = "BountyCreated"
    BOUNTY_CLAIMED = "BountyClaimed"
    BOUNTY_SUBMITTED = "BountySubmitted"
    BOUNTY_APPROVED = "BountyApproved"
    BOUNTY_REJECTED = "BountyRejected"
    BOUNTY_DISPUTED = "BountyDisputed"
    BOUNTY_PAID = "BountyPaid"
    BOUNTY_CANCELLED = "BountyCancelled"
    BOUNTY_EXPIRED = "BountyExpired"
    REPUTATION_UPDATED = "ReputationUpdated"
    REVIEW_ADDED = "ReviewAdded"
    BOUNTY_COMPLETED = "BountyCompleted"


@dataclass(frozen=True, slots=True)
class ChainEvent:
    """A decoded contract log. Immutable once observed."""

    source: EventSource
    contract_address: str
    event_name: str
    args: Mapping[str, Any]
    block_number: int
    log_index: int
    block_timestamp: int | None = None
    transaction_hash: str | None = field(default=None, compare=False)

    @property
    def position(self) -> tuple[int, int]:
        # Block number and log index are global to the chain, so this orders
        # events across contracts too.
        return (self.block_number, self.log_index)

    def describe(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "contract_address": self.contract_address,
            "event_name": self.event_name,
            "args": {key: _loggable(value) for key, value in self.args.items()},
            "block_number": self.block_number,
            "log_index": self.log_index,
            "block_timestamp": self.block_timestamp,
            "transaction_hash": self.transaction_hash,
        }


def _loggable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


class EventPayload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class RegisteredPayload(EventPayload):
    agent_id: int = Field(alias="agentId", ge=0)
    agent_uri: str = Field(alias="agentURI", default="")
    owner: str


class MetadataSetPayload(EventPayload):
    agent_id: int = Field(alias="agentId", ge=0)
    key: str
    value: bytes


class AgentWalletSetPayload(EventPayload):
    agent_id: int = Field(alias="agentId", ge=0)
    wallet: str


class BountyCreatedPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    creator: int = Field(ge=0)
    title: str = ""
    reward_amount: int = Field(alias="rewardAmount", ge=0)
    deadline: int = Field(ge=0)


class BountyClaimedPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    hunter: int = Field(ge=0)
    claimed_at: int = Field(alias="claimedAt", ge=0)


class BountySubmittedPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    hunter: int = Field(ge=0)
    submission_uri: str = Field(alias="submissionURI")
    submitted_at: int = Field(alias="submittedAt", ge=0)


class BountyApprovedPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    hunter: int = Field(ge=0)
    rating: int = Field(ge=0, le=255)


class BountyRejectedPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    hunter: int = Field(ge=0)
    reason: str = ""


class BountyDisputedPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    dispute_id: int = Field(alias="disputeId", ge=0)


class BountyPaidPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    hunter: int = Field(ge=0)
    amount: int = Field(ge=0)


class BountyCancelledPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)
    creator: int = Field(ge=0)


class BountyExpiredPayload(EventPayload):
    bounty_id: int = Field(alias="bountyId", ge=0)


class ReputationUpdatedPayload(EventPayload):
    agent_id: int = Field(alias="agentId", ge=0)
    new_score: int = Field(alias="newScore", ge=0)


class ReviewAddedPayload(EventPayload):
    agent_id: int = Field(alias="agentId", ge=0)
    bounty_id: int = Field(alias="bountyId", ge=0)
    rating: int = Field(ge=0, le=255)


class BountyCompletedPayload(EventPayload):
    agent_id: int = Field(alias="agentId", ge=0)
    bounty_id: int = Field(alias="bountyId", ge=0)
    reward: int = Field(ge=0)


# Event fragments of the three contracts, in the JSON ABI format solc emits.
AGENT_REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "Registered",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "agentURI", "type": "string", "indexed": False},
            {"name": "owner", "type": "address", "indexed": True},
        ],
    },
    {
        "type": "event",
        "name": "MetadataSet",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "key", "type": "string", "indexed": False},
            {"name": "value", "type": "bytes", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "AgentWalletSet",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "wallet", "type": "address", "indexed": False},
        ],
    },
]

BOUNTY_REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "BountyCreated",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "creator", "type": "uint256", "indexed": True},
            {"name": "title", "type": "string", "indexed": False},
            {"name": "rewardAmount", "type": "uint256", "indexed": False},
            {"name": "deadline", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountyClaimed",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "hunter", "type": "uint256", "indexed": True},
            {"name": "claimedAt", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountySubmitted",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "hunter", "type": "uint256", "indexed": True},
            {"name": "submissionURI", "type": "string", "indexed": False},
            {"name": "submittedAt", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountyApproved",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "hunter", "type": "uint256", "indexed": True},
            {"name": "rating", "type": "uint8", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountyRejected",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "hunter", "type": "uint256", "indexed": True},
            {"name": "reason", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountyDisputed",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "disputeId", "type": "uint256", "indexed": True},
        ],
    },
    {
        "type": "event",
        "name": "BountyPaid",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "hunter", "type": "uint256", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountyCancelled",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "creator", "type": "uint256", "indexed": True},
        ],
    },
    {
        "type": "event",
        "name": "BountyExpired",
        "anonymous": False,
        "inputs": [
            {"name": "bountyId", "type": "uint256", "indexed": True},
        ],
    },
]

REPUTATION_REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "ReputationUpdated",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "newScore", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "ReviewAdded",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "rating", "type": "uint8", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountyCompleted",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "bountyId", "type": "uint256", "indexed": True},
            {"name": "reward", "type": "uint256", "indexed": False},
        ],
    },
]

CONTRACT_ABIS: dict[EventSource, list[dict[str, Any]]] = {
    EventSource.AGENT_REGISTRY: AGENT_REGISTRY_ABI,
    EventSource.BOUNTY_REGISTRY: BOUNTY_REGISTRY_ABI,
    EventSource.REPUTATION_REGISTRY: REPUTATION_REGISTRY_ABI,
}

PAYLOAD_MODELS: dict[EventKind, type[EventPayload]] = {
    EventKind.REGISTERED: RegisteredPayload,
    EventKind.METADATA_SET: MetadataSetPayload,
    EventKind.AGENT_WALLET_SET: AgentWalletSetPayload,
    EventKind.BOUNTY_CREATED: BountyCreatedPayload,
    EventKind.BOUNTY_CLAIMED: BountyClaimedPayload,
    EventKind.BOUNTY_SUBMITTED: BountySubmittedPayload,
    EventKind.BOUNTY_APPROVED: BountyApprovedPayload,
    EventKind.BOUNTY_REJECTED: BountyRejectedPayload,
    EventKind.BOUNTY_DISPUTED: BountyDisputedPayload,
    EventKind.BOUNTY_PAID: BountyPaidPayload,
    EventKind.BOUNTY_CANCELLED: BountyCancelledPayload,
    EventKind.BOUNTY_EXPIRED: BountyExpiredPayload,
    EventKind.REPUTATION_UPDATED: ReputationUpdatedPayload,
    EventKind.REVIEW_ADDED: ReviewAddedPayload,
    EventKind.BOUNTY_COMPLETED: BountyCompletedPayload,
}


@dataclass(frozen=True, slots=True)
class EventSpec:
    kind: EventKind
    source: EventSource
    abi: Mapping[str, Any] = field(hash=False)
    payload_model: type[EventPayload] = field(hash=False)


EVENT_SPECS: tuple[EventSpec, ...] = tuple(
    EventSpec(
        kind=EventKind(entry["name"]),
        source=source,
        abi=entry,
        payload_model=PAYLOAD_MODELS[EventKind(entry["name"])],
    )
    for source, contract_abi in CONTRACT_ABIS.items()
    for entry in contract_abi
    if entry.get("type") == "event"
)

_SPECS_BY_KEY: dict[tuple[EventSource, str], EventSpec] = {
    (spec.source, spec.kind.value): spec for spec in EVENT_SPECS
}


def specs_for_source(source: EventSource) -> list[EventSpec]:
    return [spec for spec in EVENT_SPECS if spec.source == source]


def lookup_spec(source: EventSource, event_name: str) -> EventSpec | None:
    return _SPECS_BY_KEY.get((source, event_name))


@dataclass(frozen=True, slots=True)
class TypedEvent:
    kind: EventKind
    payload: EventPayload
    event: ChainEvent


def decode_event(event: ChainEvent) -> TypedEvent | None:
    """Validate ``event.args`` against the payload model for its kind.

    Returns ``None`` for events this indexer does not know about; raises
    :class:`EventDecodeError` when a known event carries unusable arguments.
    """
    spec = lookup_spec(event.source, event.event_name)
    if spec is None:
        return None
    try:
        payload = spec.payload_model.model_validate(dict(event.args))
    except ValidationError as exc:
        raise EventDecodeError(
            f"invalid {spec.kind.value} args at block={event.block_number} log_index={event.log_index}: {exc}"
        ) from exc
    return TypedEvent(kind=spec.kind, payload=payload, event=event)
