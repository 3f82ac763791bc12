from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from bounty_indexer.indexer.events import ChainEvent, EventSource
from bounty_indexer.indexer.handlers import PLACEHOLDER_ADDRESS, HandlerContext
from bounty_indexer.indexer.router import DispatchResult, EventRouter
from bounty_indexer.services.store import InMemoryProjectionStore

OWNER = "0xAbCdEf0000000000000000000000000000000001"
SOURCES = {
    "Registered": EventSource.AGENT_REGISTRY,
    "MetadataSet": EventSource.AGENT_REGISTRY,
    "AgentWalletSet": EventSource.AGENT_REGISTRY,
    "ReputationUpdated": EventSource.REPUTATION_REGISTRY,
    "ReviewAdded": EventSource.REPUTATION_REGISTRY,
    "BountyCompleted": EventSource.REPUTATION_REGISTRY,
}


def _event(name: str, args: dict[str, Any], block: int, log_index: int = 0) -> ChainEvent:
    return ChainEvent(
        source=SOURCES.get(name, EventSource.BOUNTY_REGISTRY),
        contract_address="0x00000000000000000000000000000000000000b1",
        event_name=name,
        args=args,
        block_number=block,
        log_index=log_index,
        block_timestamp=1_700_000_000 + block,
    )


def _registered(agent_id: int, block: int, log_index: int = 0) -> ChainEvent:
    return _event("Registered", {"agentId": agent_id, "agentURI": f"ipfs://agent-{agent_id}", "owner": OWNER}, block, log_index)


def _created(bounty_id: int, creator: int, block: int, reward: int = 100, log_index: int = 0) -> ChainEvent:
    return _event(
        "BountyCreated",
        {"bountyId": bounty_id, "creator": creator, "title": "Audit", "rewardAmount": reward, "deadline": 1_700_086_400},
        block,
        log_index,
    )


def _apply(events: list[ChainEvent], store: InMemoryProjectionStore | None = None) -> tuple[InMemoryProjectionStore, HandlerContext, list[DispatchResult]]:
    store = store or InMemoryProjectionStore()
    ctx = HandlerContext()
    router = EventRouter()

    async def run() -> list[DispatchResult]:
        return [await router.dispatch(event, store, ctx) for event in events]

    return store, ctx, asyncio.run(run())


def test_registered_creates_agent_with_lowercased_owner_and_baseline_reputation() -> None:
    store, ctx, results = _apply([_registered(1, 10)])

    agent = store.state.agents[1]
    assert results == [DispatchResult.APPLIED]
    assert agent.owner_address == OWNER.lower()
    assert agent.wallet_address == OWNER.lower()
    assert agent.registration_uri == "ipfs://agent-1"
    assert agent.reputation_score == 50
    assert agent.completed_bounties == 0
    assert agent.total_earnings == Decimal(0)
    assert ctx.anomalies == 0


def test_creates_are_insert_or_ignore_even_for_distinct_events() -> None:
    events = [
        _registered(1, 10),
        _registered(1, 11),
        _created(7, 1, 12, reward=100),
        _created(7, 1, 13, reward=999),
        _event("BountyApproved", {"bountyId": 7, "hunter": 2, "rating": 4}, 14),
        _event("ReviewAdded", {"agentId": 2, "bountyId": 7, "rating": 1}, 15),
    ]

    store, _, results = _apply(events)

    assert results == [DispatchResult.APPLIED] * len(events)
    assert list(store.state.agents) == [1]
    assert store.state.bounties[7].reward_amount == Decimal(100)
    assert len(store.state.reviews) == 1
    assert store.state.reviews[0].rating == 4


def test_redelivered_event_is_a_duplicate_and_changes_nothing() -> None:
    paid = _event("BountyPaid", {"bountyId": 1, "hunter": 2, "amount": 100}, 15)
    store, _, _ = _apply([_registered(1, 10), _registered(2, 10, 1), _created(1, 1, 12), paid])

    _, _, results = _apply([paid, paid], store)

    assert results == [DispatchResult.DUPLICATE, DispatchResult.DUPLICATE]
    assert store.state.agents[2].total_earnings == Decimal(100)


def test_bounty_lifecycle_sets_absolute_fields() -> None:
    store, ctx, _ = _apply(
        [
            _registered(1, 10),
            _registered(2, 10, 1),
            _created(1, 1, 12),
            _event("BountyClaimed", {"bountyId": 1, "hunter": 2, "claimedAt": 1_700_000_013}, 13),
            _event("BountyClaimed", {"bountyId": 1, "hunter": 2, "claimedAt": 1_700_000_013}, 13, 1),
            _event("BountySubmitted", {"bountyId": 1, "hunter": 2, "submissionURI": "ipfs://report", "submittedAt": 1_700_000_014}, 14),
        ]
    )

    bounty = store.state.bounties[1]
    assert bounty.status == "submitted"
    assert bounty.claimed_by == 2
    assert bounty.claimed_at == datetime.fromtimestamp(1_700_000_013, tz=timezone.utc)
    assert bounty.submission_uri == "ipfs://report"
    assert bounty.submitted_at == datetime.fromtimestamp(1_700_000_014, tz=timezone.utc)
    assert bounty.deadline == datetime.fromtimestamp(1_700_086_400, tz=timezone.utc)
    assert ctx.anomalies == 0


def test_approved_then_paid_records_review_and_earnings_once() -> None:
    store, ctx, _ = _apply(
        [
            _registered(1, 10),
            _registered(2, 10, 1),
            _created(1, 1, 12),
            _event("BountyApproved", {"bountyId": 1, "hunter": 2, "rating": 5}, 15),
            _event("BountyPaid", {"bountyId": 1, "hunter": 2, "amount": 100}, 15, 1),
        ]
    )

    assert store.state.bounties[1].status == "paid"
    assert store.state.agents[2].total_earnings == Decimal(100)
    assert len(store.state.reviews) == 1
    review = store.state.reviews[0]
    assert (review.bounty_on_chain_id, review.from_agent_id, review.to_agent_id, review.rating) == (1, 1, 2, 5)
    assert ctx.anomalies == 0


def test_rejected_and_disputed_record_reason_and_dispute() -> None:
    store, _, _ = _apply(
        [
            _created(1, 1, 12),
            _created(2, 1, 12, log_index=1),
            _event("BountyRejected", {"bountyId": 1, "hunter": 2, "reason": "incomplete"}, 13),
            _event("BountyDisputed", {"bountyId": 2, "disputeId": 9}, 14),
            _event("BountyCancelled", {"bountyId": 2, "creator": 1}, 15),
        ]
    )

    assert store.state.bounties[1].status == "rejected"
    assert store.state.bounties[1].rejection_reason == "incomplete"
    assert store.state.bounties[2].dispute_id == 9
    assert store.state.bounties[2].status == "cancelled"


def test_metadata_fields_are_decoded_and_mapped() -> None:
    store, _, results = _apply(
        [
            _registered(1, 10),
            _event("MetadataSet", {"agentId": 1, "key": "name", "value": "Hunter".encode()}, 11),
            _event("MetadataSet", {"agentId": 1, "key": "image", "value": b"ipfs://avatar"}, 11, 1),
            _event("MetadataSet", {"agentId": 1, "key": "skills", "value": b'["solidity", "audit"]'}, 11, 2),
            _event("MetadataSet", {"agentId": 1, "key": "favourite_colour", "value": b"blue"}, 11, 3),
        ]
    )

    agent = store.state.agents[1]
    assert results == [DispatchResult.APPLIED] * 5
    assert agent.name == "Hunter"
    assert agent.image_url == "ipfs://avatar"
    assert agent.skills == ["solidity", "audit"]


def test_undecodable_metadata_leaves_field_unset(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR):
        store, _, results = _apply(
            [
                _registered(1, 10),
                _event("MetadataSet", {"agentId": 1, "key": "name", "value": b"\xff\xfe"}, 11),
                _event("MetadataSet", {"agentId": 1, "key": "skills", "value": b"not json"}, 11, 1),
            ]
        )

    assert results[1:] == [DispatchResult.APPLIED, DispatchResult.APPLIED]
    assert store.state.agents[1].name is None
    assert store.state.agents[1].skills is None
    assert "not valid UTF-8" in caplog.text
    assert "not JSON" in caplog.text


def test_reputation_update_is_absolute_and_last_write_wins() -> None:
    store, _, _ = _apply(
        [
            _registered(1, 10),
            _event("ReputationUpdated", {"agentId": 1, "newScore": 55}, 11),
            _event("ReputationUpdated", {"agentId": 1, "newScore": 42}, 12),
        ]
    )

    assert store.state.agents[1].reputation_score == 42


def test_completed_bounties_accumulate_per_distinct_event() -> None:
    events = [_registered(1, 10)] + [
        _event("BountyCompleted", {"agentId": 1, "bountyId": bounty_id, "reward": 25}, 20 + bounty_id)
        for bounty_id in range(4)
    ]

    store, _, _ = _apply(events)

    assert store.state.agents[1].completed_bounties == 4
    assert store.state.agents[1].total_earnings == Decimal(100)


def test_missing_agent_is_an_anomaly_with_placeholder(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        store, ctx, _ = _apply([_event("ReputationUpdated", {"agentId": 9, "newScore": 70}, 11)])

    agent = store.state.agents[9]
    assert ctx.anomalies == 1
    assert agent.owner_address == PLACEHOLDER_ADDRESS
    assert agent.reputation_score == 70
    assert "consistency anomaly" in caplog.text
    assert '"event_name": "ReputationUpdated"' in caplog.text

    _apply([_registered(9, 12)], store)
    assert store.state.agents[9].owner_address == OWNER.lower()
    assert store.state.agents[9].reputation_score == 70


def test_update_for_missing_bounty_is_an_anomaly_and_skipped() -> None:
    store, ctx, results = _apply(
        [
            _event("BountyClaimed", {"bountyId": 3, "hunter": 2, "claimedAt": 1_700_000_013}, 13),
            _event("BountyApproved", {"bountyId": 3, "hunter": 2, "rating": 5}, 14),
        ]
    )

    assert results == [DispatchResult.APPLIED, DispatchResult.APPLIED]
    assert ctx.anomalies == 2
    assert store.state.bounties == {}
    assert store.state.reviews == []


def test_paid_for_missing_bounty_still_credits_hunter() -> None:
    store, ctx, _ = _apply([_registered(2, 10), _event("BountyPaid", {"bountyId": 5, "hunter": 2, "amount": 40}, 11)])

    assert ctx.anomalies == 1
    assert store.state.agents[2].total_earnings == Decimal(40)


def test_unknown_and_malformed_events_are_reported_not_applied() -> None:
    store, _, results = _apply(
        [
            _event("OwnershipTransferred", {}, 10),
            _event("BountyPaid", {"bountyId": 1}, 11),
        ]
    )

    assert results == [DispatchResult.UNKNOWN, DispatchResult.UNDECODABLE]
    assert store.applied == set()


def test_failing_mutation_leaves_projection_untouched() -> None:
    class ExplodingStore(InMemoryProjectionStore):
        async def apply_once(self, event, mutation):
            async def exploding(writer):
                await mutation(writer)
                raise RuntimeError("disk full")

            return await super().apply_once(event, exploding)

    store = ExplodingStore()
    ctx = HandlerContext()

    async def run() -> None:
        await EventRouter().dispatch(_registered(1, 10), store, ctx)

    with pytest.raises(RuntimeError, match="disk full"):
        asyncio.run(run())

    assert store.state.agents == {}
    assert store.applied == set()


def test_events_sharing_a_chain_position_apply_once() -> None:
    # (block_number, log_index) identifies a log; a second event at the same
    # position is a redelivery even if its payload differs.
    store, _, results = _apply([_created(1, 1, 12), _created(2, 1, 12)])

    assert results == [DispatchResult.APPLIED, DispatchResult.DUPLICATE]
    assert list(store.state.bounties) == [1]
    assert store.applied == {(12, 0)}


def test_concurrent_completions_accumulate_exactly() -> None:
    count, reward = 50, 7
    completions = [
        _event("BountyCompleted", {"agentId": 1, "bountyId": bounty_id, "reward": reward}, 20 + bounty_id)
        for bounty_id in range(count)
    ]
    store, ctx, _ = _apply([_registered(1, 10)])
    router = EventRouter()

    async def run() -> list[DispatchResult]:
        # a few redeliveries race with the originals
        batch = completions + completions[:5]
        return await asyncio.gather(*(router.dispatch(event, store, ctx) for event in batch))

    results = asyncio.run(run())

    assert results.count(DispatchResult.APPLIED) == count
    assert results.count(DispatchResult.DUPLICATE) == 5
    agent = store.state.agents[1]
    assert agent.completed_bounties == count
    assert agent.total_earnings == Decimal(count * reward)


def test_failed_event_rolls_back_changes_to_existing_rows() -> None:
    store, _, _ = _apply([_registered(1, 10), _created(1, 1, 12)])
    state = store.state

    async def half_applied(writer) -> None:
        await writer.update_agent(1, {"reputation_score": 90, "name": "Hunter"})
        await writer.add_agent_totals(1, earnings=40, completed=1)
        await writer.update_bounty(1, {"status": "paid", "claimed_by": 1})
        await writer.insert_review(bounty_on_chain_id=1, from_agent_id=1, to_agent_id=1, rating=5)
        await writer.insert_bounty(
            on_chain_id=2, creator_agent_id=1, title="Fuzz", reward_amount=10, reward_token=OWNER, deadline=None
        )
        raise RuntimeError("connection reset")

    with pytest.raises(RuntimeError, match="connection reset"):
        asyncio.run(store.apply_once(_event("BountyPaid", {"bountyId": 1, "hunter": 1, "amount": 40}, 20), half_applied))

    assert store.state is state
    agent = store.state.agents[1]
    assert (agent.reputation_score, agent.name) == (50, None)
    assert (agent.total_earnings, agent.completed_bounties) == (Decimal(0), 0)
    bounty = store.state.bounties[1]
    assert (bounty.status, bounty.claimed_by) == ("open", None)
    assert list(store.state.bounties) == [1]
    assert store.state.reviews == []
    assert (20, 0) not in store.applied
