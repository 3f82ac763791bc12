"""Projection mutations, one per event kind.

Every handler runs inside the per-event transaction opened by the projection
store and must be safe to run again for the same event:

- creates are insert-or-ignore keyed by the on-chain id;
- field updates set absolute values taken from the event;
- counters are relative adds executed by the database.

An event that references an entity the projection does not hold yet is a
consistency anomaly: it is logged with the full event payload and the handler
applies whatever it safely can.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from bounty_indexer.indexer.events import (
    AgentWalletSetPayload,
    BountyApprovedPayload,
    BountyCancelledPayload,
    BountyClaimedPayload,
    BountyCompletedPayload,
    BountyCreatedPayload,
    BountyDisputedPayload,
    BountyExpiredPayload,
    BountyPaidPayload,
    BountyRejectedPayload,
    BountySubmittedPayload,
    ChainEvent,
    EventKind,
    MetadataSetPayload,
    RegisteredPayload,
    ReputationUpdatedPayload,
    ReviewAddedPayload,
)
from bounty_indexer.services.projection import NATIVE_TOKEN, ProjectionWriter

logger = logging.getLogger(__name__)

PLACEHOLDER_ADDRESS = "0x0000000000000000000000000000000000000000"
METADATA_FIELDS = {
    "name": "name",
    "description": "description",
    "image": "image_url",
    "skills": "skills",
}


@dataclass(slots=True)
class HandlerContext:
    baseline_reputation: int = 50
    anomalies: int = 0

    def anomaly(self, event: ChainEvent, message: str, *args: Any) -> None:
        self.anomalies += 1
        logger.warning(
            "consistency anomaly: " + message + " event=%s",
            *args,
            json.dumps(event.describe(), default=str, sort_keys=True),
        )


Handler = Callable[[Any, ChainEvent, ProjectionWriter, HandlerContext], Awaitable[None]]


def _timestamp(seconds: int, *, field: str, event: ChainEvent) -> datetime | None:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.error(
            "unrepresentable %s=%s at block=%s log_index=%s; leaving unset",
            field,
            seconds,
            event.block_number,
            event.log_index,
        )
        return None


async def _ensure_agent(
    agent_id: int,
    event: ChainEvent,
    writer: ProjectionWriter,
    ctx: HandlerContext,
    *,
    wallet_address: str = PLACEHOLDER_ADDRESS,
) -> None:
    if await writer.agent_exists(agent_id):
        return
    ctx.anomaly(event, "agent %s missing from projection; creating placeholder", agent_id)
    await writer.insert_agent(
        on_chain_id=agent_id,
        owner_address=PLACEHOLDER_ADDRESS,
        wallet_address=wallet_address,
        registration_uri="",
        reputation_score=ctx.baseline_reputation,
    )


async def _set_bounty_fields(
    bounty_id: int,
    fields: dict[str, Any],
    event: ChainEvent,
    writer: ProjectionWriter,
    ctx: HandlerContext,
) -> bool:
    if await writer.update_bounty(bounty_id, fields):
        return True
    ctx.anomaly(event, "bounty %s missing from projection; %s not applied", bounty_id, event.event_name)
    return False


# Agent identity registry


async def handle_registered(
    payload: RegisteredPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    owner = payload.owner.lower()
    inserted = await writer.insert_agent(
        on_chain_id=payload.agent_id,
        owner_address=owner,
        wallet_address=owner,
        registration_uri=payload.agent_uri,
        reputation_score=ctx.baseline_reputation,
    )
    if not inserted:
        # Owner and URI only come from this event; re-setting them repairs a placeholder row.
        await writer.update_agent(
            payload.agent_id,
            {"owner_address": owner, "registration_uri": payload.agent_uri},
        )
    logger.info("agent %s registered by %s", payload.agent_id, owner)


async def handle_metadata_set(
    payload: MetadataSetPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    column = METADATA_FIELDS.get(payload.key)
    if column is None:
        logger.debug("ignoring metadata key %r for agent %s", payload.key, payload.agent_id)
        return

    try:
        text = payload.value.decode("utf-8")
    except UnicodeDecodeError:
        logger.error(
            "metadata %r for agent %s is not valid UTF-8 (block=%s log_index=%s); field left unset",
            payload.key,
            payload.agent_id,
            event.block_number,
            event.log_index,
        )
        return

    value: Any = text
    if column == "skills":
        value = _parse_skills(text, agent_id=payload.agent_id)
        if value is None:
            return

    await _ensure_agent(payload.agent_id, event, writer, ctx)
    await writer.update_agent(payload.agent_id, {column: value})
    logger.info("agent %s metadata set: %s", payload.agent_id, payload.key)


def _parse_skills(text: str, *, agent_id: int) -> list[str] | None:
    try:
        skills = json.loads(text)
    except json.JSONDecodeError:
        logger.error("skills metadata for agent %s is not JSON; field left unset", agent_id)
        return None
    if not isinstance(skills, list):
        logger.error("skills metadata for agent %s is not a JSON list; field left unset", agent_id)
        return None
    return [str(skill) for skill in skills]


async def handle_agent_wallet_set(
    payload: AgentWalletSetPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    wallet = payload.wallet.lower()
    await _ensure_agent(payload.agent_id, event, writer, ctx, wallet_address=wallet)
    await writer.update_agent(payload.agent_id, {"wallet_address": wallet})
    logger.info("agent %s wallet set to %s", payload.agent_id, wallet)


# Bounty registry


async def handle_bounty_created(
    payload: BountyCreatedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    inserted = await writer.insert_bounty(
        on_chain_id=payload.bounty_id,
        creator_agent_id=payload.creator,
        title=payload.title,
        reward_amount=payload.reward_amount,
        reward_token=NATIVE_TOKEN,
        deadline=_timestamp(payload.deadline, field="deadline", event=event),
    )
    if inserted:
        logger.info("bounty %s created by agent %s", payload.bounty_id, payload.creator)


async def handle_bounty_claimed(
    payload: BountyClaimedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    fields = {
        "claimed_by": payload.hunter,
        "claimed_at": _timestamp(payload.claimed_at, field="claimedAt", event=event),
        "status": "claimed",
    }
    if await _set_bounty_fields(payload.bounty_id, fields, event, writer, ctx):
        logger.info("bounty %s claimed by agent %s", payload.bounty_id, payload.hunter)


async def handle_bounty_submitted(
    payload: BountySubmittedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    fields = {
        "submission_uri": payload.submission_uri,
        "submitted_at": _timestamp(payload.submitted_at, field="submittedAt", event=event),
        "status": "submitted",
    }
    if await _set_bounty_fields(payload.bounty_id, fields, event, writer, ctx):
        logger.info("bounty %s submitted by agent %s", payload.bounty_id, payload.hunter)


async def handle_bounty_approved(
    payload: BountyApprovedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    if not await _set_bounty_fields(payload.bounty_id, {"status": "approved"}, event, writer, ctx):
        return
    creator = await writer.get_bounty_creator(payload.bounty_id)
    await writer.insert_review(
        bounty_on_chain_id=payload.bounty_id,
        from_agent_id=creator,
        to_agent_id=payload.hunter,
        rating=payload.rating,
    )
    logger.info("bounty %s approved with rating %s", payload.bounty_id, payload.rating)


async def handle_bounty_rejected(
    payload: BountyRejectedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    fields = {"status": "rejected", "rejection_reason": payload.reason}
    if await _set_bounty_fields(payload.bounty_id, fields, event, writer, ctx):
        logger.info("bounty %s rejected: %s", payload.bounty_id, payload.reason)


async def handle_bounty_disputed(
    payload: BountyDisputedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    fields = {"status": "disputed", "dispute_id": payload.dispute_id}
    if await _set_bounty_fields(payload.bounty_id, fields, event, writer, ctx):
        logger.info("bounty %s disputed (dispute %s)", payload.bounty_id, payload.dispute_id)


async def handle_bounty_paid(
    payload: BountyPaidPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    await _set_bounty_fields(payload.bounty_id, {"status": "paid"}, event, writer, ctx)
    # The payment happened on chain even if the bounty row is missing; credit the hunter regardless.
    await _ensure_agent(payload.hunter, event, writer, ctx)
    await writer.add_agent_totals(payload.hunter, earnings=payload.amount)
    logger.info("bounty %s paid to agent %s: %s", payload.bounty_id, payload.hunter, payload.amount)


async def handle_bounty_cancelled(
    payload: BountyCancelledPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    if await _set_bounty_fields(payload.bounty_id, {"status": "cancelled"}, event, writer, ctx):
        logger.info("bounty %s cancelled by creator %s", payload.bounty_id, payload.creator)


async def handle_bounty_expired(
    payload: BountyExpiredPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    if await _set_bounty_fields(payload.bounty_id, {"status": "expired"}, event, writer, ctx):
        logger.info("bounty %s expired", payload.bounty_id)


# Reputation registry


async def handle_reputation_updated(
    payload: ReputationUpdatedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    await _ensure_agent(payload.agent_id, event, writer, ctx)
    await writer.update_agent(payload.agent_id, {"reputation_score": payload.new_score})
    logger.info("agent %s reputation updated to %s", payload.agent_id, payload.new_score)


async def handle_review_added(
    payload: ReviewAddedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    creator = await writer.get_bounty_creator(payload.bounty_id)
    if creator is None:
        ctx.anomaly(event, "bounty %s missing for review of agent %s", payload.bounty_id, payload.agent_id)
    await writer.insert_review(
        bounty_on_chain_id=payload.bounty_id,
        from_agent_id=creator,
        to_agent_id=payload.agent_id,
        rating=payload.rating,
    )
    logger.info(
        "review added for agent %s on bounty %s: rating %s",
        payload.agent_id,
        payload.bounty_id,
        payload.rating,
    )


async def handle_bounty_completed(
    payload: BountyCompletedPayload, event: ChainEvent, writer: ProjectionWriter, ctx: HandlerContext
) -> None:
    await _ensure_agent(payload.agent_id, event, writer, ctx)
    await writer.add_agent_totals(payload.agent_id, earnings=payload.reward, completed=1)
    logger.info(
        "agent %s completed bounty %s, earned %s",
        payload.agent_id,
        payload.bounty_id,
        payload.reward,
    )


HANDLERS: dict[EventKind, Handler] = {
    EventKind.REGISTERED: handle_registered,
    EventKind.METADATA_SET: handle_metadata_set,
    EventKind.AGENT_WALLET_SET: handle_agent_wallet_set,
    EventKind.BOUNTY_CREATED: handle_bounty_created,
    EventKind.BOUNTY_CLAIMED: handle_bounty_claimed,
    EventKind.BOUNTY_SUBMITTED: handle_bounty_submitted,
    EventKind.BOUNTY_APPROVED: handle_bounty_approved,
    EventKind.BOUNTY_REJECTED: handle_bounty_rejected,
    EventKind.BOUNTY_DISPUTED: handle_bounty_disputed,
    EventKind.BOUNTY_PAID: handle_bounty_paid,
    EventKind.BOUNTY_CANCELLED: handle_bounty_cancelled,
    EventKind.BOUNTY_EXPIRED: handle_bounty_expired,
    EventKind.REPUTATION_UPDATED: handle_reputation_updated,
    EventKind.REVIEW_ADDED: handle_review_added,
    EventKind.BOUNTY_COMPLETED: handle_bounty_completed,
}
