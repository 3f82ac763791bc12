from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum

from opentelemetry import trace

from bounty_indexer.core.errors import EventDecodeError
from bounty_indexer.indexer.events import ChainEvent, EventKind, decode_event
from bounty_indexer.indexer.handlers import HANDLERS, Handler, HandlerContext
from bounty_indexer.services.projection import ProjectionStore, ProjectionWriter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DispatchResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"
    UNDECODABLE = "undecodable"


class EventRouter:
    """Maps an event's (source, name) to its typed payload and handler."""

    def __init__(self, handlers: Mapping[EventKind, Handler] | None = None) -> None:
        self.handlers: dict[EventKind, Handler] = dict(HANDLERS if handlers is None else handlers)

    async def dispatch(self, event: ChainEvent, store: ProjectionStore, ctx: HandlerContext) -> DispatchResult:
        try:
            typed = decode_event(event)
        except EventDecodeError:
            logger.exception("skipping malformed event %s at %s", event.event_name, event.position)
            return DispatchResult.UNDECODABLE

        handler = self.handlers.get(typed.kind) if typed is not None else None
        if typed is None or handler is None:
            logger.warning(
                "no handler for source=%s event=%s at block=%s log_index=%s; ignoring",
                event.source.value,
                event.event_name,
                event.block_number,
                event.log_index,
            )
            return DispatchResult.UNKNOWN

        async def mutation(writer: ProjectionWriter) -> None:
            await handler(typed.payload, event, writer, ctx)

        with tracer.start_as_current_span("indexer.apply_event") as span:
            span.set_attribute("event.name", event.event_name)
            span.set_attribute("event.block_number", event.block_number)
            span.set_attribute("event.log_index", event.log_index)
            applied = await store.apply_once(event, mutation)
            span.set_attribute("event.duplicate", not applied)

        if not applied:
            logger.debug("duplicate delivery of %s at %s skipped", event.event_name, event.position)
            return DispatchResult.DUPLICATE
        return DispatchResult.APPLIED
