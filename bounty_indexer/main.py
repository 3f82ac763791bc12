from __future__ import annotations

import asyncio
import logging
import signal
import sys

from opentelemetry import trace

from bounty_indexer.core.config import Settings, get_settings
from bounty_indexer.core.errors import IndexerError
from bounty_indexer.core.telemetry import (
    configure_indexer_logging,
    setup_indexer_telemetry,
    shutdown_indexer_telemetry,
)
from bounty_indexer.indexer.checkpoint import Checkpoint
from bounty_indexer.indexer.engine import SyncEngine
from bounty_indexer.indexer.events import EventSource
from bounty_indexer.services.checkpoint_store import CheckpointStore, PostgresCheckpointStore
from bounty_indexer.services.ledger_client import JsonRpcLedgerClient
from bounty_indexer.services.projection import ProjectionStore
from bounty_indexer.services.repository import get_repository
from bounty_indexer.services.store import InMemoryCheckpointStore, InMemoryProjectionStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def contract_addresses(settings: Settings) -> dict[EventSource, str]:
    configured = {
        EventSource.AGENT_REGISTRY: settings.agent_registry_address,
        EventSource.BOUNTY_REGISTRY: settings.bounty_registry_address,
        EventSource.REPUTATION_REGISTRY: settings.reputation_registry_address,
    }
    addresses = {source: address for source, address in configured.items() if address}
    if not addresses:
        raise IndexerError("no contract addresses configured; set BI_*_REGISTRY_ADDRESS")
    for source in configured.keys() - addresses.keys():
        logger.warning("no address configured for %s; its events will not be indexed", source.value)
    return addresses


async def build_stores(settings: Settings) -> tuple[ProjectionStore, CheckpointStore]:
    if settings.store_backend == "memory":
        logger.warning("using in-memory projection; state is lost on exit")
        return InMemoryProjectionStore(), InMemoryCheckpointStore()
    if settings.store_backend != "postgres":
        raise IndexerError(f"unknown store backend: {settings.store_backend}")
    repository = get_repository()
    await repository.ensure_schema()
    return repository, PostgresCheckpointStore(repository)


def build_engine(settings: Settings, store: ProjectionStore, checkpoint_store: CheckpointStore) -> SyncEngine:
    addresses = contract_addresses(settings)
    ledger = JsonRpcLedgerClient(
        rpc_url=settings.rpc_url,
        addresses=addresses,
        timeout_seconds=settings.rpc_timeout_seconds,
        confirmation_depth=settings.confirmation_depth,
        poll_interval_seconds=settings.poll_interval_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        max_poll_failures=settings.fetch_max_attempts,
        max_block_range=settings.backfill_batch_size,
    )
    return SyncEngine(
        ledger,
        store,
        Checkpoint(checkpoint_store, start_block=settings.start_block),
        sources=list(addresses),
        confirmation_depth=settings.confirmation_depth,
        batch_size=settings.backfill_batch_size,
        fetch_max_attempts=settings.fetch_max_attempts,
        retry_base_seconds=settings.poll_interval_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        baseline_reputation=settings.baseline_reputation,
    )


async def run_indexer() -> None:
    settings = get_settings()
    configure_indexer_logging()
    telemetry_runtime = setup_indexer_telemetry(settings)
    store: ProjectionStore | None = None

    try:
        store, checkpoint_store = await build_stores(settings)
        engine = build_engine(settings, store, checkpoint_store)

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, engine.stop)

        with tracer.start_as_current_span("indexer.run"):
            await engine.run()
    finally:
        if store is not None:
            await store.close()
        shutdown_indexer_telemetry(telemetry_runtime)


def cli() -> None:
    try:
        asyncio.run(run_indexer())
    except IndexerError:
        # Non-zero exit lets the process supervisor restart from the checkpoint.
        logger.exception("indexer failed")
        sys.exit(1)


if __name__ == "__main__":
    cli()
