from __future__ import annotations

import asyncio

import pytest

from bounty_indexer import main as main_module
from bounty_indexer.core.config import Settings
from bounty_indexer.core.errors import CheckpointCorruptError, IndexerError
from bounty_indexer.indexer.events import EventSource
from bounty_indexer.main import build_engine, build_stores, contract_addresses
from bounty_indexer.services.store import InMemoryCheckpointStore, InMemoryProjectionStore

AGENTS = "0x00000000000000000000000000000000000000a1"
BOUNTIES = "0x00000000000000000000000000000000000000b1"


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BI_CONFIRMATION_DEPTH", "6")
    monkeypatch.setenv("BI_BOUNTY_REGISTRY_ADDRESS", BOUNTIES)
    monkeypatch.setenv("BI_START_BLOCK", "1200")

    settings = Settings()

    assert settings.confirmation_depth == 6
    assert settings.bounty_registry_address == BOUNTIES
    assert settings.start_block == 1200


def test_contract_addresses_skip_unconfigured_sources(caplog: pytest.LogCaptureFixture) -> None:
    settings = Settings(agent_registry_address=AGENTS, bounty_registry_address=BOUNTIES, reputation_registry_address=None)

    addresses = contract_addresses(settings)

    assert addresses == {EventSource.AGENT_REGISTRY: AGENTS, EventSource.BOUNTY_REGISTRY: BOUNTIES}
    assert "reputation_registry" in caplog.text


def test_contract_addresses_require_at_least_one() -> None:
    settings = Settings(agent_registry_address=None, bounty_registry_address=None, reputation_registry_address=None)

    with pytest.raises(IndexerError, match="no contract addresses"):
        contract_addresses(settings)


def test_build_engine_wires_settings() -> None:
    settings = Settings(
        agent_registry_address=AGENTS,
        bounty_registry_address=BOUNTIES,
        reputation_registry_address=None,
        confirmation_depth=4,
        backfill_batch_size=250,
        start_block=77,
    )

    engine = build_engine(settings, InMemoryProjectionStore(), InMemoryCheckpointStore())

    assert engine.sources == (EventSource.AGENT_REGISTRY, EventSource.BOUNTY_REGISTRY)
    assert engine.confirmation_depth == 4
    assert engine.batch_size == 250
    assert engine.checkpoint.start_block == 77
    assert engine.ledger.addresses == {EventSource.AGENT_REGISTRY: AGENTS, EventSource.BOUNTY_REGISTRY: BOUNTIES}


def test_build_stores_selects_backend() -> None:
    store, checkpoint_store = asyncio.run(build_stores(Settings(store_backend="memory")))

    assert isinstance(store, InMemoryProjectionStore)
    assert isinstance(checkpoint_store, InMemoryCheckpointStore)

    with pytest.raises(IndexerError, match="unknown store backend"):
        asyncio.run(build_stores(Settings(store_backend="redis")))


def test_cli_exits_non_zero_on_corrupt_checkpoint(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    async def corrupt_start() -> None:
        raise CheckpointCorruptError("checkpoint 'indexer:lastBlock' holds a non-integer value: '12abc'")

    monkeypatch.setattr(main_module, "run_indexer", corrupt_start)

    with pytest.raises(SystemExit) as exited:
        main_module.cli()

    assert exited.value.code == 1
    assert "indexer failed" in caplog.text
