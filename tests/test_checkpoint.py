from __future__ import annotations

import asyncio

import pytest

from bounty_indexer.core.errors import CheckpointCorruptError
from bounty_indexer.indexer.checkpoint import CHECKPOINT_KEY, Checkpoint
from bounty_indexer.services.store import InMemoryCheckpointStore


def test_absent_checkpoint_starts_before_start_block() -> None:
    async def run() -> tuple[int, int]:
        default = await Checkpoint(InMemoryCheckpointStore()).load()
        configured = await Checkpoint(InMemoryCheckpointStore(), start_block=500).load()
        return default, configured

    assert asyncio.run(run()) == (0, 499)


def test_stored_checkpoint_is_parsed_and_floored_by_start_block() -> None:
    async def run() -> tuple[int, int]:
        stored = await Checkpoint(InMemoryCheckpointStore({CHECKPOINT_KEY: "1234"})).load()
        floored = await Checkpoint(InMemoryCheckpointStore({CHECKPOINT_KEY: "10"}), start_block=100).load()
        return stored, floored

    assert asyncio.run(run()) == (1234, 99)


def test_corrupt_checkpoint_refuses_to_start() -> None:
    checkpoint = Checkpoint(InMemoryCheckpointStore({CHECKPOINT_KEY: "12abc"}))

    with pytest.raises(CheckpointCorruptError, match="non-integer"):
        asyncio.run(checkpoint.load())


def test_value_requires_load() -> None:
    with pytest.raises(RuntimeError, match="not loaded"):
        _ = Checkpoint(InMemoryCheckpointStore()).value


def test_advance_is_monotonic() -> None:
    store = InMemoryCheckpointStore({CHECKPOINT_KEY: "10"})
    checkpoint = Checkpoint(store)

    async def run() -> list[bool]:
        await checkpoint.load()
        return [
            await checkpoint.advance(12),
            await checkpoint.advance(12),
            await checkpoint.advance(11),
            await checkpoint.advance(20),
        ]

    assert asyncio.run(run()) == [True, False, False, True]
    assert store.writes == [(CHECKPOINT_KEY, "12"), (CHECKPOINT_KEY, "20")]
    assert checkpoint.value == 20
