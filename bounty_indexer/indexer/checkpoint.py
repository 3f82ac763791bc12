from __future__ import annotations

import logging

from bounty_indexer.core.errors import CheckpointCorruptError
from bounty_indexer.services.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "indexer:lastBlock"


class Checkpoint:
    """The last block whose events are all durably applied to the projection.

    Writes never move the stored value backwards.
    """

    def __init__(self, store: CheckpointStore, *, key: str = CHECKPOINT_KEY, start_block: int = 0) -> None:
        self.store = store
        self.key = key
        self.start_block = max(0, start_block)
        self._value: int | None = None

    @property
    def value(self) -> int:
        if self._value is None:
            raise RuntimeError("checkpoint not loaded")
        return self._value

    async def load(self) -> int:
        raw = await self.store.get(self.key)
        floor = max(self.start_block - 1, 0)
        if raw is None:
            self._value = floor
            return self._value
        try:
            stored = int(raw)
        except ValueError as exc:
            raise CheckpointCorruptError(f"checkpoint {self.key!r} holds a non-integer value: {raw!r}") from exc
        self._value = max(stored, floor)
        return self._value

    async def advance(self, block_number: int) -> bool:
        current = self.value
        if block_number <= current:
            if block_number < current:
                logger.debug("ignoring checkpoint regression %s -> %s", current, block_number)
            return False
        await self.store.set(self.key, str(block_number))
        self._value = block_number
        return True
