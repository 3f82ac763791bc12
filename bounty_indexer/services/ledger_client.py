from __future__ import annotations

import asyncio
import itertools
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from bounty_indexer.core.errors import EventDecodeError, LedgerResponseError, LedgerUnavailableError
from bounty_indexer.indexer.events import ChainEvent, EventSource
from bounty_indexer.services.abi import EventAbiRegistry

logger = logging.getLogger(__name__)

# Substrings nodes use when an eth_getLogs range yields too many results.
_RANGE_TOO_LARGE_HINTS = ("more than", "too many", "limit exceeded", "range too large", "response size")
_TIMESTAMP_CACHE_SIZE = 2048


@dataclass(frozen=True, slots=True)
class LogBatch:
    """Confirmed logs of one source for the inclusive range ``from_block..to_block``.

    An empty ``events`` list still means the whole range was scanned.
    """

    source: EventSource
    from_block: int
    to_block: int
    events: list[ChainEvent] = field(default_factory=list)


BatchCallback = Callable[[LogBatch], Awaitable[None]]


class Subscription:
    """Handle for a polling log subscription; ``cancel()`` stops delivery."""

    def __init__(self, source: EventSource, task: asyncio.Task[None]) -> None:
        self.source = source
        self.task = task

    @property
    def active(self) -> bool:
        return not self.task.done()

    def cancel(self) -> None:
        if not self.task.done():
            self.task.cancel()

    async def wait(self) -> None:
        try:
            await self.task
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise


class JsonRpcLedgerClient:
    def __init__(
        self,
        rpc_url: str,
        addresses: Mapping[EventSource, str],
        *,
        timeout_seconds: float = 10.0,
        confirmation_depth: int = 2,
        poll_interval_seconds: float = 2.0,
        max_backoff_seconds: float = 30.0,
        max_poll_failures: int = 5,
        max_block_range: int = 1000,
        client: httpx.AsyncClient | None = None,
        abi_registry: EventAbiRegistry | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.addresses = {source: address.lower() for source, address in addresses.items()}
        self.timeout_seconds = timeout_seconds
        self.confirmation_depth = max(0, confirmation_depth)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.max_poll_failures = max(1, max_poll_failures)
        self.max_block_range = max(1, max_block_range)
        self._client = client
        self._abi = abi_registry or EventAbiRegistry()
        self._request_ids = itertools.count(1)
        self._timestamps: dict[int, int] = {}

    async def current_height(self) -> int:
        result = await self._call("eth_blockNumber", [])
        return _parse_quantity(result, "eth_blockNumber")

    async def get_logs(self, source: EventSource, from_block: int, to_block: int) -> list[ChainEvent]:
        """Return the decoded logs of ``source`` in ``from_block..to_block`` (inclusive),
        ordered by ``(block_number, log_index)``."""
        if to_block < from_block:
            return []
        raw_logs = await self._get_raw_logs(source, from_block, to_block)

        events: list[ChainEvent] = []
        for raw_log in raw_logs:
            if raw_log.get("removed"):
                continue
            try:
                decoded = self._abi.decode_args(source, raw_log)
            except EventDecodeError:
                logger.exception(
                    "dropping undecodable log source=%s block=%s log_index=%s",
                    source.value,
                    raw_log.get("blockNumber"),
                    raw_log.get("logIndex"),
                )
                continue
            if decoded is None:
                continue
            event_abi, args = decoded
            block_number = _parse_quantity(raw_log.get("blockNumber"), "blockNumber")
            events.append(
                ChainEvent(
                    source=source,
                    contract_address=str(raw_log.get("address") or self.addresses[source]).lower(),
                    event_name=event_abi.name,
                    args=args,
                    block_number=block_number,
                    log_index=_parse_quantity(raw_log.get("logIndex"), "logIndex"),
                    block_timestamp=_parse_optional_quantity(raw_log.get("blockTimestamp")),
                    transaction_hash=raw_log.get("transactionHash"),
                )
            )

        missing = sorted({event.block_number for event in events if event.block_timestamp is None})
        if missing:
            timestamps = await self._block_timestamps(missing)
            events = [
                event
                if event.block_timestamp is not None
                else replace(event, block_timestamp=timestamps.get(event.block_number))
                for event in events
            ]
        events.sort(key=lambda event: event.position)
        return events

    def subscribe(self, source: EventSource, on_batch: BatchCallback, *, from_block: int) -> Subscription:
        """Poll for confirmed logs of ``source`` starting at ``from_block``.

        Only blocks at least ``confirmation_depth`` below the head are delivered.
        Batches arrive in block order; transient errors are retried up to
        ``max_poll_failures`` consecutive times, after which the subscription
        task fails with the last error.
        """
        task = asyncio.create_task(
            self._poll(source, on_batch, from_block),
            name=f"ledger-subscription:{source.value}",
        )
        return Subscription(source, task)

    async def _poll(self, source: EventSource, on_batch: BatchCallback, cursor: int) -> None:
        failures = 0
        backoff = self.poll_interval_seconds
        while True:
            try:
                head = await self.current_height()
                confirmed = head - self.confirmation_depth
                if confirmed < cursor:
                    await asyncio.sleep(self.poll_interval_seconds)
                    continue
                to_block = min(confirmed, cursor + self.max_block_range - 1)
                events = await self.get_logs(source, cursor, to_block)
            except (LedgerUnavailableError, LedgerResponseError) as exc:
                failures += 1
                if failures >= self.max_poll_failures:
                    logger.error(
                        "subscription giving up source=%s cursor=%s after %s failures",
                        source.value,
                        cursor,
                        failures,
                    )
                    raise
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.warning(
                    "subscription poll failed source=%s cursor=%s: %s; retry in %.1fs",
                    source.value,
                    cursor,
                    exc,
                    sleep_for,
                )
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
                continue

            failures = 0
            backoff = self.poll_interval_seconds
            await on_batch(LogBatch(source=source, from_block=cursor, to_block=to_block, events=events))
            cursor = to_block + 1

    async def _get_raw_logs(self, source: EventSource, from_block: int, to_block: int) -> list[dict[str, Any]]:
        params = [
            {
                "address": self.addresses[source],
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
                "topics": [self._abi.topics_for(source)],
            }
        ]
        try:
            result = await self._call("eth_getLogs", params)
        except LedgerResponseError as exc:
            message = str(exc).lower()
            if to_block > from_block and any(hint in message for hint in _RANGE_TOO_LARGE_HINTS):
                middle = (from_block + to_block) // 2
                logger.warning(
                    "eth_getLogs range too large source=%s %s-%s; splitting at %s",
                    source.value,
                    from_block,
                    to_block,
                    middle,
                )
                left = await self._get_raw_logs(source, from_block, middle)
                right = await self._get_raw_logs(source, middle + 1, to_block)
                return left + right
            raise
        if not isinstance(result, list):
            raise LedgerResponseError(f"eth_getLogs returned {type(result).__name__}, expected list")
        return result

    async def _block_timestamps(self, block_numbers: list[int]) -> dict[int, int]:
        resolved: dict[int, int] = {}
        for block_number in block_numbers:
            cached = self._timestamps.get(block_number)
            if cached is not None:
                resolved[block_number] = cached
                continue
            block = await self._call("eth_getBlockByNumber", [hex(block_number), False])
            if not isinstance(block, dict):
                raise LedgerResponseError(f"block {block_number} not found")
            timestamp = _parse_quantity(block.get("timestamp"), "timestamp")
            if len(self._timestamps) >= _TIMESTAMP_CACHE_SIZE:
                self._timestamps.clear()
            self._timestamps[block_number] = timestamp
            resolved[block_number] = timestamp
        return resolved

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._request_ids), "method": method, "params": params}
        try:
            if self._client is not None:
                response = await self._client.post(self.rpc_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code >= 500 or exc.response.status_code == 429:
                raise LedgerUnavailableError(f"{method}: HTTP {exc.response.status_code}") from exc
            raise LedgerResponseError(f"{method}: HTTP {exc.response.status_code}") from exc
        except httpx.TransportError as exc:
            raise LedgerUnavailableError(f"{method}: {exc.__class__.__name__}: {exc}") from exc
        except ValueError as exc:
            raise LedgerResponseError(f"{method}: response is not JSON") from exc

        if not isinstance(body, dict):
            raise LedgerResponseError(f"{method}: unexpected response shape")
        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise LedgerResponseError(f"{method}: {error.get('message')}", code=error.get("code"))
            raise LedgerResponseError(f"{method}: {error}")
        return body.get("result")


def _parse_quantity(value: Any, label: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError:
            pass
    raise LedgerResponseError(f"invalid quantity for {label}: {value!r}")


def _parse_optional_quantity(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return _parse_quantity(value, "blockTimestamp")
    except LedgerResponseError:
        return None
