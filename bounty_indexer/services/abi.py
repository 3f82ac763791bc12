from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import event_abi_to_log_topic, keccak, to_bytes

from bounty_indexer.core.errors import EventDecodeError
from bounty_indexer.indexer.events import EventSource, EventSpec, specs_for_source

# Indexed reference types are stored as their keccak hash, not their value.
_HASHED_WHEN_INDEXED = {"string", "bytes"}


@dataclass(frozen=True, slots=True)
class EventAbi:
    spec: EventSpec
    topic: str

    @property
    def name(self) -> str:
        return self.spec.abi["name"]

    @property
    def inputs(self) -> list[Mapping[str, Any]]:
        return list(self.spec.abi["inputs"])

    @property
    def indexed_inputs(self) -> list[Mapping[str, Any]]:
        return [item for item in self.inputs if item.get("indexed")]

    @property
    def data_inputs(self) -> list[Mapping[str, Any]]:
        return [item for item in self.inputs if not item.get("indexed")]

    @property
    def canonical_signature(self) -> str:
        return f"{self.name}({','.join(item['type'] for item in self.inputs)})"


def event_abi_for(spec: EventSpec) -> EventAbi:
    return EventAbi(spec=spec, topic="0x" + event_abi_to_log_topic(dict(spec.abi)).hex())


class EventAbiRegistry:
    """Topic lookup and log decoding for the contracts the indexer follows."""

    def __init__(self) -> None:
        self._by_source: dict[EventSource, dict[str, EventAbi]] = {}
        for source in EventSource:
            abis = [event_abi_for(spec) for spec in specs_for_source(source) if not spec.abi.get("anonymous")]
            self._by_source[source] = {abi.topic: abi for abi in abis}

    def topics_for(self, source: EventSource) -> list[str]:
        return sorted(self._by_source[source])

    def find(self, source: EventSource, topic0: str) -> EventAbi | None:
        return self._by_source[source].get(topic0.lower())

    def by_name(self, source: EventSource, name: str) -> EventAbi:
        for event_abi in self._by_source[source].values():
            if event_abi.name == name:
                return event_abi
        raise KeyError(f"{source.value} has no event named {name}")

    def decode_args(self, source: EventSource, raw_log: dict[str, Any]) -> tuple[EventAbi, dict[str, Any]] | None:
        """Decode the arguments of a raw ``eth_getLogs`` entry.

        Returns ``None`` when topic0 is not one of the source's known events.
        """
        topics = raw_log.get("topics") or []
        if not topics:
            return None
        event_abi = self.find(source, topics[0])
        if event_abi is None:
            return None

        indexed = event_abi.indexed_inputs
        if len(topics) - 1 != len(indexed):
            raise EventDecodeError(
                f"{event_abi.name}: expected {len(indexed)} indexed topics, got {len(topics) - 1}"
            )

        args: dict[str, Any] = {}
        try:
            for item, topic in zip(indexed, topics[1:]):
                if item["type"] in _HASHED_WHEN_INDEXED:
                    args[item["name"]] = topic
                    continue
                (args[item["name"]],) = abi_decode([item["type"]], to_bytes(hexstr=topic))

            plain = event_abi.data_inputs
            if plain:
                values = abi_decode([item["type"] for item in plain], to_bytes(hexstr=raw_log.get("data") or "0x"))
                args.update(zip((item["name"] for item in plain), values))
        except (DecodingError, ValueError, TypeError) as exc:
            raise EventDecodeError(f"{event_abi.name}: undecodable log data: {exc}") from exc
        return event_abi, args


def encode_log(
    event_abi: EventAbi,
    args: dict[str, Any],
    *,
    address: str,
    block_number: int,
    log_index: int,
    transaction_hash: str | None = None,
) -> dict[str, Any]:
    """Build an ``eth_getLogs``-shaped entry; the inverse of ``decode_args``."""
    topics = [event_abi.topic]
    for item in event_abi.indexed_inputs:
        topics.append("0x" + abi_encode([item["type"]], [args[item["name"]]]).hex())
    plain = event_abi.data_inputs
    data = abi_encode([item["type"] for item in plain], [args[item["name"]] for item in plain])
    return {
        "address": address,
        "topics": topics,
        "data": "0x" + data.hex(),
        "blockNumber": hex(block_number),
        "logIndex": hex(log_index),
        "transactionHash": transaction_hash or "0x" + keccak(text=f"{block_number}:{log_index}").hex(),
        "removed": False,
    }
