from __future__ import annotations

import pytest
from eth_utils import event_abi_to_log_topic, keccak

from bounty_indexer.core.errors import EventDecodeError
from bounty_indexer.indexer.events import EVENT_SPECS, EventSource
from bounty_indexer.services.abi import EventAbiRegistry, encode_log

OWNER = "0x1111111111111111111111111111111111111111"


def test_registry_computes_topic_from_canonical_signature() -> None:
    registry = EventAbiRegistry()

    registered = registry.by_name(EventSource.AGENT_REGISTRY, "Registered")

    assert registered.canonical_signature == "Registered(uint256,string,address)"
    assert registered.topic == "0x" + keccak(text="Registered(uint256,string,address)").hex()
    assert registered.topic in registry.topics_for(EventSource.AGENT_REGISTRY)
    assert registered.topic not in registry.topics_for(EventSource.BOUNTY_REGISTRY)


def test_decode_args_reads_indexed_topics_and_data() -> None:
    registry = EventAbiRegistry()
    raw = encode_log(
        registry.by_name(EventSource.AGENT_REGISTRY, "Registered"),
        {"agentId": 42, "agentURI": "ipfs://agent-42", "owner": OWNER},
        address="0x00000000000000000000000000000000000000a1",
        block_number=10,
        log_index=3,
    )

    decoded = registry.decode_args(EventSource.AGENT_REGISTRY, raw)

    assert decoded is not None
    event_abi, args = decoded
    assert event_abi.name == "Registered"
    assert args["agentId"] == 42
    assert args["agentURI"] == "ipfs://agent-42"
    assert args["owner"].lower() == OWNER
    assert raw["blockNumber"] == "0xa"


def test_decode_args_ignores_foreign_topics() -> None:
    registry = EventAbiRegistry()
    raw = {"topics": ["0x" + keccak(text="Transfer(address,address,uint256)").hex()], "data": "0x"}

    assert registry.decode_args(EventSource.BOUNTY_REGISTRY, raw) is None
    assert registry.decode_args(EventSource.BOUNTY_REGISTRY, {"topics": [], "data": "0x"}) is None


def test_decode_args_rejects_truncated_logs() -> None:
    registry = EventAbiRegistry()
    event_abi = registry.by_name(EventSource.BOUNTY_REGISTRY, "BountyPaid")

    with pytest.raises(EventDecodeError, match="indexed topics"):
        registry.decode_args(EventSource.BOUNTY_REGISTRY, {"topics": [event_abi.topic], "data": "0x"})

    raw = encode_log(
        event_abi,
        {"bountyId": 1, "hunter": 2, "amount": 100},
        address="0x00000000000000000000000000000000000000b1",
        block_number=1,
        log_index=0,
    )
    raw["data"] = "0x1234"
    with pytest.raises(EventDecodeError, match="undecodable"):
        registry.decode_args(EventSource.BOUNTY_REGISTRY, raw)


def test_every_contract_event_gets_a_topic_derived_from_its_abi() -> None:
    registry = EventAbiRegistry()
    topics: list[str] = []

    for spec in EVENT_SPECS:
        event_abi = registry.by_name(spec.source, spec.kind.value)
        assert event_abi.spec is spec
        assert event_abi.topic == "0x" + event_abi_to_log_topic(dict(spec.abi)).hex()
        assert event_abi.topic == "0x" + keccak(text=event_abi.canonical_signature).hex()
        topics.append(event_abi.topic)

    assert len(topics) == len(set(topics)) == 15
    bounty_created = registry.by_name(EventSource.BOUNTY_REGISTRY, "BountyCreated")
    assert [item["name"] for item in bounty_created.indexed_inputs] == ["bountyId", "creator"]
    assert [item["type"] for item in bounty_created.data_inputs] == ["string", "uint256", "uint256"]
