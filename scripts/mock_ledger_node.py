#!/usr/bin/env python3
"""Minimal JSON-RPC node serving a scripted bounty lifecycle for local dry runs.

Run it next to the indexer with ``BI_STORE_BACKEND=memory`` and
``BI_RPC_URL=http://127.0.0.1:8545``; the chain head advances one block every
``--block-seconds``.
"""

from __future__ import annotations

import argparse
import json
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from bounty_indexer.indexer.events import EventSource
from bounty_indexer.services.abi import EventAbiRegistry, encode_log

ADDRESSES = {
    EventSource.AGENT_REGISTRY: "0x00000000000000000000000000000000000000a1",
    EventSource.BOUNTY_REGISTRY: "0x00000000000000000000000000000000000000b1",
    EventSource.REPUTATION_REGISTRY: "0x00000000000000000000000000000000000000c1",
}
CREATOR = "0x1111111111111111111111111111111111111111"
HUNTER = "0x2222222222222222222222222222222222222222"
GENESIS_TIMESTAMP = 1_700_000_000

# (block, log_index, source, event, args)
SCRIPT: list[tuple[int, int, EventSource, str, dict[str, Any]]] = [
    (10, 0, EventSource.AGENT_REGISTRY, "Registered", {"agentId": 1, "agentURI": "ipfs://creator", "owner": CREATOR}),
    (10, 1, EventSource.AGENT_REGISTRY, "Registered", {"agentId": 2, "agentURI": "ipfs://hunter", "owner": HUNTER}),
    (11, 0, EventSource.AGENT_REGISTRY, "MetadataSet", {"agentId": 2, "key": "name", "value": b"Hunter Two"}),
    (
        12,
        0,
        EventSource.BOUNTY_REGISTRY,
        "BountyCreated",
        {"bountyId": 1, "creator": 1, "title": "Audit contract", "rewardAmount": 100, "deadline": GENESIS_TIMESTAMP + 86_400},
    ),
    (13, 0, EventSource.BOUNTY_REGISTRY, "BountyClaimed", {"bountyId": 1, "hunter": 2, "claimedAt": GENESIS_TIMESTAMP + 13}),
    (
        14,
        0,
        EventSource.BOUNTY_REGISTRY,
        "BountySubmitted",
        {"bountyId": 1, "hunter": 2, "submissionURI": "ipfs://report", "submittedAt": GENESIS_TIMESTAMP + 14},
    ),
    (15, 0, EventSource.BOUNTY_REGISTRY, "BountyApproved", {"bountyId": 1, "hunter": 2, "rating": 5}),
    (15, 1, EventSource.BOUNTY_REGISTRY, "BountyPaid", {"bountyId": 1, "hunter": 2, "amount": 100}),
    (15, 2, EventSource.REPUTATION_REGISTRY, "ReputationUpdated", {"agentId": 2, "newScore": 55}),
]


def build_logs() -> list[dict[str, Any]]:
    registry = EventAbiRegistry()
    logs = []
    for block, log_index, source, name, args in SCRIPT:
        raw = encode_log(
            registry.by_name(source, name),
            args,
            address=ADDRESSES[source],
            block_number=block,
            log_index=log_index,
        )
        logs.append(raw)
    return logs


class MockLedgerHandler(BaseHTTPRequestHandler):
    server_version = "MockLedger/1.0"
    logs: list[dict[str, Any]] = []
    started_at = time.monotonic()
    first_block = 8
    block_seconds = 2.0

    def do_POST(self) -> None:  # noqa: N802 - stdlib handler signature
        length = int(self.headers.get("Content-Length") or 0)
        try:
            request = json.loads(self.rfile.read(length) or b"{}")
        except json.JSONDecodeError:
            self._write_json(HTTPStatus.BAD_REQUEST, {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "parse error"}})
            return

        method = request.get("method")
        params = request.get("params") or []
        if method == "eth_blockNumber":
            result: Any = hex(self._head())
        elif method == "eth_getLogs":
            result = self._get_logs(params[0] if params else {})
        elif method == "eth_getBlockByNumber":
            number = int(params[0], 16)
            result = {"number": params[0], "timestamp": hex(GENESIS_TIMESTAMP + number)} if number <= self._head() else None
        else:
            self._write_json(
                HTTPStatus.OK,
                {"jsonrpc": "2.0", "id": request.get("id"), "error": {"code": -32601, "message": f"method {method} not found"}},
            )
            return
        self._write_json(HTTPStatus.OK, {"jsonrpc": "2.0", "id": request.get("id"), "result": result})

    def log_message(self, _: str, *args: object) -> None:
        if args:
            print("mock-ledger:", *args)

    def _head(self) -> int:
        return self.first_block + int((time.monotonic() - self.started_at) / self.block_seconds)

    def _get_logs(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        from_block = int(query.get("fromBlock", "0x0"), 16)
        to_block = int(query.get("toBlock", hex(self._head())), 16)
        address = str(query.get("address", "")).lower()
        topics = set((query.get("topics") or [[]])[0] or [])
        return [
            log
            for log in self.logs
            if from_block <= int(log["blockNumber"], 16) <= to_block
            and log["address"].lower() == address
            and (not topics or log["topics"][0] in topics)
        ]

    def _write_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


def main() -> None:
    parser = argparse.ArgumentParser(description="Mock ledger JSON-RPC node with a scripted bounty lifecycle.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8545)
    parser.add_argument("--block-seconds", type=float, default=2.0)
    args = parser.parse_args()

    MockLedgerHandler.logs = build_logs()
    MockLedgerHandler.block_seconds = max(0.1, args.block_seconds)
    MockLedgerHandler.started_at = time.monotonic()

    server = ThreadingHTTPServer((args.host, args.port), MockLedgerHandler)
    print(f"mock-ledger listening on http://{args.host}:{args.port}", flush=True)
    for source, address in ADDRESSES.items():
        print(f"BI_{source.name}_ADDRESS={address}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
