"""Minimal Ethereum JSON-RPC client over httpx.

Only the calls the verifier needs: transaction receipts, the current block
height and read-only ``eth_call``. Anything implementing ``ChainClient`` can
stand in (tests use an in-memory fake).
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from ..errors import RpcError

logger = logging.getLogger(__name__)


@dataclass
class LogEntry:
    address: str
    topics: list[str]
    data: str


@dataclass
class TxReceipt:
    tx_hash: str
    status: int
    block_number: int
    logs: list[LogEntry] = field(default_factory=list)


class ChainClient(Protocol):
    def get_transaction_receipt(self, tx_hash: str) -> TxReceipt | None: ...

    def block_number(self) -> int: ...

    def call(self, to: str, data: str) -> str: ...


def _hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise RpcError(f"expected hex quantity, got {value!r}")
    return int(value, 16)


def parse_receipt(raw: dict[str, Any]) -> TxReceipt:
    try:
        logs = [
            LogEntry(
                address=str(entry["address"]),
                topics=[str(t) for t in entry.get("topics", [])],
                data=str(entry.get("data", "0x")),
            )
            for entry in raw.get("logs", [])
        ]
        return TxReceipt(
            tx_hash=str(raw.get("transactionHash", "")),
            status=_hex_int(raw.get("status", "0x0")),
            block_number=_hex_int(raw["blockNumber"]),
            logs=logs,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise RpcError(f"malformed receipt: {e}") from e


class JsonRpcClient:
    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url
        self._ids = itertools.count(1)
        self._http = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = self._http.post(self.url, json=body)
            r.raise_for_status()
            doc = r.json()
        except httpx.TimeoutException as e:
            raise RpcError(f"{method} timed out: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise RpcError(f"{method} failed: {e}") from e
        if not isinstance(doc, dict):
            raise RpcError(f"{method}: unexpected response {doc!r}")
        if doc.get("error"):
            err = doc["error"]
            msg = err.get("message") if isinstance(err, dict) else err
            raise RpcError(f"{method}: {msg}")
        return doc.get("result")

    def get_transaction_receipt(self, tx_hash: str) -> TxReceipt | None:
        raw = self._request("eth_getTransactionReceipt", [tx_hash])
        if raw is None:
            return None
        return parse_receipt(raw)

    def block_number(self) -> int:
        return _hex_int(self._request("eth_blockNumber", []))

    def call(self, to: str, data: str) -> str:
        return str(self._request("eth_call", [{"to": to, "data": data}, "latest"]))
