from __future__ import annotations

import pytest

from paygate.authz import PaymentAuthorizer, PaymentTerms
from paygate.chain import TRANSFER_TOPIC, ChainVerifier, LogEntry, TxReceipt
from paygate.errors import RpcError
from paygate.orders import OrderStore
from paygate.pricing import TablePricing
from paygate.receipts import PaymentStateSigner, gen_ed25519_keypair
from paygate.signing import EnhancedHmacStrategy, SignatureDispatcher

TOKEN = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"
RECIPIENT = "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"
PAYER = "0x00000000000000000000000000000000000000aa"
SECRET = "s" * 40
T0 = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def topic_address(addr: str) -> str:
    return "0x" + addr.lower().removeprefix("0x").rjust(64, "0")


def transfer_log(value: int, to: str = RECIPIENT, token: str = TOKEN, sender: str = PAYER) -> LogEntry:
    return LogEntry(
        address=token,
        topics=[TRANSFER_TOPIC, topic_address(sender), topic_address(to)],
        data=hex(value),
    )


class FakeChain:
    """In-memory ChainClient: receipts keyed by tx hash, a settable head block."""

    def __init__(self, head: int = 100):
        self.head = head
        self.receipts: dict[str, TxReceipt] = {}
        self.balances: dict[str, int] = {}
        self.down = False

    def add_transfer(self, tx_hash: str, value: int, block: int, status: int = 1, **kw) -> None:
        self.receipts[tx_hash] = TxReceipt(tx_hash, status, block, [transfer_log(value, **kw)])

    def get_transaction_receipt(self, tx_hash: str):
        if self.down:
            raise RpcError("connection refused")
        return self.receipts.get(tx_hash)

    def block_number(self) -> int:
        if self.down:
            raise RpcError("connection refused")
        return self.head

    def call(self, to: str, data: str) -> str:
        if self.down:
            raise RpcError("connection refused")
        return hex(self.balances.get("0x" + data[-40:], 0))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def authorizer(clock, chain):
    signatures = SignatureDispatcher(
        [EnhancedHmacStrategy({"test-key": SECRET}, "test-key", clock=clock)],
        "enhanced-hmac",
    )
    sk, _ = gen_ed25519_keypair()
    return PaymentAuthorizer(
        orders=OrderStore(clock=clock),
        signatures=signatures,
        chain=ChainVerifier(chain, TOKEN, 6),
        state_signer=PaymentStateSigner(sk, clock=clock),
        pricing=TablePricing({"D1": "0.01", "D2": "0.005"}, "0.02"),
        terms=PaymentTerms(token=TOKEN, recipient=RECIPIENT),
    )
