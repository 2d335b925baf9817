from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable

from ..errors import MalformedInput, Reason, RpcError
from .rpc import ChainClient, LogEntry

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
BALANCE_OF_SELECTOR = "0x70a08231"


def to_base_units(amount: str, decimals: int) -> int:
    """``"0.010"`` with 6 decimals -> ``10000``. Rejects excess precision."""
    try:
        d = Decimal(amount)
    except InvalidOperation as e:
        raise MalformedInput(f"invalid amount {amount!r}") from e
    if not d.is_finite() or d < 0:
        raise MalformedInput(f"invalid amount {amount!r}")
    scaled = d.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise MalformedInput(f"amount {amount!r} has more than {decimals} decimals")
    return int(scaled)


def format_units(value: int, decimals: int) -> str:
    return format(Decimal(value).scaleb(-decimals).normalize(), "f")


@dataclass
class Transfer:
    sender: str
    recipient: str
    value: int


def decode_transfer(log: LogEntry) -> Transfer | None:
    """Decode an ERC-20 ``Transfer`` event; returns None for anything else."""
    if len(log.topics) != 3 or log.topics[0].lower() != TRANSFER_TOPIC:
        return None
    try:
        value = int(log.data, 16) if log.data not in ("", "0x") else 0
    except ValueError:
        return None
    return Transfer(
        sender="0x" + log.topics[1][-40:].lower(),
        recipient="0x" + log.topics[2][-40:].lower(),
        value=value,
    )


@dataclass
class TransferVerification:
    verified: bool
    reason: Reason | None = None
    detail: str | None = None
    confirmations: int | None = None
    amount: str | None = None
    amount_units: int | None = None
    sender: str | None = None
    block_number: int | None = None


class ChainVerifier:
    """Checks that a transaction really paid the expected recipient."""

    def __init__(self, client: ChainClient, token_address: str, decimals: int = 6):
        self.client = client
        self.token_address = token_address.lower()
        self.decimals = decimals

    def verify_transfer(
        self,
        tx_hash: str,
        expected_recipient: str,
        min_amount: str | int,
        min_confirmations: int = 0,
        token_address: str | None = None,
    ) -> TransferVerification:
        """``min_amount`` is a decimal string in token units or an int in base units.

        ``token_address`` overrides the configured token for this check.
        """
        if isinstance(min_amount, int):
            min_units = min_amount
        else:
            try:
                min_units = to_base_units(min_amount, self.decimals)
            except MalformedInput as e:
                return TransferVerification(False, Reason.MALFORMED_INPUT, str(e))
        try:
            receipt = self.client.get_transaction_receipt(tx_hash)
            if receipt is None:
                return TransferVerification(False, Reason.CHAIN_RECEIPT_MISSING, "transaction not found")
            if receipt.status != 1:
                return TransferVerification(
                    False, Reason.CHAIN_RECEIPT_FAILED, "transaction failed", block_number=receipt.block_number
                )
            current = self.client.block_number()
        except RpcError as e:
            logger.warning("Chain verification of %s failed: %s", tx_hash, e)
            return TransferVerification(False, Reason.CHAIN_UNAVAILABLE, str(e))

        confirmations = max(0, current - receipt.block_number)
        if confirmations < min_confirmations:
            return TransferVerification(
                False,
                Reason.INSUFFICIENT_CONFIRMATIONS,
                f"insufficient confirmations: {confirmations}/{min_confirmations}",
                confirmations=confirmations,
                block_number=receipt.block_number,
            )

        recipient = expected_recipient.lower()
        token = (token_address or self.token_address).lower()
        for log in receipt.logs:
            if log.address.lower() != token:
                continue
            transfer = decode_transfer(log)
            if transfer and transfer.recipient == recipient and transfer.value >= min_units:
                return TransferVerification(
                    True,
                    confirmations=confirmations,
                    amount=format_units(transfer.value, self.decimals),
                    amount_units=transfer.value,
                    sender=transfer.sender,
                    block_number=receipt.block_number,
                )
        return TransferVerification(
            False,
            Reason.NO_MATCHING_TRANSFER,
            "no qualifying token transfer found",
            confirmations=confirmations,
            block_number=receipt.block_number,
        )

    def get_confirmations(self, block_number: int) -> int:
        try:
            return max(0, self.client.block_number() - block_number)
        except RpcError:
            logger.exception("Failed to get confirmations")
            return 0

    def check_balance(self, address: str) -> str:
        data = BALANCE_OF_SELECTOR + address.lower().removeprefix("0x").rjust(64, "0")
        try:
            raw = self.client.call(self.token_address, data)
            return format_units(int(raw, 16) if raw not in ("", "0x") else 0, self.decimals)
        except (RpcError, ValueError):
            logger.exception("Failed to check balance of %s", address)
            return "0"

    def wait_for_confirmations(
        self,
        tx_hash: str,
        target_confirmations: int,
        max_wait_seconds: float = 60.0,
        poll_interval_seconds: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> bool:
        """Best-effort polling helper; callers must still re-check via ``verify_transfer``."""
        deadline = clock() + max_wait_seconds
        while clock() < deadline:
            try:
                receipt = self.client.get_transaction_receipt(tx_hash)
                if receipt is not None:
                    if self.client.block_number() - receipt.block_number >= target_confirmations:
                        return True
            except RpcError as e:
                logger.debug("Polling %s: %s", tx_hash, e)
            sleep(poll_interval_seconds)
        return False
