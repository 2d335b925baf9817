"""Error taxonomy shared by every verification step.

Verification never raises to its caller: each failure is folded into a
verdict carrying one of the ``Reason`` codes below. Exceptions are used
inside the engine (codecs, key stores, RPC transport) and are translated at
the component boundary.
"""
from __future__ import annotations

from enum import Enum


class Reason(str, Enum):
    MALFORMED_INPUT = "malformed_input"
    UNKNOWN_KEY = "unknown_key"
    EXPIRED_SIGNATURE = "expired_signature"
    FUTURE_SIGNATURE = "future_signature"
    SIGNATURE_MISMATCH = "signature_mismatch"
    UNSUPPORTED_SIGNATURE_VERSION = "unsupported_signature_version"
    ISSUER_MISMATCH = "issuer_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    ALGORITHM_MISMATCH = "algorithm_mismatch"
    ORDER_NOT_FOUND = "order_not_found"
    ORDER_ALREADY_USED = "order_already_used"
    ORDER_EXPIRED = "order_expired"
    NONCE_MISMATCH = "nonce_mismatch"
    TX_ALREADY_REDEEMED = "tx_already_redeemed"
    CLAIM_MISMATCH = "claim_mismatch"
    CHAIN_RECEIPT_MISSING = "chain_receipt_missing"
    CHAIN_RECEIPT_FAILED = "chain_receipt_failed"
    CHAIN_UNAVAILABLE = "chain_unavailable"
    INSUFFICIENT_CONFIRMATIONS = "insufficient_confirmations"
    NO_MATCHING_TRANSFER = "no_matching_transfer"

    @property
    def recoverable(self) -> bool:
        """False when the client speaks a different protocol and retrying cannot help."""
        return self not in (Reason.MALFORMED_INPUT, Reason.UNSUPPORTED_SIGNATURE_VERSION)


class PaygateError(Exception):
    """Base class for engine errors."""


class ConfigurationError(PaygateError):
    """Invalid key material or settings detected at startup."""


class MalformedInput(PaygateError):
    """A header, token or claim could not be parsed."""


class KeyNotFound(PaygateError):
    def __init__(self, kid: str):
        super().__init__(f"key not found: {kid}")
        self.kid = kid


class RpcError(PaygateError):
    """Transport or JSON-RPC level failure talking to the chain node."""


__all__ = [
    "Reason",
    "PaygateError",
    "ConfigurationError",
    "MalformedInput",
    "KeyNotFound",
    "RpcError",
]
