from .rpc import ChainClient, JsonRpcClient, LogEntry, TxReceipt, parse_receipt
from .verifier import (
    TRANSFER_TOPIC,
    ChainVerifier,
    Transfer,
    TransferVerification,
    decode_transfer,
    format_units,
    to_base_units,
)

__all__ = [
    "ChainClient",
    "ChainVerifier",
    "JsonRpcClient",
    "LogEntry",
    "TRANSFER_TOPIC",
    "Transfer",
    "TransferVerification",
    "TxReceipt",
    "decode_transfer",
    "format_units",
    "parse_receipt",
    "to_base_units",
]
