"""Payment Requirements model and its header codec.

The header is the exact byte string every strategy signs, so field order is
fixed::

    scheme="exact", chain="eip155:84532", token="0x...", amount="0.010",
    currency="USDC", to="0x...", min_confirmations="0", order_id="ord_...",
    nonce="nx_...", nonce_exp="2025-01-01T00:05:00.000Z"[, callback="..."]
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, field_validator

from ..errors import MalformedInput

_PAIR_RE = re.compile(r'(\w+)="([^"]*)"')
_REQUIRED = ("scheme", "chain", "token", "amount", "to", "order_id", "nonce", "nonce_exp")


class PaymentRequirements(BaseModel):
    scheme: str
    chain: str
    token: str
    amount: str  # decimal string in currency units, never a float
    currency: str = "USDC"
    to: str
    min_confirmations: int = 0
    order_id: str
    nonce: str
    nonce_exp: str
    callback: str | None = None

    @field_validator("amount")
    @classmethod
    def _decimal_amount(cls, v: str) -> str:
        try:
            d = Decimal(v)
        except InvalidOperation as e:
            raise ValueError(f"amount is not a decimal string: {v!r}") from e
        if not d.is_finite() or d < 0:
            raise ValueError(f"amount must be a non-negative decimal: {v!r}")
        return v

    @field_validator("min_confirmations")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("min_confirmations must be >= 0")
        return v

    def to_header(self) -> str:
        return format_requirements_header(self)


def format_requirements_header(req: PaymentRequirements) -> str:
    pairs = [
        ("scheme", req.scheme),
        ("chain", req.chain),
        ("token", req.token),
        ("amount", req.amount),
        ("currency", req.currency),
        ("to", req.to),
        ("min_confirmations", str(req.min_confirmations)),
        ("order_id", req.order_id),
        ("nonce", req.nonce),
        ("nonce_exp", req.nonce_exp),
    ]
    if req.callback:
        pairs.append(("callback", req.callback))
    for name, value in pairs:
        if '"' in value:
            raise MalformedInput(f"field {name} may not contain a double quote")
    return ", ".join(f'{name}="{value}"' for name, value in pairs)


def parse_requirements_header(header: str) -> PaymentRequirements:
    """Parse a requirements header; raises ``MalformedInput`` on any defect."""
    if not header:
        raise MalformedInput("empty payment requirements header")
    fields = dict(_PAIR_RE.findall(header))
    missing = [name for name in _REQUIRED if not fields.get(name)]
    if missing:
        raise MalformedInput(f"missing requirement fields: {', '.join(missing)}")
    try:
        return PaymentRequirements(
            scheme=fields["scheme"],
            chain=fields["chain"],
            token=fields["token"],
            amount=fields["amount"],
            currency=fields.get("currency") or "USDC",
            to=fields["to"],
            min_confirmations=int(fields.get("min_confirmations") or 0),
            order_id=fields["order_id"],
            nonce=fields["nonce"],
            nonce_exp=fields["nonce_exp"],
            callback=fields.get("callback") or None,
        )
    except ValueError as e:  # pydantic ValidationError is a ValueError
        raise MalformedInput(f"invalid payment requirements: {e}") from e
