from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import MalformedInput


class ClaimMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    tx_hash: str | None = Field(default=None, alias="txHash")
    order_id: str | None = Field(default=None, alias="orderId")
    nonce: str | None = None


class PaymentClaim(BaseModel):
    """What the payer says they paid; carried base64(JSON) in ``X-PAYMENT``."""

    amount: str = Field(min_length=1)
    currency: str = Field(min_length=1)
    network: str = Field(min_length=1)
    recipient: str = Field(min_length=1)
    metadata: ClaimMetadata = Field(default_factory=ClaimMetadata)

    def encode(self) -> str:
        doc = self.model_dump(by_alias=True, exclude_none=True)
        return base64.b64encode(json.dumps(doc).encode()).decode()


def parse_payment_header(header: str) -> PaymentClaim:
    if not header:
        raise MalformedInput("empty payment header")
    try:
        doc: Any = json.loads(base64.b64decode(header, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise MalformedInput(f"payment header is not base64 JSON: {e}") from e
    if not isinstance(doc, dict):
        raise MalformedInput("payment header must encode an object")
    try:
        return PaymentClaim.model_validate(doc)
    except ValidationError as e:
        raise MalformedInput(f"invalid payment claim: {e.error_count()} error(s)") from e
