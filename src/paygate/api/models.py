from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class StateVerifyRequest(BaseModel):
    header: str = Field(min_length=1)


class RotateKeyRequest(BaseModel):
    kid: str = Field(min_length=1)
    secret: str | None = None  # enhanced-hmac only; generated when omitted
    algorithm: Literal["RS256", "ES256"] = "RS256"  # jws only


class PaymentRejection(BaseModel):
    error: str
    reason: str
    recoverable: bool
    detail: str | None = None
    confirmations: int | None = None
    order_id: str | None = None


class CommandAccepted(BaseModel):
    status: Literal["ok"] = "ok"
    device_id: str
    command: str
    order_id: str
    tx_hash: str
    confirmations: int
