from __future__ import annotations

import base64
import hmac
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response

from ..authz import Challenge, PaymentAuthorizer, parse_payment_header
from ..errors import MalformedInput, Reason
from ..orders import OrderSweeper
from ..settings import settings
from .models import CommandAccepted, PaymentRejection, RotateKeyRequest, StateVerifyRequest

logger = logging.getLogger(__name__)

REQUIREMENTS_HEADER = "X-Payment-Requirements"
SIGNATURE_HEADER = "X-Payment-Signature"
PAYMENT_HEADER = "X-PAYMENT"
STATE_HEADER = "X-Payment-State"
RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

_authorizer: PaymentAuthorizer | None = None
_sweeper: OrderSweeper | None = None


def get_authorizer() -> PaymentAuthorizer:
    """Build the process-wide authorizer from settings on first use."""
    global _authorizer
    if _authorizer is None:
        _authorizer = PaymentAuthorizer.from_settings(settings)
    return _authorizer


def set_authorizer(authorizer: PaymentAuthorizer | None) -> None:
    global _authorizer
    _authorizer = authorizer


@asynccontextmanager
async def lifespan(_app: FastAPI):
    global _sweeper
    authz = get_authorizer()
    _sweeper = OrderSweeper(authz.orders, settings.order_sweep_interval_seconds)
    _sweeper.start()
    logger.info("Payment gateway started (strategy=%s)", authz.signatures.active.name)
    try:
        yield
    finally:
        _sweeper.stop()
        _sweeper = None


app = FastAPI(title="Paygate x402 payment authorization", lifespan=lifespan)


def _json(status: int, body: dict, headers: dict[str, str] | None = None) -> Response:
    return Response(
        status_code=status,
        media_type="application/json",
        content=json.dumps(body),
        headers=headers,
    )


def _challenge_response(challenge: Challenge, extra: dict | None = None) -> Response:
    body = challenge.body()
    if extra:
        body.update(extra)
    headers = {
        REQUIREMENTS_HEADER: challenge.requirements_header,
        SIGNATURE_HEADER: challenge.signature,
        "WWW-Authenticate": f'Payment realm="paygate", order_id="{challenge.order_id}"',
    }
    return _json(402, body, headers)


def _rejection(reason: Reason, detail: str | None = None, **extra) -> PaymentRejection:
    return PaymentRejection(
        error="Payment verification failed",
        reason=reason.value,
        recoverable=reason.recoverable,
        detail=detail,
        **extra,
    )


def _require_admin(request: Request) -> None:
    if not settings.admin_token:
        raise HTTPException(404, "admin routes disabled")
    supplied = request.headers.get("x-admin-token", "")
    if not hmac.compare_digest(supplied.encode(), settings.admin_token.encode()):
        raise HTTPException(401, "invalid admin token")


@app.get("/health")
@app.get("/healthz")
def health():
    return {"ok": True}


@app.post("/devices/{device_id}/commands/{command}")
def execute_command(device_id: str, command: str, request: Request):
    authz = get_authorizer()
    payment = request.headers.get(PAYMENT_HEADER)
    if not payment:
        return _challenge_response(authz.issue_challenge(device_id, command))

    try:
        claim = parse_payment_header(payment)
    except MalformedInput as e:
        return _json(400, _rejection(Reason.MALFORMED_INPUT, str(e)).model_dump(exclude_none=True))

    result = authz.verify_payment(
        request.headers.get(REQUIREMENTS_HEADER, ""),
        request.headers.get(SIGNATURE_HEADER, ""),
        claim,
    )
    if not result.verified:
        body = _rejection(
            result.reason,
            result.detail,
            confirmations=result.confirmations,
            order_id=result.order_id,
        ).model_dump(exclude_none=True)
        return _json(402 if result.reason.recoverable else 400, body)

    response_doc = authz.payment_response(claim, result)
    accepted = CommandAccepted(
        device_id=device_id,
        command=command,
        order_id=result.order_id,
        tx_hash=result.tx_hash,
        confirmations=result.confirmations,
    )
    headers = {
        STATE_HEADER: result.payment_state,
        RESPONSE_HEADER: base64.b64encode(json.dumps(response_doc).encode()).decode(),
    }
    logger.info("Command %s authorized for device %s (order %s)", command, device_id, result.order_id)
    return _json(200, accepted.model_dump(), headers)


@app.get("/.well-known/jwks.json")
def jwks():
    strategy = get_authorizer().signatures.strategy("jws")
    if strategy is None:
        return {"keys": []}
    return strategy.jwks()


@app.post("/payments/state/verify")
def verify_payment_state(req: StateVerifyRequest):
    verdict = get_authorizer().state_signer.verify(req.header)
    body = verdict.as_dict()
    if verdict.valid:
        body["claims"] = verdict.claims
        return body
    return _json(401, body)


@app.post("/admin/keys/rotate")
def rotate_key(req: RotateKeyRequest, request: Request):
    _require_admin(request)
    try:
        return get_authorizer().rotate_key(req.kid, req.secret, req.algorithm)
    except ValueError as e:
        raise HTTPException(400, str(e))


@app.get("/admin/keys/health")
def key_health(request: Request):
    _require_admin(request)
    return get_authorizer().key_health()


@app.get("/admin/stats")
def stats(request: Request):
    _require_admin(request)
    return get_authorizer().stats()
