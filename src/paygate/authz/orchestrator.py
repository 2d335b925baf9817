"""Payment authorization state machine.

``NoChallenge -> Challenged`` via ``issue_challenge``; ``Challenged ->
Verified | Rejected`` via ``verify_payment``. Unredeemed challenges are never
explicitly rejected: the order sweeper reclaims them after expiry.

Verification runs four independent gates (signature, order, chain, consume)
and consuming the order is the only mutation, performed last.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..chain import ChainClient, ChainVerifier, JsonRpcClient, TransferVerification
from ..errors import MalformedInput, Reason
from ..orders import OrderStore, iso_utc
from ..pricing import CommandPricing, TablePricing
from ..receipts import PaymentStateSigner, load_or_create_state_key
from ..settings import Settings
from ..signing import PaymentRequirements, SignatureDispatcher, parse_requirements_header
from .claims import PaymentClaim, parse_payment_header

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    NO_CHALLENGE = "no_challenge"
    CHALLENGED = "challenged"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass
class PaymentTerms:
    scheme: str = "exact"
    chain_id: str = "eip155:84532"
    token: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    currency: str = "USDC"
    recipient: str = "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"
    min_confirmations: int = 0
    callback: str | None = None
    order_ttl_seconds: int = 300

    @classmethod
    def from_settings(cls, cfg: Settings) -> "PaymentTerms":
        return cls(
            scheme=cfg.payment_scheme,
            chain_id=cfg.payment_chain_id,
            token=cfg.payment_token_address,
            currency=cfg.payment_currency,
            recipient=cfg.payment_recipient,
            min_confirmations=cfg.payment_min_confirmations,
            callback=cfg.payment_callback_url,
            order_ttl_seconds=cfg.order_ttl_seconds,
        )


@dataclass
class Challenge:
    requirements: PaymentRequirements
    requirements_header: str
    signature: str
    order_id: str
    nonce: str
    expires_at: float
    metadata: dict[str, Any] = field(default_factory=dict)
    state: AuthState = AuthState.CHALLENGED

    @property
    def nonce_exp(self) -> str:
        return iso_utc(self.expires_at)

    def body(self) -> dict[str, Any]:
        req = self.requirements
        return {
            "message": "Payment Required",
            "orderId": self.order_id,
            "nonce": self.nonce,
            "nonceExp": self.nonce_exp,
            "payment": {
                "accepts": [
                    {
                        "scheme": req.scheme,
                        "network": req.chain,
                        "asset": req.token,
                        "amount": req.amount,
                        "currency": req.currency,
                        "recipient": req.to,
                        "minConfirmations": req.min_confirmations,
                    }
                ],
                "metadata": self.metadata,
            },
        }


@dataclass
class AuthorizationResult:
    state: AuthState
    reason: Reason | None = None
    detail: str | None = None
    confirmations: int | None = None
    tx_hash: str | None = None
    order_id: str | None = None
    payment_state: str | None = None
    key_id: str | None = None
    transfer: TransferVerification | None = None

    @property
    def verified(self) -> bool:
        return self.state is AuthState.VERIFIED

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"state": self.state.value}
        if self.reason is not None:
            out["reason"] = self.reason.value
            out["recoverable"] = self.reason.recoverable
        for name in ("detail", "confirmations", "tx_hash", "order_id", "key_id"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


def _reject(reason: Reason, detail: str | None = None, **kw: Any) -> AuthorizationResult:
    logger.info("Payment rejected: %s (%s)", reason.value, detail)
    return AuthorizationResult(AuthState.REJECTED, reason=reason, detail=detail, **kw)


class PaymentAuthorizer:
    def __init__(
        self,
        orders: OrderStore,
        signatures: SignatureDispatcher,
        chain: ChainVerifier,
        state_signer: PaymentStateSigner,
        pricing: CommandPricing,
        terms: PaymentTerms | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.orders = orders
        self.signatures = signatures
        self.chain = chain
        self.state_signer = state_signer
        self.pricing = pricing
        self.terms = terms or PaymentTerms()
        # Audit timestamps share the clock that drives order expiry
        self._clock = clock or orders._clock

    # -- NoChallenge -> Challenged -----------------------------------------

    def issue_challenge(
        self, device_id: str, command: str, metadata: dict[str, Any] | None = None
    ) -> Challenge:
        amount = self.pricing.price(device_id, command)
        meta = {"deviceId": device_id, "command": command, "amount": amount, **(metadata or {})}
        issued = self.orders.issue(self.terms.order_ttl_seconds, meta)
        requirements = PaymentRequirements(
            scheme=self.terms.scheme,
            chain=self.terms.chain_id,
            token=self.terms.token,
            amount=amount,
            currency=self.terms.currency,
            to=self.terms.recipient,
            min_confirmations=self.terms.min_confirmations,
            order_id=issued.order_id,
            nonce=issued.nonce,
            nonce_exp=issued.nonce_exp,
            callback=self.terms.callback,
        )
        signed = self.signatures.sign(requirements)
        logger.info("Issued challenge %s for %s/%s (%s %s)", issued.order_id, device_id, command, amount, self.terms.currency)
        return Challenge(
            requirements=requirements,
            requirements_header=signed.header,
            signature=signed.signature,
            order_id=issued.order_id,
            nonce=issued.nonce,
            expires_at=issued.expires_at,
            metadata={**meta, "timestamp": iso_utc(self._clock())},
        )

    # -- Challenged -> Verified | Rejected ---------------------------------

    def verify_payment(
        self,
        requirements_header: str,
        signature: str,
        claim: PaymentClaim | str,
    ) -> AuthorizationResult:
        if isinstance(claim, str):
            try:
                claim = parse_payment_header(claim)
            except MalformedInput as e:
                return _reject(Reason.MALFORMED_INPUT, str(e))

        # 1. signature
        verdict = self.signatures.verify(requirements_header or "", signature or "")
        if not verdict.valid:
            return _reject(verdict.reason or Reason.SIGNATURE_MISMATCH, verdict.detail, key_id=verdict.key_id)
        try:
            requirements = parse_requirements_header(requirements_header)
        except MalformedInput as e:
            return _reject(Reason.MALFORMED_INPUT, str(e))

        # 2. order
        order_id, nonce = claim.metadata.order_id, claim.metadata.nonce
        if not order_id or not nonce:
            return _reject(Reason.MALFORMED_INPUT, "claim carries no orderId/nonce")
        if order_id != requirements.order_id or nonce != requirements.nonce:
            return _reject(Reason.CLAIM_MISMATCH, "claim does not redeem the signed order", order_id=order_id)
        check = self.orders.validate(order_id, nonce)
        if not check.valid:
            return _reject(check.reason, order_id=order_id)

        # 3. chain
        tx_hash = claim.metadata.tx_hash
        if not tx_hash:
            return _reject(Reason.MALFORMED_INPUT, "claim carries no txHash", order_id=order_id)
        try:
            transfer = self.chain.verify_transfer(
                tx_hash,
                requirements.to,
                requirements.amount,
                requirements.min_confirmations,
                token_address=requirements.token,
            )
        except Exception as e:
            logger.exception("Chain verification raised for %s", tx_hash)
            return _reject(Reason.CHAIN_UNAVAILABLE, str(e), tx_hash=tx_hash, order_id=order_id)
        if not transfer.verified:
            return _reject(
                transfer.reason,
                transfer.detail,
                confirmations=transfer.confirmations,
                tx_hash=tx_hash,
                order_id=order_id,
                transfer=transfer,
            )

        # 4. consume (last and only mutation)
        redeemed = self.orders.redeem(order_id, nonce, tx_hash)
        if not redeemed.valid:
            return _reject(
                redeemed.reason,
                confirmations=transfer.confirmations,
                tx_hash=tx_hash,
                order_id=order_id,
            )

        # 5. paid state
        state = self.state_signer.issue(tx_hash, transfer.confirmations, requirements.chain, order_id)
        logger.info("Payment verified: order %s tx %s (%d confirmations)", order_id, tx_hash, transfer.confirmations)
        return AuthorizationResult(
            AuthState.VERIFIED,
            confirmations=transfer.confirmations,
            tx_hash=tx_hash,
            order_id=order_id,
            payment_state=state,
            key_id=verdict.key_id,
            transfer=transfer,
        )

    def payment_response(self, claim: PaymentClaim, result: AuthorizationResult) -> dict[str, Any]:
        return {
            "paymentId": result.order_id,
            "txHash": result.tx_hash or claim.metadata.tx_hash or "",
            "amount": claim.amount,
            "currency": claim.currency,
            "network": claim.network,
            "timestamp": iso_utc(self._clock()),
        }

    # -- administration ----------------------------------------------------

    def rotate_key(self, kid: str, secret: str | None = None, algorithm: str = "RS256") -> dict[str, Any]:
        """Rotate the current key of the active signing strategy."""
        active = self.signatures.active
        if active.name == "enhanced-hmac":
            removed = active.rotate_key(kid, secret)
        elif active.name == "jws":
            removed = active.rotate_key(kid, algorithm)
        else:
            raise ValueError("the legacy strategy has a single fixed secret and cannot rotate")
        return {"strategy": active.name, "current_kid": kid, "removed": removed}

    def key_health(self) -> dict[str, Any]:
        report = {s.name: s.validate_keys() for s in self.signatures.strategies}
        return {"valid": all(r["valid"] for r in report.values()), "strategies": report}

    def stats(self) -> dict[str, Any]:
        return {
            "strategy": self.signatures.active.name,
            "signatures": {s.name: s.stats() for s in self.signatures.strategies},
            "orders": self.orders.stats(),
        }

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        chain_client: ChainClient | None = None,
        pricing: CommandPricing | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "PaymentAuthorizer":
        client = chain_client or JsonRpcClient(cfg.rpc_url, timeout=cfg.rpc_timeout_seconds)
        sk, _vk = load_or_create_state_key(cfg.keys_dir)
        return cls(
            orders=OrderStore(cfg.order_retention_seconds, clock=clock),
            signatures=SignatureDispatcher.from_settings(cfg, clock=clock),
            chain=ChainVerifier(client, cfg.payment_token_address, cfg.payment_token_decimals),
            state_signer=PaymentStateSigner(
                sk, cfg.payment_state_ttl_seconds, cfg.signature_future_skew_seconds, clock=clock
            ),
            pricing=pricing or TablePricing.from_settings(cfg),
            terms=PaymentTerms.from_settings(cfg),
            clock=clock,
        )
