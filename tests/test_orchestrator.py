import threading

import pytest

from paygate.authz import AuthState, PaymentAuthorizer, PaymentClaim
from paygate.errors import Reason
from paygate.orders import iso_utc
from paygate.settings import Settings
from paygate.signing import parse_requirements_header

from conftest import RECIPIENT, TOKEN, FakeChain


def _claim(challenge, tx_hash="0xpaid", **overrides):
    meta = {"txHash": tx_hash, "orderId": challenge.order_id, "nonce": challenge.nonce}
    meta.update(overrides)
    return PaymentClaim(
        amount=challenge.requirements.amount,
        currency="USDC",
        network=challenge.requirements.chain,
        recipient=challenge.requirements.to,
        metadata=meta,
    )


def _pay(authorizer, challenge, claim):
    return authorizer.verify_payment(challenge.requirements_header, challenge.signature, claim)


def test_challenge_carries_signed_requirements(authorizer, clock):
    ch = authorizer.issue_challenge("D1", "play")
    assert ch.state is AuthState.CHALLENGED
    req = parse_requirements_header(ch.requirements_header)
    assert req.amount == "0.010"
    assert req.order_id == ch.order_id and req.nonce == ch.nonce
    assert req.to == RECIPIENT
    assert ch.expires_at == clock.now + 300
    assert ch.signature.startswith("v2=")
    body = ch.body()
    assert body["payment"]["accepts"][0]["amount"] == "0.010"
    assert body["payment"]["metadata"]["deviceId"] == "D1"


def test_end_to_end_verified_then_replay_rejected(authorizer, chain):
    chain.head = 103
    chain.add_transfer("0xpaid", 10_000, block=100)
    ch = authorizer.issue_challenge("D1", "play")

    result = _pay(authorizer, ch, _claim(ch))
    assert result.state is AuthState.VERIFIED
    assert result.confirmations == 3
    assert result.payment_state.startswith("paid; ")
    assert authorizer.state_signer.verify(result.payment_state).valid

    replay = _pay(authorizer, ch, _claim(ch))
    assert replay.state is AuthState.REJECTED
    assert replay.reason is Reason.ORDER_ALREADY_USED


def test_insufficient_confirmations_leaves_order_redeemable(authorizer, chain):
    authorizer.terms.min_confirmations = 5
    chain.head = 102
    chain.add_transfer("0xpaid", 10_000, block=100)
    ch = authorizer.issue_challenge("D1", "play")

    first = _pay(authorizer, ch, _claim(ch))
    assert first.reason is Reason.INSUFFICIENT_CONFIRMATIONS
    assert first.confirmations == 2
    assert first.reason.recoverable
    assert not authorizer.orders.is_used(ch.order_id)

    chain.head = 105
    assert _pay(authorizer, ch, _claim(ch)).verified


def test_underpayment_rejected(authorizer, chain):
    chain.add_transfer("0xpaid", 9_999, block=90)
    ch = authorizer.issue_challenge("D1", "play")
    result = _pay(authorizer, ch, _claim(ch))
    assert result.reason is Reason.NO_MATCHING_TRANSFER
    assert not authorizer.orders.is_used(ch.order_id)


def test_tampered_requirements_rejected_before_order_lookup(authorizer, chain):
    chain.add_transfer("0xpaid", 10_000, block=90)
    ch = authorizer.issue_challenge("D1", "play")
    cheaper = ch.requirements_header.replace('amount="0.010"', 'amount="0.001"')
    result = authorizer.verify_payment(cheaper, ch.signature, _claim(ch))
    assert result.reason is Reason.SIGNATURE_MISMATCH


def test_claim_must_name_the_signed_order(authorizer, chain):
    chain.add_transfer("0xpaid", 10_000, block=90)
    first = authorizer.issue_challenge("D1", "play")
    second = authorizer.issue_challenge("D1", "play")
    # Valid requirements for one order, claim redeeming the other
    claim = _claim(second)
    result = _pay(authorizer, first, claim)
    assert result.reason is Reason.CLAIM_MISMATCH


def test_expired_challenge(authorizer, chain, clock):
    chain.add_transfer("0xpaid", 10_000, block=90)
    ch = authorizer.issue_challenge("D1", "play")
    clock.advance(301)
    result = _pay(authorizer, ch, _claim(ch))
    # The signature window (300s) closes at the same time as the order
    assert result.reason in (Reason.EXPIRED_SIGNATURE, Reason.ORDER_EXPIRED)


def test_unknown_order(authorizer, chain):
    ch = authorizer.issue_challenge("D1", "play")
    authorizer.orders.reset()
    assert _pay(authorizer, ch, _claim(ch)).reason is Reason.ORDER_NOT_FOUND


def test_malformed_inputs_are_not_recoverable(authorizer):
    ch = authorizer.issue_challenge("D1", "play")
    r = authorizer.verify_payment(ch.requirements_header, ch.signature, "%%%")
    assert r.reason is Reason.MALFORMED_INPUT and not r.reason.recoverable

    r = _pay(authorizer, ch, _claim(ch, tx_hash=None))
    assert r.reason is Reason.MALFORMED_INPUT

    r = authorizer.verify_payment(ch.requirements_header, "v7=zzz", _claim(ch))
    assert r.reason is Reason.UNSUPPORTED_SIGNATURE_VERSION


def test_chain_outage_is_recoverable(authorizer, chain):
    chain.add_transfer("0xpaid", 10_000, block=90)
    chain.down = True
    ch = authorizer.issue_challenge("D1", "play")
    r = _pay(authorizer, ch, _claim(ch))
    assert r.reason is Reason.CHAIN_UNAVAILABLE and r.reason.recoverable
    chain.down = False
    assert _pay(authorizer, ch, _claim(ch)).verified


def test_unexpected_chain_error_is_contained(authorizer, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(authorizer.chain, "verify_transfer", boom)
    ch = authorizer.issue_challenge("D1", "play")
    assert _pay(authorizer, ch, _claim(ch)).reason is Reason.CHAIN_UNAVAILABLE


def test_one_transaction_cannot_pay_two_orders(authorizer, chain):
    chain.add_transfer("0xpaid", 10_000, block=90)
    a = authorizer.issue_challenge("D1", "play")
    b = authorizer.issue_challenge("D1", "play")
    assert _pay(authorizer, a, _claim(a)).verified
    assert _pay(authorizer, b, _claim(b)).reason is Reason.TX_ALREADY_REDEEMED


def test_concurrent_redemption_has_one_winner(authorizer, chain):
    chain.add_transfer("0xpaid", 10_000, block=90)
    ch = authorizer.issue_challenge("D1", "play")
    claim = _claim(ch)
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(_pay(authorizer, ch, claim))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(r.verified for r in results) == 1
    assert {r.reason for r in results if not r.verified} == {Reason.ORDER_ALREADY_USED}


def test_payment_response_document(authorizer, chain):
    chain.add_transfer("0xpaid", 10_000, block=90)
    ch = authorizer.issue_challenge("D1", "play")
    claim = _claim(ch)
    result = _pay(authorizer, ch, claim)
    doc = authorizer.payment_response(claim, result)
    assert doc["paymentId"] == ch.order_id
    assert doc["txHash"] == "0xpaid"
    assert doc["amount"] == "0.010" and doc["currency"] == "USDC"
    assert result.as_dict()["state"] == "verified"


def test_audit_timestamps_follow_injected_clock(authorizer, chain, clock):
    chain.add_transfer("0xpaid", 10_000, block=90)
    ch = authorizer.issue_challenge("D1", "play")
    assert ch.metadata["timestamp"] == iso_utc(clock.now)
    clock.advance(42)
    claim = _claim(ch)
    doc = authorizer.payment_response(claim, _pay(authorizer, ch, claim))
    assert doc["timestamp"] == iso_utc(clock.now)


def test_transfer_checked_against_signed_token(authorizer, chain):
    other = "0x" + "44" * 20
    chain.add_transfer("0xpaid", 10_000, block=90)
    chain.add_transfer("0xother", 10_000, block=90, token=other)
    signed_for_old = authorizer.issue_challenge("D1", "play")
    # Token reconfigured while the first challenge is outstanding
    authorizer.chain.token_address = other
    authorizer.terms.token = other
    assert _pay(authorizer, signed_for_old, _claim(signed_for_old)).verified

    signed_for_new = authorizer.issue_challenge("D1", "play")
    assert parse_requirements_header(signed_for_new.requirements_header).token == other
    assert _pay(authorizer, signed_for_new, _claim(signed_for_new, tx_hash="0xother")).verified
    stale = authorizer.issue_challenge("D1", "play")
    authorizer.chain.token_address = TOKEN
    assert _pay(authorizer, stale, _claim(stale, tx_hash="0xpaid")).reason is Reason.NO_MATCHING_TRANSFER


def test_admin_helpers(authorizer):
    out = authorizer.rotate_key("prod-2025-03-01", "r" * 32)
    assert out["current_kid"] == "prod-2025-03-01"
    assert authorizer.key_health()["valid"]
    stats = authorizer.stats()
    assert stats["strategy"] == "enhanced-hmac"
    assert stats["signatures"]["enhanced-hmac"]["key_count"] == 2
    assert "total_orders" in stats["orders"]


def test_from_settings_wires_collaborators(tmp_path):
    cfg = Settings(paygate_data_dir=tmp_path, x402_hmac_keys={"k": "k" * 32}, payment_min_confirmations=2)
    chain = FakeChain(head=10)
    authorizer = PaymentAuthorizer.from_settings(cfg, chain_client=chain)
    assert (tmp_path / "keys" / "state_signing_key_ed25519.b64").exists()
    ch = authorizer.issue_challenge("ESP32_002", "play")
    assert ch.requirements.amount == "0.005"
    assert ch.requirements.min_confirmations == 2

    chain.add_transfer("0xt", 5_000, block=9, token=cfg.payment_token_address.lower())
    result = _pay(authorizer, ch, _claim(ch, tx_hash="0xt"))
    assert result.reason is Reason.INSUFFICIENT_CONFIRMATIONS and result.confirmations == 1


@pytest.mark.parametrize("min_conf,head,verified", [(0, 100, True), (3, 103, True), (3, 102, False)])
def test_confirmation_threshold(authorizer, chain, min_conf, head, verified):
    authorizer.terms.min_confirmations = min_conf
    chain.head = head
    chain.add_transfer("0xpaid", 10_000, block=100)
    ch = authorizer.issue_challenge("D1", "play")
    assert _pay(authorizer, ch, _claim(ch)).verified is verified
