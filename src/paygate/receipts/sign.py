"""Ed25519-signed "paid" state receipts.

Issued once a payment is verified; downstream session issuance checks it
with ``verify_state_header``. The header form is::

    paid; chain="eip155:84532"; tx_hash="0x..."; confirmations="3";
    order_id="ord_..."; iat="1700000000"; exp="1700000300"; kid="..."; sig="<b64>"

``sig`` covers the sorted-key compact JSON of every other field.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable

from nacl.encoding import RawEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from ..errors import Reason
from ..signing.base import Verdict

logger = logging.getLogger(__name__)

_PAIR_RE = re.compile(r'(\w+)="([^"]*)"')
_FIELDS = ("chain", "tx_hash", "confirmations", "order_id", "iat", "exp", "kid")


def canonical_payload(core: dict[str, Any]) -> bytes:
    return json.dumps(core, sort_keys=True, separators=(",", ":")).encode()


def gen_ed25519_keypair() -> tuple[bytes, bytes]:
    sk = SigningKey.generate()
    return bytes(sk), bytes(sk.verify_key)


def key_id_for(vk_bytes: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(vk_bytes).digest()[:12]).decode().rstrip("=")


def load_or_create_state_key(keys_dir: Path) -> tuple[bytes, bytes]:
    """Load the receipt key pair from ``keys_dir``, generating it when missing."""
    sk_file = keys_dir / "state_signing_key_ed25519.b64"
    vk_file = keys_dir / "state_verify_key_ed25519.b64"
    keys_dir.mkdir(parents=True, exist_ok=True)
    if not sk_file.exists() or not vk_file.exists():
        sk, vk = gen_ed25519_keypair()
        sk_file.write_text(base64.b64encode(sk).decode())
        vk_file.write_text(base64.b64encode(vk).decode())
        logger.info("Generated payment-state signing key in %s", keys_dir)
    sk = base64.b64decode(sk_file.read_text().strip())
    vk = base64.b64decode(vk_file.read_text().strip())
    return sk, vk


class PaymentStateSigner:
    def __init__(
        self,
        sk_bytes: bytes,
        ttl_seconds: int = 300,
        future_skew_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._sk = SigningKey(sk_bytes)
        self.verify_key = bytes(self._sk.verify_key)
        self.kid = key_id_for(self.verify_key)
        self.ttl_seconds = ttl_seconds
        self.future_skew_seconds = future_skew_seconds
        self._clock = clock

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.verify_key).decode()

    def issue(self, tx_hash: str, confirmations: int, chain: str, order_id: str) -> str:
        iat = int(self._clock())
        core = {
            "chain": chain,
            "tx_hash": tx_hash,
            "confirmations": str(confirmations),
            "order_id": order_id,
            "iat": str(iat),
            "exp": str(iat + self.ttl_seconds),
            "kid": self.kid,
        }
        sig = self._sk.sign(canonical_payload(core), encoder=RawEncoder).signature
        parts = [f'{k}="{core[k]}"' for k in _FIELDS]
        parts.append(f'sig="{base64.b64encode(sig).decode()}"')
        return "paid; " + "; ".join(parts)

    def verify(self, header: str) -> Verdict:
        return verify_state_header(header, self.verify_key, self.future_skew_seconds, self._clock)


def parse_state_header(header: str) -> dict[str, str] | None:
    if not header or not header.startswith("paid;"):
        return None
    fields = dict(_PAIR_RE.findall(header))
    if any(not fields.get(k) for k in (*_FIELDS, "sig")):
        return None
    return fields


def verify_state_header(
    header: str,
    vk_bytes: bytes,
    future_skew_seconds: int = 60,
    clock: Callable[[], float] = time.time,
) -> Verdict:
    fields = parse_state_header(header)
    if fields is None:
        return Verdict.reject(Reason.MALFORMED_INPUT, "not a payment state header")
    try:
        iat, exp = int(fields["iat"]), int(fields["exp"])
        int(fields["confirmations"])
        sig = base64.b64decode(fields["sig"], validate=True)
    except ValueError as e:
        return Verdict.reject(Reason.MALFORMED_INPUT, str(e))
    audit = {"key_id": fields["kid"], "timestamp": iat, "expires_at": exp, "algorithm": "ed25519"}
    if fields["kid"] != key_id_for(vk_bytes):
        return Verdict.reject(Reason.UNKNOWN_KEY, "state signed by a different key", **audit)
    core = {k: fields[k] for k in _FIELDS}
    try:
        VerifyKey(vk_bytes).verify(canonical_payload(core), sig, encoder=RawEncoder)
    except (BadSignatureError, ValueError):
        return Verdict.reject(Reason.SIGNATURE_MISMATCH, "state signature mismatch", **audit)
    now = int(clock())
    if now > exp:
        return Verdict.reject(Reason.EXPIRED_SIGNATURE, "payment state expired", **audit)
    if now < iat - future_skew_seconds:
        return Verdict.reject(Reason.FUTURE_SIGNATURE, "payment state from the future", **audit)
    return Verdict(True, claims=core, **audit)
