from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

from ..errors import Reason
from .base import LEGACY_PREFIX, SignatureStrategy, SignedRequirements, Verdict
from .requirements import PaymentRequirements

logger = logging.getLogger(__name__)


def hmac_sha256_hex(data: str, secret: str) -> str:
    return hmac.new(secret.encode(), data.encode(), hashlib.sha256).hexdigest()


class LegacyHmacStrategy(SignatureStrategy):
    """Unversioned single-secret HMAC (``v1=<hex>``). Kept for old clients only."""

    prefix = LEGACY_PREFIX
    name = "legacy"

    def __init__(self, secret: str | None):
        if not secret:
            secret = secrets.token_hex(32)
            logger.warning(
                "No legacy HMAC secret configured; generated emergency secret %s...",
                secret[:8],
            )
            self.emergency = True
        else:
            self.emergency = False
        self._secret = secret

    def sign(self, requirements: PaymentRequirements) -> SignedRequirements:
        header = requirements.to_header()
        return SignedRequirements(header, f"{self.prefix}={hmac_sha256_hex(header, self._secret)}")

    def verify(self, requirements_header: str, token: str) -> Verdict:
        if not token.startswith(f"{self.prefix}="):
            return Verdict.reject(Reason.UNSUPPORTED_SIGNATURE_VERSION, "not a v1 signature")
        presented = token[len(self.prefix) + 1 :]
        expected = hmac_sha256_hex(requirements_header, self._secret)
        ok = hmac.compare_digest(presented.encode(), expected.encode())
        if not ok:
            return Verdict.reject(
                Reason.SIGNATURE_MISMATCH,
                "legacy signature mismatch",
                key_id="legacy",
                algorithm="HS256",
                version=self.prefix,
            )
        return Verdict(True, key_id="legacy", algorithm="HS256", version=self.prefix)

    def key_info(self) -> dict:
        return {"current_kid": "legacy", "available_kids": ["legacy"]}

    def validate_keys(self) -> dict:
        issues = []
        if len(self._secret) < 32:
            issues.append(f"Key 'legacy' is too short ({len(self._secret)} < 32)")
        if self.emergency:
            issues.append("Legacy strategy is using a generated emergency secret")
        return {"valid": not issues, "issues": issues}

    def stats(self) -> dict:
        return {"key_count": 1, "current_key_id": "legacy"}
