"""Multi-key, timestamped HMAC signatures (``v2=`` tokens).

Token layout: ``v2=`` + base64(JSON ``{"v": "v2", "ts": <unix>, "kid": <key id>,
"sig": <hex>}``) where ``sig`` is HMAC-SHA256 over ``header + "|ts=" + ts``.
"""
from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import re
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping

from ..errors import ConfigurationError, KeyNotFound, Reason
from .base import ENHANCED_PREFIX, SignatureStrategy, SignedRequirements, Verdict
from .legacy import hmac_sha256_hex
from .requirements import PaymentRequirements

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32
PROTECTED_KIDS = ("default", "emergency")
_DATE_SUFFIX_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})$")


@dataclass
class HmacKey:
    kid: str
    secret: str
    created_at: float


def select_current_kid(kids: list[str]) -> str:
    """Fallback order when no current key is designated: prod-*, dev-*, default, first."""
    for prefix in ("prod-", "dev-"):
        for kid in kids:
            if kid.startswith(prefix):
                return kid
    if "default" in kids:
        return "default"
    return kids[0]


class EnhancedHmacStrategy(SignatureStrategy):
    prefix = ENHANCED_PREFIX
    name = "enhanced-hmac"

    def __init__(
        self,
        keys: Mapping[str, str],
        current_kid: str | None = None,
        *,
        max_keys: int = 5,
        max_age_seconds: int = 300,
        future_skew_seconds: int = 60,
        production: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.max_keys = max_keys
        self.max_age_seconds = max_age_seconds
        self.future_skew_seconds = future_skew_seconds
        self.production = production
        self._clock = clock
        self._keys: OrderedDict[str, HmacKey] = OrderedDict()
        self._lock = threading.Lock()
        now = clock()
        for kid, secret in keys.items():
            self._keys[kid] = HmacKey(kid, secret, now)
            logger.info("Loaded HMAC key: %s", kid)

        if not self._keys:
            secret = secrets.token_hex(32)
            self._keys["emergency"] = HmacKey("emergency", secret, now)
            logger.warning(
                "No HMAC keys configured, generated emergency key %s... "
                "(configure X402_HMAC_KEYS before going to production)",
                secret[:8],
            )

        if current_kid is not None:
            if current_kid not in self._keys:
                raise ConfigurationError(f"designated current key '{current_kid}' is not configured")
            self.current_kid = current_kid
        else:
            self.current_kid = select_current_kid(list(self._keys))
        if self.current_kid == "emergency":
            log = logger.error if production else logger.warning
            log("Signing new challenges with the emergency HMAC key")

    # -- signing ---------------------------------------------------------

    def _sign_with(self, data: str, kid: str) -> str:
        key = self._keys.get(kid)
        if key is None:
            raise KeyNotFound(kid)
        return hmac_sha256_hex(data, key.secret)

    def sign(self, requirements: PaymentRequirements) -> SignedRequirements:
        header = requirements.to_header()
        ts = int(self._clock())
        payload = {
            "v": self.prefix,
            "ts": ts,
            "kid": self.current_kid,
            "sig": self._sign_with(f"{header}|ts={ts}", self.current_kid),
        }
        encoded = base64.b64encode(json.dumps(payload, separators=(",", ":")).encode()).decode()
        return SignedRequirements(header, f"{self.prefix}={encoded}")

    def verify(self, requirements_header: str, token: str) -> Verdict:
        if not token.startswith(f"{self.prefix}="):
            return Verdict.reject(Reason.UNSUPPORTED_SIGNATURE_VERSION, "not a v2 signature")
        try:
            payload = json.loads(base64.b64decode(token[len(self.prefix) + 1 :], validate=True))
        except (binascii.Error, ValueError) as e:
            return Verdict.reject(Reason.MALFORMED_INPUT, f"invalid signature format: {e}")
        if not isinstance(payload, dict):
            return Verdict.reject(Reason.MALFORMED_INPUT, "invalid signature payload")
        ts, kid, sig = payload.get("ts"), payload.get("kid"), payload.get("sig")
        if (
            payload.get("v") != self.prefix
            or not isinstance(ts, int)
            or isinstance(ts, bool)
            or not isinstance(kid, str)
            or not kid
            or not isinstance(sig, str)
        ):
            return Verdict.reject(Reason.MALFORMED_INPUT, "invalid signature payload")

        audit = {"key_id": kid, "timestamp": ts, "algorithm": "HS256", "version": self.prefix}
        age = int(self._clock()) - ts
        if age > self.max_age_seconds:
            return Verdict.reject(
                Reason.EXPIRED_SIGNATURE,
                f"signature expired ({age}s old, max {self.max_age_seconds}s)",
                **audit,
            )
        if age < -self.future_skew_seconds:
            return Verdict.reject(Reason.FUTURE_SIGNATURE, "signature from the future (clock skew?)", **audit)
        if kid not in self._keys:
            return Verdict.reject(Reason.UNKNOWN_KEY, f"unknown key id: {kid}", **audit)

        expected = self._sign_with(f"{requirements_header}|ts={ts}", kid)
        if not hmac.compare_digest(sig.encode(), expected.encode()):
            return Verdict.reject(Reason.SIGNATURE_MISMATCH, "signature mismatch", **audit)
        return Verdict(True, **audit)

    # -- key management --------------------------------------------------

    def add_key(self, kid: str, secret: str, make_current: bool = False) -> list[str]:
        if len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"Key must be at least {MIN_SECRET_LENGTH} characters")
        with self._lock:
            if kid in self._keys:
                raise ValueError(f"key id '{kid}' already exists")
            self._keys[kid] = HmacKey(kid, secret, self._clock())
            if make_current:
                self.current_kid = kid
                logger.info("HMAC key rotated to: %s", kid)
            return self._prune()

    def rotate_key(self, new_kid: str, new_secret: str | None = None) -> list[str]:
        """Register ``new_kid`` as current; returns the key ids pruned by retention.

        An existing kid is refused so its outstanding tokens keep verifying.
        """
        return self.add_key(new_kid, new_secret or secrets.token_hex(32), make_current=True)

    def remove_key(self, kid: str) -> None:
        with self._lock:
            if kid == self.current_kid:
                raise ValueError(f"refusing to remove current key '{kid}'")
            if self._keys.pop(kid, None) is None:
                raise KeyNotFound(kid)

    def _prune(self) -> list[str]:
        removed: list[str] = []
        while len(self._keys) > self.max_keys:
            candidates = [
                kid for kid in self._keys if kid not in PROTECTED_KIDS and kid != self.current_kid
            ]
            if not candidates:
                break
            oldest = min(candidates, key=lambda k: self._keys[k].created_at)
            del self._keys[oldest]
            removed.append(oldest)
            logger.info("Removed old HMAC key: %s", oldest)
        return removed

    def _snapshot(self) -> list[HmacKey]:
        with self._lock:
            return list(self._keys.values())

    def key_info(self) -> dict:
        return {"current_kid": self.current_kid, "available_kids": [k.kid for k in self._snapshot()]}

    def validate_keys(self) -> dict:
        issues: list[str] = []
        keys = self._snapshot()
        if self.current_kid not in {k.kid for k in keys}:
            issues.append(f"Current key ID '{self.current_kid}' not found in keystore")
        for key in keys:
            if len(key.secret) < MIN_SECRET_LENGTH:
                issues.append(f"Key '{key.kid}' is too short ({len(key.secret)} < {MIN_SECRET_LENGTH})")
        if self.production and self.current_kid == "emergency":
            issues.append("Using emergency key in production environment")
        return {"valid": not issues, "issues": issues}

    def stats(self) -> dict:
        keys = self._snapshot()
        out: dict = {
            "key_count": len(keys),
            "current_key_id": self.current_kid,
            "oldest_key_age_days": None,
            "newest_key_age_days": None,
        }
        # Key ids like prod-2025-02-01 carry their creation date
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        ages = []
        for key in keys:
            m = _DATE_SUFFIX_RE.search(key.kid)
            if not m:
                continue
            try:
                created = datetime(int(m[1]), int(m[2]), int(m[3]), tzinfo=timezone.utc)
            except ValueError:
                continue
            ages.append((now - created).total_seconds() / 86400)
        if ages:
            out["oldest_key_age_days"] = max(ages)
            out["newest_key_age_days"] = min(ages)
        return out
