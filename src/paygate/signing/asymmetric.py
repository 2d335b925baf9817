"""Public-key signatures over payment requirements (``jws=`` tokens).

Tokens are JWS compact serializations (PyJWT) with header ``{alg, typ, kid}``
and payload ``{iss, iat, exp, sub, aud, jti, requirements}``. RS256 and ES256
(P-256) keys are supported; every live key is published through ``jwks()``.
"""
from __future__ import annotations

import base64
import hmac
import logging
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from ..errors import ConfigurationError, KeyNotFound, Reason
from .base import JWS_PREFIX, SignatureStrategy, SignedRequirements, Verdict
from .requirements import PaymentRequirements

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("RS256", "ES256")
REQUIRED_CLAIMS = ["iss", "aud", "iat", "exp", "jti", "requirements"]
CURRENT_MARKER = "current"


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8 or 1, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


@dataclass
class AsymmetricKey:
    kid: str
    algorithm: str
    private_key: Any
    public_key: Any
    created_at: float
    generated: bool = False

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def to_jwk(self) -> dict[str, str]:
        """Public JWK for this key; private numbers never leave the process."""
        if self.algorithm == "RS256":
            numbers = self.public_key.public_numbers()
            return {
                "kty": "RSA",
                "use": "sig",
                "kid": self.kid,
                "alg": self.algorithm,
                "n": _b64url_uint(numbers.n),
                "e": _b64url_uint(numbers.e),
            }
        numbers = self.public_key.public_numbers()
        size = (self.public_key.curve.key_size + 7) // 8
        return {
            "kty": "EC",
            "use": "sig",
            "kid": self.kid,
            "alg": self.algorithm,
            "crv": "P-256",
            "x": base64.urlsafe_b64encode(numbers.x.to_bytes(size, "big")).rstrip(b"=").decode(),
            "y": base64.urlsafe_b64encode(numbers.y.to_bytes(size, "big")).rstrip(b"=").decode(),
        }


def algorithm_for_key(private_key: Any) -> str:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return "RS256"
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise ConfigurationError(f"unsupported EC curve {private_key.curve.name}; only P-256 (ES256)")
        return "ES256"
    raise ConfigurationError(f"unsupported private key type {type(private_key).__name__}")


def load_pem_key(
    kid: str,
    private_pem: str | bytes,
    public_pem: str | bytes | None = None,
    algorithm: str | None = None,
    clock: Callable[[], float] = time.time,
) -> AsymmetricKey:
    """Build a key from PEM material, checking the declared algorithm matches the key type."""
    if isinstance(private_pem, str):
        private_pem = private_pem.encode()
    try:
        private_key = serialization.load_pem_private_key(private_pem, password=None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"cannot load private key '{kid}': {e}") from e
    actual = algorithm_for_key(private_key)
    if algorithm and algorithm != actual:
        raise ConfigurationError(f"key '{kid}' declared {algorithm} but is a {actual} key")
    if public_pem:
        if isinstance(public_pem, str):
            public_pem = public_pem.encode()
        public_key = serialization.load_pem_public_key(public_pem)
        if public_key.public_numbers() != private_key.public_key().public_numbers():
            raise ConfigurationError(f"public key for '{kid}' does not match its private key")
    else:
        public_key = private_key.public_key()
    return AsymmetricKey(kid, actual, private_key, public_key, clock())


def load_keys_dir(path: Path, clock: Callable[[], float] = time.time) -> dict[str, AsymmetricKey]:
    """Load every ``<kid>.key`` PEM in ``path`` (the kid is the file stem)."""
    keys: dict[str, AsymmetricKey] = {}
    if not path.exists():
        return keys
    for p in sorted(path.glob("*.key")):
        pub = p.with_suffix(".pub")
        keys[p.stem] = load_pem_key(
            p.stem, p.read_bytes(), pub.read_bytes() if pub.exists() else None, clock=clock
        )
    return keys


def read_current_kid(path: Path) -> str | None:
    """Kid recorded by the last rotation into ``path``, if any."""
    marker = path / CURRENT_MARKER
    if not marker.exists():
        return None
    return marker.read_text().strip() or None


class JwsStrategy(SignatureStrategy):
    prefix = JWS_PREFIX
    name = "jws"

    def __init__(
        self,
        keys: Mapping[str, AsymmetricKey],
        current_kid: str | None = None,
        *,
        issuer: str = "paygate-api",
        audience: str = "paygate-client",
        max_age_seconds: int = 300,
        future_skew_seconds: int = 60,
        max_keys: int = 5,
        keys_dir: Path | None = None,
        production: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.issuer = issuer
        self.audience = audience
        self.max_age_seconds = max_age_seconds
        self.future_skew_seconds = future_skew_seconds
        self.max_keys = max_keys
        self.keys_dir = keys_dir
        self.production = production
        self._clock = clock
        self._keys: OrderedDict[str, AsymmetricKey] = OrderedDict(keys)
        self._lock = threading.RLock()

        if current_kid is not None and current_kid not in self._keys:
            raise ConfigurationError(f"designated current key '{current_kid}' is not configured")
        if current_kid is None and keys_dir is not None:
            recorded = read_current_kid(keys_dir)
            if recorded in self._keys:
                current_kid = recorded
            elif recorded is not None:
                logger.warning("Recorded current JWS key '%s' is not loaded, ignoring", recorded)
        if not self._keys:
            # Emergency key lives in memory only
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            key = AsymmetricKey("default-rsa", "RS256", private_key, private_key.public_key(), clock(), generated=True)
            self._keys[key.kid] = key
            logger.warning(
                "No asymmetric keys configured, generated RSA key pair '%s' "
                "(configure X402_JWS_KEYS before going to production)",
                key.kid,
            )
        self.current_kid = current_kid or next(iter(self._keys))

    # -- signing ---------------------------------------------------------

    def sign(self, requirements: PaymentRequirements, subject: str | None = None) -> SignedRequirements:
        key = self._keys.get(self.current_kid)
        if key is None:
            raise KeyNotFound(self.current_kid)
        header = requirements.to_header()
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.max_age_seconds,
            "sub": subject or f"{requirements.order_id}:{requirements.nonce}",
            "aud": self.audience,
            "jti": secrets.token_hex(16),
            "requirements": header,
        }
        compact = jwt.encode(
            payload,
            key.private_key,
            algorithm=key.algorithm,
            headers={"kid": key.kid, "typ": "JWT"},
        )
        return SignedRequirements(header, f"{self.prefix}={compact}")

    def verify(self, requirements_header: str, token: str) -> Verdict:
        if not token.startswith(f"{self.prefix}="):
            return Verdict.reject(Reason.UNSUPPORTED_SIGNATURE_VERSION, "not a JWS signature")
        compact = token[len(self.prefix) + 1 :]
        if compact.count(".") != 2 or not all(compact.split(".")):
            return Verdict.reject(Reason.MALFORMED_INPUT, "invalid JWS format")
        try:
            header = jwt.get_unverified_header(compact)
        except jwt.InvalidTokenError as e:
            return Verdict.reject(Reason.MALFORMED_INPUT, f"invalid JWS header: {e}")
        alg, kid = header.get("alg"), header.get("kid")
        if not alg or not kid or header.get("typ") != "JWT":
            return Verdict.reject(Reason.MALFORMED_INPUT, "invalid JWS header")
        if alg not in SUPPORTED_ALGORITHMS:
            return Verdict.reject(Reason.ALGORITHM_MISMATCH, f"unsupported algorithm {alg}", key_id=kid)

        key = self._keys.get(kid)
        if key is None:
            return Verdict.reject(Reason.UNKNOWN_KEY, f"unknown key id: {kid}", key_id=kid, algorithm=alg)
        if alg != key.algorithm:
            return Verdict.reject(
                Reason.ALGORITHM_MISMATCH,
                f"algorithm mismatch: header {alg}, key {key.algorithm}",
                key_id=kid,
                algorithm=alg,
            )

        audit: dict[str, Any] = {"key_id": kid, "algorithm": alg, "version": self.prefix}
        try:
            # Time bounds are checked below against our own clock
            claims = jwt.decode(
                compact,
                key.public_key,
                algorithms=[key.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidSignatureError:
            return Verdict.reject(Reason.SIGNATURE_MISMATCH, "signature verification failed", **audit)
        except jwt.InvalidIssuerError:
            return Verdict.reject(Reason.ISSUER_MISMATCH, f"invalid issuer, expected {self.issuer}", **audit)
        except jwt.InvalidAudienceError:
            return Verdict.reject(Reason.AUDIENCE_MISMATCH, f"invalid audience, expected {self.audience}", **audit)
        except jwt.InvalidAlgorithmError as e:
            return Verdict.reject(Reason.ALGORITHM_MISMATCH, str(e), **audit)
        except jwt.InvalidTokenError as e:
            return Verdict.reject(Reason.MALFORMED_INPUT, f"invalid JWS payload: {e}", **audit)

        iat, exp = claims.get("iat"), claims.get("exp")
        if not isinstance(iat, int) or not isinstance(exp, int):
            return Verdict.reject(Reason.MALFORMED_INPUT, "iat/exp must be integers", **audit)
        audit.update(timestamp=iat, expires_at=exp)
        now = int(self._clock())
        if now > exp:
            return Verdict.reject(Reason.EXPIRED_SIGNATURE, f"token expired at {exp}", **audit)
        if now < iat - self.future_skew_seconds:
            return Verdict.reject(Reason.FUTURE_SIGNATURE, f"token not yet valid (iat {iat})", **audit)
        embedded = claims.get("requirements")
        if not isinstance(embedded, str) or not hmac.compare_digest(
            embedded.encode(), requirements_header.encode()
        ):
            return Verdict.reject(
                Reason.SIGNATURE_MISMATCH, "token does not cover the presented requirements", **audit
            )
        return Verdict(True, claims=claims, **audit)

    # -- key management --------------------------------------------------

    def _register(self, key: AsymmetricKey, make_current: bool) -> AsymmetricKey:
        with self._lock:
            if key.kid in self._keys:
                raise ValueError(f"key id '{key.kid}' already exists")
            self._keys[key.kid] = key
            if self.keys_dir is not None:
                self.keys_dir.mkdir(parents=True, exist_ok=True)
                (self.keys_dir / f"{key.kid}.key").write_bytes(key.private_pem())
                (self.keys_dir / f"{key.kid}.pub").write_bytes(key.public_pem())
            if make_current:
                self.current_kid = key.kid
                if self.keys_dir is not None:
                    (self.keys_dir / CURRENT_MARKER).write_text(key.kid + "\n")
            return key

    def add_key(self, key: AsymmetricKey, make_current: bool = False) -> AsymmetricKey:
        return self._register(key, make_current)

    def generate_rsa_key(self, kid: str, key_size: int = 2048, make_current: bool = False) -> AsymmetricKey:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        key = AsymmetricKey(kid, "RS256", private_key, private_key.public_key(), self._clock())
        logger.info("Generated RSA key pair: %s", kid)
        return self._register(key, make_current)

    def generate_ec_key(self, kid: str, make_current: bool = False) -> AsymmetricKey:
        private_key = ec.generate_private_key(ec.SECP256R1())
        key = AsymmetricKey(kid, "ES256", private_key, private_key.public_key(), self._clock())
        logger.info("Generated EC key pair: %s", kid)
        return self._register(key, make_current)

    def rotate_key(self, new_kid: str, algorithm: str = "RS256") -> list[str]:
        """Generate ``new_kid``, make it current, prune beyond ``max_keys``.

        Existing kids are refused so outstanding tokens keep verifying.
        """
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"unsupported algorithm {algorithm}")
        with self._lock:
            if new_kid in self._keys:
                raise ValueError(f"key id '{new_kid}' already exists")
            if algorithm == "RS256":
                self.generate_rsa_key(new_kid, make_current=True)
            else:
                self.generate_ec_key(new_kid, make_current=True)
            logger.info("JWS key rotated to: %s", new_kid)
            removed: list[str] = []
            while len(self._keys) > self.max_keys:
                oldest = next(kid for kid in self._keys if kid != self.current_kid)
                del self._keys[oldest]
                if self.keys_dir is not None:
                    (self.keys_dir / f"{oldest}.key").unlink(missing_ok=True)
                    (self.keys_dir / f"{oldest}.pub").unlink(missing_ok=True)
                removed.append(oldest)
                logger.info("Removed old JWS key: %s", oldest)
            return removed

    def _snapshot(self) -> list[tuple[str, AsymmetricKey]]:
        with self._lock:
            return list(self._keys.items())

    def jwks(self) -> dict[str, list[dict[str, str]]]:
        keys = []
        for _kid, key in self._snapshot():
            try:
                keys.append(key.to_jwk())
            except Exception:
                logger.exception("Failed to export public key for kid %s", key.kid)
        return {"keys": keys}

    def key_info(self) -> dict:
        items = self._snapshot()
        return {
            "current_kid": self.current_kid,
            "available_kids": [kid for kid, _ in items],
            "algorithms": {kid: k.algorithm for kid, k in items},
        }

    def validate_keys(self) -> dict:
        issues: list[str] = []
        with self._lock:
            items = list(self._keys.items())
            current_kid = self.current_kid
        if current_kid not in dict(items):
            issues.append(f"Current key ID '{current_kid}' not found")
        sample = {"iss": self.issuer, "purpose": "signature-self-test"}
        for kid, key in items:
            try:
                compact = jwt.encode(sample, key.private_key, algorithm=key.algorithm)
                jwt.decode(compact, key.public_key, algorithms=[key.algorithm])
            except Exception as e:
                issues.append(f"Key '{kid}' validation error: {e}")
        if self.production:
            for kid, key in items:
                if kid.startswith("test-") or "dev" in kid:
                    issues.append(f"Test/development key '{kid}' found in production")
                if key.generated and kid == current_kid:
                    issues.append(f"Auto-generated key '{kid}' is current in production")
        return {"valid": not issues, "issues": issues}

    def stats(self) -> dict:
        items = self._snapshot()
        algorithms: dict[str, int] = {}
        for _kid, key in items:
            algorithms[key.algorithm] = algorithms.get(key.algorithm, 0) + 1
        return {"key_count": len(items), "current_key_id": self.current_kid, "algorithms": algorithms}
