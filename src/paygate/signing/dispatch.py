from __future__ import annotations

import logging
import time
from typing import Callable

from ..errors import ConfigurationError, Reason
from ..settings import Settings
from .asymmetric import JwsStrategy, load_keys_dir, load_pem_key
from .base import SignatureStrategy, SignedRequirements, Verdict, token_version
from .enhanced import EnhancedHmacStrategy
from .legacy import LegacyHmacStrategy
from .requirements import PaymentRequirements

logger = logging.getLogger(__name__)


class SignatureDispatcher:
    """Signs with one active strategy and verifies with whichever strategy a token's
    version tag names."""

    def __init__(self, strategies: list[SignatureStrategy], active: str):
        self._by_prefix: dict[str, SignatureStrategy] = {}
        self._by_name: dict[str, SignatureStrategy] = {}
        for s in strategies:
            self._by_prefix[s.prefix] = s
            self._by_name[s.name] = s
        if active not in self._by_name:
            raise ConfigurationError(f"signature strategy '{active}' is not configured")
        self.active = self._by_name[active]

    def strategy(self, name: str) -> SignatureStrategy | None:
        return self._by_name.get(name)

    @property
    def strategies(self) -> list[SignatureStrategy]:
        return list(self._by_name.values())

    def sign(self, requirements: PaymentRequirements) -> SignedRequirements:
        return self.active.sign(requirements)

    def verify(self, requirements_header: str, token: str) -> Verdict:
        version = token_version(token or "")
        strategy = self._by_prefix.get(version) if version else None
        if strategy is None:
            return Verdict.reject(
                Reason.UNSUPPORTED_SIGNATURE_VERSION,
                f"unsupported signature version {version!r}",
                version=version,
            )
        return strategy.verify(requirements_header, token)

    @classmethod
    def from_settings(cls, cfg: Settings, clock: Callable[[], float] = time.time) -> "SignatureDispatcher":
        """Construct every configured strategy once, at startup."""
        strategies: list[SignatureStrategy] = []

        hmac_keys = dict(cfg.x402_hmac_keys)
        if cfg.x402_hmac_secret and "default" not in hmac_keys:
            hmac_keys["default"] = cfg.x402_hmac_secret
        strategies.append(
            EnhancedHmacStrategy(
                hmac_keys,
                cfg.x402_current_key_id,
                max_keys=cfg.x402_max_keys,
                max_age_seconds=cfg.signature_max_age_seconds,
                future_skew_seconds=cfg.signature_future_skew_seconds,
                production=cfg.is_production,
                clock=clock,
            )
        )

        if cfg.x402_legacy_enabled or cfg.x402_signature_strategy == "legacy":
            logger.warning("Legacy v1 HMAC signatures are enabled; prefer enhanced-hmac or jws")
            strategies.append(LegacyHmacStrategy(cfg.x402_hmac_secret))

        jws_keys = {}
        if cfg.x402_jws_keys_dir is not None:
            jws_keys.update(load_keys_dir(cfg.x402_jws_keys_dir, clock=clock))
        for kid, material in cfg.x402_jws_keys.items():
            if "private" not in material:
                raise ConfigurationError(f"JWS key '{kid}' has no private key")
            jws_keys[kid] = load_pem_key(
                kid,
                material["private"],
                material.get("public"),
                material.get("algorithm"),
                clock=clock,
            )
            logger.info("Loaded JWS key pair: %s (%s)", kid, jws_keys[kid].algorithm)
        strategies.append(
            JwsStrategy(
                jws_keys,
                cfg.x402_jws_current_kid,
                issuer=cfg.x402_jws_issuer,
                audience=cfg.x402_jws_audience,
                max_age_seconds=cfg.signature_max_age_seconds,
                future_skew_seconds=cfg.signature_future_skew_seconds,
                max_keys=cfg.x402_max_jws_keys,
                keys_dir=cfg.x402_jws_keys_dir,
                production=cfg.is_production,
                clock=clock,
            )
        )
        return cls(strategies, cfg.x402_signature_strategy)
