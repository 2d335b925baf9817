from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any

from ..errors import Reason
from .requirements import PaymentRequirements

# Token version tags; the text before the first "=" selects the verifier.
LEGACY_PREFIX = "v1"
ENHANCED_PREFIX = "v2"
JWS_PREFIX = "jws"


def token_version(token: str) -> str | None:
    if not token or "=" not in token:
        return None
    return token.split("=", 1)[0]


@dataclass
class Verdict:
    valid: bool
    reason: Reason | None = None
    detail: str | None = None
    key_id: str | None = None
    timestamp: int | None = None
    expires_at: int | None = None
    algorithm: str | None = None
    version: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def reject(cls, reason: Reason, detail: str | None = None, **audit: Any) -> "Verdict":
        return cls(False, reason=reason, detail=detail, **audit)

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"valid": self.valid}
        if self.reason is not None:
            out["reason"] = self.reason.value
        for name in ("detail", "key_id", "timestamp", "expires_at", "algorithm", "version"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


@dataclass
class SignedRequirements:
    header: str
    signature: str


class SignatureStrategy(abc.ABC):
    """One signing family. ``prefix`` is the version tag its tokens carry."""

    prefix: str
    name: str

    @abc.abstractmethod
    def sign(self, requirements: PaymentRequirements) -> SignedRequirements:
        ...

    @abc.abstractmethod
    def verify(self, requirements_header: str, token: str) -> Verdict:
        ...

    def key_info(self) -> dict[str, Any]:
        return {}

    def validate_keys(self) -> dict[str, Any]:
        return {"valid": True, "issues": []}

    def stats(self) -> dict[str, Any]:
        return {}
