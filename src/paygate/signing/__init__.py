from .asymmetric import AsymmetricKey, JwsStrategy, load_keys_dir, load_pem_key
from .base import SignatureStrategy, SignedRequirements, Verdict, token_version
from .dispatch import SignatureDispatcher
from .enhanced import EnhancedHmacStrategy
from .legacy import LegacyHmacStrategy
from .requirements import PaymentRequirements, format_requirements_header, parse_requirements_header

__all__ = [
    "AsymmetricKey",
    "EnhancedHmacStrategy",
    "JwsStrategy",
    "LegacyHmacStrategy",
    "PaymentRequirements",
    "SignatureDispatcher",
    "SignatureStrategy",
    "SignedRequirements",
    "Verdict",
    "format_requirements_header",
    "load_keys_dir",
    "load_pem_key",
    "parse_requirements_header",
    "token_version",
]
