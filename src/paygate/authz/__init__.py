from .claims import ClaimMetadata, PaymentClaim, parse_payment_header
from .orchestrator import AuthorizationResult, AuthState, Challenge, PaymentAuthorizer, PaymentTerms

__all__ = [
    "AuthState",
    "AuthorizationResult",
    "Challenge",
    "ClaimMetadata",
    "PaymentAuthorizer",
    "PaymentClaim",
    "PaymentTerms",
    "parse_payment_header",
]
