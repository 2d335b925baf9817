from .sign import (
    PaymentStateSigner,
    gen_ed25519_keypair,
    load_or_create_state_key,
    parse_state_header,
    verify_state_header,
)

__all__ = [
    "PaymentStateSigner",
    "gen_ed25519_keypair",
    "load_or_create_state_key",
    "parse_state_header",
    "verify_state_header",
]
